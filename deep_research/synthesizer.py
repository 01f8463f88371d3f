import json
import logging
from typing import AsyncIterator, List, Optional, Sequence

from . import agents
from .context import RunContext
from .llm import ReasoningService
from .schemas import KnowledgeEntry, PlanStep, RawFindings


logger = logging.getLogger("uvicorn.error")


def format_step_content(step: PlanStep) -> str:
    result = step.result
    lines = [f"**{step.title}**", step.description, ""]
    if result is not None:
        findings = result.data
        if isinstance(findings, RawFindings):
            lines.append(findings.raw_response)
        elif findings.summary:
            lines.append(findings.summary)
        else:
            lines.append(f"Findings: {json.dumps(findings.data, indent=2)}")
        if result.sources:
            lines.append("")
            lines.append("Sources:")
            for idx, source in enumerate(result.sources, start=1):
                lines.append(f"{idx}. {source.title} - {source.url or 'no url'}")
    return "\n".join(lines).strip()


def extract_knowledge(steps: Sequence[PlanStep], session_id: str = "") -> List[KnowledgeEntry]:
    """Turn completed step results into knowledge entries.

    Deterministic: ids derive from step ids and timestamps from the result's
    completion time, so calling this twice yields equal entries.
    """
    entries: List[KnowledgeEntry] = []
    for step in steps:
        if step.result is None:
            continue
        entries.append(
            KnowledgeEntry(
                id=f"knowledge_{step.id}",
                session_id=session_id,
                content=format_step_content(step),
                sources=list(step.result.sources),
                timestamp=step.result.completed_at,
                relevance=step.result.confidence,
            )
        )
    logger.info("Extracted %d knowledge entries", len(entries))
    return entries


def _synthesis_messages(query: str, steps: Sequence[PlanStep], knowledge: Sequence[KnowledgeEntry]):
    prompt = agents.build_synthesize_prompt(query, steps, knowledge)
    return agents.messages(agents.SYNTHESIZER_SYSTEM, prompt)


async def synthesize_report(
    query: str,
    steps: Sequence[PlanStep],
    knowledge: Sequence[KnowledgeEntry],
    llm: ReasoningService,
    ctx: Optional[RunContext] = None,
) -> str:
    logger.info("Synthesizing final report")
    report = await llm.complete("synthesizer", _synthesis_messages(query, steps, knowledge), ctx=ctx)
    logger.info("Report synthesized (%d chars)", len(report))
    return report


async def stream_synthesize_report(
    query: str,
    steps: Sequence[PlanStep],
    knowledge: Sequence[KnowledgeEntry],
    llm: ReasoningService,
) -> AsyncIterator[str]:
    logger.info("Streaming final report")
    total = 0
    async for chunk in llm.stream("synthesizer", _synthesis_messages(query, steps, knowledge)):
        total += len(chunk)
        yield chunk
    logger.info("Report stream finished (%d chars)", total)
