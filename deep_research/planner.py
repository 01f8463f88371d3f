import logging
import re
import uuid
from typing import List, Optional, Sequence

from . import agents
from .context import RunContext
from .llm import ReasoningService
from .schemas import PlanStep, ResearchPlan, ToolSpec
from .tools import AVAILABLE_TOOLS


logger = logging.getLogger("uvicorn.error")

_STEP_RE = re.compile(r"<step\b[^>]*?\bid\s*=\s*\"([^\"]+)\"[^>]*>(.*?)</step>", re.DOTALL | re.IGNORECASE)


def extract_tag(content: str, tag: str) -> str:
    match = re.search(rf"<{tag}>(.*?)</{tag}>", content, re.DOTALL | re.IGNORECASE)
    return match.group(1).strip() if match else ""


def split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_plan_text(text: str) -> List[PlanStep]:
    """Pull every well-formed <step id="..."> block out of a planner reply.

    Missing sub-fields come back empty rather than failing the parse; the
    verifier decides whether the result is acceptable.
    """
    steps: List[PlanStep] = []
    for match in _STEP_RE.finditer(text or ""):
        step_id = match.group(1).strip()
        if not step_id:
            continue
        body = match.group(2)
        steps.append(
            PlanStep(
                id=step_id,
                title=extract_tag(body, "title"),
                description=extract_tag(body, "description"),
                tools=split_list(extract_tag(body, "tools")),
                dependencies=split_list(extract_tag(body, "dependencies")),
            )
        )
    return steps


def new_plan_id() -> str:
    return f"plan_{uuid.uuid4().hex}"


async def create_plan(
    query: str,
    llm: ReasoningService,
    ctx: Optional[RunContext] = None,
    tools: Sequence[ToolSpec] = AVAILABLE_TOOLS,
    max_steps: int = 8,
) -> ResearchPlan:
    if not isinstance(query, str) or not query.strip():
        raise ValueError("query must be a non-empty string")
    logger.info("Creating research plan for: %s", query)
    prompt = agents.build_plan_prompt(query, tools, max_steps=max_steps)
    response = await llm.complete("planner", agents.messages(agents.PLANNER_SYSTEM, prompt), ctx=ctx)
    steps = parse_plan_text(response)
    plan = ResearchPlan(id=new_plan_id(), query=query, steps=steps)
    logger.info("Plan %s created with %d steps", plan.id, len(steps))
    return plan
