import inspect
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from . import agents
from .context import RunContext
from .llm import ReasoningService, parse_json_object
from .schemas import (
    PlanStep,
    RawFindings,
    Source,
    StepResult,
    StructuredFindings,
    ToolSpec,
    clamp_unit,
)
from .tools import AVAILABLE_TOOLS, tool_index


logger = logging.getLogger("uvicorn.error")

DEFAULT_CONFIDENCE = 0.7
RAW_CONFIDENCE = 0.5

StepCallback = Callable[[PlanStep], Any]


def topological_indices(steps: Sequence[PlanStep]) -> List[int]:
    """Kahn's algorithm over step dependencies, ties broken by plan order.

    Works on positions so a best-effort plan with a repeated id still runs every
    step. Steps left over by a cycle or a dangling dependency are appended in
    declaration order, so each position appears exactly once.
    """
    positions: Dict[str, List[int]] = {}
    for idx, step in enumerate(steps):
        positions.setdefault(step.id, []).append(idx)
    in_degree: List[int] = []
    dependents: List[List[int]] = [[] for _ in steps]
    for idx, step in enumerate(steps):
        deps = list(dict.fromkeys(step.dependencies))
        in_degree.append(len(deps))
        for dep in deps:
            for dep_idx in positions.get(dep, []):
                dependents[dep_idx].append(idx)
    queue: Deque[int] = deque(idx for idx, degree in enumerate(in_degree) if degree == 0)
    ordered: List[int] = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
    if len(ordered) < len(steps):
        placed = set(ordered)
        leftover = [idx for idx in range(len(steps)) if idx not in placed]
        logger.warning(
            "Could not order steps %s by dependency; running them in plan order",
            [steps[idx].id for idx in leftover],
        )
        ordered.extend(leftover)
    return ordered


def topological_order(steps: Sequence[PlanStep]) -> List[str]:
    return [steps[idx].id for idx in topological_indices(steps)]


def _coerce_sources(value: Any) -> List[Source]:
    if not isinstance(value, list):
        return []
    sources: List[Source] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        sources.append(
            Source(
                title=str(item.get("title") or ""),
                url=str(url) if url else None,
                snippet=str(item.get("snippet") or ""),
                relevance=clamp_unit(item.get("relevance"), 0.5),
            )
        )
    return sources


def parse_step_response(response: str, elapsed_ms: int) -> StepResult:
    parsed = parse_json_object(response)
    if parsed is None:
        logger.warning("Executor reply was not JSON; keeping the raw text")
        return StepResult(
            data=RawFindings(raw_response=response or ""),
            sources=[],
            confidence=RAW_CONFIDENCE,
            execution_time_ms=elapsed_ms,
        )
    data = parsed.get("data")
    if not isinstance(data, dict):
        data = {} if data is None else {"value": data}
    summary = data.get("summary") if isinstance(data.get("summary"), str) else None
    if summary is None and isinstance(parsed.get("summary"), str):
        summary = parsed["summary"]
    return StepResult(
        data=StructuredFindings(data=data, summary=summary or None),
        sources=_coerce_sources(parsed.get("sources")),
        confidence=clamp_unit(parsed.get("confidence"), DEFAULT_CONFIDENCE),
        execution_time_ms=elapsed_ms,
    )


async def execute_step(
    step: PlanStep,
    context: Sequence[StepResult],
    llm: ReasoningService,
    tools: Sequence[ToolSpec] = AVAILABLE_TOOLS,
    ctx: Optional[RunContext] = None,
) -> StepResult:
    """Run one step against the executor model; service-call failures propagate."""
    logger.info("Executing step %s: %s", step.id, step.title)
    registry = tool_index(tools)
    step_tools = [registry[name] for name in step.tools if name in registry]
    prompt = agents.build_execute_prompt(step, context, step_tools)
    started = time.monotonic()
    response = await llm.complete("executor", agents.messages(agents.EXECUTOR_SYSTEM, prompt), ctx=ctx)
    result = parse_step_response(response, int((time.monotonic() - started) * 1000))
    logger.info("Step %s completed in %d ms", step.id, result.execution_time_ms)
    return result


async def _notify(callback: Optional[StepCallback], step: PlanStep) -> None:
    if callback is None:
        return
    outcome = callback(step)
    if inspect.isawaitable(outcome):
        await outcome


async def execute_steps(
    steps: List[PlanStep],
    llm: ReasoningService,
    tools: Sequence[ToolSpec] = AVAILABLE_TOOLS,
    ctx: Optional[RunContext] = None,
    on_step_complete: Optional[StepCallback] = None,
) -> List[PlanStep]:
    """Run every step once, in dependency order, one at a time.

    A step whose call errors is marked failed and the loop moves on; results of
    completed dependencies are handed to each step as context.
    """
    logger.info("Executing %d steps", len(steps))
    completed: Dict[str, StepResult] = {}
    for idx in topological_indices(steps):
        step = steps[idx]
        context = [completed[dep] for dep in step.dependencies if dep in completed]
        step.transition("executing")
        try:
            result = await execute_step(step, context, llm, tools=tools, ctx=ctx)
        except Exception as exc:
            logger.warning("Step %s failed: %s", step.id, exc)
            step.transition("failed")
        else:
            step.result = result
            step.transition("completed")
            completed[step.id] = result
        await _notify(on_step_complete, step)
    done = sum(1 for step in steps if step.status == "completed")
    logger.info("Completed %d/%d steps", done, len(steps))
    return steps
