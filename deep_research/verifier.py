import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from . import agents
from .context import RunContext
from .llm import ReasoningService, ReasoningServiceError, parse_json_object
from .schemas import PlanStep, ToolSpec, VerificationResult
from .tools import AVAILABLE_TOOLS, tool_names


logger = logging.getLogger("uvicorn.error")

PARSE_FAILURE_ISSUE = "Failed to parse verification response"
EMPTY_PLAN_ISSUE = "Plan has no steps"


def find_cycle(step_id: str, steps: Sequence[PlanStep]) -> Optional[List[str]]:
    """Return a dependency path leading from ``step_id`` back to itself, if one exists.

    Iterative DFS: ``stack`` holds (node, remaining-deps iterator) frames,
    ``in_progress`` mirrors the ids on the current path, ``visited`` holds ids
    already fully explored from this start. Dangling dependency ids are ignored.
    """
    graph: Dict[str, List[str]] = {step.id: list(step.dependencies) for step in steps}
    if step_id not in graph:
        return None
    visited = {step_id}
    in_progress = [step_id]
    stack: List[Tuple[str, Iterator[str]]] = [(step_id, iter(graph[step_id]))]
    while stack:
        node, deps = stack[-1]
        advanced = False
        for dep in deps:
            if dep == step_id:
                return in_progress + [step_id]
            if dep in visited or dep not in graph:
                continue
            visited.add(dep)
            in_progress.append(dep)
            stack.append((dep, iter(graph[dep])))
            advanced = True
            break
        if not advanced:
            stack.pop()
            in_progress.pop()
    return None


def deterministic_issues(
    steps: Sequence[PlanStep],
    known_tools: Sequence[str],
    max_steps: Optional[int] = None,
) -> List[str]:
    issues: List[str] = []
    if not steps:
        return [EMPTY_PLAN_ISSUE]
    if max_steps is not None and len(steps) > max_steps:
        issues.append(f"Plan has {len(steps)} steps; at most {max_steps} are allowed")
    known = set(known_tools)
    step_ids = {step.id for step in steps}
    seen: Set[str] = set()
    for idx, step in enumerate(steps, start=1):
        if step.id in seen:
            issues.append(f'Step {idx}: Duplicate step id "{step.id}"')
        seen.add(step.id)
        if not step.title.strip():
            issues.append(f"Step {idx}: Missing title")
        if not step.description.strip():
            issues.append(f"Step {idx}: Missing description")
        for tool in step.tools:
            if tool not in known:
                issues.append(f'Step {idx}: Unknown tool "{tool}"')
        for dep in step.dependencies:
            if dep not in step_ids:
                issues.append(f'Step {idx}: Unknown dependency step "{dep}"')
        cycle = find_cycle(step.id, steps)
        if cycle:
            issues.append(f"Step {idx}: Circular dependency detected ({' -> '.join(cycle)})")
    return issues


def _coerce_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


async def semantic_review(
    steps: Sequence[PlanStep],
    llm: ReasoningService,
    known_tools: Sequence[str],
    ctx: Optional[RunContext] = None,
) -> Tuple[List[str], List[str]]:
    """Ask the verifier model for extra issues; returns (issues, suggestions)."""
    prompt = agents.build_verify_prompt(steps, known_tools)
    try:
        response = await llm.complete(
            "verifier",
            agents.messages(agents.VERIFIER_SYSTEM, prompt),
            temperature=0.3,
            ctx=ctx,
        )
    except (ReasoningServiceError, TimeoutError) as exc:
        logger.warning("Semantic verification call failed: %s", exc)
        return [f"Verification service unavailable: {exc}"], []
    parsed = parse_json_object(response)
    if parsed is None:
        logger.warning("Verifier reply was not a JSON object")
        return [PARSE_FAILURE_ISSUE], []
    return _coerce_str_list(parsed.get("issues")), _coerce_str_list(parsed.get("suggestions"))


async def verify_plan(
    steps: Sequence[PlanStep],
    llm: ReasoningService,
    tools: Sequence[ToolSpec] = AVAILABLE_TOOLS,
    ctx: Optional[RunContext] = None,
    max_steps: Optional[int] = None,
) -> VerificationResult:
    logger.info("Verifying plan with %d steps", len(steps))
    known_tools = tool_names(tools)
    issues = deterministic_issues(steps, known_tools, max_steps=max_steps)
    semantic_issues, suggestions = await semantic_review(steps, llm, known_tools, ctx=ctx)
    all_issues = issues + semantic_issues
    result = VerificationResult(is_valid=not all_issues, issues=all_issues, suggestions=suggestions)
    if result.is_valid:
        logger.info("Plan verification passed")
    else:
        logger.info("Plan verification failed with %d issues: %s", len(all_issues), all_issues)
    return result
