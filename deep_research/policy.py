import logging
from typing import Optional, Sequence

from . import agents
from .config import OrchestrationLimits
from .context import RunContext
from .llm import ReasoningService, ReasoningServiceError, parse_json_object
from .schemas import PlanStep, PolicyDecision, clamp_unit


logger = logging.getLogger("uvicorn.error")

POLICY_ACTIONS = {"continue", "replan", "stop"}


def _count(steps: Sequence[PlanStep], status: str) -> int:
    return sum(1 for step in steps if step.status == status)


def deterministic_decision(
    steps: Sequence[PlanStep],
    issues: Sequence[str],
    ctx: RunContext,
    retry_count: int,
    limits: OrchestrationLimits,
) -> Optional[PolicyDecision]:
    """Fixed-priority rules; the first one that matches decides."""
    total = len(steps)
    completed = _count(steps, "completed")
    failed = _count(steps, "failed")
    if ctx.elapsed_s() > limits.total_timeout_s:
        return PolicyDecision(
            action="stop",
            reason="Total timeout exceeded. Proceeding with available results.",
            confidence=1.0,
        )
    if retry_count >= limits.max_retries:
        return PolicyDecision(
            action="stop",
            reason="Maximum retries reached. Proceeding with available results.",
            confidence=1.0,
        )
    if completed == total and failed == 0:
        return PolicyDecision(action="stop", reason="All steps completed successfully.", confidence=1.0)
    if failed > total / 2:
        return PolicyDecision(
            action="replan",
            reason="More than half of steps failed. Need to replan.",
            confidence=0.9,
        )
    if len(issues) > 3:
        return PolicyDecision(
            action="replan",
            reason="Too many verification issues. Need to replan.",
            confidence=0.85,
        )
    if completed > 0 and completed >= total * 0.6:
        return PolicyDecision(
            action="stop",
            reason="Sufficient information gathered. Ready to synthesize.",
            confidence=0.8,
        )
    return None


def fallback_decision(completed: int) -> PolicyDecision:
    if completed > 0:
        return PolicyDecision(
            action="stop",
            reason="Error in policy decision. Proceeding with available results.",
            confidence=0.5,
        )
    return PolicyDecision(
        action="replan",
        reason="Error in policy decision and no results yet. Attempting replan.",
        confidence=0.5,
    )


async def make_policy_decision(
    query: str,
    steps: Sequence[PlanStep],
    issues: Sequence[str],
    ctx: RunContext,
    retry_count: int,
    limits: OrchestrationLimits,
    llm: ReasoningService,
) -> PolicyDecision:
    decision = deterministic_decision(steps, issues, ctx, retry_count, limits)
    if decision is not None:
        logger.info("Policy decision (rule): %s - %s", decision.action, decision.reason)
        return decision
    completed = _count(steps, "completed")
    prompt = agents.build_policy_prompt(query, steps, completed, issues)
    try:
        response = await llm.complete(
            "verifier",
            agents.messages(agents.POLICY_SYSTEM, prompt),
            temperature=0.3,
            ctx=ctx,
        )
    except (ReasoningServiceError, TimeoutError) as exc:
        logger.warning("Policy decision call failed: %s", exc)
        return fallback_decision(completed)
    parsed = parse_json_object(response)
    action = str((parsed or {}).get("action") or "").strip().lower()
    if action not in POLICY_ACTIONS:
        logger.warning("Policy reply unusable: %r", response[:200])
        return fallback_decision(completed)
    decision = PolicyDecision(
        action=action,
        reason=str(parsed.get("reason") or "No reason given."),
        confidence=clamp_unit(parsed.get("confidence"), 0.5),
    )
    logger.info("Policy decision (model): %s - %s", decision.action, decision.reason)
    return decision


def should_force_completion(
    ctx: RunContext,
    retry_count: int,
    completed: int,
    total: int,
    limits: OrchestrationLimits,
) -> bool:
    """Beast-mode trigger: most of the time budget gone, or retries burnt with little progress."""
    return ctx.elapsed_s() > limits.total_timeout_s * 0.8 or (
        retry_count >= 2 and completed < total * 0.3
    )
