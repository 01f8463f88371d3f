import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from .config import AppSettings
from .context import DeadlineExceeded, RunContext
from .db import Database
from .executor import execute_steps
from .llm import ReasoningService, ReasoningServiceError
from .planner import create_plan
from .policy import make_policy_decision, should_force_completion
from .schemas import (
    OrchestrationMetadata,
    OrchestrationResult,
    PlanStep,
    ResearchPlan,
    ToolSpec,
    VerificationResult,
)
from .synthesizer import extract_knowledge, stream_synthesize_report
from .tools import AVAILABLE_TOOLS
from .verifier import verify_plan


logger = logging.getLogger("uvicorn.error")


class PlanGenerationError(RuntimeError):
    """Every planning attempt failed before a plan could be produced."""


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, session_id: str, event_type: str, payload: dict, persist: bool = True) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("session_id", session_id)
        if persist:
            event = await self.db.add_event(session_id, event_type, safe_payload)
        else:
            event = {"session_id": session_id, "seq": None, "event_type": event_type, "payload": safe_payload}
        async with self.lock:
            queues = list(self.subscribers.get(session_id, []))
        for q in queues:
            await q.put(event)
        return event

    async def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(session_id, []).append(queue)
        return queue

    async def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(session_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(session_id, None)


def _count(steps: Sequence[PlanStep], status: str) -> int:
    return sum(1 for step in steps if step.status == status)


async def _consume_report(
    chunks: AsyncIterator[str],
    ctx: RunContext,
    forced: bool,
    bus: Optional[EventBus],
    session_id: str,
) -> Tuple[str, bool]:
    """Drain the synthesis stream under the run deadline; returns (report, truncated)."""
    parts: List[str] = []
    truncated = False
    try:
        budget = ctx.call_timeout(grace=forced)
    except DeadlineExceeded:
        await chunks.aclose()
        logger.warning("No time left for synthesis; returning an empty report")
        return "", True
    try:
        async with asyncio.timeout(budget):
            async for chunk in chunks:
                parts.append(chunk)
                if bus is not None:
                    await bus.emit(session_id, "report_chunk", {"text": chunk}, persist=False)
    except TimeoutError:
        truncated = True
        logger.warning("Synthesis cut short by the deadline after %d chars", sum(len(p) for p in parts))
    finally:
        await chunks.aclose()
    return "".join(parts), truncated


async def _record_failure(
    db: Database,
    bus: Optional[EventBus],
    ctx: RunContext,
    session_id: str,
    plan: Optional[ResearchPlan],
    error: Exception,
) -> None:
    """Best-effort: mark the session failed and emit the terminal `failed` event."""
    message = str(error) or error.__class__.__name__
    logger.error("Research session %s failed: %s", session_id, message)
    try:
        await ctx.guard(db.update_session(session_id, status="failed", plan=plan), grace=True)
    except Exception as exc:
        logger.warning("Could not mark session %s as failed: %s", session_id, exc)
    if bus is None:
        return
    try:
        await bus.emit(session_id, "failed", {"status": "failed", "error": message})
    except Exception as exc:
        logger.warning("Persisting the failure event for %s failed: %s", session_id, exc)
        await bus.emit(session_id, "failed", {"status": "failed", "error": message}, persist=False)


async def run_research(
    query: str,
    *,
    llm: ReasoningService,
    db: Database,
    settings: AppSettings,
    bus: Optional[EventBus] = None,
    tools: Optional[Sequence[ToolSpec]] = None,
) -> OrchestrationResult:
    """Plan, verify, execute, decide, extract knowledge and synthesize one research run.

    The session row is created as soon as a plan exists and is updated before
    each later phase begins. Step failures and policy failures are absorbed.
    Any other error after the session exists marks it failed, emits a terminal
    `failed` event and propagates.
    """
    tools = list(tools or AVAILABLE_TOOLS)
    limits = settings.limits
    ctx = RunContext.from_limits(limits)
    max_attempts = max(1, limits.max_retries)
    logger.info("Starting research for query: %s", query)

    plan: Optional[ResearchPlan] = None
    verification: Optional[VerificationResult] = None
    session_id = ""
    attempts = 0
    failed_attempts = 0
    last_error: Optional[Exception] = None

    async def emit(event_type: str, payload: dict) -> None:
        if bus is not None and session_id:
            await bus.emit(session_id, event_type, payload)

    async def advance(status: str) -> None:
        await ctx.guard(db.update_session(session_id, status=status, plan=plan), grace=True)
        await emit("phase", {"status": status})

    try:
        while attempts < max_attempts:
            attempts += 1
            logger.info("Planning attempt %d/%d", attempts, max_attempts)
            try:
                candidate = await create_plan(query, llm, ctx=ctx, tools=tools, max_steps=limits.max_steps)
            except (ReasoningServiceError, TimeoutError) as exc:
                last_error = exc
                failed_attempts += 1
                logger.warning("Plan generation attempt %d failed: %s", attempts, exc)
                continue
            plan = candidate
            if not session_id:
                session = await ctx.guard(db.create_session(query, plan), grace=True)
                session_id = session["id"]
                await emit("phase", {"status": "planning"})
            else:
                await advance("planning")
            await emit("plan_created", {"plan": plan.model_dump(mode="json"), "attempt": attempts})
            await advance("verifying")
            verification = await verify_plan(plan.steps, llm, tools=tools, ctx=ctx, max_steps=limits.max_steps)
            await emit("plan_verified", verification.model_dump())
            if verification.is_valid:
                break
            failed_attempts += 1
            logger.warning("Plan verification failed: %s", verification.issues)

        if plan is None or verification is None:
            raise PlanGenerationError(f"Failed to generate a research plan: {last_error}")
        best_effort = not verification.is_valid
        if best_effort:
            logger.info("Max planning attempts reached; proceeding with the current plan")

        plan.status = "executing"
        await advance("executing")

        async def on_step_complete(step: PlanStep) -> None:
            await ctx.guard(db.update_session(session_id, status="executing", plan=plan), grace=True)
            await emit("step_completed", {"step_id": step.id, "title": step.title, "status": step.status})

        await execute_steps(plan.steps, llm, tools=tools, ctx=ctx, on_step_complete=on_step_complete)
        completed = _count(plan.steps, "completed")
        total = len(plan.steps)

        await advance("deciding")
        decision = await make_policy_decision(
            query, plan.steps, verification.issues, ctx, failed_attempts, limits, llm
        )
        await emit("policy_decision", decision.model_dump())
        forced = should_force_completion(ctx, failed_attempts, completed, total, limits)
        if forced:
            logger.info("Force-completion triggered; synthesizing with available results")

        await advance("extracting")
        knowledge = extract_knowledge(plan.steps, session_id=session_id)
        for entry in knowledge:
            await ctx.guard(db.add_knowledge(session_id, entry), grace=True)

        await advance("synthesizing")
        report, truncated = await _consume_report(
            stream_synthesize_report(query, plan.steps, knowledge, llm), ctx, forced, bus, session_id
        )
    except Exception as exc:
        if session_id:
            await _record_failure(db, bus, ctx, session_id, plan, exc)
        raise

    plan.status = "completed" if completed > 0 else "failed"
    result = OrchestrationResult(
        session_id=session_id,
        plan_id=plan.id,
        query=query,
        steps=plan.steps,
        final_report=report,
        knowledge=knowledge,
        status="success" if total > 0 and completed == total else "partial",
        metadata=OrchestrationMetadata(
            total_time_ms=ctx.elapsed_ms(),
            tokens_used=ctx.tokens_used,
            steps_completed=completed,
            steps_total=total,
            planning_attempts=attempts,
            best_effort=best_effort,
            verification_issues=verification.issues,
            policy_decision=decision,
            force_completion=forced,
            report_truncated=truncated,
        ),
    )
    try:
        await ctx.guard(
            db.update_session(session_id, status="completed", plan=plan, result=result), grace=True
        )
    except Exception as exc:
        await _record_failure(db, bus, ctx, session_id, plan, exc)
        raise
    await emit("completed", {"status": result.status, "steps_completed": completed, "steps_total": total})
    logger.info(
        "Research completed in %d ms: %d/%d steps, status %s",
        result.metadata.total_time_ms,
        completed,
        total,
        result.status,
    )
    return result
