import asyncio
import time

import pytest

from deep_research.config import OrchestrationLimits
from deep_research.context import DeadlineExceeded, RunContext


def test_call_timeout_is_bounded_by_remaining_budget():
    ctx = RunContext(total_timeout_s=100, call_timeout_s=60, started_at=time.monotonic() - 70)
    assert ctx.call_timeout() <= 30
    assert ctx.call_timeout(grace=True) == 60


def test_from_limits_copies_budgets():
    ctx = RunContext.from_limits(OrchestrationLimits(total_timeout_s=12, step_timeout_s=3))
    assert (ctx.total_timeout_s, ctx.call_timeout_s) == (12, 3)


def test_expired_context_refuses_new_calls():
    ctx = RunContext(total_timeout_s=1, started_at=time.monotonic() - 2)
    assert ctx.expired()
    with pytest.raises(DeadlineExceeded):
        ctx.call_timeout()
    assert isinstance(DeadlineExceeded("x"), TimeoutError)


@pytest.mark.asyncio
async def test_guard_times_out_slow_call_without_spending_the_run():
    ctx = RunContext(total_timeout_s=30, call_timeout_s=0.05)
    with pytest.raises(asyncio.TimeoutError) as excinfo:
        await ctx.guard(asyncio.sleep(1))
    assert not isinstance(excinfo.value, DeadlineExceeded)


@pytest.mark.asyncio
async def test_guard_reports_deadline_when_budget_runs_out():
    ctx = RunContext(total_timeout_s=0.05, call_timeout_s=10)
    with pytest.raises(DeadlineExceeded):
        await ctx.guard(asyncio.sleep(1))


@pytest.mark.asyncio
async def test_guard_grace_allows_calls_after_expiry():
    ctx = RunContext(total_timeout_s=1, call_timeout_s=1, started_at=time.monotonic() - 5)

    async def write():
        return "saved"

    assert await ctx.guard(write(), grace=True) == "saved"
    ctx.add_tokens(7)
    ctx.add_tokens(None)
    assert ctx.tokens_used == 7
