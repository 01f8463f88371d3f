import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional


class DeadlineExceeded(TimeoutError):
    """The run's wall-clock budget ran out before an external call could finish."""


@dataclass
class RunContext:
    """Per-session deadline, per-call timeout and token accounting.

    One instance per research run, threaded through every reasoning-service
    and session-store call. Each call gets min(call timeout, time remaining).
    """

    total_timeout_s: float = 300.0
    call_timeout_s: float = 60.0
    started_at: float = field(default_factory=time.monotonic)
    tokens_used: int = 0

    @classmethod
    def from_limits(cls, limits: Any) -> "RunContext":
        return cls(total_timeout_s=limits.total_timeout_s, call_timeout_s=limits.step_timeout_s)

    def elapsed_s(self) -> float:
        return time.monotonic() - self.started_at

    def elapsed_ms(self) -> int:
        return int(self.elapsed_s() * 1000)

    def remaining_s(self) -> float:
        return self.total_timeout_s - self.elapsed_s()

    def expired(self) -> bool:
        return self.remaining_s() <= 0

    def call_timeout(self, grace: bool = False) -> float:
        if grace:
            return self.call_timeout_s
        remaining = self.remaining_s()
        if remaining <= 0:
            raise DeadlineExceeded(f"run budget of {self.total_timeout_s:.0f}s exhausted")
        return min(self.call_timeout_s, remaining)

    def add_tokens(self, count: Optional[int]) -> None:
        if count:
            self.tokens_used += int(count)

    async def guard(self, awaitable: Awaitable[Any], grace: bool = False) -> Any:
        """Await an external call under the per-call timeout and the run deadline."""
        try:
            timeout = self.call_timeout(grace=grace)
        except DeadlineExceeded:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            if self.expired():
                raise DeadlineExceeded(f"run budget of {self.total_timeout_s:.0f}s exhausted") from exc
            raise
