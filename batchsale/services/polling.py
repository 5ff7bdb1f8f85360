"""
Polling Primitives - Bounded exponential backoff shared by every poller.

The payment monitor (one poll loop per invoice) and the stats poller both
drive their loops through BackoffPolicy and PollState, and both keep at most
one outstanding network request through InflightRequest.
"""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar

from batchsale.config import Settings
from batchsale.exceptions import RequestSupersededError

T = TypeVar("T")


@dataclass
class PollState(Generic[T]):
    """Transient per-poller state. Never persisted."""

    current_backoff_ms: int
    attempts: int = 0
    is_paused: bool = False
    last_successful_result: T | None = None
    last_success_at: datetime | None = None


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Backoff schedule.

    Failure n (1-based) waits min(base * 2^(n-1), max). After max_attempts
    consecutive failures the poller pauses for pause_ms, then resumes with a
    fresh attempt counter. Any success resets to base.
    """

    base_ms: int
    max_ms: int
    max_attempts: int
    pause_ms: int

    def __post_init__(self) -> None:
        if self.base_ms <= 0 or self.max_ms < self.base_ms:
            raise ValueError(f"Invalid backoff bounds: base={self.base_ms}, max={self.max_ms}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive: {self.max_attempts}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_ms=settings.poll_base_interval_ms,
            max_ms=settings.poll_max_backoff_ms,
            max_attempts=settings.poll_max_attempts,
            pause_ms=settings.poll_pause_ms,
        )

    def new_state(self) -> PollState[Any]:
        return PollState(current_backoff_ms=self.base_ms)

    def delay_ms(self, attempts: int) -> int:
        """Delay before the next poll after `attempts` consecutive failures."""
        if attempts <= 0:
            return self.base_ms
        return min(self.base_ms * 2 ** (attempts - 1), self.max_ms)

    def record_success(self, state: PollState[T], result: T, now: datetime) -> int:
        """Reset to base after a successful poll. Returns the next delay in ms."""
        state.attempts = 0
        state.is_paused = False
        state.last_successful_result = result
        state.last_success_at = now
        state.current_backoff_ms = self.base_ms
        return self.base_ms

    def record_failure(self, state: PollState[T]) -> int:
        """Count a failure. Returns the next delay in ms (the pause once exhausted)."""
        state.attempts += 1
        if state.attempts >= self.max_attempts:
            state.is_paused = True
            state.current_backoff_ms = self.pause_ms
            return self.pause_ms
        state.current_backoff_ms = self.delay_ms(state.attempts)
        return state.current_backoff_ms

    def resume(self, state: PollState[T]) -> None:
        """Leave the pause with a fresh attempt counter."""
        state.attempts = 0
        state.is_paused = False
        state.current_backoff_ms = self.base_ms


class InflightRequest:
    """
    Holder for the single outstanding request of one poller.

    Starting a new request cancels the previous one. cancel() is used by the
    webhook path and by backgrounding to drop a request nobody needs anymore.
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self._task: asyncio.Task[Any] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> bool:
        """Cancel the outstanding request, if any. Returns whether one was cancelled."""
        task, self._task = self._task, None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def run(self, coro: Coroutine[Any, Any, T], timeout: float) -> T:
        """
        Run coro as the outstanding request, bounded by timeout seconds.

        Raises:
            TimeoutError: the request did not finish in time
            RequestSupersededError: cancel() or a newer run() dropped it
        """
        self.cancel()
        task: asyncio.Task[T] = asyncio.create_task(coro)
        self._task = task
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            # The caller itself was cancelled
            task.cancel()
            raise
        finally:
            if self._task is task:
                self._task = None

        if not done:
            task.cancel()
            raise TimeoutError(f"{self.operation} timed out after {timeout}s")
        if task.cancelled():
            raise RequestSupersededError(self.operation)
        return task.result()
