"""
Stats Poller - Resilient polling of sale progress for the UI.

Failures degrade gracefully instead of spamming the network:
- a failed poll serves the last good result while it is younger than the
  cache window (health "cached"), otherwise a "degraded" snapshot
- backoff grows from the base interval to the max after each failure
- after max consecutive failures polling pauses, then resumes fresh
- background() suspends polling and drops the in-flight request
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from structlog import get_logger

from batchsale.exceptions import RequestSupersededError, SaleError
from batchsale.models.api import SnapshotHealth
from batchsale.models.domain import LedgerStats, StatsSnapshot
from batchsale.observability import metrics
from batchsale.services.polling import BackoffPolicy, InflightRequest

logger = get_logger(__name__)

StatsFetcher = Callable[[], Awaitable[LedgerStats]]
SnapshotHandler = Callable[[StatsSnapshot], Any]


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class StatsPoller:
    """Polls ledger stats through an injected fetch function."""

    def __init__(
        self,
        fetch: StatsFetcher,
        policy: BackoffPolicy,
        request_timeout: float = 10.0,
        cache_max_age_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetch = fetch
        self._policy = policy
        self._request_timeout = request_timeout
        self._cache_max_age = cache_max_age_seconds
        self._clock = clock
        self.state = policy.new_state()
        self._inflight = InflightRequest("ledger_stats")
        self._stopped = False
        self._backgrounded = False
        self._wake = asyncio.Event()
        self._foreground = asyncio.Event()
        self._foreground.set()

    @property
    def is_backgrounded(self) -> bool:
        return self._backgrounded

    async def poll(self) -> StatsSnapshot:
        """
        Fetch stats once. Never raises for fetch failures and never blocks
        beyond the request timeout.
        """
        try:
            stats = await self._inflight.run(self._fetch(), timeout=self._request_timeout)
        except RequestSupersededError:
            return self._fallback("request cancelled")
        except (httpx.HTTPError, TimeoutError, ValueError, SaleError) as exc:
            delay_ms = self._policy.record_failure(self.state)
            metrics.poll_failures_total.labels(poller="stats").inc()
            logger.warning(
                "stats_poll_failed",
                error=str(exc) or type(exc).__name__,
                attempts=self.state.attempts,
                retry_in_ms=delay_ms,
                paused=self.state.is_paused,
            )
            return self._fallback(str(exc) or type(exc).__name__)

        now = self._clock()
        self._policy.record_success(self.state, stats, now)
        return StatsSnapshot(health=SnapshotHealth.OK, stats=stats, fetched_at=now, age_seconds=0.0)

    async def run(self, on_snapshot: SnapshotHandler) -> None:
        """Poll until stop(), handing every snapshot to on_snapshot (sync or async)."""
        logger.info("stats_polling_started", base_interval_ms=self._policy.base_ms)
        while not self._stopped:
            if self._backgrounded:
                await self._foreground.wait()
                continue

            # Wakeups raised by on_snapshot must survive until _wait.
            self._wake.clear()
            snapshot = await self.poll()
            if self._stopped:
                break
            if not self._backgrounded:
                outcome = on_snapshot(snapshot)
                if inspect.isawaitable(outcome):
                    await outcome
            if self._stopped:
                break

            paused = self.state.is_paused
            if paused:
                logger.warning("stats_polling_paused", pause_ms=self._policy.pause_ms)
            woken = await self._wait(self.state.current_backoff_ms / 1000)
            if paused and not woken and self.state.is_paused:
                self._policy.resume(self.state)
                logger.info("stats_polling_resumed")

        logger.info("stats_polling_stopped")

    def background(self) -> None:
        """Suspend polling and cancel the in-flight request."""
        if self._backgrounded:
            return
        self._backgrounded = True
        self._foreground.clear()
        self._inflight.cancel()
        self._wake.set()
        logger.info("stats_polling_backgrounded")

    def foreground(self) -> None:
        """Resume polling immediately with a fresh attempt counter."""
        if not self._backgrounded:
            return
        self._backgrounded = False
        self._policy.resume(self.state)
        self._foreground.set()
        self._wake.set()
        logger.info("stats_polling_foregrounded")

    def stop(self) -> None:
        self._stopped = True
        self._inflight.cancel()
        self._wake.set()
        self._foreground.set()

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless woken early. Returns True when woken."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def _fallback(self, error: str) -> StatsSnapshot:
        """Snapshot served when a poll fails. Stale results are never served."""
        now = self._clock()
        last = self.state.last_successful_result
        last_at = self.state.last_success_at
        age = (now - last_at).total_seconds() if last_at is not None else None
        fresh = last is not None and age is not None and age <= self._cache_max_age
        cached = last if fresh else None

        if self.state.is_paused:
            health = SnapshotHealth.PAUSED
        elif fresh:
            health = SnapshotHealth.CACHED
        else:
            health = SnapshotHealth.DEGRADED
        return StatsSnapshot(
            health=health,
            stats=cached,
            fetched_at=last_at,
            age_seconds=age,
            error=error,
        )
