#!/usr/bin/env python3
"""
Sale Progress Watcher

Follows /v1/ledger/stats of a running batchsale API with the same resilient
polling the UI uses (backoff, cache fallback, pause after repeated failures)
and prints one line per snapshot.

Usage:
    python3 watch_stats.py --url http://localhost:8000
    python3 watch_stats.py --url https://sale.example --interval-ms 5000
"""

import argparse
import asyncio
import sys

import structlog

from batchsale.client import SaleStatsClient
from batchsale.config import settings
from batchsale.models.domain import StatsSnapshot
from batchsale.observability import setup_logging
from batchsale.services.polling import BackoffPolicy
from batchsale.services.stats_poller import StatsPoller

logger = structlog.get_logger()


def print_snapshot(snapshot: StatsSnapshot) -> None:
    """Render one snapshot as a single status line."""
    if snapshot.stats is None:
        print(f"[{snapshot.health.value}] stats unavailable: {snapshot.error}")
        return
    stats = snapshot.stats
    age = f" (age {snapshot.age_seconds:.0f}s)" if snapshot.age_seconds else ""
    print(
        f"[{snapshot.health.value}] {stats.percent_sold:.2f}% sold, "
        f"{stats.remaining_batches} batches left, "
        f"{stats.total_distributed}/{stats.total_supply} tokens{age}"
    )


async def run_watch(url: str, interval_ms: int) -> None:
    client = SaleStatsClient(url, timeout_seconds=settings.poll_request_timeout_seconds)
    policy = BackoffPolicy(
        base_ms=interval_ms,
        max_ms=max(interval_ms, settings.poll_max_backoff_ms),
        max_attempts=settings.poll_max_attempts,
        pause_ms=settings.poll_pause_ms,
    )
    poller = StatsPoller(
        client.get_ledger_stats,
        policy,
        request_timeout=settings.poll_request_timeout_seconds,
        cache_max_age_seconds=settings.stats_cache_max_age_seconds,
    )
    try:
        await poller.run(print_snapshot)
    finally:
        poller.stop()
        await client.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Watch batchsale sale progress")
    parser.add_argument("--url", default="http://localhost:8000", help="Base URL of the API")
    parser.add_argument(
        "--interval-ms",
        type=int,
        default=settings.poll_base_interval_ms,
        help="Base polling interval in milliseconds",
    )
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(run_watch(args.url, args.interval_ms))
    except KeyboardInterrupt:
        logger.info("stats_watch_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
