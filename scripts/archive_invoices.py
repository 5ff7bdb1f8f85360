#!/usr/bin/env python3
"""
Batchsale Invoice Archival

Marks terminal invoices (settled with consignment delivered, expired,
settlement failed) older than the retention window as archived so restart
recovery and operator queries only see live data.

Usage:
    # Archive with the configured retention window (default 30 days, for cron)
    python3 archive_invoices.py

    # Override the retention window
    python3 archive_invoices.py --retention-days 7

    # Verbose logging
    python3 archive_invoices.py --verbose
"""

import argparse
import asyncio
import logging
import sys

import structlog

from batchsale.config import settings
from batchsale.db.session import close_engine
from batchsale.observability import setup_logging
from batchsale.services.sale import build_pipeline

logger = structlog.get_logger()


async def archive(retention_days: int | None) -> int:
    """Archive terminal invoices and return how many were archived."""
    effective = settings
    if retention_days is not None:
        effective = settings.model_copy(update={"invoice_retention_days": retention_days})

    pipeline = build_pipeline(effective)
    try:
        return await pipeline.archive_terminal_invoices()
    finally:
        await pipeline.stop()
        await close_engine()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Archive terminal batchsale invoices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Archive with configured retention (for cron jobs)
  python3 archive_invoices.py

  # Archive everything terminal older than a week
  python3 archive_invoices.py --retention-days 7 --verbose
        """,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        help=f"Days to keep terminal invoices live (default: {settings.invoice_retention_days})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.retention_days is not None and args.retention_days < 0:
        logger.error("invalid_retention_days", retention_days=args.retention_days)
        sys.exit(1)

    try:
        archived = asyncio.run(archive(args.retention_days))
    except Exception as e:
        logger.error("invoice_archive_failed", error=str(e), exc_info=True)
        sys.exit(1)

    logger.info("invoice_archive_complete", archived=archived)
    sys.exit(0)


if __name__ == "__main__":
    main()
