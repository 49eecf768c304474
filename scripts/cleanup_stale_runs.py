#!/usr/bin/env python3
"""CLI script to reclassify stale sync runs and prune resolved failures.

Usage:
    uv run python scripts/cleanup_stale_runs.py
    uv run python scripts/cleanup_stale_runs.py --timeout-minutes 15 --prune-days 30

A run is stale when it is still ``running`` but its heartbeat is older than
the timeout: the worker that owned it crashed or was killed. Stale runs are
marked failed with a timeout error.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def cleanup(timeout_minutes: int | None, prune_days: int | None) -> None:
    from src.app.api.middleware.logging import configure_structlog
    from src.app.config import get_settings
    from src.app.core.database import close_db, get_session, init_db
    from src.app.sync.ledger import FailureLedger
    from src.app.sync.mapping import MappingStore
    from src.app.sync.runs import SyncRunService

    configure_structlog()
    settings = get_settings()
    await init_db()

    runs = SyncRunService(
        get_session,
        MappingStore(get_session),
        stale_timeout_minutes=settings.STALE_RUN_TIMEOUT_MINUTES,
    )
    try:
        cleaned = await runs.cleanup_stale_runs(timeout_minutes)
        print(f"Stale runs reclassified: {cleaned}")
        if prune_days is not None:
            pruned = await FailureLedger(get_session).clean_old_records(days_old=prune_days)
            print(f"Resolved failures pruned: {pruned}")
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Clean up stale sync runs")
    parser.add_argument(
        "--timeout-minutes",
        type=int,
        default=None,
        help="Heartbeat age after which a running run is stale (default: settings)",
    )
    parser.add_argument(
        "--prune-days",
        type=int,
        default=None,
        help="Also delete resolved failures older than this many days",
    )
    args = parser.parse_args()
    asyncio.run(cleanup(args.timeout_minutes, args.prune_days))


if __name__ == "__main__":
    main()
