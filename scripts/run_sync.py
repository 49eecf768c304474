#!/usr/bin/env python3
"""CLI script to run sync jobs once, outside the API process.

Usage:
    uv run python scripts/run_sync.py client
    uv run python scripts/run_sync.py appointment --full-sync --max-records 200
    uv run python scripts/run_sync.py client --source-id abc123 --dry-run
    uv run python scripts/run_sync.py all
    uv run python scripts/run_sync.py inbound
    uv run python scripts/run_sync.py audit

Connects directly to the database using DATABASE_URL from environment or .env file.
``all`` runs every entity type in dependency order so that references
(staff, clients) exist before the records that point at them.
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

FULL_ORDER = ["staff", "product", "client", "appointment", "booking", "checkin", "loyalty"]


async def run(args: argparse.Namespace) -> int:
    """Run the requested job(s); returns the process exit code."""
    from src.app.api.middleware.logging import configure_structlog
    from src.app.config import get_settings
    from src.app.core.database import close_db, init_db
    from src.app.sync.container import build_container
    from src.app.sync.schemas import EntityType, SyncOptions

    configure_structlog()
    settings = get_settings()
    if args.dry_run:
        settings = settings.model_copy(update={"SYNC_DRY_RUN": True})
    # One-shot runs never register recurring triggers
    settings = settings.model_copy(update={"SYNC_SCHEDULER_ENABLED": False})

    await init_db()
    container = build_container(settings)
    exit_code = 0
    try:
        if args.target == "audit":
            audit = await container.auditor.run_full_audit()
            print(
                f"Audit {audit.audit_run_id}: {audit.match_count} match, "
                f"{audit.mismatch_count} mismatch, {audit.failed_count} failed, "
                f"{audit.skipped_count} skipped"
            )
            for entity in audit.entities:
                print(
                    f"  {entity.entity_type.value:<12} {entity.status:<9} "
                    f"local={entity.local_count} dest={entity.dest_count}"
                    + (f" ({entity.error})" if entity.error else "")
                )
            return 1 if audit.failed_count else 0

        if args.target == "inbound":
            result = await container.inbound.run(max_records=args.max_records or 0)
            print(
                f"inbound: {result.total_processed} processed, {result.created} created, "
                f"{result.updated} updated, {result.skipped} skipped, {result.failed} failed"
            )
            return 1 if result.failed else 0

        targets = FULL_ORDER if args.target == "all" else [args.target]
        for target in targets:
            options = SyncOptions(
                full_sync=args.full_sync,
                skip_import=args.skip_import,
                source_id=args.source_id,
                max_records=args.max_records,
            )
            result = await container.worker.run(EntityType(target), options)
            print(
                f"{target}: {result.total_processed} processed, {result.created} created, "
                f"{result.updated} updated, {result.skipped} skipped, {result.failed} failed"
                + (f", {result.clients_repaired} clients repaired" if result.clients_repaired else "")
            )
            for error in result.errors:
                print(f"  ! {error['source_id']}: {error['error']}")
            if result.failed:
                exit_code = 1
    finally:
        await container.aclose()
        await close_db()
    return exit_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Phorest -> GHL sync jobs once")
    parser.add_argument(
        "target",
        choices=[*FULL_ORDER, "all", "inbound", "audit"],
        help="Entity type to sync, 'all', 'inbound' (GHL -> Phorest) or 'audit'",
    )
    parser.add_argument("--full-sync", action="store_true", help="Ignore the candidate window")
    parser.add_argument("--skip-import", action="store_true", help="Sync staged rows only")
    parser.add_argument("--source-id", help="Sync a single Phorest record")
    parser.add_argument("--max-records", type=int, help="Cap records processed per type")
    parser.add_argument("--dry-run", action="store_true", help="No GHL or mapping writes")
    args = parser.parse_args()

    if args.source_id and args.target in ("all", "inbound", "audit"):
        parser.error("--source-id needs a single entity type")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
