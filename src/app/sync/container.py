"""Assembly of the sync engine.

Every component receives its collaborators through its constructor; this
module is the one place that wires them together from Settings. The app
lifespan and the scripts both build a SyncContainer and close it on exit.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.config import Settings
from src.app.core.database import get_session
from src.app.sync.audit import ReconciliationAuditor
from src.app.sync.handlers import HandlerDeps, build_handlers
from src.app.sync.importer import StagingImporter
from src.app.sync.inbound import InboundContactSync
from src.app.sync.ledger import AutoRetrySweeper, FailureLedger
from src.app.sync.mapping import MappingStore
from src.app.sync.orchestrator import SyncOrchestrator, build_registry
from src.app.sync.remote import DestinationClient, GHLClient, PhorestClient, SourceClient
from src.app.sync.repository import StagedRepository
from src.app.sync.runs import SyncRunService
from src.app.sync.worker import SyncWorker

logger = structlog.get_logger(__name__)


@dataclass
class SyncContainer:
    """Fully wired sync engine."""

    settings: Settings
    source: SourceClient
    dest: DestinationClient
    mappings: MappingStore
    repository: StagedRepository
    runs: SyncRunService
    ledger: FailureLedger
    importer: StagingImporter
    worker: SyncWorker
    inbound: InboundContactSync
    auditor: ReconciliationAuditor
    sweeper: AutoRetrySweeper
    orchestrator: SyncOrchestrator

    async def aclose(self) -> None:
        await self.orchestrator.stop()
        for client in (self.source, self.dest):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
        logger.info("sync_container.closed")


def build_container(
    settings: Settings,
    *,
    session_factory: Callable[[], AsyncGenerator[AsyncSession, None]] = get_session,
    source: SourceClient | None = None,
    dest: DestinationClient | None = None,
    redis: aioredis.Redis | None = None,
) -> SyncContainer:
    """Wire every sync component from settings.

    Args:
        settings: Application settings.
        session_factory: Session generator shared by the repositories.
        source / dest: Remote clients; httpx clients are built when omitted.
        redis: Client for cross-process single-flight keys, None to disable.
    """
    source = source or PhorestClient(
        base_url=settings.PHOREST_API_BASE_URL,
        business_id=settings.PHOREST_BUSINESS_ID,
        branch_id=settings.PHOREST_BRANCH_ID,
        username=settings.PHOREST_USERNAME,
        password=settings.PHOREST_PASSWORD,
        timeout=settings.PHOREST_TIMEOUT,
    )
    dest = dest or GHLClient(
        base_url=settings.GHL_API_BASE_URL,
        access_token=settings.GHL_ACCESS_TOKEN,
        location_id=settings.GHL_LOCATION_ID,
        calendar_id=settings.GHL_CALENDAR_ID,
        api_version=settings.GHL_API_VERSION,
        timeout=settings.GHL_TIMEOUT,
    )

    mappings = MappingStore(session_factory)
    repository = StagedRepository(session_factory)
    runs = SyncRunService(
        session_factory, mappings, stale_timeout_minutes=settings.STALE_RUN_TIMEOUT_MINUTES
    )
    ledger = FailureLedger(session_factory)
    importer = StagingImporter(
        source,
        repository,
        salon_timezone=settings.SALON_TIMEZONE,
        lookback_days=settings.APPOINTMENT_LOOKBACK_DAYS,
        lookahead_days=settings.APPOINTMENT_LOOKAHEAD_DAYS,
    )

    deps = HandlerDeps(
        source=source,
        dest=dest,
        mappings=mappings,
        repository=repository,
        location_id=settings.GHL_LOCATION_ID,
        calendar_id=settings.GHL_CALENDAR_ID,
        assigned_user_id=settings.GHL_ASSIGNED_USER_ID or None,
        dry_run=settings.SYNC_DRY_RUN,
    )
    worker = SyncWorker(
        build_handlers(
            deps,
            appointment_lookback_days=settings.APPOINTMENT_LOOKBACK_DAYS,
            checkin_lookback_days=settings.CHECKIN_LOOKBACK_DAYS,
        ),
        repository,
        mappings,
        runs,
        ledger,
        importer,
        concurrency=settings.SYNC_CONCURRENCY,
        progress_interval=settings.SYNC_PROGRESS_INTERVAL,
        max_records=settings.SYNC_MAX_RECORDS,
        dry_run=settings.SYNC_DRY_RUN,
        max_repair_attempts=settings.MAX_REPAIR_ATTEMPTS,
        repair_cooldown_hours=settings.REPAIR_COOLDOWN_HOURS,
    )
    inbound = InboundContactSync(
        source, dest, mappings, runs, dry_run=settings.SYNC_DRY_RUN, ledger=ledger
    )
    auditor = ReconciliationAuditor(
        mappings,
        dest,
        session_factory,
        lookback_days=settings.APPOINTMENT_LOOKBACK_DAYS,
        lookahead_days=settings.APPOINTMENT_LOOKAHEAD_DAYS,
        checkin_sample_size=settings.AUDIT_CHECKIN_SAMPLE_SIZE,
    )
    sweeper = AutoRetrySweeper(
        ledger,
        worker,
        runs,
        importer,
        max_age_days=settings.AUTO_RETRY_MAX_AGE_DAYS,
        max_attempts=settings.AUTO_RETRY_MAX_ATTEMPTS,
        batch_size=settings.AUTO_RETRY_BATCH_SIZE,
        inbound=inbound,
    )
    registry = build_registry(
        worker,
        auditor,
        sweeper,
        runs,
        inbound=inbound,
        stale_run_timeout_minutes=settings.STALE_RUN_TIMEOUT_MINUTES,
    )
    orchestrator = SyncOrchestrator(
        registry,
        runs,
        redis=redis,
        lock_ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS,
        scheduler_enabled=settings.SYNC_SCHEDULER_ENABLED,
    )

    logger.info(
        "sync_container.built",
        queues=registry.queues,
        dry_run=settings.SYNC_DRY_RUN,
        concurrency=settings.SYNC_CONCURRENCY,
    )
    return SyncContainer(
        settings=settings,
        source=source,
        dest=dest,
        mappings=mappings,
        repository=repository,
        runs=runs,
        ledger=ledger,
        importer=importer,
        worker=worker,
        inbound=inbound,
        auditor=auditor,
        sweeper=sweeper,
        orchestrator=orchestrator,
    )
