"""Failure ledger and auto-retry sweep.

FailureLedger keeps one unresolved row per (entity_type, entity_id):
reporting the same entity again bumps ``attempts`` and refreshes the
message, code and timestamp instead of adding a row.

AutoRetrySweeper runs on a timer. It reclaims stale runs first, then
retries recent unresolved failures whose code is transient or unknown,
leaving alone anything too old, retried too often, or failed permanently.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, func, select, update

from src.app.sync.importer import StagingImporter
from src.app.sync.inbound import INBOUND_QUEUE, InboundContactSync
from src.app.sync.models import ReportedFailureModel, as_utc, utcnow
from src.app.sync.remote.adapter import PERMANENT_CODES, TRANSIENT_CODES, RemoteAPIError
from src.app.sync.runs import SyncRunService
from src.app.sync.schemas import (
    EntityType,
    ErrorStats,
    FailureRead,
    RetryStats,
    SyncOutcome,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from src.app.sync.worker import SyncWorker

logger = structlog.get_logger(__name__)

# Types whose failures are retried by re-syncing another type
RETRY_TARGETS: dict[EntityType, EntityType] = {EntityType.LOYALTY: EntityType.CLIENT}


def _type_key(entity_type: EntityType | str) -> str:
    return entity_type.value if isinstance(entity_type, EntityType) else entity_type


def _model_to_failure(model: ReportedFailureModel) -> FailureRead:
    return FailureRead(
        id=model.id,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        error_message=model.error_message,
        error_code=model.error_code,
        attempts=model.attempts,
        resolved=model.resolved,
        timestamp=as_utc(model.timestamp),
        resolved_at=as_utc(model.resolved_at),
    )


# ── Ledger ──────────────────────────────────────────────────────────────────


class FailureLedger:
    """Deduplicated record of per-entity sync failures."""

    def __init__(
        self, session_factory: Callable[[], AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def report(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        message: str,
        code: str | None = None,
    ) -> FailureRead:
        """Record a failure, folding it into the open row for the entity if any."""
        failure: FailureRead | None = None
        async for session in self._session_factory():
            stmt = (
                select(ReportedFailureModel)
                .where(
                    ReportedFailureModel.entity_type == _type_key(entity_type),
                    ReportedFailureModel.entity_id == entity_id,
                    ReportedFailureModel.resolved.is_(False),
                )
                .order_by(ReportedFailureModel.timestamp.desc())
                .limit(1)
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = ReportedFailureModel(
                    entity_type=_type_key(entity_type),
                    entity_id=entity_id,
                    error_message=message[:2000],
                    error_code=code,
                )
                session.add(model)
            else:
                model.attempts = (model.attempts or 1) + 1
                model.error_message = message[:2000]
                model.error_code = code
                model.timestamp = utcnow()
            await session.commit()
            failure = _model_to_failure(model)
        logger.info(
            "ledger.reported",
            entity_type=_type_key(entity_type),
            entity_id=entity_id,
            code=code,
            attempts=failure.attempts,
        )
        return failure

    async def get(self, failure_id: str) -> FailureRead | None:
        failure = None
        async for session in self._session_factory():
            model = await session.get(ReportedFailureModel, failure_id)
            if model is not None:
                failure = _model_to_failure(model)
        return failure

    async def recent_failures(
        self, limit: int = 50, include_resolved: bool = False
    ) -> list[FailureRead]:
        """Most recent failures first; unresolved only unless asked."""
        failures: list[FailureRead] = []
        async for session in self._session_factory():
            stmt = select(ReportedFailureModel)
            if not include_resolved:
                stmt = stmt.where(ReportedFailureModel.resolved.is_(False))
            stmt = stmt.order_by(ReportedFailureModel.timestamp.desc()).limit(limit)
            models = (await session.execute(stmt)).scalars().all()
            failures = [_model_to_failure(m) for m in models]
        return failures

    async def failures_for_entity(
        self, entity_type: EntityType | str, entity_id: str
    ) -> list[FailureRead]:
        failures: list[FailureRead] = []
        async for session in self._session_factory():
            stmt = (
                select(ReportedFailureModel)
                .where(
                    ReportedFailureModel.entity_type == _type_key(entity_type),
                    ReportedFailureModel.entity_id == entity_id,
                )
                .order_by(ReportedFailureModel.timestamp.desc())
            )
            models = (await session.execute(stmt)).scalars().all()
            failures = [_model_to_failure(m) for m in models]
        return failures

    async def error_stats(self) -> ErrorStats:
        stats = ErrorStats()
        async for session in self._session_factory():
            unresolved = ReportedFailureModel.resolved.is_(False)
            by_type = await session.execute(
                select(ReportedFailureModel.entity_type, func.count())
                .where(unresolved)
                .group_by(ReportedFailureModel.entity_type)
            )
            by_code = await session.execute(
                select(ReportedFailureModel.error_code, func.count())
                .where(unresolved)
                .group_by(ReportedFailureModel.error_code)
            )
            stats.by_entity_type = {row[0]: row[1] for row in by_type}
            stats.by_error_code = {(row[0] or "UNKNOWN"): row[1] for row in by_code}
            stats.total_unresolved = sum(stats.by_entity_type.values())
        return stats

    # ── Resolution ──────────────────────────────────────────────────────

    async def mark_resolved(self, failure_id: str) -> bool:
        return await self.mark_many_resolved([failure_id]) > 0

    async def mark_many_resolved(self, failure_ids: list[str]) -> int:
        if not failure_ids:
            return 0
        resolved = 0
        async for session in self._session_factory():
            result = await session.execute(
                update(ReportedFailureModel)
                .where(
                    ReportedFailureModel.id.in_(failure_ids),
                    ReportedFailureModel.resolved.is_(False),
                )
                .values(resolved=True, resolved_at=utcnow())
            )
            await session.commit()
            resolved = result.rowcount or 0
        return resolved

    async def resolve_for_entity(self, entity_type: EntityType | str, entity_id: str) -> int:
        """Resolve every open failure for an entity after a successful sync."""
        resolved = 0
        async for session in self._session_factory():
            result = await session.execute(
                update(ReportedFailureModel)
                .where(
                    ReportedFailureModel.entity_type == _type_key(entity_type),
                    ReportedFailureModel.entity_id == entity_id,
                    ReportedFailureModel.resolved.is_(False),
                )
                .values(resolved=True, resolved_at=utcnow())
            )
            await session.commit()
            resolved = result.rowcount or 0
        if resolved:
            logger.info(
                "ledger.resolved_for_entity",
                entity_type=_type_key(entity_type),
                entity_id=entity_id,
                count=resolved,
            )
        return resolved

    async def clean_old_records(self, days_old: int = 30) -> int:
        """Delete resolved rows older than ``days_old``; open rows are kept."""
        cutoff = utcnow() - timedelta(days=days_old)
        deleted = 0
        async for session in self._session_factory():
            result = await session.execute(
                delete(ReportedFailureModel).where(
                    ReportedFailureModel.resolved.is_(True),
                    ReportedFailureModel.timestamp < cutoff,
                )
            )
            await session.commit()
            deleted = result.rowcount or 0
        logger.info("ledger.cleaned", deleted=deleted, days_old=days_old)
        return deleted


# ── Auto-Retry ──────────────────────────────────────────────────────────────


def is_retryable_code(code: str | None) -> bool:
    """Transient codes and unknown failures are retried; permanent ones never."""
    if code is None or code == "UNKNOWN":
        return True
    if code in PERMANENT_CODES:
        return False
    return code in TRANSIENT_CODES


class AutoRetrySweeper:
    """Timer-driven retry of recent unresolved failures.

    Args:
        ledger: Failure ledger to sweep.
        worker: Sync worker; retries go through its single-record path.
        runs: Run service, for the stale-run janitor pass.
        importer: Refreshes a client from Phorest before it is retried.
        max_age_days: Failures last seen earlier are left alone.
        max_attempts: Failures reported this many times are left alone.
        batch_size: Failures examined per sweep.
        inbound: GHL -> Phorest contact sync, which retries failures reported
            under the ``client_inbound`` key. Those rows are skipped without it.
    """

    def __init__(
        self,
        ledger: FailureLedger,
        worker: SyncWorker,
        runs: SyncRunService,
        importer: StagingImporter,
        max_age_days: int = 7,
        max_attempts: int = 4,
        batch_size: int = 100,
        inbound: InboundContactSync | None = None,
    ) -> None:
        self._ledger = ledger
        self._worker = worker
        self._runs = runs
        self._importer = importer
        self._max_age = timedelta(days=max_age_days)
        self._max_attempts = max_attempts
        self._batch_size = batch_size
        self._inbound = inbound

    def _skip_reason(self, failure: FailureRead) -> str | None:
        if utcnow() - failure.timestamp > self._max_age:
            return "too_old"
        if failure.attempts >= self._max_attempts:
            return "max_attempts"
        if not is_retryable_code(failure.error_code):
            return "permanent"
        if failure.entity_type == INBOUND_QUEUE:
            return None if self._inbound is not None else "unknown_type"
        try:
            EntityType(failure.entity_type)
        except ValueError:
            return "unknown_type"
        return None

    async def run(self) -> RetryStats:
        """One sweep; returns attempted / succeeded / failed / skipped counts."""
        stats = RetryStats()
        cleaned = await self._runs.cleanup_stale_runs()
        if cleaned:
            logger.info("auto_retry.stale_runs_cleaned", count=cleaned)

        failures = await self._ledger.recent_failures(limit=self._batch_size)
        for failure in failures:
            reason = self._skip_reason(failure)
            if reason is not None:
                stats.skipped += 1
                logger.debug(
                    "auto_retry.skipped",
                    failure_id=failure.id,
                    entity_type=failure.entity_type,
                    entity_id=failure.entity_id,
                    reason=reason,
                )
                continue

            stats.attempted += 1
            try:
                entity_type = failure.entity_type
                if entity_type != INBOUND_QUEUE:
                    entity_type = EntityType(entity_type)
                outcome = await self.retry_entity(entity_type, failure.entity_id)
            except Exception as exc:
                logger.error(
                    "auto_retry.error",
                    failure_id=failure.id,
                    entity_type=failure.entity_type,
                    entity_id=failure.entity_id,
                    error=str(exc),
                )
                stats.failed += 1
                continue

            if outcome.settles:
                await self._ledger.mark_resolved(failure.id)
                stats.succeeded += 1
            else:
                stats.failed += 1

        logger.info("auto_retry.completed", **stats.model_dump())
        return stats

    async def retry_entity(self, entity_type: EntityType | str, entity_id: str) -> SyncOutcome:
        """Re-sync one entity through the worker's single-record path.

        Inbound failures are keyed by GHL contact id and go back through the
        contact sync instead.
        """
        if entity_type == INBOUND_QUEUE:
            if self._inbound is None:
                raise ValueError(f"No inbound sync configured for {entity_id}")
            outcome = await self._inbound.sync_single_contact(entity_id)
            logger.info(
                "auto_retry.retried",
                entity_type=INBOUND_QUEUE,
                entity_id=entity_id,
                outcome=outcome.kind.value,
            )
            return outcome
        target = RETRY_TARGETS.get(entity_type, entity_type)
        if target == EntityType.CLIENT:
            try:
                await self._importer.import_single_client(entity_id)
            except RemoteAPIError as exc:
                logger.warning("auto_retry.restage_failed", entity_id=entity_id, error=exc.message)
        outcome = await self._worker.sync_single(target, entity_id)
        logger.info(
            "auto_retry.retried",
            entity_type=_type_key(entity_type),
            target=target.value,
            entity_id=entity_id,
            outcome=outcome.kind.value,
        )
        return outcome

    async def manual_retry(self, entity_type: EntityType | str, entity_id: str) -> SyncOutcome:
        """Retry regardless of age, attempts or code; resolves the entity on success."""
        outcome = await self.retry_entity(entity_type, entity_id)
        if outcome.settles:
            await self._ledger.resolve_for_entity(entity_type, entity_id)
        return outcome
