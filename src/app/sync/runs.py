"""Sync run log -- run summaries, per-record log items, heartbeat and janitor.

SyncRunService records one SyncRunModel per worker execution and one
SyncLogModel per processed record. ``updated_at`` on a run is its heartbeat;
cleanup_stale_runs reclassifies running rows whose heartbeat is older than
the timeout as failed so the next scheduled trigger is not blocked.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.sync.mapping import MappingStore
from src.app.sync.models import SyncLogModel, SyncRunModel, as_utc, utcnow
from src.app.sync.schemas import (
    EntityType,
    LogAction,
    LogStatus,
    OutcomeKind,
    RunCounts,
    RunHandle,
    RunStatus,
    SyncDirection,
    SyncHealth,
    SyncLogRead,
    SyncRunRead,
    SyncRunResult,
)

logger = structlog.get_logger(__name__)


def _model_to_run(model: SyncRunModel) -> SyncRunRead:
    return SyncRunRead(
        id=model.id,
        batch_id=model.batch_id,
        job_id=model.job_id,
        entity_type=model.entity_type,
        direction=SyncDirection(model.direction),
        status=RunStatus(model.status),
        total_records=model.total_records or 0,
        success_count=model.success_count or 0,
        failed_count=model.failed_count or 0,
        skipped_count=model.skipped_count or 0,
        last_error=model.last_error,
        started_at=as_utc(model.started_at),
        completed_at=as_utc(model.completed_at),
        updated_at=as_utc(model.updated_at),
        duration_ms=model.duration_ms,
    )


def _model_to_log(model: SyncLogModel) -> SyncLogRead:
    return SyncLogRead(
        id=model.id,
        run_id=model.run_id,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        direction=SyncDirection(model.direction),
        action=LogAction(model.action),
        status=LogStatus(model.status),
        error_code=model.error_code,
        error_message=model.error_message,
        duration_ms=model.duration_ms,
        created_at=as_utc(model.created_at),
    )


def final_status(counts: RunCounts) -> RunStatus:
    """completed without failures, failed without successes, partial otherwise."""
    if counts.failed == 0:
        return RunStatus.COMPLETED
    if counts.success == 0:
        return RunStatus.FAILED
    return RunStatus.PARTIAL


LOG_STATUS = {
    OutcomeKind.CREATED: LogStatus.SUCCESS,
    OutcomeKind.UPDATED: LogStatus.SUCCESS,
    OutcomeKind.SKIPPED: LogStatus.SKIPPED,
    OutcomeKind.FAILED: LogStatus.FAILED,
}


def run_counts(result: SyncRunResult) -> RunCounts:
    return RunCounts(
        total=result.total_processed,
        success=result.created + result.updated,
        failed=result.failed,
        skipped=result.skipped,
    )


class SyncRunService:
    """Run summaries and log items.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        mappings: Mapping store, for mapping counts in sync_health().
        stale_timeout_minutes: Heartbeat age after which a running row is stale.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        mappings: MappingStore,
        stale_timeout_minutes: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._mappings = mappings
        self._stale_timeout_minutes = stale_timeout_minutes

    # ── Run Lifecycle ───────────────────────────────────────────────────

    async def create_run(
        self,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.PHOREST_TO_GHL,
        job_id: str | None = None,
    ) -> RunHandle:
        batch_id = f"batch_{uuid.uuid4()}"
        handle: RunHandle | None = None
        async for session in self._session_factory():
            model = SyncRunModel(
                batch_id=batch_id,
                job_id=job_id,
                direction=direction.value,
                entity_type=entity_type.value,
                status=RunStatus.RUNNING.value,
            )
            session.add(model)
            await session.commit()
            handle = RunHandle(run_id=model.id, batch_id=batch_id, job_id=job_id)
        logger.info(
            "runs.created",
            run_id=handle.run_id,
            entity_type=entity_type.value,
            direction=direction.value,
            job_id=job_id,
        )
        return handle

    async def heartbeat(self, run_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(SyncRunModel).where(SyncRunModel.id == run_id).values(updated_at=utcnow())
            )
            await session.commit()

    async def update_progress(self, run_id: str, counts: RunCounts) -> None:
        """Heartbeat plus running counts."""
        async for session in self._session_factory():
            await session.execute(
                update(SyncRunModel)
                .where(SyncRunModel.id == run_id)
                .values(
                    total_records=counts.total,
                    success_count=counts.success,
                    failed_count=counts.failed,
                    skipped_count=counts.skipped,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def complete_run(
        self, run_id: str, counts: RunCounts, last_error: str | None = None
    ) -> RunStatus:
        status = final_status(counts)
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, run_id)
            if model is not None:
                now = utcnow()
                model.status = status.value
                model.total_records = counts.total
                model.success_count = counts.success
                model.failed_count = counts.failed
                model.skipped_count = counts.skipped
                model.last_error = last_error
                model.completed_at = now
                model.updated_at = now
                model.duration_ms = int((now - as_utc(model.started_at)).total_seconds() * 1000)
                await session.commit()
        logger.info("runs.completed", run_id=run_id, status=status.value, **counts.model_dump())
        return status

    async def fail_run(self, run_id: str, error: str) -> None:
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, run_id)
            if model is not None:
                now = utcnow()
                model.status = RunStatus.FAILED.value
                model.last_error = error[:2000]
                model.completed_at = now
                model.updated_at = now
                model.duration_ms = int((now - as_utc(model.started_at)).total_seconds() * 1000)
                await session.commit()
        logger.error("runs.failed", run_id=run_id, error=error)

    # ── Log Items ───────────────────────────────────────────────────────

    async def log_item(
        self,
        handle: RunHandle,
        entity_type: EntityType,
        entity_id: str | None,
        action: LogAction,
        status: LogStatus,
        *,
        direction: SyncDirection = SyncDirection.PHOREST_TO_GHL,
        error_code: str | None = None,
        error_message: str | None = None,
        retry_count: int = 0,
        source_data: dict[str, Any] | None = None,
        target_data: dict[str, Any] | None = None,
        response_data: dict[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> None:
        now = utcnow()
        started_at = started_at or now
        async for session in self._session_factory():
            session.add(
                SyncLogModel(
                    run_id=handle.run_id,
                    batch_id=handle.batch_id,
                    job_id=handle.job_id,
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    direction=direction.value,
                    action=action.value,
                    status=status.value,
                    error_code=error_code,
                    error_message=error_message,
                    retry_count=retry_count,
                    source_data=source_data,
                    target_data=target_data,
                    response_data=response_data,
                    started_at=started_at,
                    completed_at=now,
                    duration_ms=int((now - started_at).total_seconds() * 1000),
                )
            )
            await session.commit()

    # ── Janitor ─────────────────────────────────────────────────────────

    async def cleanup_stale_runs(self, timeout_minutes: int | None = None) -> int:
        """Mark running rows without a recent heartbeat as failed."""
        timeout = timeout_minutes or self._stale_timeout_minutes
        cutoff = utcnow() - timedelta(minutes=timeout)
        cleaned = 0
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncRunModel)
                .where(
                    SyncRunModel.status == RunStatus.RUNNING.value,
                    SyncRunModel.updated_at < cutoff,
                )
                .values(
                    status=RunStatus.FAILED.value,
                    last_error=f"Job timed out after {timeout} minutes (no heartbeat detected)",
                    completed_at=utcnow(),
                )
            )
            await session.commit()
            cleaned = result.rowcount or 0
        if cleaned:
            logger.warning("runs.stale_cleaned", count=cleaned, timeout_minutes=timeout)
        return cleaned

    async def active_run(
        self,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.PHOREST_TO_GHL,
    ) -> SyncRunRead | None:
        """Most recent running row for a type and direction (any process)."""
        run = None
        async for session in self._session_factory():
            stmt = (
                select(SyncRunModel)
                .where(
                    SyncRunModel.entity_type == entity_type.value,
                    SyncRunModel.status == RunStatus.RUNNING.value,
                    SyncRunModel.direction == direction.value,
                )
                .order_by(SyncRunModel.updated_at.desc())
                .limit(1)
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is not None:
                run = _model_to_run(model)
        return run

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_run(self, run_id: str) -> SyncRunRead | None:
        run = None
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, run_id)
            if model is not None:
                run = _model_to_run(model)
        return run

    async def recent_runs(
        self, limit: int = 10, entity_type: EntityType | None = None
    ) -> list[SyncRunRead]:
        runs: list[SyncRunRead] = []
        async for session in self._session_factory():
            stmt = select(SyncRunModel).order_by(SyncRunModel.created_at.desc()).limit(limit)
            if entity_type is not None:
                stmt = stmt.where(SyncRunModel.entity_type == entity_type.value)
            runs = [_model_to_run(m) for m in (await session.execute(stmt)).scalars().all()]
        return runs

    async def failed_runs(self, limit: int = 10) -> list[SyncRunRead]:
        runs: list[SyncRunRead] = []
        async for session in self._session_factory():
            stmt = (
                select(SyncRunModel)
                .where(SyncRunModel.status.in_([RunStatus.FAILED.value, RunStatus.PARTIAL.value]))
                .order_by(SyncRunModel.created_at.desc())
                .limit(limit)
            )
            runs = [_model_to_run(m) for m in (await session.execute(stmt)).scalars().all()]
        return runs

    async def run_logs(
        self, run_id: str, status: LogStatus | None = None, limit: int = 100
    ) -> list[SyncLogRead]:
        logs: list[SyncLogRead] = []
        async for session in self._session_factory():
            stmt = select(SyncLogModel).where(SyncLogModel.run_id == run_id)
            if status is not None:
                stmt = stmt.where(SyncLogModel.status == status.value)
            stmt = stmt.order_by(SyncLogModel.created_at.desc()).limit(limit)
            logs = [_model_to_log(m) for m in (await session.execute(stmt)).scalars().all()]
        return logs

    async def recent_failed_logs(self, limit: int = 50) -> list[SyncLogRead]:
        logs: list[SyncLogRead] = []
        async for session in self._session_factory():
            stmt = (
                select(SyncLogModel)
                .where(SyncLogModel.status == LogStatus.FAILED.value)
                .order_by(SyncLogModel.created_at.desc())
                .limit(limit)
            )
            logs = [_model_to_log(m) for m in (await session.execute(stmt)).scalars().all()]
        return logs

    async def sync_health(self) -> SyncHealth:
        """Overall health from the latest runs.

        failed when the latest run failed, degraded when any run failed in the
        last day or the latest run was partial, healthy otherwise.
        """
        await self.cleanup_stale_runs()
        one_day_ago = utcnow() - timedelta(days=1)
        recent: list[SyncRunRead] = []
        recent_failures = 0
        async for session in self._session_factory():
            stmt = select(SyncRunModel).order_by(SyncRunModel.created_at.desc()).limit(10)
            recent = [_model_to_run(m) for m in (await session.execute(stmt)).scalars().all()]
            count_stmt = select(func.count()).select_from(SyncRunModel).where(
                SyncRunModel.status == RunStatus.FAILED.value,
                SyncRunModel.created_at >= one_day_ago,
            )
            recent_failures = (await session.execute(count_stmt)).scalar_one()
        mappings = await self._mappings.count_by_type()

        if not recent:
            return SyncHealth(status="no_runs", mappings=mappings)

        last = recent[0]
        if last.status == RunStatus.FAILED:
            status = "failed"
        elif recent_failures > 0 or last.status == RunStatus.PARTIAL:
            status = "degraded"
        else:
            status = "healthy"
        return SyncHealth(
            status=status,
            last_run=last.completed_at or last.started_at,
            recent_failures=recent_failures,
            last_error=last.last_error,
            mappings=mappings,
            recent_runs=recent,
        )
