"""Shared entity sync worker.

One algorithm for every entity type; the per-type parts live in the
EntityHandler registered for that type:

1. Open a run, optionally run the handler's import step (heartbeating
   after every Phorest page).
2. Select PENDING/FAILED staged rows inside the handler's window.
3. Process them with bounded concurrency, heartbeating every N records and
   stopping between records when the queue is paused.
4. Book each outcome: log item, staged status, failure ledger, metrics.
5. Close the run as completed / partial / failed.

A failure of the run itself (import aborted, database down) marks the run
failed and is re-raised; a failure of one record never is.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from functools import partial

import structlog

from src.app.core.monitoring import sync_records_total, track_sync_run
from src.app.sync.handlers import EntityHandler, RunContext, failure_from
from src.app.sync.importer import StagingImporter
from src.app.sync.ledger import FailureLedger
from src.app.sync.mapping import MappingStore
from src.app.sync.models import utcnow
from src.app.sync.remote.adapter import RemoteAPIError
from src.app.sync.repair import InlineRepair
from src.app.sync.repository import StagedRepository
from src.app.sync.runs import LOG_STATUS, SyncRunService, run_counts
from src.app.sync.schemas import (
    EntityType,
    LogAction,
    OutcomeKind,
    RunHandle,
    StagedRecord,
    SyncOptions,
    SyncOutcome,
    SyncRunResult,
)

logger = structlog.get_logger(__name__)

PauseCheck = Callable[[], bool]
ProgressCallback = Callable[[SyncRunResult], Awaitable[None]]


class ImportAbortedError(Exception):
    """The import step stopped on a page failure; the run is failed."""


class UnknownEntityTypeError(KeyError):
    """No handler is registered for the requested entity type."""


class SyncWorker:
    """Runs entity handlers against the staging table.

    Args:
        handlers: One handler per entity type.
        repository: Staged entity repository.
        mappings: Identity mapping store.
        runs: Run / log item service.
        ledger: Failure ledger.
        importer: Staging importer used by the handlers' import steps.
        concurrency: Records processed in parallel.
        progress_interval: Heartbeat and progress write every N records.
        max_records: Default cap on candidates per run (0 = unlimited).
        dry_run: No destination or mapping writes, staged rows untouched.
        max_repair_attempts / repair_cooldown_hours: Inline repair bounds.
    """

    def __init__(
        self,
        handlers: list[EntityHandler],
        repository: StagedRepository,
        mappings: MappingStore,
        runs: SyncRunService,
        ledger: FailureLedger,
        importer: StagingImporter,
        concurrency: int = 5,
        progress_interval: int = 10,
        max_records: int = 0,
        dry_run: bool = False,
        max_repair_attempts: int = 3,
        repair_cooldown_hours: int = 24,
    ) -> None:
        self._handlers = {h.entity_type: h for h in handlers}
        self._repo = repository
        self._mappings = mappings
        self._runs = runs
        self._ledger = ledger
        self._importer = importer
        self._concurrency = max(1, concurrency)
        self._progress_interval = max(1, progress_interval)
        self._max_records = max_records
        self._dry_run = dry_run

        stagers = {}
        if EntityType.CLIENT in self._handlers and self._handlers[EntityType.CLIENT].repairable:
            stagers[EntityType.CLIENT] = importer.import_single_client
        self.repair = InlineRepair(
            repository,
            mappings,
            self.sync_single,
            stagers,
            max_attempts=max_repair_attempts,
            cooldown_hours=repair_cooldown_hours,
        )

    @property
    def entity_types(self) -> list[EntityType]:
        return list(self._handlers)

    def handler_for(self, entity_type: EntityType) -> EntityHandler:
        try:
            return self._handlers[entity_type]
        except KeyError:
            raise UnknownEntityTypeError(entity_type.value) from None

    # ── Full Run ────────────────────────────────────────────────────────

    async def run(
        self,
        entity_type: EntityType,
        options: SyncOptions | None = None,
        *,
        is_paused: PauseCheck | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> SyncRunResult:
        """Run one entity type end to end.

        Args:
            entity_type: Type to sync.
            options: Import / candidate options for this run.
            is_paused: Checked between records; True stops the run early.
            on_progress: Awaited after every progress write.
        """
        handler = self.handler_for(entity_type)
        options = options or SyncOptions()
        handle = await self._runs.create_run(entity_type, job_id=options.job_id)
        result = SyncRunResult(entity_type=entity_type, run_id=handle.run_id)
        started = time.perf_counter()
        log = logger.bind(entity_type=entity_type.value, run_id=handle.run_id, job_id=options.job_id)

        async with track_sync_run(entity_type.value) as tracker:
            try:
                if not options.skip_import:
                    importer = self._importer.with_page_callback(
                        partial(self._runs.heartbeat, handle.run_id)
                    )
                    imported = await handler.import_step(importer, options)
                    if imported is not None:
                        log.info(
                            "worker.import_done",
                            total=imported.total,
                            created=imported.created,
                            updated=imported.updated,
                            aborted=imported.aborted,
                        )
                        if imported.aborted:
                            raise ImportAbortedError(
                                "; ".join(imported.errors) or f"{entity_type.value} import aborted"
                            )
                    await self._runs.heartbeat(handle.run_id)

                await handler.ensure_prepared(refresh=True)
                records = await self._candidates(handler, options)
                log.info("worker.candidates", count=len(records), dry_run=self._dry_run)

                ctx = RunContext(handle=handle, repair=self.repair.repair)
                await self._process_all(handler, records, ctx, result, is_paused, on_progress)
                result.clients_repaired = ctx.clients_repaired
                result.duration_ms = int((time.perf_counter() - started) * 1000)

                last_error = result.errors[-1]["error"] if result.errors else None
                status = await self._runs.complete_run(
                    handle.run_id, run_counts(result), last_error=last_error
                )
                tracker["status"] = status.value
            except Exception as exc:
                log.error("worker.run_failed", error=str(exc), exc_info=True)
                await self._runs.fail_run(handle.run_id, str(exc) or type(exc).__name__)
                raise

        log.info(
            "worker.run_completed",
            total=result.total_processed,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            failed=result.failed,
            clients_repaired=result.clients_repaired,
            duration_ms=result.duration_ms,
        )
        return result

    async def _candidates(
        self, handler: EntityHandler, options: SyncOptions
    ) -> list[StagedRecord]:
        after, before = None, None
        if not options.full_sync and not options.source_id:
            after, before = handler.candidate_window(datetime.now(timezone.utc))
        limit = options.max_records or self._max_records or None
        return await self._repo.list_needing_sync(
            handler.entity_type,
            source_id=options.source_id,
            limit=limit,
            event_after=after,
            event_before=before,
        )

    async def _process_all(
        self,
        handler: EntityHandler,
        records: list[StagedRecord],
        ctx: RunContext,
        result: SyncRunResult,
        is_paused: PauseCheck | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        semaphore = asyncio.Semaphore(self._concurrency)
        paused = False

        async def _one(record: StagedRecord) -> None:
            nonlocal paused
            async with semaphore:
                if paused or (is_paused is not None and is_paused()):
                    if not paused:
                        logger.info(
                            "worker.paused",
                            entity_type=handler.entity_type.value,
                            processed=result.total_processed,
                        )
                    paused = True
                    return
                outcome = await self._process_one(handler, record, ctx)
                result.record(outcome)
                if outcome.kind == OutcomeKind.FAILED and len(result.errors) < 10:
                    result.errors.append(
                        {"source_id": record.source_id, "error": outcome.reason or ""}
                    )
                if result.total_processed % self._progress_interval == 0:
                    await self._runs.update_progress(ctx.handle.run_id, run_counts(result))
                    if on_progress is not None:
                        await on_progress(result)

        await asyncio.gather(*(_one(r) for r in records))

    # ── Single Record ───────────────────────────────────────────────────

    async def sync_single(
        self, entity_type: EntityType, source_id: str, handle: RunHandle | None = None
    ) -> SyncOutcome:
        """Process one staged record outside a batch (repair, retry).

        The record is processed whatever its sync status.
        """
        handler = self.handler_for(entity_type)
        record = await self._repo.get(entity_type, source_id)
        if record is None:
            return SyncOutcome.skipped(f"{entity_type.value} {source_id} is not staged", deferred=True)
        await handler.ensure_prepared()
        ctx = RunContext(handle=handle, repair=self.repair.repair)
        return await self._process_one(handler, record, ctx)

    async def _process_one(
        self, handler: EntityHandler, record: StagedRecord, ctx: RunContext
    ) -> SyncOutcome:
        started_at = utcnow()
        try:
            outcome = await handler.process(record, ctx)
        except RemoteAPIError as exc:
            outcome = failure_from(exc, LogAction.UPDATE)
        except Exception as exc:
            logger.exception(
                "worker.record_error",
                entity_type=handler.entity_type.value,
                source_id=record.source_id,
            )
            outcome = SyncOutcome.failed(str(exc) or type(exc).__name__)
        await self._book(handler.entity_type, record, outcome, ctx.handle, started_at)
        return outcome

    async def _book(
        self,
        entity_type: EntityType,
        record: StagedRecord,
        outcome: SyncOutcome,
        handle: RunHandle | None,
        started_at: datetime,
    ) -> None:
        sync_records_total.labels(entity_type=entity_type.value, outcome=outcome.kind.value).inc()

        if handle is not None:
            await self._runs.log_item(
                handle,
                entity_type,
                record.source_id,
                outcome.action or LogAction.UPDATE,
                LOG_STATUS[outcome.kind],
                error_code=outcome.error_code,
                error_message=outcome.reason if outcome.kind != OutcomeKind.CREATED else None,
                source_data=record.payload,
                target_data=outcome.target_data,
                response_data=outcome.response_data,
                started_at=started_at,
            )

        if outcome.kind == OutcomeKind.FAILED:
            logger.warning(
                "worker.record_failed",
                entity_type=entity_type.value,
                source_id=record.source_id,
                error=outcome.reason,
                error_code=outcome.error_code,
                error_class=outcome.error_class.value if outcome.error_class else None,
                dry_run=self._dry_run,
            )

        if self._dry_run:
            return
        if outcome.kind == OutcomeKind.FAILED:
            error = outcome.reason or "Unknown error"
            await self._repo.mark_failed(entity_type, record.source_id, error)
            await self._ledger.report(entity_type, record.source_id, error, outcome.error_code)
        elif outcome.settles:
            await self._repo.mark_synced(entity_type, record.source_id, record.source_version)
            await self._ledger.resolve_for_entity(entity_type, record.source_id)
