"""REST control surface for the sync engine.

Triggers, pause/resume and queue status go through the SyncOrchestrator;
run history, failures and audits are read from their services. Triggers
return immediately with a JobHandle; the job runs in the background.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_auditor, get_ledger, get_orchestrator, get_runs, get_sweeper
from src.app.sync.audit import ReconciliationAuditor
from src.app.sync.ledger import AutoRetrySweeper, FailureLedger
from src.app.sync.orchestrator import (
    AUDIT_QUEUE,
    QueuePausedError,
    SyncOrchestrator,
    UnknownQueueError,
)
from src.app.sync.remote.adapter import RemoteAPIError
from src.app.sync.runs import SyncRunService
from src.app.sync.schemas import (
    AuditLogRead,
    EntityType,
    ErrorStats,
    FailureRead,
    JobHandle,
    LogStatus,
    QueueStatus,
    SyncHealth,
    SyncLogRead,
    SyncOptions,
    SyncOutcome,
    SyncRunRead,
)
from src.app.sync.worker import UnknownEntityTypeError

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class TriggerRequest(BaseModel):
    """Request body for a manual sync trigger."""

    full_sync: bool = False
    skip_import: bool = False
    max_records: int | None = Field(default=None, ge=1)


class QueueRequest(BaseModel):
    """Pause / resume target; every queue when omitted."""

    queue: str | None = None


class QueueChangeResponse(BaseModel):
    queues: list[str]
    paused: bool


class ResolveResponse(BaseModel):
    id: str
    resolved: bool


# ── Helpers ──────────────────────────────────────────────────────────────────


def _trigger(
    orchestrator: SyncOrchestrator,
    queue: str,
    options: SyncOptions | None = None,
    job_key: str | None = None,
) -> JobHandle:
    try:
        return orchestrator.trigger(queue, options, job_key=job_key)
    except UnknownQueueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown sync queue: {queue}",
        )
    except QueuePausedError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync queue is paused: {queue}",
        )


# ── Queue Control ────────────────────────────────────────────────────────────


@router.get("/status", response_model=QueueStatus)
async def queue_status(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> QueueStatus:
    """Per-queue waiting / active / completed / failed counters."""
    return orchestrator.status()


@router.get("/health", response_model=SyncHealth)
async def sync_health(runs: SyncRunService = Depends(get_runs)) -> SyncHealth:
    """Health derived from the latest runs plus mapping counts."""
    return await runs.sync_health()


@router.post("/pause", response_model=QueueChangeResponse)
async def pause_sync(
    body: QueueRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> QueueChangeResponse:
    queue = body.queue if body else None
    try:
        queues = orchestrator.pause(queue)
    except UnknownQueueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown sync queue: {queue}")
    return QueueChangeResponse(queues=queues, paused=True)


@router.post("/resume", response_model=QueueChangeResponse)
async def resume_sync(
    body: QueueRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> QueueChangeResponse:
    queue = body.queue if body else None
    try:
        queues = orchestrator.resume(queue)
    except UnknownQueueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown sync queue: {queue}")
    return QueueChangeResponse(queues=queues, paused=False)


# ── Runs ─────────────────────────────────────────────────────────────────────


@router.get("/runs", response_model=list[SyncRunRead])
async def list_runs(
    limit: int = Query(default=10, ge=1, le=100),
    entity_type: EntityType | None = None,
    runs: SyncRunService = Depends(get_runs),
) -> list[SyncRunRead]:
    return await runs.recent_runs(limit=limit, entity_type=entity_type)


@router.get("/runs/{run_id}/logs", response_model=list[SyncLogRead])
async def run_logs(
    run_id: str,
    log_status: LogStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    runs: SyncRunService = Depends(get_runs),
) -> list[SyncLogRead]:
    """Per-record log items of one run, newest first."""
    if await runs.get_run(run_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return await runs.run_logs(run_id, status=log_status, limit=limit)


# ── Audits ───────────────────────────────────────────────────────────────────


@router.get("/audits", response_model=list[AuditLogRead])
async def list_audits(
    limit: int = Query(default=10, ge=1, le=100),
    auditor: ReconciliationAuditor = Depends(get_auditor),
) -> list[AuditLogRead]:
    return await auditor.recent_audits(limit=limit)


@router.post("/audits", response_model=JobHandle, status_code=status.HTTP_202_ACCEPTED)
async def trigger_audit(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JobHandle:
    """Queue a full reconciliation audit."""
    return _trigger(orchestrator, AUDIT_QUEUE)


# ── Failures ─────────────────────────────────────────────────────────────────


@router.get("/failures", response_model=list[FailureRead])
async def list_failures(
    limit: int = Query(default=50, ge=1, le=500),
    include_resolved: bool = False,
    ledger: FailureLedger = Depends(get_ledger),
) -> list[FailureRead]:
    return await ledger.recent_failures(limit=limit, include_resolved=include_resolved)


@router.get("/failures/stats", response_model=ErrorStats)
async def failure_stats(ledger: FailureLedger = Depends(get_ledger)) -> ErrorStats:
    """Unresolved failures grouped by entity type and error code."""
    return await ledger.error_stats()


@router.post("/failures/{failure_id}/resolve", response_model=ResolveResponse)
async def resolve_failure(
    failure_id: str,
    ledger: FailureLedger = Depends(get_ledger),
) -> ResolveResponse:
    if not await ledger.mark_resolved(failure_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Failure not found")
    return ResolveResponse(id=failure_id, resolved=True)


@router.post("/failures/{entity_type}/{entity_id}/retry", response_model=SyncOutcome)
async def retry_failure(
    entity_type: EntityType,
    entity_id: str,
    sweeper: AutoRetrySweeper = Depends(get_sweeper),
) -> SyncOutcome:
    """Retry one entity now, ignoring age, attempt and error-code limits."""
    try:
        return await sweeper.manual_retry(entity_type, entity_id)
    except UnknownEntityTypeError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sync handler for {entity_type.value}",
        )
    except RemoteAPIError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)


# ── Triggers ─────────────────────────────────────────────────────────────────
# Declared last so the fixed paths above win over the queue parameter.


@router.post(
    "/{entity_type}/{source_id}/repair",
    response_model=JobHandle,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_repair(
    entity_type: EntityType,
    source_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JobHandle:
    """Sync one record now, deduplicated per record."""
    try:
        return orchestrator.trigger_repair(entity_type, source_id)
    except UnknownQueueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown sync queue: {entity_type.value}",
        )
    except QueuePausedError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync queue is paused: {entity_type.value}",
        )


@router.post("/{queue}", response_model=JobHandle, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    queue: str,
    body: TriggerRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JobHandle:
    """Trigger a run of one queue (entity type, ``client_inbound``, ``auto_retry``...)."""
    body = body or TriggerRequest()
    options = SyncOptions(
        full_sync=body.full_sync,
        skip_import=body.skip_import,
        max_records=body.max_records,
    )
    return _trigger(orchestrator, queue, options)
