"""Pydantic schemas and enums for the Phorest -> GHL sync engine.

Defines all structured types shared by the sync components:
- Enums: EntityType, SyncStatus, SyncDirection, RunStatus, LogAction, LogStatus,
  ErrorClass, OutcomeKind
- SyncOutcome: tagged per-record result (created / updated / skipped / failed)
- Staging and mapping reads: StagedRecord, MappingRead
- Run log: RunHandle, RunCounts, SyncRunRead, SyncLogRead, SyncHealth
- Worker: SyncOptions, SyncRunResult, ImportResult, RepairResult
- Ledger: FailureRead, ErrorStats, RetryStats
- Audit: EntityAuditResult, CheckinAuditResult, AuditRunResult
- Orchestration: JobHandle, QueueStats, QueueStatus
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Entity types synchronised from Phorest to GHL."""

    CLIENT = "client"
    STAFF = "staff"
    APPOINTMENT = "appointment"
    BOOKING = "booking"
    PRODUCT = "product"
    LOYALTY = "loyalty"
    CHECKIN = "checkin"


class SyncStatus(str, Enum):
    """Staged row state relative to the destination."""

    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncDirection(str, Enum):
    PHOREST_TO_GHL = "phorest_to_ghl"
    GHL_TO_PHOREST = "ghl_to_phorest"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class LogAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    DELETE = "delete"


class LogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorClass(str, Enum):
    """Failure classification driving retry eligibility."""

    VALIDATION = "validation"
    AUTH = "auth"
    STALE = "stale"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class OutcomeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


# ── Per-record Outcome ──────────────────────────────────────────────────────


class SyncOutcome(BaseModel):
    """Tagged result of processing one record.

    Handlers return one of these instead of raising for expected conditions.
    ``kind`` is the tag; ``reason``/``error_code``/``error_class`` are only
    meaningful for skipped and failed outcomes. ``dest_id`` carries the
    destination identity written for created/updated outcomes, and on a
    skip it marks a record that is already mapped (unchanged, already
    tagged). Only those skips settle the staged row; any other skip leaves
    it PENDING. ``deferred`` flags a skip waiting on a dependency.
    """

    kind: OutcomeKind
    reason: str | None = None
    error_code: str | None = None
    error_class: ErrorClass | None = None
    dest_id: str | None = None
    action: LogAction | None = None
    deferred: bool = False
    target_data: dict[str, Any] | None = None
    response_data: dict[str, Any] | None = None

    @classmethod
    def created(cls, dest_id: str, **kwargs: Any) -> SyncOutcome:
        kwargs.setdefault("action", LogAction.CREATE)
        return cls(kind=OutcomeKind.CREATED, dest_id=dest_id, **kwargs)

    @classmethod
    def updated(cls, dest_id: str, **kwargs: Any) -> SyncOutcome:
        kwargs.setdefault("action", LogAction.UPDATE)
        return cls(kind=OutcomeKind.UPDATED, dest_id=dest_id, **kwargs)

    @classmethod
    def skipped(cls, reason: str, **kwargs: Any) -> SyncOutcome:
        kwargs.setdefault("action", LogAction.SKIP)
        return cls(kind=OutcomeKind.SKIPPED, reason=reason, **kwargs)

    @classmethod
    def failed(
        cls,
        reason: str,
        error_code: str = "UNKNOWN",
        error_class: ErrorClass = ErrorClass.UNKNOWN,
        **kwargs: Any,
    ) -> SyncOutcome:
        kwargs.setdefault("action", LogAction.UPDATE)
        return cls(
            kind=OutcomeKind.FAILED,
            reason=reason,
            error_code=error_code,
            error_class=error_class,
            **kwargs,
        )

    @property
    def is_success(self) -> bool:
        return self.kind in (OutcomeKind.CREATED, OutcomeKind.UPDATED)

    @property
    def settles(self) -> bool:
        """True when the staged row can be marked SYNCED.

        A row is only SYNCED while a mapping backs it, so a skip settles
        only when it carries the mapped ``dest_id``.
        """
        if self.is_success:
            return True
        return self.kind == OutcomeKind.SKIPPED and not self.deferred and bool(self.dest_id)


# ── Staging & Mapping ───────────────────────────────────────────────────────


class StagedRecord(BaseModel):
    """Local snapshot of one Phorest record."""

    entity_type: EntityType
    source_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    source_updated_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    source_version: int = 1
    synced_version: int = 0
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    deleted: bool = False
    event_date: datetime | None = None

    @property
    def needs_sync(self) -> bool:
        """True when the staged snapshot is newer than what was last pushed."""
        return self.synced_version < self.source_version


class MappingRead(BaseModel):
    """Identity bridge between a Phorest record and its GHL counterpart."""

    id: str
    entity_type: EntityType
    source_id: str
    dest_id: str
    metadata: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Run Log ─────────────────────────────────────────────────────────────────


class RunHandle(BaseModel):
    run_id: str
    batch_id: str
    job_id: str | None = None


class RunCounts(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0


class SyncRunRead(BaseModel):
    id: str
    batch_id: str
    job_id: str | None = None
    entity_type: str
    direction: SyncDirection
    status: RunStatus
    total_records: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    last_error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    duration_ms: int | None = None


class SyncLogRead(BaseModel):
    id: str
    run_id: str
    entity_type: str
    entity_id: str | None = None
    direction: SyncDirection
    action: LogAction
    status: LogStatus
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None
    created_at: datetime | None = None


class SyncHealth(BaseModel):
    """Quick health summary derived from recent runs."""

    status: str  # healthy | degraded | failed | no_runs
    last_run: datetime | None = None
    recent_failures: int = 0
    last_error: str | None = None
    mappings: dict[str, int] = Field(default_factory=dict)
    recent_runs: list[SyncRunRead] = Field(default_factory=list)


# ── Worker / Importer / Repair ──────────────────────────────────────────────


class SyncOptions(BaseModel):
    """Options accepted by every sync run."""

    job_id: str | None = None
    skip_import: bool = False
    full_sync: bool = False
    source_id: str | None = None
    max_records: int | None = None


class SyncRunResult(BaseModel):
    entity_type: EntityType
    run_id: str | None = None
    total_processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    clients_repaired: int = 0
    errors: list[dict[str, str]] = Field(default_factory=list)
    duration_ms: int | None = None

    def record(self, outcome: SyncOutcome) -> None:
        """Count one processed outcome."""
        self.total_processed += 1
        if outcome.kind == OutcomeKind.CREATED:
            self.created += 1
        elif outcome.kind == OutcomeKind.UPDATED:
            self.updated += 1
        elif outcome.kind == OutcomeKind.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class ImportResult(BaseModel):
    entity_type: EntityType
    total: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    aborted: bool = False
    errors: list[str] = Field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < 10:
            self.errors.append(message)


class RepairResult(BaseModel):
    """Outcome of an inline dependency repair."""

    success: bool
    dest_id: str | None = None
    reason: str | None = None
    attempted: bool = False


# ── Failure Ledger ──────────────────────────────────────────────────────────


class FailureRead(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    error_message: str
    error_code: str | None = None
    attempts: int = 1
    resolved: bool = False
    timestamp: datetime
    resolved_at: datetime | None = None


class ErrorStats(BaseModel):
    total_unresolved: int = 0
    by_entity_type: dict[str, int] = Field(default_factory=dict)
    by_error_code: dict[str, int] = Field(default_factory=dict)


class RetryStats(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


# ── Reconciliation Audit ────────────────────────────────────────────────────


class EntityAuditResult(BaseModel):
    entity_type: EntityType
    status: str  # match | mismatch | failed | skipped
    local_count: int = 0
    dest_count: int = 0
    discrepancy: int = 0
    orphaned_in_dest: list[str] = Field(default_factory=list)
    missing_in_dest: list[str] = Field(default_factory=list)
    sample_checks: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0


class CheckinAuditResult(BaseModel):
    sample_size: int = 0
    notes_found: int = 0
    notes_missing: int = 0
    missing_details: list[dict[str, str]] = Field(default_factory=list)


class AuditRunResult(BaseModel):
    audit_run_id: str
    entities: list[EntityAuditResult] = Field(default_factory=list)
    checkin_audit: CheckinAuditResult | None = None
    match_count: int = 0
    mismatch_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    total_duration_ms: int = 0


class AuditLogRead(BaseModel):
    id: str
    audit_run_id: str
    entity_type: str
    status: str
    local_count: int = 0
    dest_count: int = 0
    discrepancy: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ── Orchestration ───────────────────────────────────────────────────────────


class JobHandle(BaseModel):
    """Returned by trigger calls; status is queued | running | deduplicated."""

    job_id: str
    queue: str
    status: str


class QueueStats(BaseModel):
    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


class QueueStatus(BaseModel):
    queues: dict[str, QueueStats] = Field(default_factory=dict)
    totals: dict[str, int] = Field(default_factory=dict)
    scheduler_running: bool = False
