"""Sync engine persistence models.

Six SQLAlchemy models on the shared declarative Base:
- StagedEntityModel: Local snapshot of one Phorest record with its sync status
- EntityMappingModel: Phorest id <-> GHL id identity bridge
- SyncRunModel: One execution of one entity type's worker (heartbeat in updated_at)
- SyncLogModel: Append-only per-record outcome within a run
- ReportedFailureModel: Deduplicated failure ledger feeding the auto-retry sweep
- SyncAuditLogModel: Per-entity reconciliation audit results

Column types are kept dialect-neutral (String ids, generic JSON) so the same
metadata runs on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _uuid() -> str:
    return str(uuid.uuid4())


class StagedEntityModel(Base):
    """Local cache of one Phorest record for one entity type.

    ``source_version`` is bumped every time the import gate flips the row to
    PENDING; ``synced_version`` records the version last pushed to GHL.
    A row needs sync while synced_version < source_version.
    """

    __tablename__ = "staged_entities"
    __table_args__ = (
        UniqueConstraint("entity_type", "source_id", name="uq_staged_entity_type_source"),
        Index("ix_staged_entity_type_status", "entity_type", "sync_status"),
        Index("ix_staged_entity_type_event_date", "entity_type", "event_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    source_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    event_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    sync_status: Mapped[str] = mapped_column(String(20), default="PENDING")
    source_version: Mapped[int] = mapped_column(Integer, default=1)
    synced_version: Mapped[int] = mapped_column(Integer, default=0)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class EntityMappingModel(Base):
    """Identity bridge: exactly one GHL id per (entity_type, source_id).

    ``meta`` is an opaque string owned by whichever component wrote it.
    """

    __tablename__ = "entity_mappings"
    __table_args__ = (
        UniqueConstraint("entity_type", "source_id", name="uq_entity_mapping_type_source"),
        Index("ix_entity_mapping_type_dest", "entity_type", "dest_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    dest_id: Mapped[str] = mapped_column(String(100), nullable=False)
    meta: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class SyncRunModel(Base):
    """One execution of one entity type's sync worker."""

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("ix_sync_run_status_updated", "status", "updated_at"),
        Index("ix_sync_run_created", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_id: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    job_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="running")
    total_records: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SyncLogModel(Base):
    """Per-record outcome within a run (append-only)."""

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_log_run_status", "run_id", "status"),
        Index("ix_sync_log_entity", "entity_type", "entity_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_runs.id", ondelete="CASCADE"), nullable=False
    )
    batch_id: Mapped[str] = mapped_column(String(60), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    source_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    target_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReportedFailureModel(Base):
    """Failure ledger row, deduplicated per (entity_type, entity_id) while unresolved."""

    __tablename__ = "reported_failures"
    __table_args__ = (
        Index("ix_reported_failure_entity", "entity_type", "entity_id", "resolved"),
        Index("ix_reported_failure_resolved_ts", "resolved", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(30), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncAuditLogModel(Base):
    """One entity type's result within a reconciliation audit run."""

    __tablename__ = "sync_audit_logs"
    __table_args__ = (Index("ix_sync_audit_run", "audit_run_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    audit_run_id: Mapped[str] = mapped_column(String(60), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    local_count: Mapped[int] = mapped_column(Integer, default=0)
    dest_count: Mapped[int] = mapped_column(Integer, default=0)
    discrepancy: Mapped[int] = mapped_column(Integer, default=0)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
