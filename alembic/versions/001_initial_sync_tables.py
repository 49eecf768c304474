"""Initial sync schema: staging, mappings, run log, failure ledger, audit log.

Revision ID: 001_initial_sync_tables
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "staged_entities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("parent_id", sa.String(100), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("event_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("sync_status", sa.String(20), server_default="PENDING", nullable=False),
        sa.Column("source_version", sa.Integer(), server_default="1", nullable=False),
        sa.Column("synced_version", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("entity_type", "source_id", name="uq_staged_entity_type_source"),
    )
    op.create_index(
        "ix_staged_entity_type_status", "staged_entities", ["entity_type", "sync_status"]
    )
    op.create_index(
        "ix_staged_entity_type_event_date", "staged_entities", ["entity_type", "event_date"]
    )

    op.create_table(
        "entity_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=False),
        sa.Column("dest_id", sa.String(100), nullable=False),
        sa.Column("metadata", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("entity_type", "source_id", name="uq_entity_mapping_type_source"),
    )
    op.create_index("ix_entity_mapping_type_dest", "entity_mappings", ["entity_type", "dest_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("batch_id", sa.String(60), nullable=False, unique=True),
        sa.Column("job_id", sa.String(100), nullable=True),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), server_default="running", nullable=False),
        sa.Column("total_records", sa.Integer(), server_default="0", nullable=False),
        sa.Column("success_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failed_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("skipped_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sync_run_status_updated", "sync_runs", ["status", "updated_at"])
    op.create_index("ix_sync_run_created", "sync_runs", ["created_at"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "run_id",
            sa.String(36),
            sa.ForeignKey("sync_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("batch_id", sa.String(60), nullable=False),
        sa.Column("job_id", sa.String(100), nullable=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("action", sa.String(10), nullable=False),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("error_code", sa.String(30), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("source_data", sa.JSON(), nullable=True),
        sa.Column("target_data", sa.JSON(), nullable=True),
        sa.Column("response_data", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_log_run_status", "sync_logs", ["run_id", "status"])
    op.create_index("ix_sync_log_entity", "sync_logs", ["entity_type", "entity_id"])

    op.create_table(
        "reported_failures",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_code", sa.String(30), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="1", nullable=False),
        sa.Column("resolved", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_reported_failure_entity",
        "reported_failures",
        ["entity_type", "entity_id", "resolved"],
    )
    op.create_index(
        "ix_reported_failure_resolved_ts", "reported_failures", ["resolved", "timestamp"]
    )

    op.create_table(
        "sync_audit_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("audit_run_id", sa.String(60), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("local_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("dest_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("discrepancy", sa.Integer(), server_default="0", nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_audit_run", "sync_audit_logs", ["audit_run_id"])


def downgrade() -> None:
    op.drop_table("sync_audit_logs")
    op.drop_table("reported_failures")
    op.drop_table("sync_logs")
    op.drop_table("sync_runs")
    op.drop_table("entity_mappings")
    op.drop_table("staged_entities")
