"""Reconciliation auditor.

Compares what the mapping store believes is in GHL with what GHL actually
holds and records the drift:

- orphaned in destination: present in GHL, no local mapping
- missing in destination: mapped locally, absent from GHL

Only appointments can be listed in bulk through the GHL API at a sane
cost. Contact-backed types are skipped with a recorded reason. Check-ins
are verified by sampling recent check-in mappings and looking for the note
on the contact.

The auditor only reads the mapping store and GHL; it never repairs.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.sync.mapping import MappingStore
from src.app.sync.models import SyncAuditLogModel, as_utc
from src.app.sync.remote.adapter import DestinationClient, RemoteAPIError
from src.app.sync.schemas import (
    AuditLogRead,
    AuditRunResult,
    CheckinAuditResult,
    EntityAuditResult,
    EntityType,
)

logger = structlog.get_logger(__name__)

MAX_LISTED_IDS = 50
SAMPLE_CHECK_COUNT = 10
MAX_MISSING_NOTE_DETAILS = 20

SKIP_REASONS: dict[EntityType, str] = {
    EntityType.CLIENT: "Skipped - too slow to audit 15,000+ contacts",
    EntityType.STAFF: "Skipped - too slow to audit 15,000+ contacts",
    EntityType.BOOKING: "Entity type cannot be audited via GHL API",
    EntityType.LOYALTY: "Entity type cannot be audited via GHL API",
    EntityType.PRODUCT: "Entity type cannot be audited via GHL API",
}


def _event_id(event: dict) -> str | None:
    value = event.get("id") or event.get("_id")
    return str(value) if value else None


class ReconciliationAuditor:
    """Detects drift between the mapping store and GHL.

    Args:
        mappings: Identity mapping store.
        dest: GHL client.
        session_factory: Async session generator for audit log rows.
        lookback_days / lookahead_days: Calendar window audited.
        checkin_sample_size: Check-in mappings sampled per audit.
        note_delay: Pause between contact note fetches, in seconds.
    """

    def __init__(
        self,
        mappings: MappingStore,
        dest: DestinationClient,
        session_factory: Callable[[], AsyncGenerator[AsyncSession, None]],
        lookback_days: int = 60,
        lookahead_days: int = 30,
        checkin_sample_size: int = 100,
        note_delay: float = 0.15,
    ) -> None:
        self._mappings = mappings
        self._dest = dest
        self._session_factory = session_factory
        self._lookback_days = lookback_days
        self._lookahead_days = lookahead_days
        self._checkin_sample_size = checkin_sample_size
        self._note_delay = note_delay

    # ── Entity Audit ────────────────────────────────────────────────────

    async def audit_entity_type(
        self, entity_type: EntityType, audit_run_id: str | None = None
    ) -> EntityAuditResult:
        """Audit one entity type and persist the result.

        Args:
            entity_type: Type to audit.
            audit_run_id: Groups the persisted row with a full audit run.
        """
        audit_run_id = audit_run_id or f"audit_{uuid.uuid4()}"
        started = time.perf_counter()
        log = logger.bind(entity_type=entity_type.value, audit_run_id=audit_run_id)

        if entity_type in SKIP_REASONS:
            result = EntityAuditResult(
                entity_type=entity_type, status="skipped", error=SKIP_REASONS[entity_type]
            )
        elif entity_type == EntityType.APPOINTMENT:
            try:
                result = await self._audit_appointments()
            except RemoteAPIError as exc:
                log.error("audit.failed", error=exc.message, code=exc.code)
                result = EntityAuditResult(entity_type=entity_type, status="failed", error=exc.message)
        else:
            result = EntityAuditResult(
                entity_type=entity_type,
                status="skipped",
                error="Entity type cannot be audited via GHL API",
            )

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        await self._persist(audit_run_id, result)
        log.info(
            "audit.entity_done",
            status=result.status,
            local_count=result.local_count,
            dest_count=result.dest_count,
            discrepancy=result.discrepancy,
        )
        return result

    async def _audit_appointments(self) -> EntityAuditResult:
        now = datetime.now(timezone.utc)
        events = await self._dest.list_calendar_events(
            now - timedelta(days=self._lookback_days),
            now + timedelta(days=self._lookahead_days),
        )
        dest_ids = {eid for eid in (_event_id(e) for e in events) if eid}

        # Stream local ids; whatever dest id is never matched is orphaned
        unmatched = set(dest_ids)
        missing: list[str] = []
        local_count = 0
        async for batch in self._mappings.iter_dest_ids(EntityType.APPOINTMENT):
            for dest_id in batch:
                local_count += 1
                if dest_id in dest_ids:
                    unmatched.discard(dest_id)
                else:
                    missing.append(dest_id)

        sample_checks = await self._spot_check_appointments()
        orphaned = sorted(unmatched)
        return EntityAuditResult(
            entity_type=EntityType.APPOINTMENT,
            status="match" if not orphaned and not missing else "mismatch",
            local_count=local_count,
            dest_count=len(dest_ids),
            discrepancy=len(dest_ids) - local_count,
            orphaned_in_dest=orphaned[:MAX_LISTED_IDS],
            missing_in_dest=missing[:MAX_LISTED_IDS],
            sample_checks=sample_checks,
        )

    async def _spot_check_appointments(self) -> list[dict]:
        checks: list[dict] = []
        for mapping in await self._mappings.list_mappings(
            EntityType.APPOINTMENT, limit=SAMPLE_CHECK_COUNT
        ):
            check = {"sourceId": mapping.source_id, "destId": mapping.dest_id, "exists": True}
            try:
                await self._dest.get_appointment(mapping.dest_id)
            except RemoteAPIError as exc:
                check["exists"] = False
                if not exc.is_not_found:
                    check["error"] = exc.message
            checks.append(check)
        return checks

    # ── Check-in Notes ──────────────────────────────────────────────────

    async def audit_checkin_notes(self, sample_size: int | None = None) -> CheckinAuditResult:
        """Verify check-in notes exist on a sample of recent check-ins."""
        sample = await self._mappings.list_mappings(
            EntityType.CHECKIN, limit=sample_size or self._checkin_sample_size
        )
        result = CheckinAuditResult(sample_size=len(sample))

        for index, mapping in enumerate(sample):
            if index:
                await asyncio.sleep(self._note_delay)
            reason = None
            try:
                notes = await self._dest.get_contact_notes(mapping.dest_id)
            except RemoteAPIError as exc:
                notes = []
                reason = "Contact not found" if exc.is_not_found else exc.message
            found = any(
                mapping.source_id in (note.get("body") or "")
                or "Checked in" in (note.get("body") or "")
                for note in notes
            )
            if found:
                result.notes_found += 1
                continue
            result.notes_missing += 1
            if len(result.missing_details) < MAX_MISSING_NOTE_DETAILS:
                result.missing_details.append(
                    {
                        "appointmentId": mapping.source_id,
                        "contactId": mapping.dest_id,
                        "reason": reason or "No check-in note",
                    }
                )

        logger.info(
            "audit.checkin_notes_done",
            sample_size=result.sample_size,
            found=result.notes_found,
            missing=result.notes_missing,
        )
        return result

    # ── Full Run ────────────────────────────────────────────────────────

    async def run_full_audit(self) -> AuditRunResult:
        """Audit every entity type plus the check-in note sample."""
        audit_run_id = f"audit_{uuid.uuid4()}"
        started = time.perf_counter()
        run = AuditRunResult(audit_run_id=audit_run_id)

        for entity_type in EntityType:
            if entity_type == EntityType.CHECKIN:
                continue
            entity = await self.audit_entity_type(entity_type, audit_run_id)
            run.entities.append(entity)

        checkin_started = time.perf_counter()
        try:
            run.checkin_audit = await self.audit_checkin_notes()
            checkin = EntityAuditResult(
                entity_type=EntityType.CHECKIN,
                status="match" if run.checkin_audit.notes_missing == 0 else "mismatch",
                local_count=run.checkin_audit.sample_size,
                dest_count=run.checkin_audit.notes_found,
                discrepancy=run.checkin_audit.notes_found - run.checkin_audit.sample_size,
                sample_checks=run.checkin_audit.missing_details,
            )
        except RemoteAPIError as exc:
            checkin = EntityAuditResult(
                entity_type=EntityType.CHECKIN, status="failed", error=exc.message
            )
        checkin.duration_ms = int((time.perf_counter() - checkin_started) * 1000)
        await self._persist(audit_run_id, checkin)
        run.entities.append(checkin)

        for entity in run.entities:
            if entity.status == "match":
                run.match_count += 1
            elif entity.status == "mismatch":
                run.mismatch_count += 1
            elif entity.status == "failed":
                run.failed_count += 1
            else:
                run.skipped_count += 1
        run.total_duration_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "audit.run_completed",
            audit_run_id=audit_run_id,
            match=run.match_count,
            mismatch=run.mismatch_count,
            failed=run.failed_count,
            skipped=run.skipped_count,
            duration_ms=run.total_duration_ms,
        )
        return run

    # ── Persistence ─────────────────────────────────────────────────────

    async def _persist(self, audit_run_id: str, result: EntityAuditResult) -> None:
        details = {
            "orphanedInDest": result.orphaned_in_dest,
            "missingInDest": result.missing_in_dest,
            "sampleChecks": result.sample_checks,
        }
        if result.error:
            details["error"] = result.error
        async for session in self._session_factory():
            session.add(
                SyncAuditLogModel(
                    audit_run_id=audit_run_id,
                    entity_type=result.entity_type.value,
                    status=result.status,
                    local_count=result.local_count,
                    dest_count=result.dest_count,
                    discrepancy=result.discrepancy,
                    details=details,
                    duration_ms=result.duration_ms,
                )
            )
            await session.commit()

    async def recent_audits(self, limit: int = 10) -> list[AuditLogRead]:
        audits: list[AuditLogRead] = []
        async for session in self._session_factory():
            stmt = (
                select(SyncAuditLogModel)
                .order_by(SyncAuditLogModel.created_at.desc())
                .limit(limit)
            )
            models = (await session.execute(stmt)).scalars().all()
            audits = [
                AuditLogRead(
                    id=m.id,
                    audit_run_id=m.audit_run_id,
                    entity_type=m.entity_type,
                    status=m.status,
                    local_count=m.local_count,
                    dest_count=m.dest_count,
                    discrepancy=m.discrepancy,
                    details=m.details or {},
                    created_at=as_utc(m.created_at),
                )
                for m in models
            ]
        return audits
