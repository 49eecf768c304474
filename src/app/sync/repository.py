"""Staged entity repository -- local snapshots of Phorest records awaiting sync.

StagedRepository owns the staged_entities table. The importer writes rows
through the change-detection gate; workers read rows needing sync and stamp
the outcome.

Versioning: ``source_version`` is bumped each time the gate flips a row to
PENDING and ``synced_version`` records the version last written to GHL.
mark_synced only marks a row SYNCED when the version the worker read is
still current, so an import landing mid-sync keeps the row PENDING.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.sync.models import StagedEntityModel, as_utc, utcnow
from src.app.sync.schemas import EntityType, StagedRecord, SyncStatus

logger = structlog.get_logger(__name__)

REPAIR_ATTEMPT_PREFIX = "REPAIR_ATTEMPT:"


def source_changed(
    stored: datetime | None, incoming: datetime | None, *, advanced_only: bool = True
) -> bool:
    """Change-detection gate for an existing row.

    A missing timestamp on either side counts as changed. With
    ``advanced_only`` the incoming timestamp must be strictly newer,
    otherwise any difference counts.
    """
    stored, incoming = as_utc(stored), as_utc(incoming)
    if stored is None or incoming is None:
        return True
    if advanced_only:
        return incoming > stored
    return incoming != stored


def split_repair_marker(error: str | None) -> tuple[str | None, str | None]:
    """(marker, message) for a staged row's error field.

    The field reads ``REPAIR_ATTEMPT:<count>:<epoch_ms>[:<message>]`` once a
    repair was attempted, or just the message otherwise.
    """
    if not error:
        return None, None
    if not error.startswith(REPAIR_ATTEMPT_PREFIX):
        return None, error
    parts = error.split(":", 3)
    marker = ":".join(parts[:3])
    message = parts[3] if len(parts) > 3 else None
    return marker, message or None


def _model_to_record(model: StagedEntityModel) -> StagedRecord:
    return StagedRecord(
        entity_type=EntityType(model.entity_type),
        source_id=model.source_id,
        payload=model.payload or {},
        source_updated_at=as_utc(model.source_updated_at),
        sync_status=SyncStatus(model.sync_status),
        source_version=model.source_version or 1,
        synced_version=model.synced_version or 0,
        last_synced_at=as_utc(model.last_synced_at),
        last_sync_error=model.last_sync_error,
        deleted=bool(model.deleted),
        event_date=as_utc(model.event_date),
    )


class StagedRepository:
    """Async access to staged_entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _key(entity_type: EntityType, source_id: str) -> tuple[Any, ...]:
        return (
            StagedEntityModel.entity_type == entity_type.value,
            StagedEntityModel.source_id == source_id,
        )

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, entity_type: EntityType, source_id: str) -> StagedRecord | None:
        record = None
        async for session in self._session_factory():
            stmt = select(StagedEntityModel).where(*self._key(entity_type, source_id))
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is not None:
                record = _model_to_record(model)
        return record

    async def get_many(
        self, entity_type: EntityType, source_ids: list[str]
    ) -> dict[str, StagedRecord]:
        """Existing rows for a page of ids, in one query."""
        if not source_ids:
            return {}
        records: dict[str, StagedRecord] = {}
        async for session in self._session_factory():
            stmt = select(StagedEntityModel).where(
                StagedEntityModel.entity_type == entity_type.value,
                StagedEntityModel.source_id.in_(source_ids),
            )
            models = (await session.execute(stmt)).scalars().all()
            records = {m.source_id: _model_to_record(m) for m in models}
        return records

    async def list_needing_sync(
        self,
        entity_type: EntityType,
        *,
        source_id: str | None = None,
        limit: int | None = None,
        event_after: datetime | None = None,
        event_before: datetime | None = None,
    ) -> list[StagedRecord]:
        """PENDING and FAILED rows, oldest change first."""
        records: list[StagedRecord] = []
        async for session in self._session_factory():
            stmt = select(StagedEntityModel).where(
                StagedEntityModel.entity_type == entity_type.value,
                StagedEntityModel.sync_status.in_(
                    [SyncStatus.PENDING.value, SyncStatus.FAILED.value]
                ),
            )
            if source_id is not None:
                stmt = stmt.where(StagedEntityModel.source_id == source_id)
            if event_after is not None:
                stmt = stmt.where(StagedEntityModel.event_date >= event_after)
            if event_before is not None:
                stmt = stmt.where(StagedEntityModel.event_date <= event_before)
            stmt = stmt.order_by(StagedEntityModel.updated_at, StagedEntityModel.id)
            if limit:
                stmt = stmt.limit(limit)
            models = (await session.execute(stmt)).scalars().all()
            records = [_model_to_record(m) for m in models]
        return records

    async def count_by_status(self, entity_type: EntityType) -> dict[str, int]:
        counts: dict[str, int] = {}
        async for session in self._session_factory():
            stmt = (
                select(StagedEntityModel.sync_status, func.count())
                .where(StagedEntityModel.entity_type == entity_type.value)
                .group_by(StagedEntityModel.sync_status)
            )
            counts = {row[0]: row[1] for row in await session.execute(stmt)}
        return counts

    # ── Import Writes ───────────────────────────────────────────────────

    async def upsert_from_source(
        self,
        entity_type: EntityType,
        source_id: str,
        payload: dict[str, Any],
        source_updated_at: datetime | None,
        *,
        existing: StagedRecord | None = None,
        prefetched: bool = False,
        force_pending: bool = False,
        advanced_only: bool = True,
        parent_id: str | None = None,
        event_date: datetime | None = None,
        deleted: bool = False,
    ) -> tuple[bool, bool]:
        """Insert or refresh one staged row through the change-detection gate.

        Args:
            existing: Row from a prior get_many; looked up here unless prefetched.
            prefetched: True when ``existing`` came from get_many (None = new row).
            force_pending: Flag PENDING regardless of timestamps.
            advanced_only: Gate mode, see source_changed.

        Returns:
            (is_new, changed). Unchanged rows get a fresh snapshot but keep
            their sync status and version.
        """
        if existing is None and not prefetched:
            existing = await self.get(entity_type, source_id)

        if existing is None:
            try:
                await self._insert(
                    entity_type, source_id, payload, source_updated_at,
                    parent_id=parent_id, event_date=event_date, deleted=deleted,
                )
                return True, True
            except IntegrityError:
                # Inserted concurrently; fall through to the update path
                existing = await self.get(entity_type, source_id)
                if existing is None:
                    raise

        changed = force_pending or source_changed(
            existing.source_updated_at, source_updated_at, advanced_only=advanced_only
        )
        await self._refresh(
            entity_type, source_id, payload, source_updated_at,
            flag_pending=changed, parent_id=parent_id, event_date=event_date, deleted=deleted,
        )
        return False, changed

    async def upsert_derived(
        self,
        entity_type: EntityType,
        source_id: str,
        payload: dict[str, Any],
        source_updated_at: datetime | None,
        *,
        parent_id: str | None = None,
        event_date: datetime | None = None,
    ) -> tuple[bool, bool]:
        """Upsert a row implied by another record (bookings, check-ins, loyalty).

        Derived rows are flagged PENDING only when new or when their payload
        differs from the stored one; the parent row is never touched.
        """
        existing = await self.get(entity_type, source_id)
        if existing is None:
            return await self.upsert_from_source(
                entity_type, source_id, payload, source_updated_at,
                prefetched=True, parent_id=parent_id, event_date=event_date,
            )
        changed = existing.payload != payload
        await self._refresh(
            entity_type, source_id, payload, source_updated_at,
            flag_pending=changed, parent_id=parent_id, event_date=event_date,
        )
        return False, changed

    async def patch_payload(
        self,
        entity_type: EntityType,
        source_id: str,
        patch: dict[str, Any],
        *,
        flag_pending: bool = True,
    ) -> bool:
        """Merge keys into a row's payload. Returns True when anything changed."""
        changed = False
        async for session in self._session_factory():
            stmt = select(StagedEntityModel).where(*self._key(entity_type, source_id))
            model = (await session.execute(stmt)).scalar_one_or_none()
            current = dict(model.payload or {}) if model is not None else {}
            if model is not None and any(current.get(k) != v for k, v in patch.items()):
                current.update(patch)
                model.payload = current
                if flag_pending:
                    model.sync_status = SyncStatus.PENDING.value
                    model.source_version = (model.source_version or 1) + 1
                await session.commit()
                changed = True
        return changed

    async def _insert(
        self,
        entity_type: EntityType,
        source_id: str,
        payload: dict[str, Any],
        source_updated_at: datetime | None,
        *,
        parent_id: str | None,
        event_date: datetime | None,
        deleted: bool,
    ) -> None:
        async for session in self._session_factory():
            session.add(
                StagedEntityModel(
                    entity_type=entity_type.value,
                    source_id=source_id,
                    parent_id=parent_id,
                    payload=payload,
                    source_updated_at=source_updated_at,
                    event_date=event_date,
                    deleted=deleted,
                    sync_status=SyncStatus.PENDING.value,
                    source_version=1,
                    synced_version=0,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise

    async def _refresh(
        self,
        entity_type: EntityType,
        source_id: str,
        payload: dict[str, Any],
        source_updated_at: datetime | None,
        *,
        flag_pending: bool,
        parent_id: str | None = None,
        event_date: datetime | None = None,
        deleted: bool = False,
    ) -> None:
        values: dict[str, Any] = {
            "payload": payload,
            "source_updated_at": source_updated_at,
            "deleted": deleted,
            "updated_at": utcnow(),
        }
        if parent_id is not None:
            values["parent_id"] = parent_id
        if event_date is not None:
            values["event_date"] = event_date
        if flag_pending:
            values["sync_status"] = SyncStatus.PENDING.value
            values["source_version"] = StagedEntityModel.source_version + 1
        async for session in self._session_factory():
            await session.execute(
                update(StagedEntityModel)
                .where(*self._key(entity_type, source_id))
                .values(**values)
            )
            await session.commit()

    # ── Worker Writes ───────────────────────────────────────────────────

    async def mark_synced(
        self, entity_type: EntityType, source_id: str, version: int
    ) -> bool:
        """Mark SYNCED if ``version`` is still the current source version.

        Returns False when an import bumped the row while it was in flight;
        the row then stays PENDING with synced_version recording what was
        actually written.
        """
        now = utcnow()
        marked = False
        async for session in self._session_factory():
            result = await session.execute(
                update(StagedEntityModel)
                .where(
                    *self._key(entity_type, source_id),
                    StagedEntityModel.source_version == version,
                )
                .values(
                    sync_status=SyncStatus.SYNCED.value,
                    synced_version=version,
                    last_synced_at=now,
                    last_sync_error=None,
                    updated_at=now,
                )
            )
            marked = bool(result.rowcount)
            if not marked:
                await session.execute(
                    update(StagedEntityModel)
                    .where(*self._key(entity_type, source_id))
                    .values(synced_version=version, last_synced_at=now, last_sync_error=None)
                )
            await session.commit()
        if not marked:
            logger.info(
                "staging.superseded_during_sync",
                entity_type=entity_type.value,
                source_id=source_id,
                version=version,
            )
        return marked

    async def _current_error(
        self, session: AsyncSession, entity_type: EntityType, source_id: str
    ) -> str | None:
        stmt = select(StagedEntityModel.last_sync_error).where(*self._key(entity_type, source_id))
        return (await session.execute(stmt)).scalar_one_or_none()

    async def mark_failed(self, entity_type: EntityType, source_id: str, error: str) -> None:
        """Mark FAILED with ``error``; a repair attempt marker is kept in front of it."""
        async for session in self._session_factory():
            marker, _ = split_repair_marker(
                await self._current_error(session, entity_type, source_id)
            )
            message = f"{marker}:{error}" if marker else error
            await session.execute(
                update(StagedEntityModel)
                .where(*self._key(entity_type, source_id))
                .values(
                    sync_status=SyncStatus.FAILED.value,
                    last_sync_error=message[:500],
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def set_repair_attempt(
        self, entity_type: EntityType, source_id: str, count: int, attempted_at_ms: int
    ) -> None:
        """Record a repair attempt as ``REPAIR_ATTEMPT:<count>:<epoch_ms>``.

        The error message after an existing marker is kept.
        """
        async for session in self._session_factory():
            _, message = split_repair_marker(
                await self._current_error(session, entity_type, source_id)
            )
            marker = f"{REPAIR_ATTEMPT_PREFIX}{count}:{attempted_at_ms}"
            value = f"{marker}:{message}" if message else marker
            await session.execute(
                update(StagedEntityModel)
                .where(*self._key(entity_type, source_id))
                .values(last_sync_error=value[:500])
            )
            await session.commit()

    async def clear_error(self, entity_type: EntityType, source_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(StagedEntityModel)
                .where(*self._key(entity_type, source_id))
                .values(last_sync_error=None)
            )
            await session.commit()
