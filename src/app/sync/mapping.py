"""Identity Mapping Store -- persistent (entity_type, source_id) <-> dest_id index.

Every other sync component resolves identities through MappingStore. Two
rules hold for every non-checkin entity type:

- one row per (entity_type, source_id), enforced by uq_entity_mapping_type_source
- one source_id per (entity_type, dest_id): when an upsert would give a
  dest_id a second owner, the older row is deleted first and the event is
  logged as ``mapping.reassigned`` (GHL merged records behind our back)

Check-ins point at the client's contact, so many check-ins share one
dest_id; create_checkin_mapping skips the reassignment rule.

``metadata`` is an opaque string owned by the writer; the store never
parses it.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.monitoring import sync_mapping_reassignments_total
from src.app.sync.models import EntityMappingModel, as_utc, utcnow
from src.app.sync.schemas import EntityType, MappingRead

logger = structlog.get_logger(__name__)


def _model_to_mapping(model: EntityMappingModel) -> MappingRead:
    return MappingRead(
        id=model.id,
        entity_type=EntityType(model.entity_type),
        source_id=model.source_id,
        dest_id=model.dest_id,
        metadata=model.meta,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


class MappingStore:
    """Async access to entity_mappings.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Lookups ─────────────────────────────────────────────────────────

    async def find_by_source_id(
        self, entity_type: EntityType, source_id: str
    ) -> MappingRead | None:
        mapping = None
        async for session in self._session_factory():
            stmt = select(EntityMappingModel).where(
                EntityMappingModel.entity_type == entity_type.value,
                EntityMappingModel.source_id == source_id,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is not None:
                mapping = _model_to_mapping(model)
        return mapping

    async def get_dest_id(self, entity_type: EntityType, source_id: str) -> str | None:
        """Destination id for a source record, None when unmapped."""
        mapping = await self.find_by_source_id(entity_type, source_id)
        return mapping.dest_id if mapping else None

    async def get_source_id(self, entity_type: EntityType, dest_id: str) -> str | None:
        """Reverse lookup; the most recently updated row wins for shared dest ids."""
        source_id = None
        async for session in self._session_factory():
            stmt = (
                select(EntityMappingModel.source_id)
                .where(
                    EntityMappingModel.entity_type == entity_type.value,
                    EntityMappingModel.dest_id == dest_id,
                )
                .order_by(EntityMappingModel.updated_at.desc())
                .limit(1)
            )
            source_id = (await session.execute(stmt)).scalar_one_or_none()
        return source_id

    async def get_by_source_or_dest(
        self,
        entity_type: EntityType,
        source_id: str | None = None,
        dest_id: str | None = None,
    ) -> MappingRead | None:
        """Match on either side; used when only one identity is known."""
        if source_id is None and dest_id is None:
            return None
        mapping = None
        async for session in self._session_factory():
            stmt = select(EntityMappingModel).where(
                EntityMappingModel.entity_type == entity_type.value
            )
            if source_id is not None and dest_id is not None:
                stmt = stmt.where(
                    (EntityMappingModel.source_id == source_id)
                    | (EntityMappingModel.dest_id == dest_id)
                )
            elif source_id is not None:
                stmt = stmt.where(EntityMappingModel.source_id == source_id)
            else:
                stmt = stmt.where(EntityMappingModel.dest_id == dest_id)
            stmt = stmt.order_by(EntityMappingModel.updated_at.desc()).limit(1)
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is not None:
                mapping = _model_to_mapping(model)
        return mapping

    async def has_mapping(self, entity_type: EntityType, source_id: str) -> bool:
        return await self.get_dest_id(entity_type, source_id) is not None

    async def get_bulk(
        self, entity_type: EntityType, source_ids: list[str]
    ) -> dict[str, str]:
        """source_id -> dest_id for every mapped id in one query."""
        if not source_ids:
            return {}
        result: dict[str, str] = {}
        async for session in self._session_factory():
            stmt = select(EntityMappingModel.source_id, EntityMappingModel.dest_id).where(
                EntityMappingModel.entity_type == entity_type.value,
                EntityMappingModel.source_id.in_(source_ids),
            )
            result = {row.source_id: row.dest_id for row in await session.execute(stmt)}
        return result

    async def list_mappings(
        self, entity_type: EntityType, limit: int | None = None
    ) -> list[MappingRead]:
        mappings: list[MappingRead] = []
        async for session in self._session_factory():
            stmt = (
                select(EntityMappingModel)
                .where(EntityMappingModel.entity_type == entity_type.value)
                .order_by(EntityMappingModel.created_at.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            models = (await session.execute(stmt)).scalars().all()
            mappings = [_model_to_mapping(m) for m in models]
        return mappings

    async def iter_dest_ids(
        self, entity_type: EntityType, batch_size: int = 1000
    ) -> AsyncIterator[list[str]]:
        """Yield destination ids in keyset-paged batches."""
        last_id = ""
        while True:
            rows: list[tuple[str, str]] = []
            async for session in self._session_factory():
                stmt = (
                    select(EntityMappingModel.id, EntityMappingModel.dest_id)
                    .where(
                        EntityMappingModel.entity_type == entity_type.value,
                        EntityMappingModel.id > last_id,
                    )
                    .order_by(EntityMappingModel.id)
                    .limit(batch_size)
                )
                rows = [(row.id, row.dest_id) for row in await session.execute(stmt)]
            if not rows:
                return
            last_id = rows[-1][0]
            yield [dest_id for _, dest_id in rows]
            if len(rows) < batch_size:
                return

    async def count_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        async for session in self._session_factory():
            stmt = select(EntityMappingModel.entity_type, func.count()).group_by(
                EntityMappingModel.entity_type
            )
            counts = {row[0]: row[1] for row in await session.execute(stmt)}
        return counts

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert(
        self,
        entity_type: EntityType,
        source_id: str,
        dest_id: str,
        metadata: str | None = None,
    ) -> MappingRead:
        """Write the mapping, reassigning dest_id away from any other source id.

        Idempotent: repeating the same call rewrites the same row. A
        concurrent insert of the same (entity_type, source_id) is retried
        once as an update.
        """
        try:
            return await self._write(entity_type, source_id, dest_id, metadata, reassign=True)
        except IntegrityError:
            logger.info(
                "mapping.upsert_conflict_retry",
                entity_type=entity_type.value,
                source_id=source_id,
            )
            return await self._write(entity_type, source_id, dest_id, metadata, reassign=True)

    async def create_checkin_mapping(
        self, source_id: str, dest_id: str, metadata: str | None = None
    ) -> MappingRead:
        """Write a check-in mapping; many check-ins may share one contact id."""
        try:
            return await self._write(
                EntityType.CHECKIN, source_id, dest_id, metadata, reassign=False
            )
        except IntegrityError:
            return await self._write(
                EntityType.CHECKIN, source_id, dest_id, metadata, reassign=False
            )

    async def delete(self, entity_type: EntityType, source_id: str) -> int:
        """Delete the mapping for a source id. Returns rows deleted (0 is fine)."""
        deleted = 0
        async for session in self._session_factory():
            stmt = delete(EntityMappingModel).where(
                EntityMappingModel.entity_type == entity_type.value,
                EntityMappingModel.source_id == source_id,
            )
            result = await session.execute(stmt)
            await session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info("mapping.deleted", entity_type=entity_type.value, source_id=source_id)
        return deleted

    async def _write(
        self,
        entity_type: EntityType,
        source_id: str,
        dest_id: str,
        metadata: str | None,
        *,
        reassign: bool,
    ) -> MappingRead:
        mapping: MappingRead | None = None
        async for session in self._session_factory():
            if reassign:
                stmt = select(EntityMappingModel).where(
                    EntityMappingModel.entity_type == entity_type.value,
                    EntityMappingModel.dest_id == dest_id,
                    EntityMappingModel.source_id != source_id,
                )
                for other in (await session.execute(stmt)).scalars().all():
                    logger.warning(
                        "mapping.reassigned",
                        entity_type=entity_type.value,
                        dest_id=dest_id,
                        previous_source_id=other.source_id,
                        new_source_id=source_id,
                    )
                    sync_mapping_reassignments_total.labels(entity_type=entity_type.value).inc()
                    await session.delete(other)
                await session.flush()

            stmt = select(EntityMappingModel).where(
                EntityMappingModel.entity_type == entity_type.value,
                EntityMappingModel.source_id == source_id,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = EntityMappingModel(
                    entity_type=entity_type.value,
                    source_id=source_id,
                    dest_id=dest_id,
                    meta=metadata,
                )
                session.add(model)
            else:
                if model.dest_id != dest_id:
                    logger.info(
                        "mapping.dest_changed",
                        entity_type=entity_type.value,
                        source_id=source_id,
                        old_dest_id=model.dest_id,
                        new_dest_id=dest_id,
                    )
                model.dest_id = dest_id
                model.meta = metadata
                model.updated_at = utcnow()
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            mapping = _model_to_mapping(model)
        assert mapping is not None
        return mapping
