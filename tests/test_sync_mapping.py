"""MappingStore tests: identity rules, reassignment, check-in sharing, paging.

Runs against a real SQLite database; the reassignment rule (one source id
per destination id) is the behaviour most of the engine relies on.
"""

from __future__ import annotations

from src.app.sync.mapping import MappingStore
from src.app.sync.schemas import EntityType


class TestLookups:
    async def test_unmapped_returns_none(self, mappings: MappingStore) -> None:
        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") is None
        assert await mappings.find_by_source_id(EntityType.CLIENT, "c1") is None
        assert await mappings.has_mapping(EntityType.CLIENT, "c1") is False

    async def test_upsert_then_lookup_both_ways(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1", '{"note": "x"}')

        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") == "ghl-1"
        assert await mappings.get_source_id(EntityType.CLIENT, "ghl-1") == "c1"
        mapping = await mappings.find_by_source_id(EntityType.CLIENT, "c1")
        assert mapping is not None
        assert mapping.metadata == '{"note": "x"}'

    async def test_entity_types_are_independent(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.CLIENT, "1", "ghl-client")
        await mappings.upsert(EntityType.STAFF, "1", "ghl-staff")

        assert await mappings.get_dest_id(EntityType.CLIENT, "1") == "ghl-client"
        assert await mappings.get_dest_id(EntityType.STAFF, "1") == "ghl-staff"

    async def test_get_by_source_or_dest(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1")

        by_dest = await mappings.get_by_source_or_dest(EntityType.CLIENT, dest_id="ghl-1")
        by_source = await mappings.get_by_source_or_dest(EntityType.CLIENT, source_id="c1")
        either = await mappings.get_by_source_or_dest(
            EntityType.CLIENT, source_id="nope", dest_id="ghl-1"
        )

        assert by_dest is not None and by_dest.source_id == "c1"
        assert by_source is not None and by_source.dest_id == "ghl-1"
        assert either is not None and either.source_id == "c1"
        assert await mappings.get_by_source_or_dest(EntityType.CLIENT) is None

    async def test_get_bulk_returns_only_mapped(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.APPOINTMENT, "a1", "evt-1")
        await mappings.upsert(EntityType.APPOINTMENT, "a3", "evt-3")

        bulk = await mappings.get_bulk(EntityType.APPOINTMENT, ["a1", "a2", "a3"])

        assert bulk == {"a1": "evt-1", "a3": "evt-3"}
        assert await mappings.get_bulk(EntityType.APPOINTMENT, []) == {}


class TestUpsert:
    async def test_upsert_is_idempotent(self, mappings: MappingStore) -> None:
        first = await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1")
        second = await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1")

        assert first.id == second.id
        assert await mappings.count_by_type() == {"client": 1}

    async def test_upsert_moves_source_to_new_dest(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-old")
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-new")

        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") == "ghl-new"
        assert await mappings.get_source_id(EntityType.CLIENT, "ghl-old") is None

    async def test_dest_reassigned_to_new_source(self, mappings: MappingStore) -> None:
        """A -> X then B -> X leaves only B -> X."""
        await mappings.upsert(EntityType.CLIENT, "A", "X")
        await mappings.upsert(EntityType.CLIENT, "B", "X")

        assert await mappings.get_dest_id(EntityType.CLIENT, "A") is None
        assert await mappings.get_dest_id(EntityType.CLIENT, "B") == "X"
        assert await mappings.get_source_id(EntityType.CLIENT, "X") == "B"
        assert await mappings.count_by_type() == {"client": 1}

    async def test_reassignment_is_scoped_to_entity_type(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.CLIENT, "c1", "shared")
        await mappings.upsert(EntityType.LOYALTY, "c1", "shared")

        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") == "shared"
        assert await mappings.get_dest_id(EntityType.LOYALTY, "c1") == "shared"

    async def test_checkins_share_a_contact(self, mappings: MappingStore) -> None:
        await mappings.create_checkin_mapping("apt-1", "ghl-contact")
        await mappings.create_checkin_mapping("apt-2", "ghl-contact")

        assert await mappings.get_dest_id(EntityType.CHECKIN, "apt-1") == "ghl-contact"
        assert await mappings.get_dest_id(EntityType.CHECKIN, "apt-2") == "ghl-contact"
        assert await mappings.count_by_type() == {"checkin": 2}

    async def test_delete(self, mappings: MappingStore) -> None:
        await mappings.upsert(EntityType.PRODUCT, "p1", "prod-1")

        assert await mappings.delete(EntityType.PRODUCT, "p1") == 1
        assert await mappings.delete(EntityType.PRODUCT, "p1") == 0
        assert await mappings.get_dest_id(EntityType.PRODUCT, "p1") is None


class TestListing:
    async def test_list_mappings_newest_first(self, mappings: MappingStore) -> None:
        for i in range(3):
            await mappings.upsert(EntityType.APPOINTMENT, f"a{i}", f"evt-{i}")

        listed = await mappings.list_mappings(EntityType.APPOINTMENT, limit=2)

        assert [m.source_id for m in listed] == ["a2", "a1"]

    async def test_iter_dest_ids_pages_through_everything(self, mappings: MappingStore) -> None:
        for i in range(7):
            await mappings.upsert(EntityType.APPOINTMENT, f"a{i}", f"evt-{i}")
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1")

        batches = [batch async for batch in mappings.iter_dest_ids(EntityType.APPOINTMENT, 3)]

        assert [len(b) for b in batches] == [3, 3, 1]
        assert sorted(d for b in batches for d in b) == sorted(f"evt-{i}" for i in range(7))

    async def test_iter_dest_ids_empty(self, mappings: MappingStore) -> None:
        batches = [batch async for batch in mappings.iter_dest_ids(EntityType.APPOINTMENT)]
        assert batches == []
