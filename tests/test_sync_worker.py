"""SyncWorker tests: full runs against real staging, mocked Phorest and GHL.

Covers the shared algorithm end to end: import, candidate selection,
outcome booking (staged status, run log, failure ledger), inline repair,
dry runs, pausing and run-level failures.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.app.sync.handlers import HandlerDeps, build_handlers
from src.app.sync.importer import StagingImporter
from src.app.sync.ledger import FailureLedger
from src.app.sync.mapping import MappingStore
from src.app.sync.remote.adapter import RemoteAPIError, SourcePage
from src.app.sync.repository import StagedRepository
from src.app.sync.runs import SyncRunService
from src.app.sync.schemas import (
    EntityType,
    LogStatus,
    OutcomeKind,
    RunStatus,
    SyncOptions,
    SyncStatus,
)
from src.app.sync.worker import ImportAbortedError, SyncWorker, UnknownEntityTypeError

UPDATED = "2026-10-01T12:00:00Z"
SKIP_IMPORT = SyncOptions(skip_import=True)


# ── Fixtures ────────────────────────────────────────────────────────────────


def _make_raw_client(client_id: str = "c1", **overrides) -> dict:
    raw = {
        "clientId": client_id,
        "firstName": "Ann",
        "lastName": "Lee",
        "email": f"{client_id}@example.com",
        "updatedAt": UPDATED,
    }
    raw.update(overrides)
    return raw


def _make_appointment(appointment_id: str = "a1", **overrides) -> dict:
    payload = {
        "appointmentId": appointment_id,
        "clientId": "c1",
        "startAt": "2026-10-20T14:00:00+00:00",
        "endAt": "2026-10-20T15:00:00+00:00",
        "serviceName": "Cut",
        "state": "BOOKED",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_worker(source, dest, mappings, repo, runs, ledger):
    def _make(dry_run: bool = False) -> SyncWorker:
        deps = HandlerDeps(
            source=source,
            dest=dest,
            mappings=mappings,
            repository=repo,
            location_id="loc-1",
            calendar_id="cal-1",
            dry_run=dry_run,
        )
        importer = StagingImporter(source, repo, salon_timezone="UTC")
        return SyncWorker(
            build_handlers(deps),
            repo,
            mappings,
            runs,
            ledger,
            importer,
            concurrency=1,
            dry_run=dry_run,
        )

    return _make


@pytest.fixture
def worker(make_worker) -> SyncWorker:
    return make_worker()


async def _stage_client(repo: StagedRepository, client_id: str = "c1") -> None:
    await repo.upsert_from_source(
        EntityType.CLIENT, client_id, _make_raw_client(client_id), None
    )


class TestClientRun:
    async def test_new_client_is_created(
        self,
        worker: SyncWorker,
        source: AsyncMock,
        dest: AsyncMock,
        repo: StagedRepository,
        mappings: MappingStore,
        runs: SyncRunService,
    ) -> None:
        source.list_page.side_effect = [
            SourcePage(items=[_make_raw_client()], page=0, total_pages=1),
        ]
        dest.upsert_contact.return_value = {"id": "ghl-1"}

        result = await worker.run(EntityType.CLIENT)

        assert result.created == 1
        assert result.failed == 0
        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") == "ghl-1"
        assert (await repo.get(EntityType.CLIENT, "c1")).sync_status == SyncStatus.SYNCED

        run = await runs.get_run(result.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.total_records == 1
        assert run.success_count == 1
        logs = await runs.run_logs(result.run_id)
        assert [log.status for log in logs] == [LogStatus.SUCCESS]

    async def test_second_run_has_nothing_to_do(
        self, worker: SyncWorker, source: AsyncMock, dest: AsyncMock
    ) -> None:
        page = SourcePage(items=[_make_raw_client()], page=0, total_pages=1)
        source.list_page.return_value = page
        dest.upsert_contact.return_value = {"id": "ghl-1"}

        await worker.run(EntityType.CLIENT)
        second = await worker.run(EntityType.CLIENT)

        assert second.total_processed == 0
        dest.upsert_contact.assert_awaited_once()
        dest.update_contact.assert_not_awaited()

    async def test_stale_mapping_creates_replacement(
        self,
        worker: SyncWorker,
        dest: AsyncMock,
        repo: StagedRepository,
        mappings: MappingStore,
    ) -> None:
        await _stage_client(repo)
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-deleted")
        dest.update_contact.side_effect = RemoteAPIError("Contact not found", status_code=404)
        dest.upsert_contact.return_value = {"id": "ghl-2"}

        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        assert result.created == 1
        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") == "ghl-2"

    async def test_failure_is_recorded_everywhere(
        self,
        worker: SyncWorker,
        dest: AsyncMock,
        repo: StagedRepository,
        runs: SyncRunService,
        ledger: FailureLedger,
    ) -> None:
        await _stage_client(repo)
        dest.upsert_contact.side_effect = RemoteAPIError("GHL exploded", status_code=500)

        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        assert result.failed == 1
        assert result.errors[0]["source_id"] == "c1"
        record = await repo.get(EntityType.CLIENT, "c1")
        assert record.sync_status == SyncStatus.FAILED
        assert "GHL exploded" in record.last_sync_error

        failures = await ledger.failures_for_entity(EntityType.CLIENT, "c1")
        assert len(failures) == 1
        assert failures[0].error_code == "500"
        assert failures[0].resolved is False

        run = await runs.get_run(result.run_id)
        assert run.status == RunStatus.FAILED
        assert run.failed_count == 1
        failed_logs = await runs.run_logs(result.run_id, status=LogStatus.FAILED)
        assert failed_logs[0].error_code == "500"

    async def test_success_resolves_earlier_failure(
        self, worker: SyncWorker, dest: AsyncMock, repo: StagedRepository, ledger: FailureLedger
    ) -> None:
        await _stage_client(repo)
        dest.upsert_contact.side_effect = RemoteAPIError("GHL exploded", status_code=500)
        await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        dest.upsert_contact.side_effect = None
        dest.upsert_contact.return_value = {"id": "ghl-1"}
        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        assert result.created == 1
        failures = await ledger.failures_for_entity(EntityType.CLIENT, "c1")
        assert [f.resolved for f in failures] == [True]
        assert (await repo.get(EntityType.CLIENT, "c1")).sync_status == SyncStatus.SYNCED

    async def test_mixed_outcomes_are_partial(
        self,
        worker: SyncWorker,
        dest: AsyncMock,
        repo: StagedRepository,
        runs: SyncRunService,
    ) -> None:
        await _stage_client(repo, "c1")
        await _stage_client(repo, "c2")

        async def _upsert(body: dict) -> dict:
            if body["email"] == "c2@example.com":
                raise RemoteAPIError("timeout", code="ETIMEDOUT")
            return {"id": "ghl-1"}

        dest.upsert_contact.side_effect = _upsert

        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        assert (result.created, result.failed) == (1, 1)
        assert (await runs.get_run(result.run_id)).status == RunStatus.PARTIAL

    async def test_dry_run_writes_nothing(
        self,
        make_worker,
        dest: AsyncMock,
        repo: StagedRepository,
        mappings: MappingStore,
    ) -> None:
        await _stage_client(repo)

        result = await make_worker(dry_run=True).run(EntityType.CLIENT, SKIP_IMPORT)

        assert result.created == 1
        dest.upsert_contact.assert_not_awaited()
        assert await mappings.has_mapping(EntityType.CLIENT, "c1") is False
        assert (await repo.get(EntityType.CLIENT, "c1")).sync_status == SyncStatus.PENDING

    async def test_dry_run_failure_leaves_row_and_ledger_alone(
        self,
        make_worker,
        repo: StagedRepository,
        mappings: MappingStore,
        runs: SyncRunService,
        ledger: FailureLedger,
    ) -> None:
        await repo.upsert_from_source(
            EntityType.APPOINTMENT,
            "a1",
            _make_appointment(startAt=None),
            None,
            event_date=datetime.now(timezone.utc),
        )
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1")

        result = await make_worker(dry_run=True).run(EntityType.APPOINTMENT, SKIP_IMPORT)

        assert result.failed == 1
        record = await repo.get(EntityType.APPOINTMENT, "a1")
        assert record.sync_status == SyncStatus.PENDING
        assert record.last_sync_error is None
        assert await ledger.failures_for_entity(EntityType.APPOINTMENT, "a1") == []
        [log] = await runs.run_logs(result.run_id)
        assert log.status == LogStatus.FAILED

    async def test_unsyncable_client_stays_pending_without_mapping(
        self,
        worker: SyncWorker,
        dest: AsyncMock,
        repo: StagedRepository,
        mappings: MappingStore,
    ) -> None:
        await repo.upsert_from_source(
            EntityType.CLIENT, "c1", _make_raw_client(email=None), None
        )

        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        assert result.skipped == 1
        dest.upsert_contact.assert_not_awaited()
        assert await mappings.has_mapping(EntityType.CLIENT, "c1") is False
        assert (await repo.get(EntityType.CLIENT, "c1")).sync_status == SyncStatus.PENDING

    async def test_unchanged_mapped_client_settles(
        self,
        worker: SyncWorker,
        dest: AsyncMock,
        repo: StagedRepository,
        mappings: MappingStore,
        ledger: FailureLedger,
    ) -> None:
        await _stage_client(repo)
        await repo.mark_synced(EntityType.CLIENT, "c1", 1)
        await repo.mark_failed(EntityType.CLIENT, "c1", "GHL exploded")
        await mappings.upsert(EntityType.CLIENT, "c1", "ghl-1")
        await ledger.report(EntityType.CLIENT, "c1", "GHL exploded", "500")

        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT)

        assert result.skipped == 1
        dest.update_contact.assert_not_awaited()
        assert (await repo.get(EntityType.CLIENT, "c1")).sync_status == SyncStatus.SYNCED
        failures = await ledger.failures_for_entity(EntityType.CLIENT, "c1")
        assert [f.resolved for f in failures] == [True]


class TestRunControl:
    async def test_paused_queue_stops_before_processing(
        self, worker: SyncWorker, dest: AsyncMock, repo: StagedRepository, runs: SyncRunService
    ) -> None:
        await _stage_client(repo)

        result = await worker.run(EntityType.CLIENT, SKIP_IMPORT, is_paused=lambda: True)

        assert result.total_processed == 0
        dest.upsert_contact.assert_not_awaited()
        assert (await runs.get_run(result.run_id)).status == RunStatus.COMPLETED
        assert (await repo.get(EntityType.CLIENT, "c1")).sync_status == SyncStatus.PENDING

    async def test_aborted_import_fails_the_run(
        self, worker: SyncWorker, source: AsyncMock, runs: SyncRunService
    ) -> None:
        source.list_page.side_effect = RemoteAPIError("Phorest down", status_code=503)

        with pytest.raises(ImportAbortedError):
            await worker.run(EntityType.STAFF)

        [run] = await runs.recent_runs(limit=1)
        assert run.status == RunStatus.FAILED
        assert "Phorest down" in run.last_error

    async def test_progress_callback(
        self, make_worker, source, dest: AsyncMock, repo: StagedRepository
    ) -> None:
        for i in range(3):
            await _stage_client(repo, f"c{i}")
        dest.upsert_contact.return_value = {"id": "ghl-1"}
        seen: list[int] = []

        async def _progress(result) -> None:
            seen.append(result.total_processed)

        worker = make_worker()
        worker._progress_interval = 1
        await worker.run(EntityType.CLIENT, SKIP_IMPORT, on_progress=_progress)

        assert seen == [1, 2, 3]

    async def test_import_heartbeats_after_every_page(
        self,
        worker: SyncWorker,
        source: AsyncMock,
        dest: AsyncMock,
        runs: SyncRunService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        heartbeat = AsyncMock(wraps=runs.heartbeat)
        monkeypatch.setattr(runs, "heartbeat", heartbeat)
        beats_at_fetch: list[int] = []

        async def _list_page(entity_type, page, size=100, **kwargs):
            beats_at_fetch.append(heartbeat.await_count)
            return SourcePage(items=[_make_raw_client(f"c{page}")], page=page, total_pages=2)

        source.list_page.side_effect = _list_page
        dest.upsert_contact.side_effect = lambda body: {"id": f"ghl-{body['email']}"}

        result = await worker.run(EntityType.CLIENT)

        assert beats_at_fetch == [0, 1]
        assert heartbeat.await_count == 3
        heartbeat.assert_awaited_with(result.run_id)

    async def test_unknown_entity_type(self, repo, mappings, runs, ledger, source) -> None:
        worker = SyncWorker(
            [], repo, mappings, runs, ledger, StagingImporter(source, repo), concurrency=1
        )
        with pytest.raises(UnknownEntityTypeError):
            worker.handler_for(EntityType.CLIENT)

    async def test_sync_single_unstaged_is_deferred(self, worker: SyncWorker) -> None:
        outcome = await worker.sync_single(EntityType.CLIENT, "nope")

        assert outcome.kind == OutcomeKind.SKIPPED
        assert outcome.deferred is True


class TestDependencies:
    async def test_appointment_repairs_missing_client(
        self,
        worker: SyncWorker,
        source: AsyncMock,
        dest: AsyncMock,
        repo: StagedRepository,
        mappings: MappingStore,
    ) -> None:
        await repo.upsert_from_source(
            EntityType.APPOINTMENT,
            "a1",
            _make_appointment(),
            None,
            event_date=datetime.now(timezone.utc),
        )
        source.get_by_id.return_value = _make_raw_client()
        dest.upsert_contact.return_value = {"id": "ghl-1"}
        dest.create_appointment.return_value = {"id": "evt-1"}

        result = await worker.run(EntityType.APPOINTMENT, SKIP_IMPORT)

        assert result.created == 1
        assert result.clients_repaired == 1
        assert await mappings.get_dest_id(EntityType.CLIENT, "c1") == "ghl-1"
        assert await mappings.get_dest_id(EntityType.APPOINTMENT, "a1") == "evt-1"
        client = await repo.get(EntityType.CLIENT, "c1")
        assert client.sync_status == SyncStatus.SYNCED
        assert client.last_sync_error is None

    async def test_unrepairable_client_leaves_appointment_pending(
        self, worker: SyncWorker, dest: AsyncMock, repo: StagedRepository
    ) -> None:
        await repo.upsert_from_source(
            EntityType.APPOINTMENT,
            "a1",
            _make_appointment(),
            None,
            event_date=datetime.now(timezone.utc),
        )

        result = await worker.run(EntityType.APPOINTMENT, SKIP_IMPORT)

        assert result.skipped == 1
        dest.create_appointment.assert_not_awaited()
        assert (await repo.get(EntityType.APPOINTMENT, "a1")).sync_status == SyncStatus.PENDING

    async def test_repair_bound_survives_batch_failure(
        self, worker: SyncWorker, dest: AsyncMock, repo: StagedRepository
    ) -> None:
        await _stage_client(repo)
        dest.upsert_contact.side_effect = RemoteAPIError("bad", status_code=400)

        for _ in range(3):
            assert (await worker.repair.repair(EntityType.CLIENT, "c1")).attempted is True
        capped = await worker.repair.repair(EntityType.CLIENT, "c1")
        assert capped.reason.startswith("Max repair attempts (3) reached")
        assert dest.upsert_contact.await_count == 3

        batch = await worker.run(EntityType.CLIENT, SKIP_IMPORT)
        assert batch.failed == 1
        assert dest.upsert_contact.await_count == 4

        after_batch = await worker.repair.repair(EntityType.CLIENT, "c1")

        assert after_batch.success is False
        assert after_batch.attempted is False
        assert after_batch.reason.startswith("Max repair attempts (3) reached")
        assert dest.upsert_contact.await_count == 4
        record = await repo.get(EntityType.CLIENT, "c1")
        assert record.sync_status == SyncStatus.FAILED
        assert record.last_sync_error.endswith(":bad")

    async def test_booking_waits_for_appointment(
        self, worker: SyncWorker, repo: StagedRepository, mappings: MappingStore
    ) -> None:
        await repo.upsert_derived(
            EntityType.BOOKING,
            "b1",
            {"bookingId": "b1", "appointmentIds": ["a1"]},
            None,
            event_date=datetime.now(timezone.utc),
        )

        first = await worker.run(EntityType.BOOKING, SKIP_IMPORT)
        assert first.skipped == 1
        assert (await repo.get(EntityType.BOOKING, "b1")).sync_status == SyncStatus.PENDING

        await mappings.upsert(EntityType.APPOINTMENT, "a1", "evt-1")
        second = await worker.run(EntityType.BOOKING, SKIP_IMPORT)

        assert second.created == 1
        assert (await repo.get(EntityType.BOOKING, "b1")).sync_status == SyncStatus.SYNCED
        assert await mappings.get_dest_id(EntityType.BOOKING, "b1") == "evt-1"
