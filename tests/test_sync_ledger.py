"""FailureLedger and AutoRetrySweeper tests.

The ledger runs against SQLite; the sweeper's worker and importer are
AsyncMocks so each test controls the retry outcome.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from src.app.sync.importer import StagingImporter
from src.app.sync.inbound import INBOUND_QUEUE, InboundContactSync
from src.app.sync.ledger import AutoRetrySweeper, FailureLedger, is_retryable_code
from src.app.sync.models import ReportedFailureModel, utcnow
from src.app.sync.runs import SyncRunService
from src.app.sync.schemas import EntityType, SyncOutcome
from src.app.sync.worker import SyncWorker


# ── Fixtures ────────────────────────────────────────────────────────────────


async def _backdate(session_factory, failure_id: str, days: int) -> None:
    async for session in session_factory():
        await session.execute(
            update(ReportedFailureModel)
            .where(ReportedFailureModel.id == failure_id)
            .values(timestamp=utcnow() - timedelta(days=days))
        )
        await session.commit()


@pytest.fixture
def retry_worker() -> AsyncMock:
    worker = AsyncMock(spec=SyncWorker)
    worker.sync_single.return_value = SyncOutcome.updated("ghl-1")
    return worker


@pytest.fixture
def retry_importer() -> AsyncMock:
    importer = AsyncMock(spec=StagingImporter)
    importer.import_single_client.return_value = True
    return importer


@pytest.fixture
def sweeper(
    ledger: FailureLedger,
    retry_worker: AsyncMock,
    runs: SyncRunService,
    retry_importer: AsyncMock,
) -> AutoRetrySweeper:
    return AutoRetrySweeper(ledger, retry_worker, runs, retry_importer, max_attempts=4)


class TestReport:
    async def test_repeated_failure_is_one_row(self, ledger: FailureLedger) -> None:
        first = await ledger.report(EntityType.CLIENT, "c1", "boom", "500")
        second = await ledger.report(EntityType.CLIENT, "c1", "boom again", "503")

        assert first.id == second.id
        assert second.attempts == 2
        assert second.error_message == "boom again"
        assert second.error_code == "503"
        assert len(await ledger.recent_failures()) == 1

    async def test_resolved_failure_opens_new_row(self, ledger: FailureLedger) -> None:
        first = await ledger.report(EntityType.CLIENT, "c1", "boom", "500")
        await ledger.mark_resolved(first.id)

        second = await ledger.report(EntityType.CLIENT, "c1", "boom", "500")

        assert second.id != first.id
        assert second.attempts == 1
        assert len(await ledger.failures_for_entity(EntityType.CLIENT, "c1")) == 2

    async def test_error_stats(self, ledger: FailureLedger) -> None:
        await ledger.report(EntityType.CLIENT, "c1", "boom", "500")
        await ledger.report(EntityType.CLIENT, "c2", "bad", "422")
        resolved = await ledger.report(EntityType.APPOINTMENT, "a1", "boom")
        await ledger.mark_resolved(resolved.id)

        stats = await ledger.error_stats()

        assert stats.total_unresolved == 2
        assert stats.by_entity_type == {"client": 2}
        assert stats.by_error_code == {"500": 1, "422": 1}


class TestResolution:
    async def test_mark_resolved(self, ledger: FailureLedger) -> None:
        failure = await ledger.report(EntityType.CLIENT, "c1", "boom")

        assert await ledger.mark_resolved(failure.id) is True
        assert await ledger.mark_resolved(failure.id) is False
        assert await ledger.mark_resolved("missing") is False

        stored = await ledger.get(failure.id)
        assert stored.resolved is True
        assert stored.resolved_at is not None
        assert await ledger.recent_failures() == []
        assert len(await ledger.recent_failures(include_resolved=True)) == 1

    async def test_mark_many_and_resolve_for_entity(self, ledger: FailureLedger) -> None:
        a = await ledger.report(EntityType.CLIENT, "c1", "boom")
        b = await ledger.report(EntityType.CLIENT, "c2", "boom")
        await ledger.report(EntityType.CLIENT, "c3", "boom")

        assert await ledger.mark_many_resolved([a.id, b.id]) == 2
        assert await ledger.mark_many_resolved([]) == 0
        assert await ledger.resolve_for_entity(EntityType.CLIENT, "c3") == 1
        assert await ledger.resolve_for_entity(EntityType.CLIENT, "c3") == 0

    async def test_clean_old_records_keeps_open_rows(
        self, ledger: FailureLedger, session_factory
    ) -> None:
        old_resolved = await ledger.report(EntityType.CLIENT, "c1", "boom")
        await ledger.mark_resolved(old_resolved.id)
        old_open = await ledger.report(EntityType.CLIENT, "c2", "boom")
        await _backdate(session_factory, old_resolved.id, days=40)
        await _backdate(session_factory, old_open.id, days=40)

        assert await ledger.clean_old_records(days_old=30) == 1
        assert await ledger.get(old_resolved.id) is None
        assert await ledger.get(old_open.id) is not None


class TestRetryableCodes:
    def test_codes(self) -> None:
        assert is_retryable_code("503") is True
        assert is_retryable_code("ETIMEDOUT") is True
        assert is_retryable_code(None) is True
        assert is_retryable_code("UNKNOWN") is True
        assert is_retryable_code("422") is False
        assert is_retryable_code("404") is False
        assert is_retryable_code("418") is False


class TestAutoRetrySweeper:
    async def test_retries_and_resolves(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        failure = await ledger.report(EntityType.APPOINTMENT, "a1", "boom", "503")

        stats = await sweeper.run()

        assert (stats.attempted, stats.succeeded, stats.failed, stats.skipped) == (1, 1, 0, 0)
        retry_worker.sync_single.assert_awaited_once_with(EntityType.APPOINTMENT, "a1")
        assert (await ledger.get(failure.id)).resolved is True

    async def test_skip_reasons(
        self,
        sweeper: AutoRetrySweeper,
        ledger: FailureLedger,
        retry_worker: AsyncMock,
        session_factory,
    ) -> None:
        old = await ledger.report(EntityType.CLIENT, "c1", "boom", "503")
        await _backdate(session_factory, old.id, days=8)
        for _ in range(4):
            await ledger.report(EntityType.CLIENT, "c2", "boom", "503")
        await ledger.report(EntityType.CLIENT, "c3", "bad request", "400")
        await ledger.report(EntityType.CLIENT, "c4", "gone", "404")

        stats = await sweeper.run()

        assert stats.skipped == 4
        assert stats.attempted == 0
        retry_worker.sync_single.assert_not_awaited()

    async def test_unsettled_outcome_stays_open(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        failure = await ledger.report(EntityType.APPOINTMENT, "a1", "boom", "503")
        retry_worker.sync_single.return_value = SyncOutcome.skipped("waiting", deferred=True)

        stats = await sweeper.run()

        assert stats.failed == 1
        assert (await ledger.get(failure.id)).resolved is False

    async def test_unmapped_skip_does_not_resolve(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        failure = await ledger.report(EntityType.CLIENT, "c1", "boom", "503")
        retry_worker.sync_single.return_value = SyncOutcome.skipped("No name or valid email/phone")

        stats = await sweeper.run()
        outcome = await sweeper.manual_retry(EntityType.CLIENT, "c1")

        assert (stats.succeeded, stats.failed) == (0, 1)
        assert outcome.settles is False
        assert (await ledger.get(failure.id)).resolved is False

    async def test_mapped_skip_resolves(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        failure = await ledger.report(EntityType.CLIENT, "c1", "boom", "503")
        retry_worker.sync_single.return_value = SyncOutcome.skipped(
            "Unchanged since last sync", dest_id="ghl-1"
        )

        stats = await sweeper.run()

        assert stats.succeeded == 1
        assert (await ledger.get(failure.id)).resolved is True

    async def test_exception_counts_as_failed(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        await ledger.report(EntityType.APPOINTMENT, "a1", "boom", "503")
        retry_worker.sync_single.side_effect = RuntimeError("database gone")

        stats = await sweeper.run()

        assert (stats.attempted, stats.failed) == (1, 1)

    async def test_loyalty_retries_through_client(
        self,
        sweeper: AutoRetrySweeper,
        ledger: FailureLedger,
        retry_worker: AsyncMock,
        retry_importer: AsyncMock,
    ) -> None:
        await ledger.report(EntityType.LOYALTY, "c1", "boom", "ETIMEDOUT")

        await sweeper.run()

        retry_importer.import_single_client.assert_awaited_once_with("c1")
        retry_worker.sync_single.assert_awaited_once_with(EntityType.CLIENT, "c1")

    async def test_manual_retry_ignores_limits(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        failure = await ledger.report(EntityType.CLIENT, "c1", "bad", "422")

        outcome = await sweeper.manual_retry(EntityType.CLIENT, "c1")

        assert outcome.is_success
        retry_worker.sync_single.assert_awaited_once_with(EntityType.CLIENT, "c1")
        assert (await ledger.get(failure.id)).resolved is True

    async def test_inbound_failure_retries_through_contact_sync(
        self,
        ledger: FailureLedger,
        retry_worker: AsyncMock,
        runs: SyncRunService,
        retry_importer: AsyncMock,
    ) -> None:
        failure = await ledger.report(INBOUND_QUEUE, "ghl-1", "boom", "503")
        inbound = AsyncMock(spec=InboundContactSync)
        inbound.sync_single_contact.return_value = SyncOutcome.updated("c1")
        sweeper = AutoRetrySweeper(ledger, retry_worker, runs, retry_importer, inbound=inbound)

        stats = await sweeper.run()

        assert (stats.attempted, stats.succeeded) == (1, 1)
        inbound.sync_single_contact.assert_awaited_once_with("ghl-1")
        retry_worker.sync_single.assert_not_awaited()
        retry_importer.import_single_client.assert_not_awaited()
        assert (await ledger.get(failure.id)).resolved is True

    async def test_inbound_failure_skipped_without_contact_sync(
        self, sweeper: AutoRetrySweeper, ledger: FailureLedger, retry_worker: AsyncMock
    ) -> None:
        await ledger.report(INBOUND_QUEUE, "ghl-1", "boom", "503")

        stats = await sweeper.run()

        assert (stats.attempted, stats.skipped) == (0, 1)
        retry_worker.sync_single.assert_not_awaited()
