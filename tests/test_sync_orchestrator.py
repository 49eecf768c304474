"""SyncOrchestrator tests: single flight, dedup, pause, Redis keys, scheduling.

Runners are small coroutines gated on asyncio.Events so each test decides
when a job finishes; the run service is real for the run-row busy check.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from src.app.sync.audit import ReconciliationAuditor
from src.app.sync.inbound import INBOUND_QUEUE, InboundContactSync
from src.app.sync.ledger import AutoRetrySweeper
from src.app.sync.models import SyncRunModel, utcnow
from src.app.sync.orchestrator import (
    AUDIT_QUEUE,
    AUTO_RETRY_QUEUE,
    JANITOR_QUEUE,
    RELEASE_LOCK_SCRIPT,
    JobSpec,
    QueuePausedError,
    SyncOrchestrator,
    SyncRegistry,
    UnknownQueueError,
    build_registry,
)
from src.app.sync.runs import SyncRunService
from src.app.sync.schemas import EntityType, RunStatus, SyncOptions
from src.app.sync.worker import SyncWorker


# ── Fixtures ────────────────────────────────────────────────────────────────


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class GatedRunner:
    """Runner that blocks until released and records every call."""

    def __init__(self) -> None:
        self.calls: list[SyncOptions] = []
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.paused_seen: list[bool] = []

    async def __call__(self, options: SyncOptions, is_paused) -> str:
        self.calls.append(options)
        self.started.set()
        await self.release.wait()
        self.paused_seen.append(is_paused())
        return f"done-{len(self.calls)}"


@pytest.fixture
def runner() -> GatedRunner:
    return GatedRunner()


@pytest.fixture
def make_orchestrator(runs: SyncRunService, runner: GatedRunner):
    created: list[SyncOrchestrator] = []

    def _make(redis=None, scheduler_enabled: bool = False, cron: str | None = None):
        registry = SyncRegistry()
        registry.register(
            JobSpec(
                queue="client",
                runner=runner,
                cron=cron,
                entity_type=EntityType.CLIENT,
            )
        )
        registry.register(JobSpec(queue="janitor", runner=runner, interval_minutes=5))
        orchestrator = SyncOrchestrator(
            registry, runs, redis=redis, scheduler_enabled=scheduler_enabled
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        for task in list(orchestrator._tasks):
            task.cancel()


class TestRegistry:
    def test_duplicate_queue_rejected(self, runner: GatedRunner) -> None:
        registry = SyncRegistry()
        registry.register(JobSpec(queue="client", runner=runner))

        with pytest.raises(ValueError):
            registry.register(JobSpec(queue="client", runner=runner))
        with pytest.raises(UnknownQueueError):
            registry.get("nope")
        assert "client" in registry
        assert len(registry) == 1

    def test_build_registry(self, runs: SyncRunService) -> None:
        worker = AsyncMock(spec=SyncWorker)
        worker.entity_types = [EntityType.CLIENT, EntityType.APPOINTMENT]

        registry = build_registry(
            worker,
            AsyncMock(spec=ReconciliationAuditor),
            AsyncMock(spec=AutoRetrySweeper),
            runs,
            inbound=AsyncMock(spec=InboundContactSync),
            crons={"client": "0 * * * *"},
        )

        assert registry.queues == [
            "client",
            "appointment",
            AUDIT_QUEUE,
            AUTO_RETRY_QUEUE,
            JANITOR_QUEUE,
            INBOUND_QUEUE,
        ]
        assert registry.get("client").cron == "0 * * * *"
        assert registry.get("appointment").cron == "5,15,25,35,45,55 * * * *"
        assert registry.get(AUTO_RETRY_QUEUE).interval_minutes == 60
        assert registry.get(INBOUND_QUEUE).cron is None

    async def test_entity_runner_passes_pause_check(self, runs: SyncRunService) -> None:
        worker = AsyncMock(spec=SyncWorker)
        worker.entity_types = [EntityType.CLIENT]
        registry = build_registry(
            worker, AsyncMock(spec=ReconciliationAuditor), AsyncMock(spec=AutoRetrySweeper), runs
        )
        options = SyncOptions(job_id="job-1")

        def is_paused() -> bool:
            return False

        await registry.get("client").runner(options, is_paused)

        worker.run.assert_awaited_once_with(EntityType.CLIENT, options, is_paused=is_paused)


class TestTrigger:
    async def test_runs_in_background(self, make_orchestrator, runner: GatedRunner) -> None:
        orchestrator = make_orchestrator()
        runner.release.set()

        handle = orchestrator.trigger("client", SyncOptions(full_sync=True))

        assert handle.status == "running"
        await _wait_for(lambda: orchestrator.status().queues["client"].completed == 1)
        assert runner.calls[0].full_sync is True
        assert runner.calls[0].job_id == handle.job_id

    async def test_busy_queue_queues_one_manual_trigger(
        self, make_orchestrator, runner: GatedRunner
    ) -> None:
        orchestrator = make_orchestrator()

        first = orchestrator.trigger("client")
        await runner.started.wait()
        second = orchestrator.trigger("client")
        third = orchestrator.trigger("client")

        assert first.status == "running"
        assert second.status == "queued"
        assert third.status == "deduplicated"
        assert third.job_id == second.job_id
        assert orchestrator.status().queues["client"].waiting == 1

        runner.release.set()
        await _wait_for(lambda: orchestrator.status().queues["client"].completed == 2)
        assert len(runner.calls) == 2

    async def test_keyed_trigger_deduplicated(
        self, make_orchestrator, runner: GatedRunner
    ) -> None:
        orchestrator = make_orchestrator()

        first = orchestrator.trigger_repair(EntityType.CLIENT, "c1")
        await runner.started.wait()
        second = orchestrator.trigger_repair(EntityType.CLIENT, "c1")

        assert first.job_id == "repair-client-c1"
        assert second.status == "deduplicated"
        assert second.job_id == first.job_id
        assert runner.calls[0].source_id == "c1"
        runner.release.set()
        await _wait_for(lambda: orchestrator.status().queues["client"].completed == 1)
        assert len(runner.calls) == 1

    async def test_unknown_queue(self, make_orchestrator) -> None:
        with pytest.raises(UnknownQueueError):
            make_orchestrator().trigger("nope")


class TestPause:
    async def test_paused_queue_refuses_triggers(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        assert orchestrator.pause("client") == ["client"]
        assert orchestrator.is_paused("client") is True
        with pytest.raises(QueuePausedError):
            orchestrator.trigger("client")
        with pytest.raises(QueuePausedError):
            await orchestrator.run_now("client")

        orchestrator.resume()
        assert orchestrator.is_paused("client") is False

    async def test_running_job_sees_pause(self, make_orchestrator, runner: GatedRunner) -> None:
        orchestrator = make_orchestrator()

        orchestrator.trigger("client")
        await runner.started.wait()
        orchestrator.pause()
        runner.release.set()

        await _wait_for(lambda: runner.paused_seen == [True])
        assert orchestrator.status().totals["paused"] == 2


class TestRunNow:
    async def test_returns_result(self, make_orchestrator, runner: GatedRunner) -> None:
        runner.release.set()

        assert await make_orchestrator().run_now("janitor") == "done-1"

    async def test_errors_propagate_and_count(self, runs: SyncRunService) -> None:
        async def _boom(options, is_paused):
            raise RuntimeError("broken")

        registry = SyncRegistry()
        registry.register(JobSpec(queue="audit", runner=_boom))
        orchestrator = SyncOrchestrator(registry, runs, scheduler_enabled=False)

        with pytest.raises(RuntimeError):
            await orchestrator.run_now("audit")
        assert orchestrator.status().queues["audit"].failed == 1

    async def test_active_run_row_skips(
        self, make_orchestrator, runner: GatedRunner, runs: SyncRunService
    ) -> None:
        await runs.create_run(EntityType.CLIENT)
        runner.release.set()

        assert await make_orchestrator().run_now("client") is None
        assert runner.calls == []

    async def test_stale_run_row_is_reclaimed(
        self, make_orchestrator, runner: GatedRunner, runs: SyncRunService, session_factory
    ) -> None:
        crashed = await runs.create_run(EntityType.CLIENT)
        async for session in session_factory():
            await session.execute(
                update(SyncRunModel)
                .where(SyncRunModel.id == crashed.run_id)
                .values(updated_at=utcnow() - timedelta(minutes=10))
            )
            await session.commit()
        runner.release.set()

        assert await make_orchestrator().run_now("client") == "done-1"
        assert (await runs.get_run(crashed.run_id)).status == RunStatus.FAILED


class TestRedisLock:
    @staticmethod
    def _redis() -> AsyncMock:
        """Redis client whose commands are awaitable and share one key space."""
        stored: dict[str, str] = {}

        async def _set(key, value, nx=False, ex=None):
            if nx and key in stored:
                return None
            stored[key] = value
            return True

        async def _eval(script, numkeys, key, value):
            if stored.get(key) == value:
                del stored[key]
                return 1
            return 0

        redis = AsyncMock()
        redis.stored = stored
        redis.set = AsyncMock(side_effect=_set)
        redis.eval = AsyncMock(side_effect=_eval)
        return redis

    async def test_key_held_elsewhere_skips(self, make_orchestrator, runner: GatedRunner) -> None:
        redis = self._redis()
        redis.stored["sync:lock:janitor"] = "other-job"
        runner.release.set()

        result = await make_orchestrator(redis=redis).run_now("janitor")

        assert result is None
        assert runner.calls == []
        redis.eval.assert_not_awaited()
        assert redis.stored == {"sync:lock:janitor": "other-job"}

    async def test_key_released_by_holder(self, make_orchestrator, runner: GatedRunner) -> None:
        redis = self._redis()
        runner.release.set()

        await make_orchestrator(redis=redis).run_now("janitor")

        key, job_id = redis.set.await_args.args
        assert key == "sync:lock:janitor"
        assert redis.set.await_args.kwargs == {"nx": True, "ex": 3600}
        redis.eval.assert_awaited_once_with(RELEASE_LOCK_SCRIPT, 1, key, job_id)
        assert redis.stored == {}

    async def test_key_taken_over_is_not_deleted(
        self, make_orchestrator, runner: GatedRunner
    ) -> None:
        redis = self._redis()
        orchestrator = make_orchestrator(redis=redis)

        orchestrator.trigger("janitor")
        await runner.started.wait()
        # Lock expired mid-run and another process took it
        redis.stored["sync:lock:janitor"] = "someone-else"
        runner.release.set()
        await _wait_for(lambda: orchestrator.status().queues["janitor"].completed == 1)

        redis.eval.assert_awaited_once()
        assert redis.stored == {"sync:lock:janitor": "someone-else"}

    async def test_release_is_one_atomic_command(
        self, make_orchestrator, runner: GatedRunner
    ) -> None:
        redis = self._redis()
        runner.release.set()

        await make_orchestrator(redis=redis).run_now("janitor")

        assert 'redis.call("get", KEYS[1]) == ARGV[1]' in RELEASE_LOCK_SCRIPT
        redis.get.assert_not_awaited()
        redis.delete.assert_not_awaited()


class TestScheduler:
    async def test_disabled(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        assert orchestrator.start() is False
        assert orchestrator.scheduler_running is False

    async def test_registers_recurring_jobs(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator(scheduler_enabled=True, cron="0 * * * *")

        assert orchestrator.start() is True
        try:
            status = orchestrator.status()
            assert status.scheduler_running is True
            assert status.queues["client"].next_run_at is not None
            assert status.queues["janitor"].next_run_at is not None
        finally:
            await orchestrator.stop()
        assert orchestrator.scheduler_running is False
