"""Job orchestration for the sync engine.

One logical queue per entity type plus the audit, auto-retry, janitor and
inbound queues. Each queue is described by a JobSpec in the SyncRegistry,
built once at startup from explicit collaborators.

Guarantees:
- Single flight per queue: an asyncio.Lock in process, plus a Redis
  ``SET NX EX`` key across processes when Redis is configured (released by
  a compare-and-delete script), plus a check for a ``running`` run row
  left by another worker process. Rows whose heartbeat is older than the
  stale-run timeout are reclaimed first, so a crashed process does not
  block the queue until the next janitor sweep.
- A manual trigger while the queue is busy waits behind the active run;
  only one unkeyed trigger waits per queue, further ones are deduplicated.
- Keyed triggers (e.g. ``repair-client-<id>``) are deduplicated by key
  while queued or running.
- Paused queues refuse new runs; running workers stop between records.

Recurring triggers use APScheduler cron expressions at staggered minutes so
entity types do not hit the GHL rate limit at the same time.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from src.app.sync.audit import ReconciliationAuditor
from src.app.sync.inbound import INBOUND_QUEUE, InboundContactSync
from src.app.sync.ledger import AutoRetrySweeper
from src.app.sync.models import utcnow
from src.app.sync.runs import SyncRunService
from src.app.sync.schemas import EntityType, JobHandle, QueueStats, QueueStatus, SyncOptions
from src.app.sync.worker import SyncWorker

logger = structlog.get_logger(__name__)

PauseCheck = Callable[[], bool]
JobRunner = Callable[[SyncOptions, PauseCheck], Awaitable[Any]]

AUDIT_QUEUE = "audit"
AUTO_RETRY_QUEUE = "auto_retry"
JANITOR_QUEUE = "janitor"

# Staggered so two entity types rarely start in the same minute
DEFAULT_CRONS: dict[str, str] = {
    EntityType.CLIENT.value: "2 */2 * * *",
    EntityType.APPOINTMENT.value: "5,15,25,35,45,55 * * * *",
    EntityType.BOOKING.value: "35 */2 * * *",
    EntityType.CHECKIN.value: "8,38 * * * *",
    EntityType.LOYALTY.value: "45 */12 * * *",
    EntityType.STAFF.value: "30 6 * * *",
    EntityType.PRODUCT.value: "15 5 * * *",
    AUDIT_QUEUE: "0 1 * * *",
}
AUTO_RETRY_INTERVAL_MINUTES = 60
JANITOR_INTERVAL_MINUTES = 5

# Delete the single-flight key only while this job still holds it
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class UnknownQueueError(KeyError):
    """No job is registered under the requested queue name."""


class QueuePausedError(RuntimeError):
    """The queue is paused and does not accept new runs."""


# ── Registry ────────────────────────────────────────────────────────────────


@dataclass
class JobSpec:
    """One schedulable job.

    Attributes:
        queue: Queue name, also the single-flight key.
        runner: Coroutine run for each job; receives options and a pause check.
        cron: Crontab expression for the recurring trigger, None for on-demand only.
        interval_minutes: Fixed-interval trigger, used instead of cron.
        entity_type: Entity type whose run rows indicate this queue is busy.
    """

    queue: str
    runner: JobRunner
    cron: str | None = None
    interval_minutes: int | None = None
    entity_type: EntityType | None = None


class SyncRegistry:
    """Explicit queue -> JobSpec map, built at startup."""

    def __init__(self) -> None:
        self._specs: dict[str, JobSpec] = {}

    def register(self, spec: JobSpec) -> None:
        if spec.queue in self._specs:
            raise ValueError(f"Queue already registered: {spec.queue}")
        self._specs[spec.queue] = spec
        logger.info(
            "orchestrator.job_registered",
            queue=spec.queue,
            cron=spec.cron,
            interval_minutes=spec.interval_minutes,
        )

    def get(self, queue: str) -> JobSpec:
        try:
            return self._specs[queue]
        except KeyError:
            raise UnknownQueueError(queue) from None

    @property
    def queues(self) -> list[str]:
        return list(self._specs)

    def __contains__(self, queue: object) -> bool:
        return queue in self._specs

    def __len__(self) -> int:
        return len(self._specs)


@dataclass
class _QueueState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    paused: bool = False
    active: JobHandle | None = None
    pending: dict[str, JobHandle] = field(default_factory=dict)
    waiting_manual: str | None = None
    completed: int = 0
    failed: int = 0
    last_run_at: datetime | None = None


# ── Orchestrator ────────────────────────────────────────────────────────────


class SyncOrchestrator:
    """Schedules, triggers and serialises sync jobs.

    Args:
        registry: Queue -> JobSpec map.
        runs: Run service, used to detect runs active in other processes.
        redis: Optional Redis client for cross-process single-flight keys.
        lock_ttl_seconds: Expiry of the Redis key, bounds a crashed holder.
        scheduler_enabled: Register recurring triggers on start().
    """

    def __init__(
        self,
        registry: SyncRegistry,
        runs: SyncRunService,
        redis: aioredis.Redis | None = None,
        lock_ttl_seconds: int = 3600,
        scheduler_enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._runs = runs
        self._redis = redis
        self._lock_ttl = lock_ttl_seconds
        self._scheduler_enabled = scheduler_enabled
        self._scheduler: AsyncIOScheduler | None = None
        self._states: dict[str, _QueueState] = {q: _QueueState() for q in registry.queues}
        self._tasks: set[asyncio.Task] = set()

    @property
    def registry(self) -> SyncRegistry:
        return self._registry

    @property
    def scheduler_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _state(self, queue: str) -> _QueueState:
        self._registry.get(queue)
        return self._states.setdefault(queue, _QueueState())

    # ── Scheduler ───────────────────────────────────────────────────────

    def start(self) -> bool:
        """Register recurring triggers and start the scheduler.

        Returns False when scheduling is disabled.
        """
        if not self._scheduler_enabled:
            logger.info("orchestrator.scheduler_disabled")
            return False

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        for queue in self._registry.queues:
            spec = self._registry.get(queue)
            if spec.cron:
                trigger = CronTrigger.from_crontab(spec.cron, timezone="UTC")
            elif spec.interval_minutes:
                trigger = IntervalTrigger(minutes=spec.interval_minutes, timezone="UTC")
            else:
                continue
            self._scheduler.add_job(
                self._scheduled,
                trigger=trigger,
                args=[queue],
                id=f"sync_{queue}",
                name=f"Scheduled {queue} sync",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
            )
        self._scheduler.start()
        logger.info(
            "orchestrator.started",
            jobs=[job.id for job in self._scheduler.get_jobs()],
        )
        return True

    async def stop(self) -> None:
        """Stop the scheduler and cancel jobs still waiting or running."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("orchestrator.stopped", cancelled=len(tasks))

    async def _scheduled(self, queue: str) -> None:
        state = self._state(queue)
        if state.paused:
            logger.info("orchestrator.scheduled_skipped_paused", queue=queue)
            return
        if state.lock.locked():
            logger.info("orchestrator.run_skipped_in_flight", queue=queue, source="schedule")
            return
        handle = JobHandle(
            job_id=f"scheduled_{queue}_{uuid.uuid4().hex[:12]}", queue=queue, status="running"
        )
        await self._execute(queue, handle, SyncOptions(), raise_errors=False)

    # ── Triggers ────────────────────────────────────────────────────────

    def trigger(
        self,
        queue: str,
        options: SyncOptions | None = None,
        job_key: str | None = None,
    ) -> JobHandle:
        """Start a job in the background.

        Args:
            queue: Registered queue name.
            options: Options passed to the runner.
            job_key: Stable dedup key; ``manual_<uuid>`` is used when omitted.

        Returns:
            JobHandle with status ``running`` (started now), ``queued``
            (waiting behind the active run) or ``deduplicated`` (an equal
            job is already queued or running; its id is returned).

        Raises:
            UnknownQueueError: Queue is not registered.
            QueuePausedError: Queue is paused.
        """
        state = self._state(queue)
        if state.paused:
            raise QueuePausedError(queue)

        if job_key is not None:
            existing = state.pending.get(job_key)
            if existing is None and state.active is not None and state.active.job_id == job_key:
                existing = state.active
            if existing is not None:
                logger.info("orchestrator.deduplicated", queue=queue, job_id=job_key)
                return JobHandle(job_id=existing.job_id, queue=queue, status="deduplicated")

        busy = state.lock.locked() or state.active is not None or bool(state.pending)
        if busy and job_key is None and state.waiting_manual is not None:
            logger.info("orchestrator.deduplicated", queue=queue, job_id=state.waiting_manual)
            return JobHandle(job_id=state.waiting_manual, queue=queue, status="deduplicated")

        job_id = job_key or f"manual_{uuid.uuid4()}"
        handle = JobHandle(job_id=job_id, queue=queue, status="queued" if busy else "running")
        state.pending[job_id] = handle
        if busy and job_key is None:
            state.waiting_manual = job_id

        task = asyncio.create_task(
            self._execute(queue, handle, options or SyncOptions(), raise_errors=False),
            name=f"sync-{queue}-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("orchestrator.triggered", queue=queue, job_id=job_id, status=handle.status)
        return handle

    def trigger_repair(self, entity_type: EntityType, source_id: str) -> JobHandle:
        """Single-entity sync, deduplicated by ``repair-<type>-<id>``."""
        return self.trigger(
            entity_type.value,
            SyncOptions(source_id=source_id),
            job_key=f"repair-{entity_type.value}-{source_id}",
        )

    async def run_now(self, queue: str, options: SyncOptions | None = None) -> Any:
        """Run a job in the foreground and return the runner's result.

        Waits for an active run of the same queue; errors propagate.
        """
        state = self._state(queue)
        if state.paused:
            raise QueuePausedError(queue)
        handle = JobHandle(job_id=f"manual_{uuid.uuid4()}", queue=queue, status="running")
        return await self._execute(queue, handle, options or SyncOptions(), raise_errors=True)

    # ── Execution ───────────────────────────────────────────────────────

    async def _execute(
        self, queue: str, handle: JobHandle, options: SyncOptions, *, raise_errors: bool
    ) -> Any:
        spec = self._registry.get(queue)
        state = self._state(queue)
        log = logger.bind(queue=queue, job_id=handle.job_id)
        result: Any = None

        async with state.lock:
            state.pending.pop(handle.job_id, None)
            if state.waiting_manual == handle.job_id:
                state.waiting_manual = None
            if state.paused:
                log.info("orchestrator.run_skipped_paused")
                return None

            state.active = handle.model_copy(update={"status": "running"})
            redis_key = f"sync:lock:{queue}"
            acquired = await self._acquire(redis_key, handle.job_id)
            try:
                if not acquired:
                    log.info("orchestrator.run_skipped_in_flight", holder="other_process")
                    return None
                if spec.entity_type is not None:
                    # A crashed process leaves a silent `running` row behind
                    reclaimed = await self._runs.cleanup_stale_runs()
                    if reclaimed:
                        log.info("orchestrator.stale_runs_reclaimed", count=reclaimed)
                    active = await self._runs.active_run(spec.entity_type)
                    if active is not None:
                        log.info("orchestrator.run_skipped_in_flight", run_id=active.id)
                        return None

                log.info("orchestrator.job_started")
                result = await spec.runner(
                    options.model_copy(update={"job_id": handle.job_id}),
                    lambda: state.paused,
                )
                state.completed += 1
                log.info("orchestrator.job_completed")
            except asyncio.CancelledError:
                log.warning("orchestrator.job_cancelled")
                raise
            except Exception as exc:
                state.failed += 1
                log.error("orchestrator.job_failed", error=str(exc), exc_info=True)
                if raise_errors:
                    raise
            finally:
                if acquired:
                    await self._release(redis_key, handle.job_id)
                state.active = None
                state.last_run_at = utcnow()
        return result

    async def _acquire(self, key: str, job_id: str) -> bool:
        if self._redis is None:
            return True
        try:
            return bool(await self._redis.set(key, job_id, nx=True, ex=self._lock_ttl))
        except RedisError as exc:
            # Fall back to the in-process lock and the run-row check
            logger.warning("orchestrator.redis_unavailable", key=key, error=str(exc))
            return True

    async def _release(self, key: str, job_id: str) -> None:
        if self._redis is None:
            return
        try:
            released = await self._redis.eval(RELEASE_LOCK_SCRIPT, 1, key, job_id)
            if not released:
                logger.warning("orchestrator.redis_lock_lost", key=key, job_id=job_id)
        except RedisError as exc:
            logger.warning("orchestrator.redis_release_failed", key=key, error=str(exc))

    # ── Pause / Resume ──────────────────────────────────────────────────

    def pause(self, queue: str | None = None) -> list[str]:
        """Pause one queue, or every queue when none is given."""
        queues = [queue] if queue else self._registry.queues
        for name in queues:
            self._state(name).paused = True
        logger.info("orchestrator.paused", queues=queues)
        return queues

    def resume(self, queue: str | None = None) -> list[str]:
        queues = [queue] if queue else self._registry.queues
        for name in queues:
            self._state(name).paused = False
        logger.info("orchestrator.resumed", queues=queues)
        return queues

    def is_paused(self, queue: str) -> bool:
        return self._state(queue).paused

    # ── Status ──────────────────────────────────────────────────────────

    def status(self) -> QueueStatus:
        """Per-queue counters plus totals across queues."""
        status = QueueStatus(scheduler_running=self.scheduler_running)
        totals = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "paused": 0}
        for queue in self._registry.queues:
            state = self._state(queue)
            next_run_at = None
            if self._scheduler is not None:
                job = self._scheduler.get_job(f"sync_{queue}")
                next_run_at = getattr(job, "next_run_time", None) if job else None
            stats = QueueStats(
                queue=queue,
                waiting=sum(1 for h in state.pending.values() if h.status == "queued"),
                active=1 if state.active is not None else 0,
                completed=state.completed,
                failed=state.failed,
                paused=state.paused,
                last_run_at=state.last_run_at,
                next_run_at=next_run_at,
            )
            status.queues[queue] = stats
            totals["waiting"] += stats.waiting
            totals["active"] += stats.active
            totals["completed"] += stats.completed
            totals["failed"] += stats.failed
            totals["paused"] += int(stats.paused)
        status.totals = totals
        return status


# ── Registry Assembly ───────────────────────────────────────────────────────


def build_registry(
    worker: SyncWorker,
    auditor: ReconciliationAuditor,
    sweeper: AutoRetrySweeper,
    runs: SyncRunService,
    inbound: InboundContactSync | None = None,
    crons: dict[str, str] | None = None,
    stale_run_timeout_minutes: int = 5,
) -> SyncRegistry:
    """One JobSpec per entity type, plus audit, auto-retry, janitor and inbound.

    Args:
        worker: SyncWorker; each of its entity types gets a queue.
        auditor: ReconciliationAuditor for the audit queue.
        sweeper: AutoRetrySweeper for the auto-retry queue.
        runs: Run service for the janitor queue.
        inbound: InboundContactSync, on-demand only.
        crons: Overrides for DEFAULT_CRONS, keyed by queue.
    """
    schedule = {**DEFAULT_CRONS, **(crons or {})}
    registry = SyncRegistry()

    def _entity_runner(entity_type: EntityType) -> JobRunner:
        async def _run(options: SyncOptions, is_paused: PauseCheck) -> Any:
            return await worker.run(entity_type, options, is_paused=is_paused)

        return _run

    for entity_type in worker.entity_types:
        registry.register(
            JobSpec(
                queue=entity_type.value,
                runner=_entity_runner(entity_type),
                cron=schedule.get(entity_type.value),
                entity_type=entity_type,
            )
        )

    async def _audit(options: SyncOptions, is_paused: PauseCheck) -> Any:
        return await auditor.run_full_audit()

    async def _auto_retry(options: SyncOptions, is_paused: PauseCheck) -> Any:
        return await sweeper.run()

    async def _janitor(options: SyncOptions, is_paused: PauseCheck) -> Any:
        return await runs.cleanup_stale_runs(stale_run_timeout_minutes)

    registry.register(JobSpec(queue=AUDIT_QUEUE, runner=_audit, cron=schedule.get(AUDIT_QUEUE)))
    registry.register(
        JobSpec(
            queue=AUTO_RETRY_QUEUE,
            runner=_auto_retry,
            interval_minutes=AUTO_RETRY_INTERVAL_MINUTES,
        )
    )
    registry.register(
        JobSpec(queue=JANITOR_QUEUE, runner=_janitor, interval_minutes=JANITOR_INTERVAL_MINUTES)
    )

    if inbound is not None:
        async def _inbound(options: SyncOptions, is_paused: PauseCheck) -> Any:
            return await inbound.run(job_id=options.job_id, max_records=options.max_records or 0)

        registry.register(JobSpec(queue=INBOUND_QUEUE, runner=_inbound))

    return registry
