"""Inline dependency repair.

When a record references a parent that has no mapping yet (an appointment
whose client was never pushed), the worker calls InlineRepair.repair() to
stage and sync the parent on the spot instead of skipping the record.

Attempts are bounded per parent. The attempt state lives in the staged
row's ``last_sync_error`` as ``REPAIR_ATTEMPT:<count>:<epoch_ms>``, ahead of
any error message. Failing the row keeps the marker, so batch runs and
retries in between do not reset the count; only a successful sync clears
it. Once the count reaches the maximum, further repairs fail fast until
the cooldown has elapsed, after which the counter starts again.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable

import structlog

from src.app.core.monitoring import sync_repairs_total
from src.app.sync.mapping import MappingStore
from src.app.sync.remote.adapter import RemoteAPIError
from src.app.sync.repository import (
    REPAIR_ATTEMPT_PREFIX,
    StagedRepository,
    split_repair_marker,
)
from src.app.sync.schemas import EntityType, RepairResult, SyncOutcome

logger = structlog.get_logger(__name__)

SyncSingleFn = Callable[[EntityType, str], Awaitable[SyncOutcome]]
StageFn = Callable[[str], Awaitable[bool]]


def parse_repair_attempt(error: str | None) -> tuple[int, int | None]:
    """(count, attempted_at_ms) from a staged row's error field.

    Any other error text means no repair has been attempted.
    """
    marker, _ = split_repair_marker(error)
    if marker is None:
        return 0, None
    parts = marker[len(REPAIR_ATTEMPT_PREFIX):].split(":")
    try:
        count = int(parts[0])
        attempted_at = int(parts[1]) if len(parts) > 1 else None
    except ValueError:
        return 0, None
    return count, attempted_at


class InlineRepair:
    """Stage and sync a missing parent record inside the current run.

    Args:
        repository: Staged entity repository.
        mappings: Identity mapping store.
        sync_single: The worker's single-record path.
        stagers: entity type -> coroutine that fetches one record into
            staging. Only these types can be repaired.
        max_attempts: Attempts allowed before the cooldown applies.
        cooldown_hours: Fail-fast window after the last allowed attempt.
    """

    def __init__(
        self,
        repository: StagedRepository,
        mappings: MappingStore,
        sync_single: SyncSingleFn,
        stagers: dict[EntityType, StageFn],
        max_attempts: int = 3,
        cooldown_hours: int = 24,
    ) -> None:
        self._repo = repository
        self._mappings = mappings
        self._sync_single = sync_single
        self._stagers = stagers
        self._max_attempts = max_attempts
        self._cooldown_ms = cooldown_hours * 3600 * 1000
        self._locks: dict[tuple[EntityType, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[EntityType, str], int] = {}

    @property
    def repairable_types(self) -> set[EntityType]:
        return set(self._stagers)

    async def repair(self, entity_type: EntityType, source_id: str) -> RepairResult:
        """Make sure ``source_id`` is mapped, syncing it if needed.

        Concurrent repairs of the same record are serialised; the second
        caller sees the mapping written by the first.
        """
        if entity_type not in self._stagers:
            return RepairResult(
                success=False, reason=f"Repair not supported for {entity_type.value}"
            )
        key = (entity_type, source_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                result = await self._repair(entity_type, source_id)
        finally:
            # Last holder or waiter out drops the lock
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]
        sync_repairs_total.labels(result="success" if result.success else "failed").inc()
        return result

    async def _repair(self, entity_type: EntityType, source_id: str) -> RepairResult:
        log = logger.bind(entity_type=entity_type.value, source_id=source_id)

        staged = await self._repo.get(entity_type, source_id)
        if staged is None:
            try:
                await self._stagers[entity_type](source_id)
            except RemoteAPIError as exc:
                log.warning("repair.stage_failed", error=exc.message, code=exc.code)
                return RepairResult(success=False, reason=f"Phorest lookup failed: {exc.message}")
            staged = await self._repo.get(entity_type, source_id)
            if staged is None:
                return RepairResult(
                    success=False,
                    reason=f"{entity_type.value.capitalize()} not found in Phorest",
                )

        dest_id = await self._mappings.get_dest_id(entity_type, source_id)
        if dest_id is not None:
            return RepairResult(success=True, dest_id=dest_id)

        now_ms = int(time.time() * 1000)
        count, attempted_at = parse_repair_attempt(staged.last_sync_error)
        if count >= self._max_attempts:
            elapsed = now_ms - attempted_at if attempted_at is not None else self._cooldown_ms
            if elapsed < self._cooldown_ms:
                hours_left = math.ceil((self._cooldown_ms - elapsed) / 3_600_000)
                log.info("repair.cooldown", attempts=count, hours_left=hours_left)
                return RepairResult(
                    success=False,
                    reason=(
                        f"Max repair attempts ({self._max_attempts}) reached, "
                        f"cooldown {hours_left}h remaining"
                    ),
                )
            count = 0

        attempt = count + 1
        await self._repo.set_repair_attempt(entity_type, source_id, attempt, now_ms)
        log.info("repair.attempt", attempt=attempt, max_attempts=self._max_attempts)

        outcome = await self._sync_single(entity_type, source_id)
        if outcome.is_success and outcome.dest_id:
            await self._repo.clear_error(entity_type, source_id)
            log.info("repair.succeeded", dest_id=outcome.dest_id, attempt=attempt)
            return RepairResult(success=True, dest_id=outcome.dest_id, attempted=True)

        log.warning("repair.failed", attempt=attempt, reason=outcome.reason)
        return RepairResult(
            success=False,
            reason=outcome.reason or "Repair did not produce a mapping",
            attempted=True,
        )
