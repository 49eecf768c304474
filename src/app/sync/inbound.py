"""GHL -> Phorest contact sync.

The reverse direction for clients: contacts created or edited in GHL are
written back to Phorest. The Phorest client is resolved through the
mapping store first, then the ``phorest_id`` custom field, then a lookup
by email and phone; unresolved contacts become new Phorest clients.

Every contact is logged under a run with direction ``ghl_to_phorest``.
Failed contacts go to the failure ledger keyed ``client_inbound`` and the
GHL contact id; a later success for the same contact resolves them.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from src.app.core.monitoring import sync_records_total, track_sync_run
from src.app.sync.handlers import failure_from
from src.app.sync.mapping import MappingStore
from src.app.sync.models import utcnow
from src.app.sync.remote.adapter import DestinationClient, RemoteAPIError, SourceClient
from src.app.sync.runs import LOG_STATUS, SyncRunService, run_counts
from src.app.sync.schemas import (
    EntityType,
    LogAction,
    OutcomeKind,
    RunHandle,
    SyncDirection,
    SyncOutcome,
    SyncRunResult,
)
from src.app.sync.transform import (
    STAFF_TAGS,
    contact_to_phorest_client,
    contact_to_phorest_update,
    custom_field_value,
    sanitize_email,
    sanitize_phone,
    should_sync_contact,
)

if TYPE_CHECKING:
    from src.app.sync.ledger import FailureLedger

logger = structlog.get_logger(__name__)

INBOUND_QUEUE = "client_inbound"


class InboundContactSync:
    """Pushes GHL contacts back into Phorest as clients.

    Args:
        source: Phorest client.
        dest: GHL client.
        mappings: Identity mapping store (client mappings are shared with
            the outbound direction).
        runs: Run / log item service.
        page_size: Contacts fetched per GHL page.
        dry_run: Resolve and log only, no Phorest or mapping writes.
        ledger: Failure ledger; failed contacts are reported under the
            ``client_inbound`` key so auto-retry and the error stats see them.
    """

    def __init__(
        self,
        source: SourceClient,
        dest: DestinationClient,
        mappings: MappingStore,
        runs: SyncRunService,
        page_size: int = 100,
        dry_run: bool = False,
        ledger: FailureLedger | None = None,
    ) -> None:
        self._source = source
        self._dest = dest
        self._mappings = mappings
        self._runs = runs
        self._page_size = page_size
        self._dry_run = dry_run
        self._ledger = ledger

    async def run(self, job_id: str | None = None, max_records: int = 0) -> SyncRunResult:
        """Page through every GHL contact and sync it to Phorest."""
        handle = await self._runs.create_run(
            EntityType.CLIENT, SyncDirection.GHL_TO_PHOREST, job_id
        )
        result = SyncRunResult(entity_type=EntityType.CLIENT, run_id=handle.run_id)

        async with track_sync_run(INBOUND_QUEUE) as tracker:
            try:
                cursor: str | None = None
                done = False
                while not done:
                    page = await self._dest.list_contacts(cursor, self._page_size)
                    for contact in page.contacts:
                        if max_records and result.total_processed >= max_records:
                            break
                        outcome = await self._sync_contact(contact, handle)
                        self._count(result, contact, outcome)
                    await self._runs.update_progress(handle.run_id, run_counts(result))
                    cursor = page.next_cursor
                    done = not cursor or bool(
                        max_records and result.total_processed >= max_records
                    )

                status = await self._runs.complete_run(
                    handle.run_id,
                    run_counts(result),
                    last_error=result.errors[-1]["error"] if result.errors else None,
                )
                tracker["status"] = status.value
            except Exception as exc:
                logger.error("inbound.run_failed", run_id=handle.run_id, error=str(exc))
                await self._runs.fail_run(handle.run_id, str(exc) or type(exc).__name__)
                raise

        logger.info(
            "inbound.run_completed",
            run_id=handle.run_id,
            total=result.total_processed,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    async def sync_single_contact(self, contact_id: str, job_id: str | None = None) -> SyncOutcome:
        """Sync one contact by id, e.g. from a GHL webhook."""
        handle = await self._runs.create_run(
            EntityType.CLIENT, SyncDirection.GHL_TO_PHOREST, job_id
        )
        result = SyncRunResult(entity_type=EntityType.CLIENT, run_id=handle.run_id)
        try:
            contact = await self._dest.get_contact(contact_id)
            outcome = await self._sync_contact(contact, handle)
        except Exception as exc:
            await self._runs.fail_run(handle.run_id, str(exc) or type(exc).__name__)
            raise
        self._count(result, contact, outcome)
        last_error = outcome.reason if outcome.kind == OutcomeKind.FAILED else None
        await self._runs.complete_run(handle.run_id, run_counts(result), last_error=last_error)
        return outcome

    @staticmethod
    def _count(result: SyncRunResult, contact: dict[str, Any], outcome: SyncOutcome) -> None:
        result.record(outcome)
        if outcome.kind == OutcomeKind.FAILED and len(result.errors) < 10:
            result.errors.append({"source_id": str(contact.get("id")), "error": outcome.reason or ""})

    # ── Per Contact ─────────────────────────────────────────────────────

    async def _resolve_client(self, contact: dict[str, Any]) -> dict[str, Any] | None:
        """Current Phorest client for a contact, or None."""
        contact_id = str(contact.get("id"))
        candidates = [
            await self._mappings.get_source_id(EntityType.CLIENT, contact_id),
            custom_field_value(contact, "phorest_id"),
        ]
        for client_id in candidates:
            if client_id:
                client = await self._source.get_by_id(EntityType.CLIENT, str(client_id))
                if client is not None:
                    return client

        email = sanitize_email(contact.get("email"))
        if email:
            client = await self._source.find_client(email=email)
            if client is not None:
                return client
        phone = sanitize_phone(contact.get("phone"))
        if phone:
            return await self._source.find_client(phone=phone)
        return None

    async def _sync_contact(self, contact: dict[str, Any], handle: RunHandle) -> SyncOutcome:
        started_at = utcnow()
        contact_id = str(contact.get("id") or "")
        action = LogAction.UPDATE
        try:
            if not contact_id or not should_sync_contact(contact):
                outcome = SyncOutcome.skipped("Contact has no name")
            elif set(STAFF_TAGS) & set(contact.get("tags") or []):
                outcome = SyncOutcome.skipped("Staff contact")
            else:
                existing = await self._resolve_client(contact)
                action = LogAction.UPDATE if existing else LogAction.CREATE
                outcome = await self._write_client(contact, existing)
        except RemoteAPIError as exc:
            outcome = failure_from(exc, action)

        sync_records_total.labels(entity_type=INBOUND_QUEUE, outcome=outcome.kind.value).inc()
        if outcome.kind == OutcomeKind.FAILED:
            logger.warning(
                "inbound.contact_failed",
                contact_id=contact_id,
                error=outcome.reason,
                error_code=outcome.error_code,
            )
        await self._settle(contact_id, outcome)
        await self._runs.log_item(
            handle,
            EntityType.CLIENT,
            contact_id or None,
            outcome.action or action,
            LOG_STATUS[outcome.kind],
            direction=SyncDirection.GHL_TO_PHOREST,
            error_code=outcome.error_code,
            error_message=outcome.reason if outcome.kind != OutcomeKind.CREATED else None,
            source_data=contact,
            target_data=outcome.target_data,
            response_data=outcome.response_data,
            started_at=started_at,
        )
        return outcome

    async def _write_client(
        self, contact: dict[str, Any], existing: dict[str, Any] | None
    ) -> SyncOutcome:
        contact_id = str(contact["id"])
        if existing is not None:
            client_id = str(existing["clientId"])
            body = contact_to_phorest_update(contact, existing)
            if self._dry_run:
                return SyncOutcome.updated(client_id, target_data=body)
            await self._source.update_client(client_id, body)
            await self._link(client_id, contact_id)
            return SyncOutcome.updated(client_id, target_data=body)

        body = contact_to_phorest_client(contact)
        if self._dry_run:
            return SyncOutcome.created(f"mock-{contact_id}", target_data=body)
        created = await self._source.create_client(body)
        client_id = created.get("clientId")
        if not client_id:
            return SyncOutcome.failed("Phorest returned no client id", action=LogAction.CREATE)
        await self._link(str(client_id), contact_id)
        return SyncOutcome.created(str(client_id), target_data=body)

    async def _link(self, client_id: str, contact_id: str) -> None:
        await self._mappings.upsert(
            EntityType.CLIENT,
            client_id,
            contact_id,
            json.dumps(
                {"direction": SyncDirection.GHL_TO_PHOREST.value, "syncedAt": utcnow().isoformat()}
            ),
        )

    async def _settle(self, contact_id: str, outcome: SyncOutcome) -> None:
        if self._ledger is None or self._dry_run or not contact_id:
            return
        if outcome.kind == OutcomeKind.FAILED:
            await self._ledger.report(
                INBOUND_QUEUE, contact_id, outcome.reason or "Unknown error", outcome.error_code
            )
        elif outcome.settles:
            await self._ledger.resolve_for_entity(INBOUND_QUEUE, contact_id)
