"""Per-entity sync handlers.

Each handler owns the entity-specific part of the shared worker algorithm:
its import step, its candidate window, and ``process()`` which turns one
staged record into a SyncOutcome. Handlers never raise for expected
conditions (deleted, unmapped dependency, stale mapping); an unexpected
RemoteAPIError propagates to the worker, which records it as Failed.

Handlers are registered on the SyncWorker by entity type. Dependencies are
passed explicitly through HandlerDeps; the worker passes a RunContext per
run carrying the inline repair callable.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.app.sync.importer import StagingImporter
from src.app.sync.mapping import MappingStore
from src.app.sync.remote.adapter import (
    DestinationClient,
    RemoteAPIError,
    SourceClient,
    classify_error,
)
from src.app.sync.repository import StagedRepository
from src.app.sync.schemas import (
    EntityType,
    ErrorClass,
    ImportResult,
    LogAction,
    MappingRead,
    RepairResult,
    RunHandle,
    StagedRecord,
    SyncOptions,
    SyncOutcome,
)
from src.app.sync.transform import (
    CANCELLED_STATUS,
    TAG_BANNED,
    TAG_DELETED,
    appointment_to_event,
    appointment_update_payload,
    checkin_note,
    client_to_contact,
    contact_update_payload,
    loyalty_custom_fields,
    product_tags,
    product_to_product,
    retire_tags,
    should_sync_client,
    staff_display_name,
    staff_to_contact,
)

logger = structlog.get_logger(__name__)

RepairFn = Callable[[EntityType, str], Awaitable[RepairResult]]


# ── Shared Types ────────────────────────────────────────────────────────────


@dataclass
class HandlerDeps:
    """Collaborators shared by every handler."""

    source: SourceClient
    dest: DestinationClient
    mappings: MappingStore
    repository: StagedRepository
    location_id: str
    calendar_id: str = ""
    assigned_user_id: str | None = None
    dry_run: bool = False


@dataclass
class RunContext:
    """Per-run state handed to process().

    Attributes:
        handle: Run the record is processed under (None for ad-hoc calls).
        repair: Inline dependency repair, resolves a missing mapping.
        clients_repaired: Clients created through repair during this run.
    """

    handle: RunHandle | None
    repair: RepairFn
    clients_repaired: int = 0


def failure_from(exc: RemoteAPIError, action: LogAction) -> SyncOutcome:
    """Failed outcome for a remote error, classified by its code."""
    return SyncOutcome.failed(
        exc.message,
        error_code=exc.code,
        error_class=classify_error(exc.code),
        action=action,
        response_data=exc.response_data if isinstance(exc.response_data, dict) else None,
    )


def _metadata(**values: Any) -> str:
    return json.dumps(values, default=str)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _resource_id(response: dict[str, Any]) -> str | None:
    value = response.get("id") or response.get("_id")
    return str(value) if value else None


async def load_custom_field_ids(dest: DestinationClient) -> dict[str, str]:
    """GHL custom field key -> id, keys without the ``contact.`` prefix.

    Returns an empty map when the fields cannot be listed; contacts are
    then written without custom fields.
    """
    try:
        fields = await dest.list_custom_fields()
    except RemoteAPIError as exc:
        logger.warning("handler.custom_fields_unavailable", error=exc.message)
        return {}
    ids: dict[str, str] = {}
    for field in fields:
        key = field.get("fieldKey") or ""
        if key.startswith("contact."):
            key = key[len("contact."):]
        if key and field.get("id"):
            ids[key] = field["id"]
    return ids


# ── Base Handler ────────────────────────────────────────────────────────────


class EntityHandler(ABC):
    """Entity-specific half of the sync worker.

    Subclasses set ``entity_type`` and implement ``process``. Override
    ``import_step`` when the type is staged by its own import,
    ``candidate_window`` to restrict candidates by event date, and
    ``prepare`` to load per-run lookup data.
    """

    entity_type: EntityType
    repairable: bool = False

    def __init__(self, deps: HandlerDeps) -> None:
        self._deps = deps
        self._prepared = False
        self._log = logger.bind(entity_type=self.entity_type.value)

    @property
    def dry_run(self) -> bool:
        return self._deps.dry_run

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        return None

    def candidate_window(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        return None, None

    async def prepare(self) -> None:
        return None

    async def ensure_prepared(self, refresh: bool = False) -> None:
        """Run prepare() once, or again when ``refresh`` is set."""
        if refresh or not self._prepared:
            await self.prepare()
            self._prepared = True

    @abstractmethod
    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        """Push one staged record to GHL and return the outcome."""
        ...

    def mock(self, record: StagedRecord, mapping: MappingRead | None = None) -> SyncOutcome:
        """Dry-run outcome; no destination or mapping writes happen."""
        if mapping is not None:
            return SyncOutcome.updated(mapping.dest_id)
        return SyncOutcome.created(f"mock-{record.source_id}")

    async def _drop_stale(self, source_id: str, dest_id: str) -> None:
        self._log.warning("handler.stale_mapping", source_id=source_id, dest_id=dest_id)
        await self._deps.mappings.delete(self.entity_type, source_id)


# ── Client ──────────────────────────────────────────────────────────────────


class ClientHandler(EntityHandler):
    """Phorest client -> GHL contact."""

    entity_type = EntityType.CLIENT
    repairable = True

    def __init__(self, deps: HandlerDeps) -> None:
        super().__init__(deps)
        self._category_map: dict[str, str] = {}
        self._field_ids: dict[str, str] = {}

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        if options.source_id:
            await importer.import_single_client(options.source_id)
            return None
        return await importer.import_clients(max_records=options.max_records or 0)

    async def prepare(self) -> None:
        try:
            categories = await self._deps.source.list_client_categories()
        except RemoteAPIError as exc:
            self._log.warning("client.categories_unavailable", error=exc.message)
            categories = []
        self._category_map = {
            str(c["clientCategoryId"]): c.get("name") or ""
            for c in categories
            if c.get("clientCategoryId") and c.get("name")
        }
        self._field_ids = await load_custom_field_ids(self._deps.dest)

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        client = record.payload
        mapping = await self._deps.mappings.find_by_source_id(EntityType.CLIENT, record.source_id)

        if record.deleted or client.get("deleted"):
            if mapping is None:
                return SyncOutcome.skipped("Deleted in Phorest and never synced")
            return await self._retire(record, mapping, TAG_DELETED)
        if client.get("banned"):
            if mapping is None:
                return SyncOutcome.skipped("Banned in Phorest and never synced")
            return await self._retire(record, mapping, TAG_BANNED, dnd=True)

        if not should_sync_client(client):
            return SyncOutcome.skipped("No name or valid email/phone")
        if mapping is not None and not record.needs_sync:
            return SyncOutcome.skipped("Unchanged since last sync", dest_id=mapping.dest_id)

        contact = client_to_contact(
            client, self._deps.location_id, self._category_map, self._field_ids
        )
        if self.dry_run:
            return self.mock(record, mapping)

        if mapping is not None:
            try:
                await self._deps.dest.update_contact(
                    mapping.dest_id, contact_update_payload(contact)
                )
            except RemoteAPIError as exc:
                if not exc.is_not_found:
                    return self._contact_error(exc, LogAction.UPDATE)
                await self._drop_stale(record.source_id, mapping.dest_id)
                mapping = None
            else:
                await self._write_mapping(record, mapping.dest_id, contact)
                return SyncOutcome.updated(mapping.dest_id, target_data=contact)

        try:
            if contact.get("email") or contact.get("phone"):
                response = await self._deps.dest.upsert_contact(contact)
            else:
                response = await self._deps.dest.create_contact(contact)
        except RemoteAPIError as exc:
            return self._contact_error(exc, LogAction.CREATE)

        contact_id = _resource_id(response)
        if contact_id is None:
            return SyncOutcome.failed("GHL returned no contact id", action=LogAction.CREATE)
        await self._write_mapping(record, contact_id, contact)
        return SyncOutcome.created(contact_id, target_data=contact)

    def _contact_error(self, exc: RemoteAPIError, action: LogAction) -> SyncOutcome:
        # 422 is GHL's duplicate/conflict answer; the contact exists upstream
        if exc.status_code == 422:
            return SyncOutcome.skipped(
                f"GHL rejected contact: {exc.message}",
                error_code="422",
                action=action,
                deferred=True,
            )
        return failure_from(exc, action)

    async def _retire(
        self, record: StagedRecord, mapping: MappingRead, tag: str, *, dnd: bool = False
    ) -> SyncOutcome:
        if self.dry_run:
            return self.mock(record, mapping)
        try:
            contact = await self._deps.dest.get_contact(mapping.dest_id)
        except RemoteAPIError as exc:
            if exc.is_not_found:
                await self._drop_stale(record.source_id, mapping.dest_id)
                return SyncOutcome.skipped("Contact no longer exists in GHL")
            return failure_from(exc, LogAction.UPDATE)

        tags = retire_tags(contact.get("tags") or [], tag)
        if tags is None:
            return SyncOutcome.skipped(f"Already tagged {tag}", dest_id=mapping.dest_id)
        body: dict[str, Any] = {"tags": tags}
        if dnd:
            body["dnd"] = True
        await self._deps.dest.update_contact(mapping.dest_id, body)
        self._log.info("client.retired", source_id=record.source_id, tag=tag)
        return SyncOutcome.updated(mapping.dest_id, target_data=body)

    async def _write_mapping(
        self, record: StagedRecord, contact_id: str, contact: dict[str, Any]
    ) -> None:
        await self._deps.mappings.upsert(
            EntityType.CLIENT,
            record.source_id,
            contact_id,
            _metadata(
                phorestName=contact.get("name"),
                ghlEmail=contact.get("email"),
                syncedAt=_now_iso(),
            ),
        )


# ── Staff ───────────────────────────────────────────────────────────────────


class StaffHandler(EntityHandler):
    """Phorest staff member -> GHL contact tagged as staff."""

    entity_type = EntityType.STAFF

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        return await importer.import_staff(max_records=options.max_records or 0)

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        staff = record.payload
        if record.deleted or staff.get("deleted"):
            return SyncOutcome.skipped("Deleted in Phorest")

        contact = staff_to_contact(staff, self._deps.location_id)
        mapping = await self._deps.mappings.find_by_source_id(EntityType.STAFF, record.source_id)
        if self.dry_run:
            return self.mock(record, mapping)

        if mapping is not None:
            try:
                await self._deps.dest.update_contact(
                    mapping.dest_id, contact_update_payload(contact)
                )
            except RemoteAPIError as exc:
                if exc.status_code not in (400, 404):
                    return failure_from(exc, LogAction.UPDATE)
                await self._drop_stale(record.source_id, mapping.dest_id)
            else:
                await self._write_mapping(record, mapping.dest_id, staff)
                return SyncOutcome.updated(mapping.dest_id, target_data=contact)

        try:
            if contact.get("email") or contact.get("phone"):
                response = await self._deps.dest.upsert_contact(contact)
            else:
                response = await self._deps.dest.create_contact(contact)
        except RemoteAPIError as exc:
            return failure_from(exc, LogAction.CREATE)

        contact_id = _resource_id(response)
        if contact_id is None:
            return SyncOutcome.failed("GHL returned no contact id", action=LogAction.CREATE)
        await self._write_mapping(record, contact_id, staff)
        return SyncOutcome.created(contact_id, target_data=contact)

    async def _write_mapping(
        self, record: StagedRecord, contact_id: str, staff: dict[str, Any]
    ) -> None:
        await self._deps.mappings.upsert(
            EntityType.STAFF,
            record.source_id,
            contact_id,
            _metadata(
                phorestName=staff_display_name(staff),
                phorestEmail=staff.get("email"),
                ghlContactId=contact_id,
            ),
        )


# ── Appointment ─────────────────────────────────────────────────────────────


class AppointmentHandler(EntityHandler):
    """Phorest appointment -> GHL calendar event.

    The client is resolved through its mapping; an unmapped client is
    created on the spot through inline repair.
    """

    entity_type = EntityType.APPOINTMENT

    def __init__(self, deps: HandlerDeps, lookback_days: int = 60) -> None:
        super().__init__(deps)
        self._lookback_days = lookback_days

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        return await importer.import_appointments(max_records=options.max_records or 0)

    def candidate_window(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        return now - timedelta(days=self._lookback_days), None

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        appointment = record.payload
        if record.deleted or appointment.get("deleted"):
            return await self._cancel(record)
        client_id = appointment.get("clientId")
        if not client_id:
            return SyncOutcome.skipped("No client on appointment")
        client_id = str(client_id)

        contact_id = await self._deps.mappings.get_dest_id(EntityType.CLIENT, client_id)
        if contact_id is None:
            repair = await ctx.repair(EntityType.CLIENT, client_id)
            if not repair.success or not repair.dest_id:
                return SyncOutcome.skipped(
                    f"Client {client_id} not synced: {repair.reason}", deferred=True
                )
            contact_id = repair.dest_id
            if repair.attempted:
                ctx.clients_repaired += 1

        staff_name = None
        if appointment.get("staffId"):
            staff = await self._deps.repository.get(EntityType.STAFF, str(appointment["staffId"]))
            staff_name = staff_display_name(staff.payload if staff else None)

        event = appointment_to_event(
            appointment,
            contact_id,
            self._deps.calendar_id,
            self._deps.location_id,
            self._deps.assigned_user_id,
            staff_name,
        )
        if not event.get("startTime"):
            return SyncOutcome.failed(
                "Appointment has no start time",
                error_code="400",
                error_class=ErrorClass.VALIDATION,
                action=LogAction.CREATE,
            )

        mapping = await self._deps.mappings.find_by_source_id(
            EntityType.APPOINTMENT, record.source_id
        )
        if self.dry_run:
            return self.mock(record, mapping)

        if mapping is not None:
            try:
                await self._deps.dest.update_appointment(
                    mapping.dest_id, appointment_update_payload(event)
                )
            except RemoteAPIError as exc:
                if not exc.is_not_found:
                    return failure_from(exc, LogAction.UPDATE)
                await self._drop_stale(record.source_id, mapping.dest_id)
            else:
                await self._write_mapping(record, mapping.dest_id, client_id, contact_id)
                return SyncOutcome.updated(mapping.dest_id, target_data=event)

        try:
            response = await self._deps.dest.create_appointment(event)
        except RemoteAPIError as exc:
            return failure_from(exc, LogAction.CREATE)
        event_id = _resource_id(response)
        if event_id is None:
            return SyncOutcome.failed("GHL returned no appointment id", action=LogAction.CREATE)
        await self._write_mapping(record, event_id, client_id, contact_id)
        return SyncOutcome.created(event_id, target_data=event)

    async def _cancel(self, record: StagedRecord) -> SyncOutcome:
        """Mark the GHL event of a deleted appointment cancelled."""
        mapping = await self._deps.mappings.find_by_source_id(
            EntityType.APPOINTMENT, record.source_id
        )
        if mapping is None:
            return SyncOutcome.skipped("Deleted in Phorest and never synced")
        if self.dry_run:
            return self.mock(record, mapping)

        body = {"appointmentStatus": CANCELLED_STATUS}
        try:
            await self._deps.dest.update_appointment(mapping.dest_id, body)
        except RemoteAPIError as exc:
            if not exc.is_not_found:
                return failure_from(exc, LogAction.UPDATE)
            await self._drop_stale(record.source_id, mapping.dest_id)
            return SyncOutcome.skipped("Event no longer exists in GHL")
        self._log.info("appointment.cancelled", source_id=record.source_id, dest_id=mapping.dest_id)
        return SyncOutcome.updated(mapping.dest_id, target_data=body)

    async def _write_mapping(
        self, record: StagedRecord, event_id: str, client_id: str, contact_id: str
    ) -> None:
        await self._deps.mappings.upsert(
            EntityType.APPOINTMENT,
            record.source_id,
            event_id,
            _metadata(phorestClientId=client_id, ghlContactId=contact_id, syncedAt=_now_iso()),
        )


# ── Booking ─────────────────────────────────────────────────────────────────


class BookingHandler(EntityHandler):
    """Links a Phorest booking to the GHL event of its first synced appointment.

    No remote call; booking rows are derived during the appointment import.
    """

    entity_type = EntityType.BOOKING

    def __init__(self, deps: HandlerDeps, window_days: int = 30) -> None:
        super().__init__(deps)
        self._window_days = window_days

    def candidate_window(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        return now - timedelta(days=self._window_days), None

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        appointment_ids = [str(a) for a in record.payload.get("appointmentIds") or []]
        mapped = await self._deps.mappings.get_bulk(EntityType.APPOINTMENT, appointment_ids)
        first = next((a for a in appointment_ids if a in mapped), None)
        if first is None:
            return SyncOutcome.skipped(
                "No appointment of this booking is synced yet", deferred=True
            )

        existing = await self._deps.mappings.find_by_source_id(
            EntityType.BOOKING, record.source_id
        )
        if self.dry_run:
            return self.mock(record, existing)

        event_id = mapped[first]
        await self._deps.mappings.upsert(
            EntityType.BOOKING,
            record.source_id,
            event_id,
            _metadata(appointmentId=first, source="phorest"),
        )
        if existing is not None:
            return SyncOutcome.updated(event_id)
        return SyncOutcome.created(event_id)


# ── Product ─────────────────────────────────────────────────────────────────


class ProductHandler(EntityHandler):
    """Phorest product -> GHL product; unmapped products are linked by name first."""

    entity_type = EntityType.PRODUCT

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        return await importer.import_products(max_records=options.max_records or 0)

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        product = record.payload
        if record.deleted or product.get("deleted") or product.get("active") is False:
            return SyncOutcome.skipped("Inactive or deleted product")

        name = product.get("name") or "Unnamed Product"
        body = product_to_product(product, self._deps.location_id)
        mapping = await self._deps.mappings.find_by_source_id(
            EntityType.PRODUCT, record.source_id
        )
        if self.dry_run:
            return self.mock(record, mapping)

        if mapping is not None:
            try:
                await self._deps.dest.update_product(mapping.dest_id, body)
            except RemoteAPIError as exc:
                if exc.status_code == 422:
                    # GHL refuses some edits on live products; the link is still valid
                    self._log.warning(
                        "product.update_rejected",
                        source_id=record.source_id,
                        dest_id=mapping.dest_id,
                        error=exc.message,
                    )
                elif exc.is_not_found:
                    await self._drop_stale(record.source_id, mapping.dest_id)
                    mapping = None
                else:
                    return failure_from(exc, LogAction.UPDATE)
            if mapping is not None:
                await self._write_mapping(record, mapping.dest_id)
                return SyncOutcome.updated(mapping.dest_id, target_data=body)

        try:
            matches = await self._deps.dest.search_products(name, 10)
            match = next(
                (
                    p for p in matches
                    if (p.get("name") or "").strip().lower() == name.strip().lower()
                ),
                None,
            )
            if match is not None:
                product_id = _resource_id(match)
                linked = True
            else:
                response = await self._deps.dest.create_product(
                    product_to_product(product, self._deps.location_id, create=True)
                )
                product_id = _resource_id(response)
                linked = False
        except RemoteAPIError as exc:
            return failure_from(exc, LogAction.CREATE)

        if product_id is None:
            return SyncOutcome.failed("GHL returned no product id", action=LogAction.CREATE)
        await self._write_mapping(record, product_id)
        if linked:
            self._log.info("product.linked_by_name", source_id=record.source_id, dest_id=product_id)
            return SyncOutcome.updated(product_id, target_data=body)
        return SyncOutcome.created(product_id, target_data=body)

    async def _write_mapping(self, record: StagedRecord, product_id: str) -> None:
        product = record.payload
        await self._deps.mappings.upsert(
            EntityType.PRODUCT,
            record.source_id,
            product_id,
            _metadata(
                name=product.get("name"),
                categoryId=product.get("categoryId"),
                categoryName=product.get("categoryName"),
                price=product.get("price"),
                sku=product.get("code") or product.get("sku"),
                tags=product_tags(product),
                syncedAt=_now_iso(),
            ),
        )


# ── Loyalty ─────────────────────────────────────────────────────────────────


class LoyaltyHandler(EntityHandler):
    """Writes loyalty points and card serial onto the client's GHL contact."""

    entity_type = EntityType.LOYALTY

    def __init__(self, deps: HandlerDeps) -> None:
        super().__init__(deps)
        self._field_ids: dict[str, str] = {}

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        # Loyalty rows are derived from the client import
        return await importer.import_clients(max_records=options.max_records or 0)

    async def prepare(self) -> None:
        self._field_ids = await load_custom_field_ids(self._deps.dest)

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        loyalty = record.payload
        client_id = str(loyalty.get("clientId") or record.source_id)
        contact_id = await self._deps.mappings.get_dest_id(EntityType.CLIENT, client_id)
        if contact_id is None:
            return SyncOutcome.skipped("Client not synced to GHL", deferred=True)

        fields = loyalty_custom_fields(loyalty, self._field_ids)
        if not fields:
            return SyncOutcome.skipped("No loyalty custom fields in GHL", deferred=True)
        if self.dry_run:
            return SyncOutcome.updated(contact_id)

        await self._deps.dest.update_contact(contact_id, {"customFields": fields})
        await self._deps.mappings.upsert(
            EntityType.LOYALTY,
            record.source_id,
            contact_id,
            _metadata(
                loyaltyPoints=loyalty.get("loyaltyPoints"),
                loyaltyCardSerial=loyalty.get("loyaltyCardSerial"),
                syncedAt=_now_iso(),
            ),
        )
        return SyncOutcome.updated(contact_id, target_data={"customFields": fields})


# ── Check-in ────────────────────────────────────────────────────────────────


class CheckinHandler(EntityHandler):
    """Appends a check-in note to the client's contact, once per appointment."""

    entity_type = EntityType.CHECKIN

    def __init__(self, deps: HandlerDeps, lookback_days: int = 7) -> None:
        super().__init__(deps)
        self._lookback_days = lookback_days

    async def import_step(
        self, importer: StagingImporter, options: SyncOptions
    ) -> ImportResult | None:
        now = datetime.now(timezone.utc)
        return await importer.import_appointments(
            start=now - timedelta(days=self._lookback_days),
            end=now,
            max_records=options.max_records or 0,
        )

    def candidate_window(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        return now - timedelta(days=self._lookback_days), now

    async def process(self, record: StagedRecord, ctx: RunContext) -> SyncOutcome:
        checkin = record.payload
        client_id = checkin.get("clientId")
        if not client_id:
            return SyncOutcome.skipped("No client on check-in")

        existing = await self._deps.mappings.get_dest_id(EntityType.CHECKIN, record.source_id)
        if existing is not None:
            return SyncOutcome.skipped("Check-in already recorded", dest_id=existing)
        contact_id = await self._deps.mappings.get_dest_id(EntityType.CLIENT, str(client_id))
        if contact_id is None:
            return SyncOutcome.skipped("Client not synced to GHL", deferred=True)
        if self.dry_run:
            return self.mock(record)

        note = checkin_note(checkin)
        try:
            await self._deps.dest.add_contact_note(contact_id, note)
        except RemoteAPIError as exc:
            self._log.warning(
                "checkin.note_failed",
                source_id=record.source_id,
                contact_id=contact_id,
                error=exc.message,
            )
            return failure_from(exc, LogAction.CREATE)

        await self._deps.mappings.create_checkin_mapping(
            record.source_id,
            contact_id,
            _metadata(clientId=client_id, state=checkin.get("state"), notedAt=_now_iso()),
        )
        return SyncOutcome.created(contact_id, target_data={"body": note})


def build_handlers(
    deps: HandlerDeps,
    appointment_lookback_days: int = 60,
    checkin_lookback_days: int = 7,
) -> list[EntityHandler]:
    """One handler per entity type."""
    return [
        ClientHandler(deps),
        StaffHandler(deps),
        AppointmentHandler(deps, lookback_days=appointment_lookback_days),
        BookingHandler(deps),
        ProductHandler(deps),
        LoyaltyHandler(deps),
        CheckinHandler(deps, lookback_days=checkin_lookback_days),
    ]
