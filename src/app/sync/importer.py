"""Staging Importer -- pulls Phorest records into staged_entities.

The only component that reads Phorest in bulk. Each page is reconciled with
one get_many lookup, then every record goes through the change-detection
gate in StagedRepository.upsert_from_source so unchanged records keep their
sync status and are not re-sent to GHL.

Derived rows are written alongside their parent without touching the
parent's status:
- booking: one per Phorest bookingId, from appointments
- checkin: appointments in CHECKED_IN / PAID state
- loyalty: clients with points or a loyalty card

A page fetch failure aborts only the current entity type's import; rows
already written stay (imports are idempotent upserts keyed by source id).
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from src.app.sync.remote.adapter import RemoteAPIError, SourceClient
from src.app.sync.repository import StagedRepository
from src.app.sync.schemas import EntityType, ImportResult, StagedRecord
from src.app.sync.transform import (
    CHECKED_IN_STATES,
    has_loyalty,
    parse_timestamp,
    staff_display_name,
)

logger = structlog.get_logger(__name__)

PAGE_SIZE = 100
CLIENT_PAGE_LIMIT = 500
STAFF_PAGE_LIMIT = 100
PRODUCT_PAGE_LIMIT = 200
APPOINTMENT_PAGE_LIMIT = 100
MAX_DAYS_PER_REQUEST = 30  # Phorest rejects appointment ranges over 31 days

PageCallback = Callable[[], Awaitable[None]]


# ── Snapshots ───────────────────────────────────────────────────────────────


def client_snapshot(raw: dict[str, Any], previous: dict[str, Any] | None = None) -> dict[str, Any]:
    """Flatten a Phorest client into the staged payload.

    ``lastStylistName`` is written by the appointment import, not by
    Phorest, so it is carried over from the previous snapshot.
    """
    address = raw.get("address") or {}
    loyalty = raw.get("loyaltyCard") or {}
    credit = raw.get("creditAccount") or {}
    snapshot = {
        "clientId": raw.get("clientId"),
        "firstName": raw.get("firstName") or "",
        "lastName": raw.get("lastName") or "",
        "email": raw.get("email"),
        "mobile": raw.get("mobile"),
        "landLine": raw.get("landLine"),
        "gender": raw.get("gender"),
        "birthDate": raw.get("birthDate"),
        "streetAddress1": address.get("streetAddress1") or address.get("street"),
        "streetAddress2": address.get("streetAddress2"),
        "city": address.get("city"),
        "state": address.get("state"),
        "postalCode": address.get("postalCode"),
        "country": address.get("country"),
        "preferredStaffId": raw.get("preferredStaffId"),
        "externalId": raw.get("externalId"),
        "notes": raw.get("notes"),
        "clientCategoryIds": raw.get("clientCategoryIds") or [],
        "archived": bool(raw.get("archived")),
        "banned": bool(raw.get("banned")),
        "deleted": bool(raw.get("deleted")),
        "smsMarketingConsent": bool(raw.get("smsMarketingConsent")),
        "emailMarketingConsent": bool(raw.get("emailMarketingConsent")),
        "loyaltyCardSerial": loyalty.get("serial"),
        "loyaltyPoints": loyalty.get("points"),
        "creditBalance": credit.get("outstandingBalance"),
        "version": raw.get("version"),
    }
    if previous and previous.get("lastStylistName"):
        snapshot["lastStylistName"] = previous["lastStylistName"]
    return snapshot


def chunk_date_range(
    start: datetime, end: datetime, max_days: int = MAX_DAYS_PER_REQUEST
) -> list[tuple[datetime, datetime]]:
    """Split [start, end] into consecutive spans of at most ``max_days``."""
    chunks: list[tuple[datetime, datetime]] = []
    current = start
    while current < end:
        chunk_end = min(current + timedelta(days=max_days), end)
        chunks.append((current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


class StagingImporter:
    """Imports Phorest records into the staging table.

    Args:
        source: Phorest client.
        repository: Staged entity repository.
        salon_timezone: IANA zone for Phorest's local appointment times.
        lookback_days / lookahead_days: Default appointment window.
        on_page: Awaited after every Phorest page, e.g. a run heartbeat.
    """

    def __init__(
        self,
        source: SourceClient,
        repository: StagedRepository,
        salon_timezone: str = "America/New_York",
        lookback_days: int = 60,
        lookahead_days: int = 30,
        on_page: PageCallback | None = None,
    ) -> None:
        self._source = source
        self._repo = repository
        self._tz = ZoneInfo(salon_timezone)
        self._lookback_days = lookback_days
        self._lookahead_days = lookahead_days
        self._on_page = on_page

    def with_page_callback(self, on_page: PageCallback) -> StagingImporter:
        """Copy of this importer that awaits ``on_page`` after every page.

        Workers of different entity types share one importer, so the
        callback is bound per run on a copy rather than on the instance.
        """
        bound = copy.copy(self)
        bound._on_page = on_page
        return bound

    async def _page_done(self) -> None:
        if self._on_page is not None:
            await self._on_page()

    # ── Generic Paged Import ────────────────────────────────────────────

    async def _import_paged(
        self,
        entity_type: EntityType,
        id_key: str,
        snapshot: Callable[[dict[str, Any], StagedRecord | None], dict[str, Any]],
        *,
        page_limit: int,
        max_records: int = 0,
        advanced_only: bool = True,
        updated_since: datetime | None = None,
    ) -> ImportResult:
        result = ImportResult(entity_type=entity_type)
        page = 0
        while page <= page_limit:
            if max_records and result.total >= max_records:
                break
            try:
                source_page = await self._source.list_page(
                    entity_type, page, PAGE_SIZE, updated_since=updated_since
                )
            except RemoteAPIError as exc:
                result.aborted = True
                result.add_error(f"Page {page}: {exc.message}")
                logger.error(
                    "import.page_failed",
                    entity_type=entity_type.value,
                    page=page,
                    error=str(exc),
                    imported_so_far=result.total,
                )
                break
            if not source_page.items:
                break

            ids = [str(item[id_key]) for item in source_page.items if item.get(id_key)]
            existing = await self._repo.get_many(entity_type, ids)

            for raw in source_page.items:
                if max_records and result.total >= max_records:
                    break
                if not raw.get(id_key):
                    continue
                source_id = str(raw[id_key])
                result.total += 1
                try:
                    previous = existing.get(source_id)
                    payload = snapshot(raw, previous)
                    is_new, changed = await self._repo.upsert_from_source(
                        entity_type,
                        source_id,
                        payload,
                        parse_timestamp(raw.get("updatedAt")),
                        existing=previous,
                        prefetched=True,
                        advanced_only=advanced_only,
                        deleted=bool(raw.get("deleted")),
                    )
                    self._count(result, is_new, changed)
                    await self._derive(entity_type, source_id, payload, raw)
                except Exception as exc:
                    result.failed += 1
                    result.add_error(f"{entity_type.value} {source_id}: {exc}")
                    logger.error(
                        "import.record_failed",
                        entity_type=entity_type.value,
                        source_id=source_id,
                        error=str(exc),
                    )

            page += 1
            await self._page_done()
            if page % 10 == 0:
                logger.info("import.progress", entity_type=entity_type.value, page=page, total=result.total)
            if not source_page.has_more:
                break
        else:
            logger.warning("import.page_limit_reached", entity_type=entity_type.value, limit=page_limit)

        self._log_result(result)
        return result

    @staticmethod
    def _count(result: ImportResult, is_new: bool, changed: bool) -> None:
        if is_new:
            result.created += 1
        elif changed:
            result.updated += 1
        else:
            result.unchanged += 1

    @staticmethod
    def _log_result(result: ImportResult) -> None:
        logger.info(
            "import.completed",
            entity_type=result.entity_type.value,
            total=result.total,
            created=result.created,
            updated=result.updated,
            unchanged=result.unchanged,
            skipped=result.skipped,
            failed=result.failed,
            aborted=result.aborted,
        )

    async def _derive(
        self, entity_type: EntityType, source_id: str, payload: dict[str, Any], raw: dict[str, Any]
    ) -> None:
        if entity_type != EntityType.CLIENT:
            return
        if has_loyalty(payload):
            await self._repo.upsert_derived(
                EntityType.LOYALTY,
                source_id,
                {
                    "clientId": source_id,
                    "loyaltyPoints": payload.get("loyaltyPoints"),
                    "loyaltyCardSerial": payload.get("loyaltyCardSerial"),
                },
                parse_timestamp(raw.get("updatedAt")),
                parent_id=source_id,
            )

    # ── Clients ─────────────────────────────────────────────────────────

    async def import_clients(
        self, max_records: int = 0, updated_since: datetime | None = None
    ) -> ImportResult:
        """Import clients; any timestamp difference counts as a change."""
        return await self._import_paged(
            EntityType.CLIENT,
            "clientId",
            lambda raw, prev: client_snapshot(raw, prev.payload if prev else None),
            page_limit=CLIENT_PAGE_LIMIT,
            max_records=max_records,
            advanced_only=False,
            updated_since=updated_since,
        )

    async def import_single_client(self, client_id: str) -> bool:
        """Fetch one client and stage it as PENDING.

        Returns False when Phorest does not know the client.
        """
        raw = await self._source.get_by_id(EntityType.CLIENT, client_id)
        if raw is None:
            logger.warning("import.client_not_found", client_id=client_id)
            return False
        previous = await self._repo.get(EntityType.CLIENT, client_id)
        payload = client_snapshot(raw, previous.payload if previous else None)
        await self._repo.upsert_from_source(
            EntityType.CLIENT,
            client_id,
            payload,
            parse_timestamp(raw.get("updatedAt")),
            existing=previous,
            prefetched=True,
            force_pending=True,
            deleted=bool(raw.get("deleted")),
        )
        await self._derive(EntityType.CLIENT, client_id, payload, raw)
        logger.info("import.single_client", client_id=client_id, new=previous is None)
        return True

    # ── Staff & Products ────────────────────────────────────────────────

    async def import_staff(self, max_records: int = 0) -> ImportResult:
        return await self._import_paged(
            EntityType.STAFF,
            "staffId",
            lambda raw, prev: dict(raw),
            page_limit=STAFF_PAGE_LIMIT,
            max_records=max_records,
        )

    async def import_products(self, max_records: int = 0) -> ImportResult:
        def snapshot(raw: dict[str, Any], prev: StagedRecord | None) -> dict[str, Any]:
            payload = dict(raw)
            payload["name"] = raw.get("name") or "Unnamed Product"
            payload["active"] = raw.get("active") is not False
            return payload

        return await self._import_paged(
            EntityType.PRODUCT,
            "productId",
            snapshot,
            page_limit=PRODUCT_PAGE_LIMIT,
            max_records=max_records,
        )

    # ── Appointments ────────────────────────────────────────────────────

    def _local_instant(self, date_str: str, time_str: str | None, default: str) -> datetime:
        time_part = (time_str or default).split(".")[0]
        naive = datetime.fromisoformat(f"{date_str}T{time_part}")
        return naive.replace(tzinfo=self._tz).astimezone(timezone.utc)

    def appointment_snapshot(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Raw appointment plus UTC ``startAt``/``endAt``.

        Phorest sends appointmentDate (YYYY-MM-DD) and salon-local
        startTime/endTime (HH:MM:SS.mmm).
        """
        date_str = raw.get("appointmentDate")
        if not date_str:
            raise ValueError("Missing appointmentDate")
        payload = dict(raw)
        payload["state"] = raw.get("state") or "BOOKED"
        payload["activationState"] = raw.get("activationState") or "ACTIVE"
        payload["startAt"] = self._local_instant(date_str, raw.get("startTime"), "00:00:00").isoformat()
        payload["endAt"] = self._local_instant(date_str, raw.get("endTime"), "23:59:59").isoformat()
        return payload

    async def import_appointments(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        max_records: int = 0,
    ) -> ImportResult:
        """Import appointments in [start, end], chunked to Phorest's range limit.

        Missing clients are fetched singly first; an appointment whose client
        cannot be staged is skipped. Booking and check-in rows are derived,
        and the client's ``lastStylistName`` is patched from the staff row.
        """
        now = datetime.now(timezone.utc)
        end = end or now + timedelta(days=self._lookahead_days)
        start = start or end - timedelta(days=self._lookback_days + self._lookahead_days)
        result = ImportResult(entity_type=EntityType.APPOINTMENT)
        chunks = chunk_date_range(start, end)
        logger.info(
            "import.appointments_started",
            start=start.date().isoformat(),
            end=end.date().isoformat(),
            chunks=len(chunks),
        )

        for chunk_start, chunk_end in chunks:
            if result.aborted or (max_records and result.total >= max_records):
                break
            await self._import_appointment_chunk(chunk_start, chunk_end, result, max_records)

        self._log_result(result)
        return result

    async def _import_appointment_chunk(
        self, start: datetime, end: datetime, result: ImportResult, max_records: int
    ) -> None:
        for page in range(APPOINTMENT_PAGE_LIMIT + 1):
            if max_records and result.total >= max_records:
                return
            try:
                source_page = await self._source.list_page(
                    EntityType.APPOINTMENT, page, PAGE_SIZE, start=start, end=end
                )
            except RemoteAPIError as exc:
                result.aborted = True
                result.add_error(f"Appointments {start.date()}..{end.date()} page {page}: {exc.message}")
                logger.error("import.page_failed", entity_type="appointment", page=page, error=str(exc))
                return
            appointments = [a for a in source_page.items if a.get("appointmentId")]
            if not appointments:
                return

            existing = await self._repo.get_many(
                EntityType.APPOINTMENT, [str(a["appointmentId"]) for a in appointments]
            )
            client_ids = list({str(a["clientId"]) for a in appointments if a.get("clientId")})
            staged_clients = set(await self._repo.get_many(EntityType.CLIENT, client_ids))

            for raw in appointments:
                if max_records and result.total >= max_records:
                    return
                result.total += 1
                appointment_id = str(raw["appointmentId"])
                client_id = str(raw["clientId"]) if raw.get("clientId") else None
                try:
                    if client_id and client_id not in staged_clients:
                        if not await self._stage_missing_client(client_id, appointment_id):
                            result.skipped += 1
                            continue
                        staged_clients.add(client_id)

                    payload = self.appointment_snapshot(raw)
                    is_new, changed = await self._repo.upsert_from_source(
                        EntityType.APPOINTMENT,
                        appointment_id,
                        payload,
                        parse_timestamp(raw.get("updatedAt")),
                        existing=existing.get(appointment_id),
                        prefetched=True,
                        parent_id=client_id,
                        event_date=parse_timestamp(payload["startAt"]),
                        deleted=bool(raw.get("deleted")),
                    )
                    self._count(result, is_new, changed)
                    await self._derive_from_appointment(payload, client_id)
                except Exception as exc:
                    result.failed += 1
                    result.add_error(f"Appointment {appointment_id}: {exc}")
                    logger.error(
                        "import.record_failed",
                        entity_type="appointment",
                        source_id=appointment_id,
                        error=str(exc),
                    )

            await self._page_done()
            if not source_page.has_more:
                return
        logger.warning("import.page_limit_reached", entity_type="appointment", start=start.isoformat())

    async def _stage_missing_client(self, client_id: str, appointment_id: str) -> bool:
        try:
            staged = await self.import_single_client(client_id)
        except RemoteAPIError as exc:
            logger.warning(
                "import.missing_client_failed",
                client_id=client_id,
                appointment_id=appointment_id,
                error=str(exc),
            )
            return False
        if not staged:
            logger.warning(
                "import.appointment_client_missing",
                client_id=client_id,
                appointment_id=appointment_id,
            )
        return staged

    async def _derive_from_appointment(
        self, payload: dict[str, Any], client_id: str | None
    ) -> None:
        appointment_id = str(payload["appointmentId"])
        start_at = parse_timestamp(payload["startAt"])

        booking_id = payload.get("bookingId")
        if booking_id:
            try:
                await self._upsert_booking(str(booking_id), appointment_id, payload, client_id)
            except Exception as exc:
                logger.warning(
                    "import.booking_derive_failed",
                    booking_id=booking_id,
                    appointment_id=appointment_id,
                    error=str(exc),
                )

        if payload.get("state") in CHECKED_IN_STATES and client_id:
            await self._repo.upsert_derived(
                EntityType.CHECKIN,
                appointment_id,
                {
                    "appointmentId": appointment_id,
                    "clientId": client_id,
                    "state": payload.get("state"),
                    "services": payload.get("services") or [],
                    "serviceName": payload.get("serviceName"),
                    "appointmentDate": payload.get("appointmentDate"),
                    "startAt": payload["startAt"],
                },
                parse_timestamp(payload.get("updatedAt")),
                parent_id=appointment_id,
                event_date=start_at,
            )

        staff_id = payload.get("staffId")
        if client_id and staff_id:
            staff = await self._repo.get(EntityType.STAFF, str(staff_id))
            staff_name = staff_display_name(staff.payload if staff else None)
            if staff_name:
                await self._repo.patch_payload(
                    EntityType.CLIENT, client_id, {"lastStylistName": staff_name}
                )

    async def _upsert_booking(
        self, booking_id: str, appointment_id: str, payload: dict[str, Any], client_id: str | None
    ) -> None:
        existing = await self._repo.get(EntityType.BOOKING, booking_id)
        appointment_ids = set(existing.payload.get("appointmentIds", [])) if existing else set()
        appointment_ids.add(appointment_id)
        await self._repo.upsert_derived(
            EntityType.BOOKING,
            booking_id,
            {
                "bookingId": booking_id,
                "clientId": client_id,
                "branchId": payload.get("branchId"),
                "status": payload.get("state"),
                "bookingDate": payload.get("appointmentDate"),
                "appointmentIds": sorted(appointment_ids),
            },
            parse_timestamp(payload.get("updatedAt")),
            parent_id=client_id,
            event_date=parse_timestamp(payload["startAt"]),
        )
