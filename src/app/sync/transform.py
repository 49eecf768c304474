"""Field mapping between Phorest snapshots and GHL payloads.

Pure functions, no I/O. Contact data is normalised conservatively: a phone
or email that does not pass validation is dropped rather than sent, and a
client with neither is not syncable.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

# ── Constants ───────────────────────────────────────────────────────────────

MAX_PHONE_LENGTH = 15
MIN_PHONE_DIGITS = 7
MAX_EMAIL_LENGTH = 254
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

TAG_PREFIX = "phorest:"
TAG_DELETED = "phorest:deleted"
TAG_BANNED = "phorest:banned"
TAG_ARCHIVED = "phorest:archived"
STAFF_TAGS = ("role:staff", "phorest-staff:true")

CHECKED_IN_STATES = frozenset({"CHECKED_IN", "PAID"})
SHOWED_STATES = frozenset({"ARRIVED", "CHECKED_IN", "STARTED", "COMPLETED", "PAID"})
CANCELLED_STATUS = "cancelled"

# Fields the contact PUT endpoint rejects
_CONTACT_UPDATE_EXCLUDED = ("locationId", "gender", "source")


# ── Normalisation ───────────────────────────────────────────────────────────


def sanitize_phone(phone: str | None) -> str | None:
    """Digits with at most one leading '+', truncated to E.164 length.

    Returns None when fewer than 7 digits remain.
    """
    if not phone:
        return None
    cleaned = re.sub(r"[^\d+]", "", phone)
    if "+" in cleaned:
        cleaned = "+" + cleaned.replace("+", "")
    cleaned = cleaned[:MAX_PHONE_LENGTH]
    if len(re.sub(r"\D", "", cleaned)) < MIN_PHONE_DIGITS:
        return None
    return cleaned or None


def sanitize_email(email: str | None) -> str | None:
    if not email:
        return None
    cleaned = email.strip().lower()
    if not cleaned or len(cleaned) > MAX_EMAIL_LENGTH:
        return None
    if not EMAIL_RE.match(cleaned):
        return None
    return cleaned


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from either API; naive values are UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Any) -> str | None:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def category_tag(name: str) -> str:
    return TAG_PREFIX + _slug(name)


def full_name(first: str | None, last: str | None) -> str:
    return f"{first or ''} {last or ''}".strip()


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ── Clients -> Contacts ─────────────────────────────────────────────────────


def should_sync_client(client: dict[str, Any]) -> bool:
    """Not deleted, has a name, and has at least one valid contact channel."""
    if client.get("deleted"):
        return False
    if not client.get("firstName") and not client.get("lastName"):
        return False
    return bool(sanitize_email(client.get("email")) or sanitize_phone(client.get("mobile")))


def client_to_contact(
    client: dict[str, Any],
    location_id: str,
    category_map: dict[str, str] | None = None,
    field_ids: dict[str, str] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the GHL upsert body for a staged client snapshot.

    Args:
        client: Staged client payload.
        location_id: GHL location id.
        category_map: Phorest category id -> name, for ``phorest:<slug>`` tags.
        field_ids: GHL custom field key -> id. Keys without an id are omitted.
        now: Timestamp written to ``phorest_last_sync``.
    """
    category_map = category_map or {}
    field_ids = field_ids or {}
    now = now or datetime.now(timezone.utc)

    tags = [
        category_tag(category_map[cid])
        for cid in client.get("clientCategoryIds") or []
        if cid in category_map
    ]
    if client.get("banned"):
        tags.append(TAG_BANNED)
    if client.get("archived"):
        tags.append(TAG_ARCHIVED)

    values: dict[str, Any] = {
        "phorest_id": client.get("clientId"),
        "phorest_last_sync": now.isoformat(),
        "loyalty_points": client.get("loyaltyPoints"),
        "loyalty_card_serial": client.get("loyaltyCardSerial") or None,
        "external_id": client.get("externalId") or None,
        "preferred_staff_id": client.get("preferredStaffId") or None,
        "stylist_name": client.get("lastStylistName") or None,
        "credit_balance": client.get("creditBalance"),
        "phorest_notes": client.get("notes") or None,
    }
    custom_fields = [
        {"id": field_ids[key], "value": value}
        for key, value in values.items()
        if value is not None and key in field_ids
    ]

    # Consent given means DND off ("inactive")
    dnd_settings: dict[str, Any] = {}
    if client.get("smsMarketingConsent") is not None:
        dnd_settings["SMS"] = {"status": "inactive" if client["smsMarketingConsent"] else "active"}
    if client.get("emailMarketingConsent") is not None:
        dnd_settings["Email"] = {
            "status": "inactive" if client["emailMarketingConsent"] else "active"
        }

    return _drop_none(
        {
            "locationId": location_id,
            "firstName": client.get("firstName"),
            "lastName": client.get("lastName"),
            "name": full_name(client.get("firstName"), client.get("lastName")),
            "email": sanitize_email(client.get("email")),
            "phone": sanitize_phone(client.get("mobile")),
            "address1": client.get("streetAddress1"),
            "city": client.get("city"),
            "state": client.get("state"),
            "postalCode": client.get("postalCode"),
            "country": client.get("country"),
            "dateOfBirth": client.get("birthDate"),
            "gender": client.get("gender"),
            "tags": tags,
            "customFields": custom_fields or None,
            "dndSettings": dnd_settings or None,
            "source": "phorest",
        }
    )


def contact_update_payload(contact: dict[str, Any]) -> dict[str, Any]:
    """Strip fields the contact update endpoint does not accept."""
    return {k: v for k, v in contact.items() if k not in _CONTACT_UPDATE_EXCLUDED}


def retire_tags(existing_tags: list[str], tag: str) -> list[str] | None:
    """Tag list marking a contact deleted or banned; None when already tagged.

    Deletion replaces every ``phorest:`` tag; banning only replaces an
    earlier ban tag.
    """
    if tag in existing_tags:
        return None
    if tag == TAG_DELETED:
        kept = [t for t in existing_tags if not t.startswith(TAG_PREFIX)]
    else:
        kept = [t for t in existing_tags if not t.startswith(TAG_BANNED)]
    return [*kept, tag]


# ── Staff ───────────────────────────────────────────────────────────────────


def staff_display_name(staff: dict[str, Any] | None) -> str | None:
    if not staff or not staff.get("firstName"):
        return None
    return full_name(staff.get("firstName"), staff.get("lastName"))


def staff_to_contact(staff: dict[str, Any], location_id: str) -> dict[str, Any]:
    return _drop_none(
        {
            "locationId": location_id,
            "firstName": staff.get("firstName"),
            "lastName": staff.get("lastName"),
            "name": full_name(staff.get("firstName"), staff.get("lastName")),
            "email": sanitize_email(staff.get("email")),
            "phone": sanitize_phone(staff.get("mobile")),
            "tags": [*STAFF_TAGS, f"phorest-staff-id:{staff.get('staffId')}"],
            "source": "phorest-staff-sync",
        }
    )


# ── Appointments ────────────────────────────────────────────────────────────


def appointment_title(appointment: dict[str, Any]) -> str:
    names = [s.get("serviceName") for s in appointment.get("services") or [] if s.get("serviceName")]
    if names:
        return ", ".join(names)
    return appointment.get("serviceName") or "Appointment"


def appointment_status(state: str | None, activation_state: str | None) -> str:
    """Phorest state -> GHL appointmentStatus."""
    if activation_state in ("CANCELED", "ARCHIVED") or state == "CANCELLED":
        return CANCELLED_STATUS
    if state == "BOOKED":
        return "confirmed"
    if state in SHOWED_STATES:
        return "showed"
    if state == "NO_SHOW":
        return "noshow"
    return "confirmed"


def appointment_to_event(
    appointment: dict[str, Any],
    contact_id: str,
    calendar_id: str,
    location_id: str,
    assigned_user_id: str | None = None,
    staff_name: str | None = None,
) -> dict[str, Any]:
    """Build the GHL create-appointment body.

    ``startAt``/``endAt`` are the UTC instants computed at import time from
    the salon-local date and times.
    """
    return _drop_none(
        {
            "calendarId": calendar_id,
            "locationId": location_id,
            "contactId": contact_id,
            "startTime": _iso(appointment.get("startAt")),
            "endTime": _iso(appointment.get("endAt")),
            "title": appointment_title(appointment),
            "description": (staff_name or "").strip() or None,
            "appointmentStatus": appointment_status(
                appointment.get("state"), appointment.get("activationState")
            ),
            "assignedUserId": assigned_user_id or None,
            "ignoreFreeSlotValidation": True,
            "ignoreDateRange": True,
        }
    )


def appointment_update_payload(event: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in event.items() if k not in ("calendarId", "locationId", "contactId")}


def checkin_note(appointment: dict[str, Any]) -> str:
    when = parse_timestamp(appointment.get("startAt"))
    when_text = when.strftime("%Y-%m-%d %H:%M UTC") if when else appointment.get("appointmentDate", "")
    return (
        f"Checked in: {appointment_title(appointment)}\n"
        f"{when_text}\n"
        f"Phorest Apt: {appointment.get('appointmentId')}"
    )


# ── Products & Loyalty ──────────────────────────────────────────────────────


def _slug(value: str) -> str:
    return re.sub(r"\s+", "-", value.strip().lower())


def product_tags(product: dict[str, Any]) -> list[str]:
    tags: list[str] = []
    if product.get("categoryName"):
        tags.append(f"product:category:{_slug(product['categoryName'])}")
    elif product.get("categoryId"):
        tags.append(f"product:category:{product['categoryId']}")
    if product.get("name"):
        tags.append(f"product:purchased:{_slug(product['name'])}")
    return tags


def product_to_product(
    product: dict[str, Any], location_id: str, *, create: bool = False
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "locationId": location_id,
        "name": product.get("name"),
        "description": f"{product.get('categoryName') or 'Product'} - {product.get('name')}",
        "productType": "PHYSICAL",
    }
    if create:
        body["availableInStore"] = product.get("active") is not False
    return body


def loyalty_custom_fields(
    loyalty: dict[str, Any], field_ids: dict[str, str]
) -> list[dict[str, Any]]:
    values = {
        "loyalty_points": loyalty.get("loyaltyPoints"),
        "loyalty_card_serial": loyalty.get("loyaltyCardSerial") or None,
    }
    return [
        {"id": field_ids[key], "value": value}
        for key, value in values.items()
        if value is not None and key in field_ids
    ]


def has_loyalty(client: dict[str, Any]) -> bool:
    if client.get("deleted"):
        return False
    return (client.get("loyaltyPoints") or 0) > 0 or bool(client.get("loyaltyCardSerial"))


# ── Contacts -> Clients (inbound) ───────────────────────────────────────────


def custom_field_value(contact: dict[str, Any], key: str) -> Any:
    for field in contact.get("customFields") or []:
        if field.get("key") == key or field.get("id") == key:
            return field.get("value")
    return None


def should_sync_contact(contact: dict[str, Any]) -> bool:
    return bool(contact.get("firstName") or contact.get("lastName"))


def _contact_address(contact: dict[str, Any]) -> dict[str, Any] | None:
    if not any(contact.get(k) for k in ("address1", "city", "state", "postalCode")):
        return None
    return _drop_none(
        {
            "streetAddress1": contact.get("address1"),
            "city": contact.get("city"),
            "state": contact.get("state"),
            "postalCode": contact.get("postalCode"),
            "country": contact.get("country"),
        }
    )


def contact_to_phorest_client(contact: dict[str, Any]) -> dict[str, Any]:
    return _drop_none(
        {
            "firstName": contact.get("firstName") or "",
            "lastName": contact.get("lastName") or "",
            "email": contact.get("email"),
            "mobile": contact.get("phone"),
            "address": _contact_address(contact),
            "gender": custom_field_value(contact, "gender"),
            "birthDate": contact.get("dateOfBirth"),
            "notes": custom_field_value(contact, "phorest_notes"),
        }
    )


def contact_to_phorest_update(
    contact: dict[str, Any], existing: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Partial client update; Phorest keeps its own names when it has them."""
    existing = existing or {}
    update = {
        "firstName": existing.get("firstName") or contact.get("firstName") or "",
        "lastName": existing.get("lastName") or contact.get("lastName") or "",
    }
    if existing.get("version") is not None:
        update["version"] = existing["version"]
    if contact.get("email"):
        update["email"] = contact["email"]
    if contact.get("phone"):
        update["mobile"] = contact["phone"]
    if contact.get("dateOfBirth"):
        update["birthDate"] = contact["dateOfBirth"]
    address = _contact_address(contact)
    if address:
        update["address"] = address
    return update
