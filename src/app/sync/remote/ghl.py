"""GoHighLevel (LeadConnector) API client (destination CRM).

Implements DestinationClient over the v2 REST API using a configured
location access token. Every request carries the ``Version`` header the API
requires. Response bodies wrap the resource (``{"contact": {...}}``); the
client unwraps them so callers get the resource dict directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog

from src.app.sync.remote.adapter import ContactPage, DestinationClient
from src.app.sync.remote.http import BaseHTTPClient, remote_retry

logger = structlog.get_logger(__name__)


def _unwrap(data: Any, *keys: str) -> dict[str, Any]:
    if isinstance(data, dict):
        for key in keys:
            if isinstance(data.get(key), dict):
                return data[key]
        return data
    return {}


class GHLClient(BaseHTTPClient, DestinationClient):
    """Async GHL API client scoped to one location.

    Args:
        base_url: API root (``https://services.leadconnectorhq.com``).
        access_token: Location access token.
        location_id: GHL location (sub-account) id.
        calendar_id: Calendar used for synced appointments.
        api_version: Value of the ``Version`` header.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport override.
    """

    service_name = "ghl"

    def __init__(
        self,
        base_url: str,
        access_token: str,
        location_id: str,
        calendar_id: str = "",
        api_version: str = "2021-07-28",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Version": api_version,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self.location_id = location_id
        self.calendar_id = calendar_id

    # ── Contacts ────────────────────────────────────────────────────────

    @remote_retry
    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/contacts/{contact_id}")
        return _unwrap(data, "contact")

    async def create_contact(self, data: dict[str, Any]) -> dict[str, Any]:
        body = {"locationId": self.location_id, **data}
        return _unwrap(await self._request("POST", "/contacts/", json=body), "contact")

    @remote_retry
    async def update_contact(self, contact_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return _unwrap(await self._request("PUT", f"/contacts/{contact_id}", json=data), "contact")

    @remote_retry
    async def upsert_contact(self, data: dict[str, Any]) -> dict[str, Any]:
        body = {"locationId": self.location_id, **data}
        response = await self._request("POST", "/contacts/upsert", json=body)
        contact = _unwrap(response, "contact")
        if isinstance(response, dict) and "new" in response:
            logger.debug("ghl.contact_upserted", contact_id=contact.get("id"), new=response["new"])
        return contact

    async def add_contact_note(self, contact_id: str, body: str) -> dict[str, Any]:
        data = await self._request("POST", f"/contacts/{contact_id}/notes", json={"body": body})
        return _unwrap(data, "note")

    @remote_retry
    async def get_contact_notes(self, contact_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/contacts/{contact_id}/notes")
        return data.get("notes") or []

    @remote_retry
    async def list_contacts(self, cursor: str | None = None, limit: int = 100) -> ContactPage:
        params: dict[str, Any] = {"locationId": self.location_id, "limit": limit}
        if cursor:
            params["startAfterId"] = cursor
        data = await self._request("GET", "/contacts/", params=params)
        contacts = data.get("contacts") or []
        meta = data.get("meta") or {}
        next_cursor = meta.get("startAfterId") if contacts and len(contacts) >= limit else None
        return ContactPage(contacts=contacts, next_cursor=next_cursor)

    # ── Calendar ────────────────────────────────────────────────────────

    @remote_retry
    async def get_appointment(self, appointment_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/calendars/events/appointments/{appointment_id}")
        return _unwrap(data, "appointment", "event")

    async def create_appointment(self, data: dict[str, Any]) -> dict[str, Any]:
        body = {"locationId": self.location_id, "calendarId": self.calendar_id, **data}
        return _unwrap(
            await self._request("POST", "/calendars/events/appointments", json=body),
            "appointment",
            "event",
        )

    @remote_retry
    async def update_appointment(self, appointment_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return _unwrap(
            await self._request(
                "PUT", f"/calendars/events/appointments/{appointment_id}", json=data
            ),
            "appointment",
            "event",
        )

    @remote_retry
    async def list_calendar_events(
        self, start: datetime, end: datetime, calendar_id: str | None = None
    ) -> list[dict[str, Any]]:
        params = {
            "locationId": self.location_id,
            "calendarId": calendar_id or self.calendar_id,
            "startTime": int(start.timestamp() * 1000),
            "endTime": int(end.timestamp() * 1000),
        }
        data = await self._request("GET", "/calendars/events", params=params)
        return data.get("events") or []

    # ── Products ────────────────────────────────────────────────────────

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        body = {"locationId": self.location_id, **data}
        return _unwrap(await self._request("POST", "/products/", json=body), "product")

    @remote_retry
    async def update_product(self, product_id: str, data: dict[str, Any]) -> dict[str, Any]:
        body = {"locationId": self.location_id, **data}
        return _unwrap(await self._request("PUT", f"/products/{product_id}", json=body), "product")

    @remote_retry
    async def search_products(self, name: str, limit: int = 10) -> list[dict[str, Any]]:
        params = {"locationId": self.location_id, "search": name, "limit": limit}
        data = await self._request("GET", "/products/", params=params)
        return data.get("products") or []

    # ── Custom Fields ───────────────────────────────────────────────────

    @remote_retry
    async def list_custom_fields(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/locations/{self.location_id}/customFields")
        return data.get("customFields") or []
