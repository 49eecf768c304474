"""Phorest third-party API client (source of record).

Implements SourceClient over the Phorest REST API with basic auth. Paged
list endpoints return HAL-style bodies::

    {"_embedded": {"clients": [...]}, "page": {"number": 0, "totalPages": 7}}

Clients and categories live at business level; appointments, staff and
products are scoped to the configured branch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog

from src.app.sync.remote.adapter import RemoteAPIError, SourceClient, SourcePage
from src.app.sync.remote.http import BaseHTTPClient, remote_retry
from src.app.sync.schemas import EntityType

logger = structlog.get_logger(__name__)

# _embedded key per entity type (staff has been seen under both spellings)
_EMBEDDED_KEYS: dict[EntityType, tuple[str, ...]] = {
    EntityType.CLIENT: ("clients",),
    EntityType.APPOINTMENT: ("appointments",),
    EntityType.STAFF: ("staffs", "staff"),
    EntityType.PRODUCT: ("products",),
}


class PhorestClient(BaseHTTPClient, SourceClient):
    """Async Phorest API client.

    Args:
        base_url: Phorest API root including ``/api/business``.
        business_id: Phorest business id.
        branch_id: Phorest branch id.
        username: API username.
        password: API password.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport override.
    """

    service_name = "phorest"

    def __init__(
        self,
        base_url: str,
        business_id: str,
        branch_id: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=timeout,
            auth=(username, password),
            transport=transport,
        )
        self.business_id = business_id
        self.branch_id = branch_id

    # ── Paths ───────────────────────────────────────────────────────────

    def _collection_path(self, entity_type: EntityType) -> str:
        biz, branch = self.business_id, self.branch_id
        if entity_type == EntityType.CLIENT:
            return f"/{biz}/client"
        if entity_type == EntityType.APPOINTMENT:
            return f"/{biz}/branch/{branch}/appointment"
        if entity_type == EntityType.STAFF:
            return f"/{biz}/branch/{branch}/staff"
        if entity_type == EntityType.PRODUCT:
            return f"/{biz}/branch/{branch}/product"
        raise ValueError(f"Phorest has no collection for entity type {entity_type.value}")

    # ── SourceClient ────────────────────────────────────────────────────

    @remote_retry
    async def list_page(
        self,
        entity_type: EntityType,
        page: int,
        size: int = 100,
        *,
        updated_since: datetime | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SourcePage:
        params: dict[str, Any] = {"page": page, "size": size}
        if entity_type == EntityType.APPOINTMENT:
            if start is not None:
                params["from_date"] = start.date().isoformat()
            if end is not None:
                params["to_date"] = end.date().isoformat()
            if updated_since is not None:
                params["updated_after"] = updated_since.isoformat()
        elif updated_since is not None:
            params["updatedSince"] = updated_since.isoformat()

        data = await self._request("GET", self._collection_path(entity_type), params=params)
        embedded = data.get("_embedded") or {}
        items: list[dict[str, Any]] = []
        for key in _EMBEDDED_KEYS[entity_type]:
            if embedded.get(key):
                items = embedded[key]
                break
        page_info = data.get("page") or {}
        return SourcePage(
            items=items,
            page=page_info.get("number", page),
            total_pages=page_info.get("totalPages", 0),
        )

    @remote_retry
    async def get_by_id(self, entity_type: EntityType, source_id: str) -> dict[str, Any] | None:
        try:
            return await self._request("GET", f"{self._collection_path(entity_type)}/{source_id}")
        except RemoteAPIError as exc:
            if exc.is_not_found:
                return None
            raise

    @remote_retry
    async def find_client(
        self, email: str | None = None, phone: str | None = None
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {"size": 1}
        if email:
            params["email"] = email
        elif phone:
            # Phorest searches mobile numbers without the leading '+'
            params["phone"] = phone[1:] if phone.startswith("+") else phone
        else:
            return None
        data = await self._request("GET", self._collection_path(EntityType.CLIENT), params=params)
        clients = (data.get("_embedded") or {}).get("clients") or []
        return clients[0] if clients else None

    async def create_client(self, data: dict[str, Any]) -> dict[str, Any]:
        payload = {"creatingBranchId": self.branch_id, **data}
        created = await self._request("POST", self._collection_path(EntityType.CLIENT), json=payload)
        logger.info("phorest.client_created", client_id=created.get("clientId"))
        return created

    async def update_client(self, client_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PUT", f"{self._collection_path(EntityType.CLIENT)}/{client_id}", json=data
        )

    @remote_retry
    async def list_client_categories(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/{self.business_id}/category/client")
        return (data.get("_embedded") or {}).get("clientCategories") or []
