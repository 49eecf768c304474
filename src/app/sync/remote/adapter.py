"""Remote system interfaces -- the contracts the sync engine needs from Phorest and GHL.

SourceClient (Phorest) and DestinationClient (GHL) are ABCs; the httpx-backed
implementations live in phorest.py and ghl.py, and tests substitute AsyncMocks
specced against these classes.

Also defines the single remote error type and the code -> ErrorClass mapping:
- 404            -> stale (mapping points at a deleted destination object)
- 400, 422       -> validation (permanent, never auto-retried)
- 401, 403       -> auth (permanent)
- 429, 5xx, 520, transport codes -> transient (retry-eligible)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.app.sync.schemas import EntityType, ErrorClass

# ── Error Classification ────────────────────────────────────────────────────

TRANSIENT_CODES = frozenset(
    {"ETIMEDOUT", "ECONNRESET", "ECONNABORTED", "429", "500", "502", "503", "504", "520", "timeout"}
)
PERMANENT_CODES = frozenset({"400", "401", "403", "404", "422"})


class RemoteAPIError(Exception):
    """Raised by remote clients for any non-success response or transport failure.

    Args:
        message: Human-readable description.
        status_code: HTTP status, or None for transport failures.
        code: Symbolic code for transport failures (ETIMEDOUT, ECONNRESET).
        response_data: Parsed error body when the remote returned one.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        response_data: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self._code = code
        self.response_data = response_data

    @property
    def code(self) -> str:
        if self.status_code is not None:
            return str(self.status_code)
        return self._code or "UNKNOWN"

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def error_code_of(exc: BaseException) -> str:
    """Error code recorded in logs and the failure ledger."""
    if isinstance(exc, RemoteAPIError):
        return exc.code
    return "UNKNOWN"


def classify_error(code: str | None) -> ErrorClass:
    """Map an error code to its retry class."""
    if code is None:
        return ErrorClass.UNKNOWN
    if code == "404":
        return ErrorClass.STALE
    if code in ("400", "422"):
        return ErrorClass.VALIDATION
    if code in ("401", "403"):
        return ErrorClass.AUTH
    if code in TRANSIENT_CODES or (code.isdigit() and 500 <= int(code) < 600):
        return ErrorClass.TRANSIENT
    return ErrorClass.UNKNOWN


# ── Shared Types ────────────────────────────────────────────────────────────


class SourcePage(BaseModel):
    """One page of raw Phorest records."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    page: int = 0
    total_pages: int = 0

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages - 1


class ContactPage(BaseModel):
    """One page of GHL contacts plus the cursor for the next one."""

    contacts: list[dict[str, Any]] = Field(default_factory=list)
    next_cursor: str | None = None


# ── Source (Phorest) ────────────────────────────────────────────────────────


class SourceClient(ABC):
    """Abstract interface for the source-of-record system.

    Methods:
        list_page: Fetch one page of records for an entity type.
        get_by_id: Fetch a single record, None when it does not exist.
        find_client: Look a client up by email or phone.
        create_client / update_client: Writes used by the inbound direction.
        list_client_categories: Category id -> name lookups for tagging.
    """

    @abstractmethod
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
        """Fetch one page of records of the given type."""
        ...

    @abstractmethod
    async def get_by_id(self, entity_type: EntityType, source_id: str) -> dict[str, Any] | None:
        """Fetch one record by id, None on 404."""
        ...

    @abstractmethod
    async def find_client(
        self, email: str | None = None, phone: str | None = None
    ) -> dict[str, Any] | None:
        """Find a client by email or mobile number."""
        ...

    @abstractmethod
    async def create_client(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a client, return the created record."""
        ...

    @abstractmethod
    async def update_client(self, client_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a client (requires the current version), return the record."""
        ...

    @abstractmethod
    async def list_client_categories(self) -> list[dict[str, Any]]:
        """List client categories."""
        ...


# ── Destination (GHL) ───────────────────────────────────────────────────────


class DestinationClient(ABC):
    """Abstract interface for the destination CRM.

    Covers contacts (upsert, create, update, get, notes, paging), calendar
    appointments (create, update, get, list events in a window), products
    (create, update, search) and custom field lookups.
    """

    location_id: str = ""
    calendar_id: str = ""

    @abstractmethod
    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        """Fetch a contact by id."""
        ...

    @abstractmethod
    async def create_contact(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a contact unconditionally."""
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a contact by id."""
        ...

    @abstractmethod
    async def upsert_contact(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create or update a contact matched by email/phone."""
        ...

    @abstractmethod
    async def add_contact_note(self, contact_id: str, body: str) -> dict[str, Any]:
        """Append a note to a contact."""
        ...

    @abstractmethod
    async def get_contact_notes(self, contact_id: str) -> list[dict[str, Any]]:
        """List notes on a contact."""
        ...

    @abstractmethod
    async def list_contacts(self, cursor: str | None = None, limit: int = 100) -> ContactPage:
        """Fetch one page of contacts."""
        ...

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> dict[str, Any]:
        """Fetch a calendar appointment by id."""
        ...

    @abstractmethod
    async def create_appointment(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a calendar appointment."""
        ...

    @abstractmethod
    async def update_appointment(self, appointment_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a calendar appointment."""
        ...

    @abstractmethod
    async def list_calendar_events(
        self, start: datetime, end: datetime, calendar_id: str | None = None
    ) -> list[dict[str, Any]]:
        """List calendar events overlapping a window."""
        ...

    @abstractmethod
    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a product."""
        ...

    @abstractmethod
    async def update_product(self, product_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Update a product."""
        ...

    @abstractmethod
    async def search_products(self, name: str, limit: int = 10) -> list[dict[str, Any]]:
        """Search products by name."""
        ...

    @abstractmethod
    async def list_custom_fields(self) -> list[dict[str, Any]]:
        """List the location's contact custom fields."""
        ...
