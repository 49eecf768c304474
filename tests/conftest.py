"""Shared fixtures for the sync engine tests.

Provides:
- A file-backed SQLite database (aiosqlite) with every sync table created
- session_factory: async generator factory matching core.database.get_session
- Real stores and services bound to that database
- AsyncMock Phorest / GHL clients specced against the remote interfaces

Remote clients are always mocked; persistence is always real so mapping,
staging and ledger invariants are exercised against actual SQL.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

import src.app.sync.models  # noqa: F401 -- register tables on Base.metadata
from src.app.core.database import Base
from src.app.sync.ledger import FailureLedger
from src.app.sync.mapping import MappingStore
from src.app.sync.remote.adapter import DestinationClient, SourceClient, SourcePage
from src.app.sync.repository import StagedRepository
from src.app.sync.runs import SyncRunService


# ── Database ────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}", poolclass=NullPool
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session generator with the same shape as get_session()."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


# ── Stores ──────────────────────────────────────────────────────────────────


@pytest.fixture
def mappings(session_factory) -> MappingStore:
    return MappingStore(session_factory)


@pytest.fixture
def repo(session_factory) -> StagedRepository:
    return StagedRepository(session_factory)


@pytest.fixture
def runs(session_factory, mappings) -> SyncRunService:
    return SyncRunService(session_factory, mappings, stale_timeout_minutes=5)


@pytest.fixture
def ledger(session_factory) -> FailureLedger:
    return FailureLedger(session_factory)


# ── Remote Clients ──────────────────────────────────────────────────────────


@pytest.fixture
def source() -> AsyncMock:
    """Phorest mock: empty pages, no categories, unknown ids."""
    client = AsyncMock(spec=SourceClient)
    client.list_page.return_value = SourcePage(items=[], page=0, total_pages=0)
    client.get_by_id.return_value = None
    client.find_client.return_value = None
    client.list_client_categories.return_value = []
    return client


@pytest.fixture
def dest() -> AsyncMock:
    """GHL mock: no custom fields, empty searches, writes echo an id."""
    client = AsyncMock(spec=DestinationClient)
    client.location_id = "loc-1"
    client.calendar_id = "cal-1"
    client.list_custom_fields.return_value = []
    client.search_products.return_value = []
    client.get_contact_notes.return_value = []
    client.list_calendar_events.return_value = []
    client.update_contact.return_value = {}
    client.update_appointment.return_value = {}
    client.update_product.return_value = {}
    client.add_contact_note.return_value = {"id": "note-1"}
    return client
