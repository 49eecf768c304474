"""Integration tests for the sync control API.

Builds a real SyncContainer over the SQLite session factory with mocked
remote clients and drives the v1 sync endpoints through httpx AsyncClient.
The scheduler is disabled; triggered jobs run as background tasks.
"""

from __future__ import annotations

import asyncio

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.config import Settings
from src.app.main import create_app
from src.app.sync.container import SyncContainer, build_container
from src.app.sync.schemas import EntityType, RunCounts


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def container(session_factory, source, dest):
    settings = Settings(
        SYNC_SCHEDULER_ENABLED=False,
        GHL_LOCATION_ID="loc-1",
        GHL_CALENDAR_ID="cal-1",
    )
    sync = build_container(
        settings, session_factory=session_factory, source=source, dest=dest, redis=None
    )
    yield sync
    await sync.aclose()


@pytest_asyncio.fixture
async def client(container: SyncContainer):
    app = create_app()
    app.state.sync = container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ── Queue Control ────────────────────────────────────────────────────────────


class TestQueueControl:
    async def test_status_lists_every_queue(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/sync/status")

        assert response.status_code == 200
        body = response.json()
        assert body["scheduler_running"] is False
        for queue in ("client", "appointment", "audit", "auto_retry", "janitor", "client_inbound"):
            assert queue in body["queues"]

    async def test_trigger_runs_in_background(
        self, client: AsyncClient, container: SyncContainer
    ) -> None:
        response = await client.post("/api/v1/sync/janitor")

        assert response.status_code == 202
        handle = response.json()
        assert handle["queue"] == "janitor"
        assert handle["status"] == "running"
        await _wait_for(
            lambda: container.orchestrator.status().queues["janitor"].completed == 1
        )

    async def test_unknown_queue_is_404(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/sync/nope")

        assert response.status_code == 404
        assert "Unknown sync queue" in response.json()["detail"]

    async def test_invalid_max_records_is_422(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/sync/client", json={"max_records": 0})

        assert response.status_code == 422

    async def test_pause_and_resume(self, client: AsyncClient) -> None:
        paused = await client.post("/api/v1/sync/pause", json={"queue": "client"})
        assert paused.status_code == 200
        assert paused.json() == {"queues": ["client"], "paused": True}

        rejected = await client.post("/api/v1/sync/client")
        assert rejected.status_code == 409

        resumed = await client.post("/api/v1/sync/resume", json={"queue": "client"})
        assert resumed.json() == {"queues": ["client"], "paused": False}

    async def test_pause_everything(self, client: AsyncClient, container: SyncContainer) -> None:
        response = await client.post("/api/v1/sync/pause")

        assert response.status_code == 200
        assert set(response.json()["queues"]) == set(container.orchestrator.registry.queues)
        assert container.orchestrator.is_paused("audit") is True

    async def test_pause_unknown_queue_is_404(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/sync/pause", json={"queue": "nope"})

        assert response.status_code == 404

    async def test_repair_trigger(
        self, client: AsyncClient, container: SyncContainer
    ) -> None:
        container.orchestrator.pause("appointment")

        response = await client.post("/api/v1/sync/appointment/apt-1/repair")

        assert response.status_code == 409
        container.orchestrator.resume("appointment")

        first = await client.post("/api/v1/sync/client/c1/repair")
        assert first.status_code == 202
        assert first.json()["job_id"] == "repair-client-c1"


# ── Runs & Health ────────────────────────────────────────────────────────────


class TestRuns:
    async def test_health_without_runs(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/sync/health")

        assert response.status_code == 200
        assert response.json()["status"] == "no_runs"

    async def test_runs_and_logs(self, client: AsyncClient, container: SyncContainer) -> None:
        handle = await container.runs.create_run(EntityType.STAFF)
        await container.runs.complete_run(handle.run_id, RunCounts(total=0))

        runs = await client.get("/api/v1/sync/runs", params={"entity_type": "staff"})
        logs = await client.get(f"/api/v1/sync/runs/{handle.run_id}/logs")

        assert [r["id"] for r in runs.json()] == [handle.run_id]
        assert logs.status_code == 200
        assert logs.json() == []

    async def test_logs_for_missing_run_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/sync/runs/missing/logs")

        assert response.status_code == 404


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    async def test_list_stats_and_resolve(
        self, client: AsyncClient, container: SyncContainer
    ) -> None:
        failure = await container.ledger.report(EntityType.CLIENT, "c1", "boom", "500")

        listed = await client.get("/api/v1/sync/failures")
        stats = await client.get("/api/v1/sync/failures/stats")
        resolved = await client.post(f"/api/v1/sync/failures/{failure.id}/resolve")
        again = await client.post(f"/api/v1/sync/failures/{failure.id}/resolve")

        assert [f["id"] for f in listed.json()] == [failure.id]
        assert stats.json()["total_unresolved"] == 1
        assert resolved.json() == {"id": failure.id, "resolved": True}
        assert again.status_code == 404

    async def test_manual_retry_of_unknown_client(
        self, client: AsyncClient, container: SyncContainer
    ) -> None:
        await container.ledger.report(EntityType.CLIENT, "c1", "boom", "500")

        response = await client.post("/api/v1/sync/failures/client/c1/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "skipped"
        assert body["deferred"] is True
        assert len(await container.ledger.recent_failures()) == 1


# ── Audits ───────────────────────────────────────────────────────────────────


class TestAudits:
    async def test_trigger_and_list(self, client: AsyncClient, container: SyncContainer) -> None:
        response = await client.post("/api/v1/sync/audits")

        assert response.status_code == 202
        assert response.json()["queue"] == "audit"
        await _wait_for(lambda: container.orchestrator.status().queues["audit"].completed == 1)

        audits = await client.get("/api/v1/sync/audits", params={"limit": 20})
        assert len(audits.json()) == 7


# ── Not Initialized ──────────────────────────────────────────────────────────


async def test_sync_api_503_when_not_initialized() -> None:
    app = create_app()
    app.state.sync = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        response = await http.get("/api/v1/sync/status")
        liveness = await http.get("/health")

    assert response.status_code == 503
    assert "not initialized" in response.json()["detail"]
    assert liveness.json()["status"] == "ok"
