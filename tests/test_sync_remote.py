"""Phorest and GHL client tests over httpx.MockTransport.

Verifies request shape (paths, params, auth headers), response unwrapping,
error normalisation into RemoteAPIError and the transient retry policy.
"""

from __future__ import annotations

import httpx
import pytest

from src.app.sync.remote.adapter import RemoteAPIError, classify_error, error_code_of
from src.app.sync.remote.ghl import GHLClient
from src.app.sync.remote.phorest import PhorestClient
from src.app.sync.schemas import EntityType, ErrorClass


# ── Fixtures ────────────────────────────────────────────────────────────────


def _make_phorest(handler) -> PhorestClient:
    return PhorestClient(
        base_url="https://phorest.test/api/business",
        business_id="biz",
        branch_id="br",
        username="user",
        password="secret",
        transport=httpx.MockTransport(handler),
    )


def _make_ghl(handler) -> GHLClient:
    return GHLClient(
        base_url="https://ghl.test",
        access_token="token-1",
        location_id="loc-1",
        calendar_id="cal-1",
        transport=httpx.MockTransport(handler),
    )


class TestErrorClassification:
    def test_codes(self) -> None:
        assert classify_error("404") == ErrorClass.STALE
        assert classify_error("400") == ErrorClass.VALIDATION
        assert classify_error("422") == ErrorClass.VALIDATION
        assert classify_error("401") == ErrorClass.AUTH
        assert classify_error("429") == ErrorClass.TRANSIENT
        assert classify_error("599") == ErrorClass.TRANSIENT
        assert classify_error("ETIMEDOUT") == ErrorClass.TRANSIENT
        assert classify_error("weird") == ErrorClass.UNKNOWN
        assert classify_error(None) == ErrorClass.UNKNOWN

    def test_error_code_prefers_status(self) -> None:
        assert RemoteAPIError("x", status_code=503, code="ECONNRESET").code == "503"
        assert RemoteAPIError("x", code="ECONNRESET").code == "ECONNRESET"
        assert RemoteAPIError("x").code == "UNKNOWN"
        assert error_code_of(ValueError("x")) == "UNKNOWN"

    def test_is_not_found(self) -> None:
        assert RemoteAPIError("gone", status_code=404).is_not_found is True
        assert RemoteAPIError("bad", status_code=400).is_not_found is False


class TestPhorestClient:
    async def test_list_page_parses_hal_body(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "_embedded": {"clients": [{"clientId": "c1"}, {"clientId": "c2"}]},
                    "page": {"number": 0, "totalPages": 3},
                },
            )

        client = _make_phorest(handler)
        page = await client.list_page(EntityType.CLIENT, 0, 50)
        await client.aclose()

        assert [c["clientId"] for c in page.items] == ["c1", "c2"]
        assert page.has_more is True
        assert seen[0].url.path == "/api/business/biz/client"
        assert seen[0].url.params["size"] == "50"
        assert seen[0].headers["authorization"].startswith("Basic ")

    async def test_staff_embedded_under_either_key(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/business/biz/branch/br/staff"
            return httpx.Response(
                200, json={"_embedded": {"staff": [{"staffId": "s1"}]}, "page": {"totalPages": 1}}
            )

        client = _make_phorest(handler)
        page = await client.list_page(EntityType.STAFF, 0)
        await client.aclose()

        assert page.items == [{"staffId": "s1"}]
        assert page.has_more is False

    async def test_appointment_range_params(self) -> None:
        from datetime import datetime, timezone

        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"_embedded": {}, "page": {"totalPages": 0}})

        client = _make_phorest(handler)
        await client.list_page(
            EntityType.APPOINTMENT,
            0,
            start=datetime(2026, 10, 1, tzinfo=timezone.utc),
            end=datetime(2026, 10, 20, tzinfo=timezone.utc),
        )
        await client.aclose()

        assert seen[0].url.params["from_date"] == "2026-10-01"
        assert seen[0].url.params["to_date"] == "2026-10-20"

    async def test_get_by_id_not_found_returns_none(self) -> None:
        client = _make_phorest(lambda request: httpx.Response(404, json={"message": "nope"}))

        assert await client.get_by_id(EntityType.CLIENT, "missing") is None
        await client.aclose()

    async def test_find_client_strips_plus_from_phone(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"_embedded": {"clients": [{"clientId": "c1"}]}})

        client = _make_phorest(handler)
        found = await client.find_client(phone="+15551234567")
        assert await client.find_client() is None
        await client.aclose()

        assert found == {"clientId": "c1"}
        assert seen[0].url.params["phone"] == "15551234567"
        assert len(seen) == 1

    def test_derived_types_have_no_collection(self) -> None:
        client = _make_phorest(lambda request: httpx.Response(200))
        with pytest.raises(ValueError):
            client._collection_path(EntityType.BOOKING)


class TestGHLClient:
    async def test_upsert_contact_unwraps_and_sends_headers(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"new": True, "contact": {"id": "ghl-1"}})

        client = _make_ghl(handler)
        contact = await client.upsert_contact({"email": "ann@example.com"})
        await client.aclose()

        assert contact == {"id": "ghl-1"}
        request = seen[0]
        assert request.url.path == "/contacts/upsert"
        assert request.headers["authorization"] == "Bearer token-1"
        assert request.headers["version"] == "2021-07-28"
        assert b'"locationId":"loc-1"' in request.content.replace(b" ", b"")

    async def test_validation_error_is_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(422, json={"message": "duplicate contact"})

        client = _make_ghl(handler)
        with pytest.raises(RemoteAPIError) as exc_info:
            await client.update_contact("ghl-1", {"firstName": "Ann"})
        await client.aclose()

        assert calls == 1
        assert exc_info.value.status_code == 422
        assert exc_info.value.code == "422"
        assert "duplicate contact" in exc_info.value.message
        assert exc_info.value.response_data == {"message": "duplicate contact"}

    async def test_transient_error_is_retried(self) -> None:
        responses = [
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"contact": {"id": "ghl-1", "firstName": "Ann"}}),
        ]

        client = _make_ghl(lambda request: responses.pop(0))
        contact = await client.get_contact("ghl-1")
        await client.aclose()

        assert contact["firstName"] == "Ann"
        assert responses == []

    async def test_list_contacts_cursor(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["startAfterId"] == "prev"
            return httpx.Response(
                200,
                json={"contacts": [{"id": "a"}, {"id": "b"}], "meta": {"startAfterId": "b"}},
            )

        client = _make_ghl(handler)
        full = await client.list_contacts(cursor="prev", limit=2)
        partial = await client.list_contacts(cursor="prev", limit=5)
        await client.aclose()

        assert full.next_cursor == "b"
        assert partial.next_cursor is None

    async def test_calendar_events_window_in_millis(self) -> None:
        from datetime import datetime, timezone

        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"events": [{"id": "evt-1"}]})

        client = _make_ghl(handler)
        start = datetime(2026, 10, 1, tzinfo=timezone.utc)
        events = await client.list_calendar_events(start, start)
        await client.aclose()

        assert events == [{"id": "evt-1"}]
        assert seen[0].url.params["calendarId"] == "cal-1"
        assert seen[0].url.params["startTime"] == str(int(start.timestamp() * 1000))
