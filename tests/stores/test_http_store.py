"""Tests for the HTTP source store.

Covers:
- GET /events with bare-array and {"items": [...]} payloads
- Bearer auth header
- PUT writes the flat wire record; DELETE treats 404 as done
- 429/503 retry with exponential backoff and Retry-After
- Transport errors and non-2xx responses surfacing as StoreUnavailable
"""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from scheduling_engine.errors import StoreUnavailable
from scheduling_engine.models import SourceOrigin
from scheduling_engine.stores.http import (
    RATE_LIMIT_BASE_BACKOFF_SECONDS,
    RATE_LIMIT_MAX_RETRIES,
    HttpSourceStore,
)
from tests.conftest import event

pytestmark = pytest.mark.unit

BASE_URL = "https://schedule.example.com/api"


def _store(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    token: str | None = None,
) -> HttpSourceStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSourceStore(BASE_URL, SourceOrigin.SERVICE_SCHEDULE, token=token, http_client=client)


class TestReads:
    async def test_bare_array_payload(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=[{"id": "S1"}, "junk", {"id": "S2"}])

        store = _store(handler, token="secret")
        records = await store.list_records()

        assert [r["id"] for r in records] == ["S1", "S2"]
        assert str(requests[0].url) == f"{BASE_URL}/events"
        assert requests[0].headers["Authorization"] == "Bearer secret"

    async def test_items_envelope(self):
        store = _store(lambda request: httpx.Response(200, json={"items": [{"id": "S1"}]}))
        assert await store.list_records() == [{"id": "S1"}]

    async def test_non_json_body_is_unavailable(self):
        store = _store(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(StoreUnavailable):
            await store.list_records()

    async def test_server_error_carries_safe_message(self):
        store = _store(
            lambda request: httpx.Response(500, json={"error": {"message": "db   offline"}})
        )
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.list_records()
        assert "500" in exc_info.value.message
        assert "db offline" in exc_info.value.message
        assert exc_info.value.source_origin == "service_schedule"

    async def test_transport_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(StoreUnavailable):
            await _store(handler).list_records()


class TestWrites:
    async def test_put_sends_wire_record(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await _store(handler).write(event("A 1", "09:00", "10:00", title="Color"))

        request = seen[0]
        assert request.method == "PUT"
        assert request.url.raw_path == b"/api/events/A%201"
        body = json.loads(request.content)
        assert body["startAt"] == "2026-03-10T09:00:00"
        assert body["title"] == "Color"

    async def test_delete_404_is_done(self):
        store = _store(lambda request: httpx.Response(404))
        await store.delete("gone")

    async def test_delete_failure_raises(self):
        store = _store(lambda request: httpx.Response(409, text="locked"))
        with pytest.raises(StoreUnavailable):
            await store.delete("A")


class TestRateLimitRetry:
    async def test_retries_503_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json=[])])
        store = _store(lambda request: next(responses))

        with patch(
            "scheduling_engine.stores.http.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            assert await store.list_records() == []

        mock_sleep.assert_awaited_once_with(RATE_LIMIT_BASE_BACKOFF_SECONDS)

    async def test_backoff_is_exponential_and_gives_up(self):
        store = _store(lambda request: httpx.Response(503))

        with patch(
            "scheduling_engine.stores.http.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            with pytest.raises(StoreUnavailable):
                await store.list_records()

        delays = [call.args[0] for call in mock_sleep.await_args_list]
        assert len(delays) == RATE_LIMIT_MAX_RETRIES
        assert delays == [RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**i) for i in range(len(delays))]

    async def test_retry_after_header_is_honoured(self):
        responses = iter(
            [httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json=[])]
        )
        store = _store(lambda request: next(responses))

        with patch(
            "scheduling_engine.stores.http.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await store.list_records()

        mock_sleep.assert_awaited_once_with(7.0)


class TestLifecycle:
    async def test_injected_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        store = HttpSourceStore(BASE_URL, "unified_event", http_client=client)

        await store.shutdown()

        assert client.is_closed is False
        await client.aclose()

    async def test_owned_client_is_closed(self):
        store = HttpSourceStore(BASE_URL, "unified_event")
        await store.shutdown()
        assert store._http_client.is_closed is True
