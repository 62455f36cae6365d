"""Tests for provider resync against mocked provider APIs."""

import json
from datetime import UTC, datetime
from urllib.parse import parse_qs

import httpx
import pytest

from health_truth.errors import ProviderFetchError, ResyncConfigError
from health_truth.resync import chunked, resync

USER = "user-1"
NOW = datetime(2025, 1, 31, 12, 0, tzinfo=UTC)
OURA = "https://oura.test"
WITHINGS = "https://withings.test"


def _oura_workout(i: int) -> dict:
    return {
        "id": f"w-{i}",
        "activity": "running",
        "start_datetime": f"2025-01-{10 + i:02d}T07:00:00+00:00",
        "end_datetime": f"2025-01-{10 + i:02d}T07:40:00+00:00",
        "intensity": "moderate",
    }


def _withings_group(i: int) -> dict:
    return {
        "grpid": 1000 + i,
        "date": 1736924400 + i * 86400,
        "category": 1,
        "measures": [{"value": 80000 + i * 100, "type": 1, "unit": -3}],
    }


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _resync(conn, provider, client, **kwargs):
    kwargs.setdefault("now", NOW)
    return await resync(
        conn,
        USER,
        provider,
        http_client=client,
        oura_base_url=OURA,
        withings_base_url=WITHINGS,
        **kwargs,
    )


@pytest.fixture
def oura_integration(memory_store):
    memory_store.integrations[(USER, "oura")] = {
        "provider": "oura",
        "access_token": "oura-token",
        "data": {"timezone": "Europe/Berlin"},
    }
    return memory_store


@pytest.fixture
def withings_integration(memory_store):
    memory_store.integrations[(USER, "withings")] = {
        "provider": "withings",
        "access_token": "withings-token",
        "data": {},
    }
    return memory_store


class TestOuraResync:
    @pytest.mark.asyncio
    async def test_writes_one_document_per_item_and_rerun_writes_none(
        self, mock_conn, oura_integration
    ):
        workouts = [_oura_workout(i) for i in range(5)]
        seen_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_requests.append(request)
            return httpx.Response(200, json={"data": workouts, "next_token": None})

        async with _client(handler) as client:
            first = await _resync(mock_conn, "oura", client)
            second = await _resync(mock_conn, "oura", client)

        assert (first.fetched, first.written, first.duplicates) == (5, 5, 0)
        assert (second.fetched, second.written, second.duplicates) == (5, 0, 5)
        assert len(oura_integration.raw_events) == 5
        assert len(oura_integration.canonical_events) == 5
        assert (USER, "oura_w-0") in oura_integration.raw_events

        request = seen_requests[0]
        assert request.url.path == "/v2/usercollection/workout"
        assert request.url.params["start_date"] == "2025-01-01"
        assert request.url.params["end_date"] == "2025-01-31"
        assert request.headers["Authorization"] == "Bearer oura-token"

    @pytest.mark.asyncio
    async def test_follows_next_token(self, mock_conn, oura_integration):
        pages = {
            None: {"data": [_oura_workout(0), _oura_workout(1)], "next_token": "page-2"},
            "page-2": {"data": [_oura_workout(2)], "next_token": None},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=pages[request.url.params.get("next_token")])

        async with _client(handler) as client:
            result = await _resync(mock_conn, "oura", client)

        assert result.fetched == 3
        assert result.written == 3

    @pytest.mark.asyncio
    async def test_uses_integration_timezone_for_day(self, mock_conn, oura_integration):
        late = {
            **_oura_workout(0),
            "id": "late",
            "start_datetime": "2025-01-15T23:30:00+00:00",
            "end_datetime": "2025-01-15T23:50:00+00:00",
        }

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [late]})

        async with _client(handler) as client:
            await _resync(mock_conn, "oura", client)

        event = oura_integration.canonical_events[(USER, "oura_late")]
        assert event.day == "2025-01-16"

    @pytest.mark.asyncio
    async def test_chunks_do_not_change_results(self, mock_conn, oura_integration):
        workouts = [_oura_workout(i) for i in range(7)]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": workouts})

        async with _client(handler) as client:
            result = await _resync(mock_conn, "oura", client, chunk_size=3)

        assert result.written == 7
        # one outer transaction per chunk plus one per ingested item
        assert mock_conn.transaction.call_count == 3 + 7

    @pytest.mark.asyncio
    async def test_http_failure_writes_nothing(self, mock_conn, oura_integration):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(200, json={"data": [_oura_workout(0)], "next_token": "p2"})
            return httpx.Response(502, json={"error": "bad gateway"})

        async with _client(handler) as client:
            with pytest.raises(ProviderFetchError) as excinfo:
                await _resync(mock_conn, "oura", client)

        assert excinfo.value.code == "oura_fetch_failed_502"
        assert excinfo.value.status == 500
        assert oura_integration.raw_events == {}

    @pytest.mark.asyncio
    async def test_network_error_is_a_fetch_failure(self, mock_conn, oura_integration):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(ProviderFetchError) as excinfo:
                await _resync(mock_conn, "oura", client)

        assert excinfo.value.code == "oura_fetch_failed_network"

    @pytest.mark.asyncio
    async def test_malformed_item_is_rejected_not_fatal(self, mock_conn, oura_integration):
        broken = {"id": "broken", "activity": "running"}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [_oura_workout(0), broken]})

        async with _client(handler) as client:
            result = await _resync(mock_conn, "oura", client)

        assert (result.written, result.rejected) == (1, 1)
        assert len(oura_integration.failures) == 1


class TestWithingsResync:
    @pytest.mark.asyncio
    async def test_paginates_with_offset_and_writes_groups(self, mock_conn, withings_integration):
        forms = []

        def handler(request: httpx.Request) -> httpx.Response:
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            forms.append(form)
            if "offset" not in form:
                body = {"measuregrps": [_withings_group(0), _withings_group(1)], "more": 1, "offset": 2}
            else:
                body = {"measuregrps": [_withings_group(2)], "more": 0, "timezone": "Europe/Paris"}
            return httpx.Response(200, json={"status": 0, "body": body})

        async with _client(handler) as client:
            result = await _resync(mock_conn, "withings", client)

        assert (result.fetched, result.written) == (3, 3)
        assert forms[0]["action"] == "getmeas"
        assert forms[0]["meastypes"] == "1,6"
        assert forms[0]["category"] == "1"
        assert forms[0]["access_token"] == "withings-token"
        assert forms[1]["offset"] == "2"
        assert (USER, "withings_1000") in withings_integration.raw_events
        assert withings_integration.canonical_events[(USER, "withings_1000")].weight_kg == 80.0

    @pytest.mark.asyncio
    async def test_non_zero_status_fails(self, mock_conn, withings_integration):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": 401, "error": "invalid token"})

        async with _client(handler) as client:
            with pytest.raises(ProviderFetchError) as excinfo:
                await _resync(mock_conn, "withings", client)

        assert excinfo.value.code == "withings_fetch_failed_401"
        assert withings_integration.raw_events == {}


class TestResyncConfig:
    @pytest.mark.asyncio
    async def test_missing_integration(self, mock_conn, memory_store):
        async with _client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(ResyncConfigError) as excinfo:
                await _resync(mock_conn, "oura", client)
        assert excinfo.value.code == "oura_integration_missing"
        assert excinfo.value.status == 400

    @pytest.mark.asyncio
    async def test_missing_token(self, mock_conn, memory_store):
        memory_store.integrations[(USER, "withings")] = {
            "provider": "withings", "access_token": None, "data": {}
        }
        async with _client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(ResyncConfigError) as excinfo:
                await _resync(mock_conn, "withings", client)
        assert excinfo.value.code == "withings_token_missing"

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, mock_conn, memory_store):
        async with _client(lambda r: httpx.Response(500)) as client:
            with pytest.raises(ResyncConfigError):
                await _resync(mock_conn, "fitbit", client)


def test_chunked():
    assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
    assert chunked([], 450) == []
    with pytest.raises(ValueError):
        chunked([1], 0)


def test_provider_error_body_shape():
    err = ProviderFetchError(code="oura_fetch_failed_500", message="boom")
    assert json.loads(json.dumps(err.to_body())) == {
        "ok": False,
        "error": "oura_fetch_failed_500",
        "message": "boom",
    }
