"""Tests for Oura webhook verification and intake."""

import json

import pytest

from health_truth.errors import WebhookError
from health_truth.identity import stable_hash
from health_truth.webhooks import handle_oura_webhook, sign_oura_body, verify_oura_signature

SECRET = "shh"
USER = "user-1"


def _body(**fields) -> bytes:
    return json.dumps(fields).encode()


async def _call(conn, raw_body, *, signature=None, uid=USER, secret=SECRET):
    if signature is None and secret:
        signature = sign_oura_body(raw_body, secret)
    return await handle_oura_webhook(
        conn,
        raw_body=raw_body,
        signature=signature,
        uid=uid,
        secret=secret,
        received_at="2025-01-16T00:00:00+00:00",
    )


WORKOUT = {
    "id": "w-9",
    "activity": "cycling",
    "start_datetime": "2025-01-15T17:00:00+00:00",
    "end_datetime": "2025-01-15T18:00:00+00:00",
}


class TestSignature:
    def test_roundtrip(self):
        body = b'{"a":1}'
        assert verify_oura_signature(body, sign_oura_body(body, SECRET), SECRET)

    def test_wrong_secret_fails(self):
        body = b'{"a":1}'
        assert not verify_oura_signature(body, sign_oura_body(body, "other"), SECRET)

    def test_missing_signature_fails(self):
        assert not verify_oura_signature(b"{}", None, SECRET)


class TestHandleOuraWebhook:
    @pytest.mark.asyncio
    async def test_ingests_workout_notification(self, mock_conn, memory_store):
        raw = _body(id="notif-1", data_type="workout", data=WORKOUT)
        result = await _call(mock_conn, raw)

        assert result == {"ok": True, "event_id": "notif-1", "outcome": "created"}
        event = memory_store.canonical_events[(USER, "oura_notif-1")]
        assert event.kind == "workout"
        assert event.sport == "cycling"

    @pytest.mark.asyncio
    async def test_redelivery_reports_dedup(self, mock_conn, memory_store):
        raw = _body(id="notif-1", data_type="workout", data=WORKOUT)
        await _call(mock_conn, raw)
        again = await _call(mock_conn, raw)

        assert again == {"ok": True, "event_id": "notif-1", "outcome": "duplicate", "dedup": True}
        assert len(memory_store.raw_events) == 1

    @pytest.mark.asyncio
    async def test_same_id_with_changed_body_reports_collision(self, mock_conn, memory_store):
        await _call(mock_conn, _body(id="notif-1", data_type="workout", data=WORKOUT))
        changed = {**WORKOUT, "end_datetime": "2025-01-15T18:30:00+00:00"}
        result = await _call(mock_conn, _body(id="notif-1", data_type="workout", data=changed))

        assert result == {
            "ok": True,
            "event_id": "notif-1",
            "outcome": "rejected",
            "rejection": "DUPLICATE_EVENT",
        }
        assert "dedup" not in result
        assert [f.code for f in memory_store.failures.values()] == ["DUPLICATE_EVENT"]
        assert memory_store.canonical_events[(USER, "oura_notif-1")].duration_minutes == 60

    @pytest.mark.asyncio
    async def test_event_id_from_nested_data(self, mock_conn, memory_store):
        raw = _body(data_type="workout", data=WORKOUT)
        result = await _call(mock_conn, raw)
        assert result["event_id"] == "w-9"

    @pytest.mark.asyncio
    async def test_event_id_falls_back_to_body_hash(self, mock_conn, memory_store):
        raw = _body(event_type="create", data_type="tag")
        result = await _call(mock_conn, raw)
        assert result["event_id"] == stable_hash(raw)

    @pytest.mark.asyncio
    async def test_notification_without_data_is_recorded_as_failure(self, mock_conn, memory_store):
        raw = _body(id="n-2", event_type="create", data_type="workout", object_id="abc")
        result = await _call(mock_conn, raw)

        assert result["ok"] is True
        failures = list(memory_store.failures.values())
        assert [f.code for f in failures] == ["MAPPING_REJECTED"]
        assert failures[0].details["reason"] == "UNSUPPORTED_KIND"

    @pytest.mark.asyncio
    async def test_missing_secret_is_500(self, mock_conn, memory_store):
        with pytest.raises(WebhookError) as excinfo:
            await _call(mock_conn, b"{}", signature="x", secret=None)
        assert (excinfo.value.status, excinfo.value.code) == (500, "webhook_secret_missing")

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, mock_conn, memory_store):
        with pytest.raises(WebhookError) as excinfo:
            await _call(mock_conn, b"{}", signature="bm9wZQ==")
        assert (excinfo.value.status, excinfo.value.code) == (401, "invalid_signature")
        assert memory_store.raw_events == {}

    @pytest.mark.asyncio
    async def test_missing_uid_is_400(self, mock_conn, memory_store):
        with pytest.raises(WebhookError) as excinfo:
            await _call(mock_conn, b"{}", uid=None)
        assert (excinfo.value.status, excinfo.value.code) == (400, "missing_uid")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b"\xff\xfe"])
    async def test_invalid_json_is_400(self, mock_conn, memory_store, raw):
        with pytest.raises(WebhookError) as excinfo:
            await _call(mock_conn, raw)
        assert (excinfo.value.status, excinfo.value.code) == (400, "invalid_json")
