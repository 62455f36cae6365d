"""Oura webhook intake.

The raw body is verified against ``x-oura-signature`` (base64 HMAC-SHA256
with the shared secret) before anything is parsed. Accepted notifications
go through the regular ingestion path, so a redelivered notification is a
duplicate, not a second event.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Any

import psycopg

from .errors import WebhookError
from .identity import stable_hash
from .ingestion import ingest_raw_event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-oura-signature"
PROVIDER = "oura"

_KIND_BY_DATA_TYPE: dict[str, str] = {
    "workout": "workout",
    "sleep": "sleep",
}


def sign_oura_body(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_oura_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_oura_body(raw_body, secret), signature.strip())


def _first_id(body: dict[str, Any]) -> str | None:
    candidates: list[Any] = [body.get("id"), body.get("object_id")]
    for nested_key in ("payload", "data"):
        nested = body.get(nested_key)
        if isinstance(nested, dict):
            candidates.append(nested.get("id"))
    for candidate in candidates:
        if isinstance(candidate, (str, int)) and not isinstance(candidate, bool):
            text = str(candidate).strip()
            if text:
                return text
    return None


def _webhook_envelope(body: dict[str, Any]) -> dict[str, Any]:
    data_type = str(body.get("data_type") or "").lower()
    data = body.get("data")
    kind = _KIND_BY_DATA_TYPE.get(data_type) if isinstance(data, dict) else None
    # Receipt time stays out of the envelope so redeliveries fingerprint equal.
    occurred_at = body.get("event_time")
    if not occurred_at and kind:
        occurred_at = data.get("start_datetime") or data.get("bedtime_start")
    return {
        "provider": PROVIDER,
        "kind": kind or "incomplete",
        "occurred_at": str(occurred_at) if occurred_at else "unknown",
        "time_zone": "UTC",
        "payload": data if kind else body,
        "provenance": "device",
    }


async def handle_oura_webhook(
    conn: psycopg.AsyncConnection[Any],
    *,
    raw_body: bytes,
    signature: str | None,
    uid: str | None,
    secret: str | None,
    received_at: str | None = None,
    max_retries: int = 3,
) -> dict[str, Any]:
    """Verify, parse and ingest one Oura notification.

    Raises WebhookError carrying the HTTP status for the caller to return.
    """
    if not secret:
        raise WebhookError(
            code="webhook_secret_missing",
            message="Oura webhook secret is not configured",
            status=500,
        )
    if not verify_oura_signature(raw_body, signature, secret):
        raise WebhookError(
            code="invalid_signature", message="Signature mismatch", status=401
        )
    if not uid:
        raise WebhookError(code="missing_uid", message="uid query parameter is required")

    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookError(code="invalid_json", message="Body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise WebhookError(code="invalid_json", message="Body must be a JSON object")

    event_id = _first_id(body) or stable_hash(raw_body)
    result = await ingest_raw_event(
        conn,
        uid,
        _webhook_envelope(body),
        idempotency_key=event_id,
        received_at=received_at,
        max_retries=max_retries,
    )

    response: dict[str, Any] = {"ok": True, "event_id": event_id, "outcome": result.outcome}
    if result.outcome == "duplicate":
        response["dedup"] = True
    elif result.outcome == "rejected":
        response["rejection"] = result.rejection
    logger.info(
        "Oura webhook %s: %s",
        event_id,
        result.outcome,
        extra={
            "truth_user_id": uid,
            "truth_provider": PROVIDER,
            "truth_outcome": result.outcome,
        },
    )
    return response
