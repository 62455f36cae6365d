"""Idempotency keys and stable hashing for inbound events.

Every id the pipeline derives goes through ``stable_hash``: retried webhook
deliveries, resync replays and repeated rejections must collapse onto the
same document instead of creating a new one.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

HASH_SIZE = 32

# Ingestion bookkeeping never participates in an event's identity.
_NON_IDENTITY_FIELDS: frozenset[str] = frozenset({"received_at"})


def stable_json(value: Any) -> str:
    """Key-sorted, whitespace-free JSON used for every hash input."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def stable_hash(data: bytes | str, size: int = HASH_SIZE) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()[:size]


def _native_id_text(native_id: Any) -> str | None:
    if isinstance(native_id, bool):
        return None
    if isinstance(native_id, int):
        return str(native_id)
    if isinstance(native_id, str) and native_id.strip():
        return native_id.strip()
    return None


def native_event_key(native_id: Any, payload: Any) -> str:
    """Provider's own id for an item, or the payload hash when it has none."""
    native = _native_id_text(native_id)
    if native is None:
        return stable_hash(stable_json(payload))
    return native


def provider_event_id(provider: str, native_id: Any, payload: Any) -> str:
    """Composite ``{provider}_{id}`` key, hashing the payload when no id exists."""
    return f"{provider}_{native_event_key(native_id, payload)}"


def payload_fingerprint(envelope: dict[str, Any]) -> str:
    """Fingerprint of what a producer sent, used to tell replays from collisions."""
    identity_view = {
        key: value
        for key, value in envelope.items()
        if key not in _NON_IDENTITY_FIELDS
    }
    return stable_hash(stable_json(identity_view))


def raw_event_id(
    provider: str,
    idempotency_key: str | None,
    envelope: dict[str, Any],
) -> str:
    """RawEvent id: producer key when supplied, otherwise the envelope fingerprint."""
    if idempotency_key is not None and idempotency_key.strip():
        return provider_event_id(provider, idempotency_key, None)
    return f"{provider}_{payload_fingerprint(envelope)}"


def failure_id(
    user_id: str,
    code: str,
    subject_id: str | None,
    fingerprint: str | None,
) -> str:
    """Deterministic Failure id so a repeated rejection records once."""
    return stable_hash(stable_json([user_id, code, subject_id, fingerprint]))
