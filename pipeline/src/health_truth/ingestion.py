"""RawEvent ingestion: validate, dedupe, persist, map, and schedule recompute.

Flow: envelope -> RawEvent (create, don't overwrite) -> canonical mapper ->
CanonicalEvent or Failure -> truth.recompute_day job for the affected days.

Every outcome is returned as an ``IngestResult``. Input problems become
Failure records, never exceptions; only storage errors propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import psycopg
from pydantic import ValidationError

from . import store
from .canonical_mapper import MappingFailure, map_raw_event
from .failure_contract import Failure, FailureCode, FailureType
from .identity import failure_id, payload_fingerprint, raw_event_id, stable_hash, stable_json
from .metrics import record_ingest_outcome
from .raw_event_contract import RawEventEnvelope, build_raw_event
from .utils import utc_now_iso

logger = logging.getLogger(__name__)

RECOMPUTE_JOB_TYPE = "truth.recompute_day"

IngestOutcome = Literal["created", "duplicate", "rejected"]

_SCRUBBED_KEY_MARKERS: tuple[str, ...] = (
    "payload",
    "token",
    "secret",
    "authorization",
    "cookie",
)
_MAX_DETAIL_STRING = 500
_MAX_DETAIL_LIST = 25
_MAX_DETAIL_DEPTH = 4


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    raw_event_id: str | None
    canonical_day: str | None = None
    failure: Failure | None = None
    rejection: str | None = None


def scrub_failure_details(value: Any, depth: int = 0) -> Any:
    """Make failure details safe to persist and show to the user.

    Drops keys that may carry payloads or credentials, truncates long
    strings and lists, and stops descending past a fixed depth.
    """
    if depth >= _MAX_DETAIL_DEPTH:
        return "[truncated]"
    if isinstance(value, dict):
        return {
            str(key): scrub_failure_details(item, depth + 1)
            for key, item in value.items()
            if not any(marker in str(key).lower() for marker in _SCRUBBED_KEY_MARKERS)
        }
    if isinstance(value, (list, tuple)):
        return [scrub_failure_details(item, depth + 1) for item in value[:_MAX_DETAIL_LIST]]
    if isinstance(value, str):
        return value[:_MAX_DETAIL_STRING]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return str(value)[:_MAX_DETAIL_STRING]


def build_failure(
    user_id: str,
    *,
    code: FailureCode,
    failure_type: FailureType,
    message: str,
    subject_id: str | None,
    fingerprint: str | None,
    details: dict[str, Any],
    created_at: str,
) -> Failure:
    return Failure(
        id=failure_id(user_id, code, subject_id, fingerprint),
        user_id=user_id,
        type=failure_type,
        code=code,
        message=message,
        subject_id=subject_id,
        details=scrub_failure_details(details),
        created_at=created_at,
    )


def _envelope_issues(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {
            "path": ".".join(str(part) for part in error["loc"]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


async def _reject(
    conn: psycopg.AsyncConnection[Any],
    failure: Failure,
    *,
    provider: str,
    raw_id: str | None,
    rejection: str,
) -> IngestResult:
    await store.create_failure(conn, failure)
    record_ingest_outcome(provider, "rejected")
    logger.info(
        "Ingestion rejected %s (%s)",
        raw_id or "<invalid envelope>",
        rejection,
        extra={
            "truth_user_id": failure.user_id,
            "truth_provider": provider,
            "truth_outcome": "rejected",
        },
    )
    return IngestResult("rejected", raw_id, failure=failure, rejection=rejection)


async def ingest_raw_event(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    envelope: dict[str, Any] | RawEventEnvelope,
    *,
    idempotency_key: str | None = None,
    received_at: str | None = None,
    max_retries: int = 3,
) -> IngestResult:
    """Ingest one RawEvent envelope for ``user_id`` atomically.

    Duplicate deliveries (same id, same content) are a no-op. The same id
    with different content is recorded as a DUPLICATE_EVENT Failure and the
    stored RawEvent is left untouched.
    """
    received_at = received_at or utc_now_iso()

    async with conn.transaction():
        if isinstance(envelope, RawEventEnvelope):
            parsed = envelope
        else:
            try:
                parsed = RawEventEnvelope.model_validate(envelope)
            except ValidationError as exc:
                provider = (
                    str(envelope.get("provider") or "unknown")
                    if isinstance(envelope, dict)
                    else "unknown"
                )
                failure = build_failure(
                    user_id,
                    code="RAW_EVENT_INVALID",
                    failure_type="ingestion",
                    message="RawEvent envelope failed validation",
                    subject_id=idempotency_key,
                    fingerprint=stable_hash(stable_json(envelope)),
                    details={"provider": provider, "issues": _envelope_issues(exc)},
                    created_at=received_at,
                )
                return await _reject(
                    conn, failure, provider=provider, raw_id=None,
                    rejection="RAW_EVENT_INVALID",
                )

        envelope_doc = parsed.model_dump(mode="json")
        fingerprint = payload_fingerprint(envelope_doc)
        event_id = raw_event_id(parsed.provider, idempotency_key, envelope_doc)
        raw = build_raw_event(
            parsed, event_id=event_id, user_id=user_id, received_at=received_at
        )

        if not await store.create_raw_event(conn, raw, fingerprint):
            existing_fingerprint = await store.get_raw_event_fingerprint(conn, user_id, event_id)
            if existing_fingerprint == fingerprint:
                record_ingest_outcome(raw.provider, "duplicate")
                logger.debug("Duplicate delivery of %s ignored", event_id)
                return IngestResult("duplicate", event_id)

            failure = build_failure(
                user_id,
                code="DUPLICATE_EVENT",
                failure_type="ingestion",
                message="Event id already ingested with different content",
                subject_id=event_id,
                fingerprint=fingerprint,
                details={"provider": raw.provider, "kind": raw.kind, "raw_event_id": event_id},
                created_at=received_at,
            )
            return await _reject(
                conn, failure, provider=raw.provider, raw_id=event_id,
                rejection="DUPLICATE_EVENT",
            )

        result = map_raw_event(raw)
        if isinstance(result, MappingFailure):
            failure = build_failure(
                user_id,
                code="MAPPING_REJECTED",
                failure_type="mapping",
                message=f"RawEvent could not be mapped: {result.reason}",
                subject_id=event_id,
                fingerprint=fingerprint,
                details={"reason": result.reason, **result.details},
                created_at=received_at,
            )
            return await _reject(
                conn, failure, provider=raw.provider, raw_id=event_id,
                rejection=result.reason,
            )

        canonical = result.canonical
        await store.create_canonical_event(conn, canonical)

        affected_days = {canonical.day}
        if raw.correction_of_raw_event_id:
            superseded = await store.get_canonical_event(
                conn, user_id, raw.correction_of_raw_event_id
            )
            if superseded is not None:
                affected_days.add(superseded.day)

        for day in sorted(affected_days):
            await store.enqueue_job(
                conn,
                user_id=user_id,
                job_type=RECOMPUTE_JOB_TYPE,
                payload={"user_id": user_id, "date": day},
                max_retries=max_retries,
            )

    record_ingest_outcome(raw.provider, "created")
    logger.info(
        "Ingested %s (%s/%s) for day %s",
        event_id,
        raw.provider,
        raw.kind,
        canonical.day,
        extra={
            "truth_user_id": user_id,
            "truth_provider": raw.provider,
            "truth_outcome": "created",
        },
    )
    return IngestResult("created", event_id, canonical_day=canonical.day)
