"""RawEvent ingestion envelope and persisted RawEvent contract.

Producers (manual entry, webhooks, resync) submit a ``RawEventEnvelope``.
The pipeline stamps identity and receipt time onto it to form a ``RawEvent``,
which is immutable once written. Corrections are new RawEvents pointing at the
one they supersede.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .contract_types import NonEmptyStr

RAW_EVENT_SCHEMA_VERSION = 1

RawEventKind = Literal[
    "sleep",
    "steps",
    "workout",
    "weight",
    "hrv",
    "nutrition",
    "strength_workout",
    "file",
    "incomplete",
]
Provenance = Literal["manual", "device", "upload", "backfill", "correction"]
UncertaintyState = Literal["measured", "estimated", "inferred"]


class OccurredWindow(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: NonEmptyStr
    end: NonEmptyStr


class RawEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str
    kind: RawEventKind
    occurred_at: NonEmptyStr | OccurredWindow
    time_zone: NonEmptyStr
    payload: dict[str, Any]
    provenance: Provenance | None = None
    correction_of_raw_event_id: str | None = None
    uncertainty_state: UncertaintyState | None = None

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider must not be empty")
        return normalized

    @field_validator("correction_of_raw_event_id")
    @classmethod
    def trim_correction_ref(cls, value: str | None) -> str | None:
        if value is None:
            return None
        trimmed = value.strip()
        return trimmed or None

    @model_validator(mode="after")
    def validate_correction_link(self) -> "RawEventEnvelope":
        if self.provenance == "correction" and not self.correction_of_raw_event_id:
            raise ValueError("correction events require correction_of_raw_event_id")
        if self.correction_of_raw_event_id and self.provenance != "correction":
            raise ValueError("correction_of_raw_event_id requires provenance 'correction'")
        return self

    def observed_start(self) -> str:
        if isinstance(self.occurred_at, OccurredWindow):
            return self.occurred_at.start
        return self.occurred_at


class RawEvent(RawEventEnvelope):
    id: NonEmptyStr
    user_id: NonEmptyStr
    observed_at: str
    received_at: str
    schema_version: Literal[1] = RAW_EVENT_SCHEMA_VERSION

    @property
    def source_id(self) -> str:
        return self.provider


def build_raw_event(
    envelope: RawEventEnvelope,
    *,
    event_id: str,
    user_id: str,
    received_at: str,
) -> RawEvent:
    return RawEvent(
        **envelope.model_dump(),
        id=event_id,
        user_id=user_id,
        observed_at=envelope.observed_start(),
        received_at=received_at,
    )
