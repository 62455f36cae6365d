"""Fail-closed readiness gate for derived truth.

``resolve_readiness`` is an ordered decision table. The order matters: a
stale-but-invalid payload reports ``invalid-payload`` (contract violation),
not ``stale-derived`` (timing window).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ..utils import parse_iso_timestamp

NetworkState = Literal["loading", "ok", "error"]
ReadinessState = Literal["loading", "empty", "invalid", "partial", "ready"]
ReadinessReason = Literal[
    "network-loading",
    "network-error",
    "no-events",
    "invalid-payload",
    "missing-meta",
    "pipeline-version-mismatch",
    "stale-derived",
    "ready",
]


@dataclass(frozen=True)
class ReadinessInput:
    network: NetworkState
    schema_valid: bool
    events_count: int | None
    computed_at_iso: str | None = None
    latest_canonical_event_at_iso: str | None = None
    pipeline_version: int | None = None
    expected_pipeline_version: int = 1


@dataclass(frozen=True)
class Readiness:
    state: ReadinessState
    reason: ReadinessReason

    @property
    def renderable(self) -> bool:
        return self.state == "ready"


def resolve_readiness(inp: ReadinessInput) -> Readiness:
    if inp.network == "loading":
        return Readiness("loading", "network-loading")
    if inp.network == "error":
        return Readiness("invalid", "network-error")

    if inp.events_count == 0 and not inp.computed_at_iso:
        return Readiness("empty", "no-events")
    if inp.events_count is None:
        return Readiness("loading", "network-loading")
    if not inp.schema_valid:
        return Readiness("partial", "invalid-payload")

    # Absent timestamps are missing meta; fact-only days (no events) carry
    # no latest event timestamp.
    if not inp.computed_at_iso:
        return Readiness("partial", "missing-meta")
    if inp.events_count > 0 and not inp.latest_canonical_event_at_iso:
        return Readiness("partial", "missing-meta")

    if inp.pipeline_version != inp.expected_pipeline_version:
        return Readiness("invalid", "pipeline-version-mismatch")

    # A timestamp that is present but does not parse cannot prove freshness.
    computed_at = parse_iso_timestamp(inp.computed_at_iso)
    if computed_at is None:
        return Readiness("partial", "stale-derived")
    if inp.latest_canonical_event_at_iso:
        latest_event_at = parse_iso_timestamp(inp.latest_canonical_event_at_iso)
        if latest_event_at is None or computed_at < latest_event_at:
            return Readiness("partial", "stale-derived")

    return Readiness("ready", "ready")
