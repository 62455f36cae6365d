"""Derived ledger records: one run per recompute, one snapshot per document."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .contract_types import DayKey, NonEmptyStr

LEDGER_SCHEMA_VERSION = 1

TriggerType = Literal["realtime", "scheduled", "manual"]
SnapshotKind = Literal["daily_facts", "intelligence_context", "insight"]


class LedgerTrigger(BaseModel):
    type: TriggerType
    name: NonEmptyStr
    event_id: str | None = None


class LedgerOutputs(BaseModel):
    has_daily_facts: bool
    insights_count: int = Field(ge=0)
    has_intelligence_context: bool


class LedgerRun(BaseModel):
    run_id: NonEmptyStr
    user_id: NonEmptyStr
    date: DayKey
    computed_at: NonEmptyStr
    pipeline_version: int = Field(gt=0)
    trigger: LedgerTrigger
    # What was known when the run computed; the replay anchor.
    latest_canonical_event_at: str | None = None
    outputs: LedgerOutputs
    schema_version: Literal[1] = LEDGER_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class LedgerSnapshot(BaseModel):
    run_id: NonEmptyStr
    kind: SnapshotKind
    item_id: NonEmptyStr
    hash: NonEmptyStr
    data: dict[str, Any]
    schema_version: Literal[1] = LEDGER_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class DayLedger(BaseModel):
    """Read-API envelope: every run for one (user, day), oldest first, plus
    the snapshots of the run the day pointer names."""

    user_id: NonEmptyStr
    date: DayKey
    latest_run_id: NonEmptyStr
    runs: list[LedgerRun]
    latest_snapshots: list[LedgerSnapshot]
