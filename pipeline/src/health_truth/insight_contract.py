from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from .contract_types import DayKey, FiniteNumber, NonEmptyStr

INSIGHT_SCHEMA_VERSION = 1

InsightSeverity = Literal["info", "warning", "critical"]
INSIGHT_SEVERITIES: tuple[str, ...] = ("info", "warning", "critical")


class InsightEvidence(BaseModel):
    fact_path: NonEmptyStr
    value: FiniteNumber
    threshold: FiniteNumber | None = None
    direction: Literal["above", "below"] | None = None


class Insight(BaseModel):
    id: NonEmptyStr
    user_id: NonEmptyStr
    date: DayKey
    kind: NonEmptyStr
    title: str
    message: str
    severity: InsightSeverity
    evidence: list[InsightEvidence]
    tags: list[str]
    rule_version: str
    created_at: str
    updated_at: str
    schema_version: Literal[1] = INSIGHT_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class DayInsights(BaseModel):
    """Read-API envelope: every insight for one (user, day)."""

    user_id: NonEmptyStr
    date: DayKey
    items: list[Insight]
