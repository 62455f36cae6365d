from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .contract_types import DayKey, FiniteNumber, NonEmptyStr
from .daily_facts_contract import ComputeMeta

INTELLIGENCE_CONTEXT_SCHEMA_VERSION = 1
INTELLIGENCE_CONTEXT_VERSION = "daily-intelligence-context-v1.0.0"


class ContextFacts(BaseModel):
    sleep_total_minutes: FiniteNumber | None = None
    steps: FiniteNumber | None = None
    training_load: FiniteNumber | None = None
    hrv_rmssd: FiniteNumber | None = None
    hrv_rmssd_baseline: FiniteNumber | None = None
    hrv_rmssd_deviation: FiniteNumber | None = None
    weight_kg: FiniteNumber | None = None
    body_fat_percent: FiniteNumber | None = None
    total_kcal: FiniteNumber | None = None
    strength_workouts_count: int | None = None


class SeverityCounts(BaseModel):
    info: int = Field(default=0, ge=0)
    warning: int = Field(default=0, ge=0)
    critical: int = Field(default=0, ge=0)


class InsightsRollup(BaseModel):
    count: int = Field(ge=0)
    by_severity: SeverityCounts
    tags: list[str]
    kinds: list[str]
    ids: list[str]


class ContextReadiness(BaseModel):
    has_daily_facts: bool
    has_insights: bool
    domain_meets_confidence: dict[str, bool]


class IntelligenceContext(BaseModel):
    schema_version: Literal[1] = INTELLIGENCE_CONTEXT_SCHEMA_VERSION
    version: str
    id: DayKey
    user_id: NonEmptyStr
    date: DayKey
    computed_at: NonEmptyStr
    facts: ContextFacts
    insights: InsightsRollup
    readiness: ContextReadiness
    confidence: dict[str, float] | None = None
    meta: ComputeMeta | None = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
