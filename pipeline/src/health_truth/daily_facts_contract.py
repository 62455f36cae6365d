"""DailyFacts contract: one deterministic aggregate per (user, day).

Every domain and every field inside a domain is optional. Absence means no
contributing event existed; a present ``0`` means measured as zero.
"""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .contract_types import DayKey, FiniteNumber, NonEmptyStr

DAILY_FACTS_SCHEMA_VERSION = 1

FACT_DOMAINS: tuple[str, ...] = (
    "sleep",
    "activity",
    "body",
    "recovery",
    "nutrition",
    "strength",
)


class SleepFacts(BaseModel):
    total_minutes: FiniteNumber | None = None
    main_sleep_minutes: FiniteNumber | None = None
    efficiency: FiniteNumber | None = None
    latency_minutes: FiniteNumber | None = None
    awakenings: FiniteNumber | None = None


class ActivityFacts(BaseModel):
    steps: FiniteNumber | None = None
    distance_km: FiniteNumber | None = None
    move_minutes: FiniteNumber | None = None
    training_load: FiniteNumber | None = None
    steps_avg_7d: FiniteNumber | None = None
    training_load_avg_7d: FiniteNumber | None = None


class BodyFacts(BaseModel):
    weight_kg: FiniteNumber | None = None
    body_fat_percent: FiniteNumber | None = None


class RecoveryFacts(BaseModel):
    hrv_rmssd: FiniteNumber | None = None
    hrv_rmssd_baseline: FiniteNumber | None = None
    hrv_rmssd_deviation: FiniteNumber | None = None


class NutritionFacts(BaseModel):
    total_kcal: FiniteNumber | None = None
    protein_g: FiniteNumber | None = None
    carbs_g: FiniteNumber | None = None
    fat_g: FiniteNumber | None = None


class StrengthVolume(BaseModel):
    lb: FiniteNumber | None = None
    kg: FiniteNumber | None = None

    @field_validator("lb", "kg")
    @classmethod
    def volume_not_negative(cls, value: int | float | None) -> int | float | None:
        if value is not None and value < 0:
            raise ValueError("volume must not be negative")
        return value


class StrengthFacts(BaseModel):
    workouts_count: int = Field(ge=0)
    total_sets: int = Field(ge=0)
    total_reps: int = Field(ge=0)
    total_volume_by_unit: StrengthVolume


class FactsSource(BaseModel):
    events_for_day: int = Field(ge=0)
    latest_canonical_event_at: str | None = None


class ComputeMeta(BaseModel):
    computed_at: NonEmptyStr
    pipeline_version: int = Field(gt=0)
    source: FactsSource | None = None


class DailyFacts(BaseModel):
    schema_version: Literal[1] = DAILY_FACTS_SCHEMA_VERSION
    user_id: NonEmptyStr
    date: DayKey
    computed_at: NonEmptyStr
    pipeline_version: int = Field(gt=0)
    meta: ComputeMeta | None = None

    sleep: SleepFacts | None = None
    activity: ActivityFacts | None = None
    body: BodyFacts | None = None
    recovery: RecoveryFacts | None = None
    nutrition: NutritionFacts | None = None
    strength: StrengthFacts | None = None

    confidence: dict[str, float] | None = None

    @field_validator("confidence")
    @classmethod
    def confidence_in_unit_range(cls, value: dict[str, float] | None) -> dict[str, float] | None:
        if value is None:
            return None
        for domain, score in value.items():
            if not math.isfinite(score) or score < 0 or score > 1:
                raise ValueError(f"confidence[{domain}] must be within 0..1")
        return value

    def present_domains(self) -> list[str]:
        return [domain for domain in FACT_DOMAINS if getattr(self, domain) is not None]

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
