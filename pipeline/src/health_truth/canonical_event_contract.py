"""CanonicalEvent contract: one typed model per event kind.

Canonical events are derived one-to-one from RawEvents (same id) and are the
only input the daily aggregation reads. Optional measurements are explicit
nulls so a consumer can tell "not reported" from a missing field.
"""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .contract_types import DayKey, FiniteNumber, NonEmptyStr

CANONICAL_SCHEMA_VERSION = 1

CanonicalKind = Literal[
    "sleep",
    "steps",
    "workout",
    "weight",
    "hrv",
    "nutrition",
    "strength_workout",
]
CANONICAL_KINDS: tuple[str, ...] = (
    "sleep",
    "steps",
    "workout",
    "weight",
    "hrv",
    "nutrition",
    "strength_workout",
)


class CanonicalEventBase(BaseModel):
    # Optional fields dropped from the document when unset instead of null.
    omit_when_none: ClassVar[frozenset[str]] = frozenset()

    id: NonEmptyStr
    user_id: NonEmptyStr
    source_id: NonEmptyStr
    start: str
    end: str
    day: DayKey
    timezone: str
    created_at: str
    updated_at: str
    schema_version: Literal[1] = CANONICAL_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        doc = self.model_dump(mode="json")
        for key in self.omit_when_none:
            if doc.get(key) is None:
                doc.pop(key, None)
        return doc


class SleepCanonicalEvent(CanonicalEventBase):
    kind: Literal["sleep"] = "sleep"
    total_minutes: FiniteNumber
    efficiency: FiniteNumber | None = None
    latency_minutes: FiniteNumber | None = None
    awakenings: FiniteNumber | None = None
    is_main_sleep: bool


class StepsCanonicalEvent(CanonicalEventBase):
    kind: Literal["steps"] = "steps"
    steps: FiniteNumber
    distance_km: FiniteNumber | None = None
    move_minutes: FiniteNumber | None = None


class WorkoutCanonicalEvent(CanonicalEventBase):
    omit_when_none: ClassVar[frozenset[str]] = frozenset({"intensity"})

    kind: Literal["workout"] = "workout"
    sport: str
    intensity: Literal["easy", "moderate", "hard"] | None = None
    duration_minutes: FiniteNumber
    training_load: FiniteNumber | None = None


class WeightCanonicalEvent(CanonicalEventBase):
    kind: Literal["weight"] = "weight"
    weight_kg: FiniteNumber
    body_fat_percent: FiniteNumber | None = None


class HrvCanonicalEvent(CanonicalEventBase):
    omit_when_none: ClassVar[frozenset[str]] = frozenset({"measurement_type"})

    kind: Literal["hrv"] = "hrv"
    rmssd_ms: FiniteNumber | None = None
    sdnn_ms: FiniteNumber | None = None
    measurement_type: Literal["nightly", "spot"] | None = None


class NutritionCanonicalEvent(CanonicalEventBase):
    kind: Literal["nutrition"] = "nutrition"
    total_kcal: FiniteNumber
    protein_g: FiniteNumber
    carbs_g: FiniteNumber
    fat_g: FiniteNumber
    fiber_g: FiniteNumber | None = None


class StrengthSet(BaseModel):
    reps: int = Field(ge=0)
    load: FiniteNumber
    unit: Literal["lb", "kg"]
    is_warmup: bool = False
    rpe: FiniteNumber | None = None
    rir: FiniteNumber | None = None
    notes: str | None = None

    @field_validator("load")
    @classmethod
    def load_not_negative(cls, value: int | float) -> int | float:
        if value < 0:
            raise ValueError("load must not be negative")
        return value


class StrengthExercise(BaseModel):
    name: NonEmptyStr
    sets: list[StrengthSet]


class StrengthWorkoutCanonicalEvent(CanonicalEventBase):
    kind: Literal["strength_workout"] = "strength_workout"
    exercises: list[StrengthExercise]


CanonicalEvent = Annotated[
    SleepCanonicalEvent
    | StepsCanonicalEvent
    | WorkoutCanonicalEvent
    | WeightCanonicalEvent
    | HrvCanonicalEvent
    | NutritionCanonicalEvent
    | StrengthWorkoutCanonicalEvent,
    Field(discriminator="kind"),
]

CANONICAL_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(CanonicalEvent)


def parse_canonical_event(data: dict[str, Any]) -> CanonicalEventBase:
    """Load a persisted canonical document back into its typed model."""
    return CANONICAL_EVENT_ADAPTER.validate_python(data)
