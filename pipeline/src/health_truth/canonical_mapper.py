"""RawEvent -> CanonicalEvent mapping.

Properties:
- Pure: no database or network access.
- Deterministic: the same RawEvent always maps to the same CanonicalEvent.
- Total: every outcome is returned as a value. Unsupported or malformed
  input becomes a ``MappingFailure`` so the caller can record a Failure
  with provenance; nothing here raises for bad input.

Each provider declares a table of raw kind -> ``KindMapper``. A KindMapper
pairs a strict payload model (the shape guard, run before any field is
read) with a builder that turns the validated payload into one canonical
model.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from .canonical_event_contract import (
    CANONICAL_KINDS,
    CanonicalEventBase,
    HrvCanonicalEvent,
    NutritionCanonicalEvent,
    SleepCanonicalEvent,
    StepsCanonicalEvent,
    StrengthExercise,
    StrengthSet,
    StrengthWorkoutCanonicalEvent,
    WeightCanonicalEvent,
    WorkoutCanonicalEvent,
)
from .contract_types import FiniteNumber
from .raw_event_contract import RawEvent
from .utils import day_key_for, parse_iso_timestamp

RejectionReason = Literal["UNSUPPORTED_PROVIDER", "UNSUPPORTED_KIND", "MALFORMED_PAYLOAD"]

# Withings measure types
_WITHINGS_WEIGHT_KG = 1
_WITHINGS_FAT_RATIO_PERCENT = 6

_OURA_INTENSITIES = {"easy", "moderate", "hard"}


@dataclass(frozen=True)
class MappingSuccess:
    canonical: CanonicalEventBase
    ok: Literal[True] = True


@dataclass(frozen=True)
class MappingFailure:
    reason: RejectionReason
    details: dict[str, Any] = field(default_factory=dict)
    ok: Literal[False] = False


MappingResult = MappingSuccess | MappingFailure


class _MalformedPayload(Exception):
    """Raised by builders for shape problems the payload model cannot express."""

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(message)
        self.field_name = field_name


class _StrictPayload(BaseModel):
    # Shape guard: no coercion, bools are not numbers, unknown keys ignored.
    model_config = ConfigDict(strict=True, extra="ignore")


# --- manual payload shapes ---------------------------------------------------


class ManualWindowPayload(_StrictPayload):
    start: str
    end: str
    timezone: str | None = None


class ManualSleepPayload(ManualWindowPayload):
    total_minutes: FiniteNumber
    is_main_sleep: bool
    efficiency: FiniteNumber | None = None
    latency_minutes: FiniteNumber | None = None
    awakenings: FiniteNumber | None = None


class ManualStepsPayload(ManualWindowPayload):
    steps: FiniteNumber
    distance_km: FiniteNumber | None = None
    move_minutes: FiniteNumber | None = None


class ManualWorkoutPayload(ManualWindowPayload):
    sport: str
    duration_minutes: FiniteNumber
    intensity: Literal["easy", "moderate", "hard"] | None = None
    training_load: FiniteNumber | None = None


class ManualWeightPayload(_StrictPayload):
    time: str
    timezone: str | None = None
    weight_kg: FiniteNumber
    body_fat_percent: FiniteNumber | None = None


class ManualHrvPayload(_StrictPayload):
    time: str
    timezone: str | None = None
    rmssd_ms: FiniteNumber | None = None
    sdnn_ms: FiniteNumber | None = None
    measurement_type: Literal["nightly", "spot"] | None = None


class ManualNutritionPayload(_StrictPayload):
    time: str
    timezone: str | None = None
    total_kcal: FiniteNumber
    protein_g: FiniteNumber
    carbs_g: FiniteNumber
    fat_g: FiniteNumber
    fiber_g: FiniteNumber | None = None


class ManualStrengthSetPayload(_StrictPayload):
    reps: int
    load: FiniteNumber
    unit: Literal["lb", "kg"]
    is_warmup: bool = False
    rpe: FiniteNumber | None = None
    rir: FiniteNumber | None = None
    notes: str | None = None


class ManualStrengthExercisePayload(_StrictPayload):
    name: str
    sets: list[ManualStrengthSetPayload]


class ManualStrengthWorkoutPayload(_StrictPayload):
    started_at: str
    ended_at: str | None = None
    timezone: str | None = None
    exercises: list[ManualStrengthExercisePayload]


# --- provider payload shapes -------------------------------------------------


class OuraWorkoutPayload(_StrictPayload):
    """One item of Oura's v2 usercollection/workout response."""

    id: str | None = None
    activity: str
    start_datetime: str
    end_datetime: str
    intensity: str | None = None
    calories: FiniteNumber | None = None
    distance: FiniteNumber | None = None


class OuraSleepPayload(_StrictPayload):
    """One item of Oura's v2 usercollection/sleep response."""

    id: str | None = None
    bedtime_start: str
    bedtime_end: str
    total_sleep_duration: FiniteNumber
    type: str | None = None
    efficiency: FiniteNumber | None = None
    latency: FiniteNumber | None = None


class WithingsMeasure(_StrictPayload):
    value: int
    type: int
    unit: int


class WithingsMeasureGroupPayload(_StrictPayload):
    """One ``measuregrps`` entry of Withings' getmeas response."""

    grpid: int | None = None
    date: int
    measures: list[WithingsMeasure]


# --- builders ----------------------------------------------------------------


def _zone_for(raw: RawEvent, payload_zone: str | None) -> str:
    return payload_zone or raw.time_zone


def _day_for(start: str, zone: str) -> str:
    day = day_key_for(start, zone)
    if day is None:
        raise _MalformedPayload("start", f"Unparseable start timestamp: {start}")
    return day


def _base_fields(raw: RawEvent, *, start: str, end: str, zone: str) -> dict[str, Any]:
    return {
        "id": raw.id,
        "user_id": raw.user_id,
        "source_id": raw.source_id,
        "start": start,
        "end": end,
        "day": _day_for(start, zone),
        "timezone": zone,
        "created_at": raw.received_at,
        "updated_at": raw.received_at,
    }


def _minutes_between(start: str, end: str) -> float:
    started = parse_iso_timestamp(start)
    ended = parse_iso_timestamp(end)
    if started is None or ended is None:
        raise _MalformedPayload("end", "Workout window timestamps must be ISO 8601")
    minutes = (ended - started).total_seconds() / 60
    if minutes < 0:
        raise _MalformedPayload("end", "Workout ends before it starts")
    return round(minutes, 2)


def _map_manual_sleep(raw: RawEvent, p: ManualSleepPayload) -> CanonicalEventBase:
    return SleepCanonicalEvent(
        **_base_fields(raw, start=p.start, end=p.end, zone=_zone_for(raw, p.timezone)),
        total_minutes=p.total_minutes,
        efficiency=p.efficiency,
        latency_minutes=p.latency_minutes,
        awakenings=p.awakenings,
        is_main_sleep=p.is_main_sleep,
    )


def _map_manual_steps(raw: RawEvent, p: ManualStepsPayload) -> CanonicalEventBase:
    return StepsCanonicalEvent(
        **_base_fields(raw, start=p.start, end=p.end, zone=_zone_for(raw, p.timezone)),
        steps=p.steps,
        distance_km=p.distance_km,
        move_minutes=p.move_minutes,
    )


def _map_manual_workout(raw: RawEvent, p: ManualWorkoutPayload) -> CanonicalEventBase:
    return WorkoutCanonicalEvent(
        **_base_fields(raw, start=p.start, end=p.end, zone=_zone_for(raw, p.timezone)),
        sport=p.sport,
        intensity=p.intensity,
        duration_minutes=p.duration_minutes,
        training_load=p.training_load,
    )


def _map_manual_weight(raw: RawEvent, p: ManualWeightPayload) -> CanonicalEventBase:
    return WeightCanonicalEvent(
        **_base_fields(raw, start=p.time, end=p.time, zone=_zone_for(raw, p.timezone)),
        weight_kg=p.weight_kg,
        body_fat_percent=p.body_fat_percent,
    )


def _map_manual_hrv(raw: RawEvent, p: ManualHrvPayload) -> CanonicalEventBase:
    return HrvCanonicalEvent(
        **_base_fields(raw, start=p.time, end=p.time, zone=_zone_for(raw, p.timezone)),
        rmssd_ms=p.rmssd_ms,
        sdnn_ms=p.sdnn_ms,
        measurement_type=p.measurement_type,
    )


def _map_manual_nutrition(raw: RawEvent, p: ManualNutritionPayload) -> CanonicalEventBase:
    return NutritionCanonicalEvent(
        **_base_fields(raw, start=p.time, end=p.time, zone=_zone_for(raw, p.timezone)),
        total_kcal=p.total_kcal,
        protein_g=p.protein_g,
        carbs_g=p.carbs_g,
        fat_g=p.fat_g,
        fiber_g=p.fiber_g,
    )


def _map_manual_strength(
    raw: RawEvent, p: ManualStrengthWorkoutPayload
) -> CanonicalEventBase:
    if not p.exercises:
        raise _MalformedPayload("exercises", "Strength workout has no exercises")
    exercises = [
        StrengthExercise(
            name=exercise.name,
            sets=[StrengthSet(**s.model_dump()) for s in exercise.sets],
        )
        for exercise in p.exercises
    ]
    return StrengthWorkoutCanonicalEvent(
        **_base_fields(
            raw,
            start=p.started_at,
            end=p.ended_at or p.started_at,
            zone=_zone_for(raw, p.timezone),
        ),
        exercises=exercises,
    )


def _map_oura_workout(raw: RawEvent, p: OuraWorkoutPayload) -> CanonicalEventBase:
    intensity = p.intensity.lower() if p.intensity else None
    return WorkoutCanonicalEvent(
        **_base_fields(raw, start=p.start_datetime, end=p.end_datetime, zone=raw.time_zone),
        sport=p.activity,
        intensity=intensity if intensity in _OURA_INTENSITIES else None,
        duration_minutes=_minutes_between(p.start_datetime, p.end_datetime),
        training_load=None,
    )


def _map_oura_sleep(raw: RawEvent, p: OuraSleepPayload) -> CanonicalEventBase:
    latency_minutes = round(p.latency / 60, 2) if p.latency is not None else None
    return SleepCanonicalEvent(
        **_base_fields(raw, start=p.bedtime_start, end=p.bedtime_end, zone=raw.time_zone),
        total_minutes=round(p.total_sleep_duration / 60, 2),
        efficiency=p.efficiency,
        latency_minutes=latency_minutes,
        awakenings=None,
        is_main_sleep=p.type == "long_sleep",
    )


def _scaled(value: int, unit: int) -> float:
    # Withings encodes real values as value * 10^unit.
    if unit >= 0:
        return float(value * 10**unit)
    return value / 10 ** (-unit)


def _map_withings_weight(
    raw: RawEvent, p: WithingsMeasureGroupPayload
) -> CanonicalEventBase:
    by_type = {m.type: _scaled(m.value, m.unit) for m in p.measures}
    weight_kg = by_type.get(_WITHINGS_WEIGHT_KG)
    if weight_kg is None:
        raise _MalformedPayload("measures", "Measure group has no weight measure (type 1)")
    measured_at = datetime.fromtimestamp(p.date, tz=UTC)
    time = measured_at.isoformat()
    return WeightCanonicalEvent(
        **_base_fields(raw, start=time, end=time, zone=raw.time_zone),
        weight_kg=weight_kg,
        body_fat_percent=by_type.get(_WITHINGS_FAT_RATIO_PERCENT),
    )


@dataclass(frozen=True)
class KindMapper:
    payload_model: type[_StrictPayload]
    build: Callable[[RawEvent, Any], CanonicalEventBase]


MANUAL_MAPPERS: dict[str, KindMapper] = {
    "sleep": KindMapper(ManualSleepPayload, _map_manual_sleep),
    "steps": KindMapper(ManualStepsPayload, _map_manual_steps),
    "workout": KindMapper(ManualWorkoutPayload, _map_manual_workout),
    "weight": KindMapper(ManualWeightPayload, _map_manual_weight),
    "hrv": KindMapper(ManualHrvPayload, _map_manual_hrv),
    "nutrition": KindMapper(ManualNutritionPayload, _map_manual_nutrition),
    "strength_workout": KindMapper(ManualStrengthWorkoutPayload, _map_manual_strength),
}

PROVIDER_MAPPERS: dict[str, dict[str, KindMapper]] = {
    "manual": MANUAL_MAPPERS,
    "oura": {
        "workout": KindMapper(OuraWorkoutPayload, _map_oura_workout),
        "sleep": KindMapper(OuraSleepPayload, _map_oura_sleep),
    },
    "withings": {
        "weight": KindMapper(WithingsMeasureGroupPayload, _map_withings_weight),
    },
}

if set(MANUAL_MAPPERS) != set(CANONICAL_KINDS):
    raise RuntimeError("manual mapper table must cover every canonical kind")


def supported_kinds(provider: str) -> list[str]:
    return sorted(PROVIDER_MAPPERS.get(provider, {}))


def _failure_details(raw: RawEvent) -> dict[str, Any]:
    return {
        "provider": raw.provider,
        "kind": raw.kind,
        "raw_event_id": raw.id,
    }


def _validation_issues(exc: ValidationError) -> list[dict[str, str]]:
    # Locations and messages only; payload values never leave the mapper.
    return [
        {
            "path": ".".join(str(part) for part in error["loc"]),
            "type": error["type"],
        }
        for error in exc.errors()
    ]


def map_raw_event(raw: RawEvent) -> MappingResult:
    """Map one RawEvent to its CanonicalEvent, or say why it cannot be."""
    kind_table = PROVIDER_MAPPERS.get(raw.provider)
    if kind_table is None:
        return MappingFailure("UNSUPPORTED_PROVIDER", _failure_details(raw))

    mapper = kind_table.get(raw.kind)
    if mapper is None:
        return MappingFailure("UNSUPPORTED_KIND", _failure_details(raw))

    try:
        payload = mapper.payload_model.model_validate(raw.payload)
    except ValidationError as exc:
        return MappingFailure(
            "MALFORMED_PAYLOAD",
            {**_failure_details(raw), "issues": _validation_issues(exc)},
        )

    try:
        canonical = mapper.build(raw, payload)
    except _MalformedPayload as exc:
        return MappingFailure(
            "MALFORMED_PAYLOAD",
            {**_failure_details(raw), "issues": [{"path": exc.field_name, "type": str(exc)}]},
        )
    except ValidationError as exc:
        return MappingFailure(
            "MALFORMED_PAYLOAD",
            {**_failure_details(raw), "issues": _validation_issues(exc)},
        )

    return MappingSuccess(canonical)
