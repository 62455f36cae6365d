"""Daily facts aggregation.

Folds one day's canonical events into a single DailyFacts document, then
enriches it with rolling context from up to six prior days.

Aggregation is a pure function of the event set: events are ordered by
(start, id) before folding, so the same set in any order yields the same
document. Fields appear only when at least one event contributed a value.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from .canonical_event_contract import (
    CanonicalEventBase,
    HrvCanonicalEvent,
    NutritionCanonicalEvent,
    SleepCanonicalEvent,
    StepsCanonicalEvent,
    StrengthWorkoutCanonicalEvent,
    WeightCanonicalEvent,
    WorkoutCanonicalEvent,
)
from .daily_facts_contract import (
    FACT_DOMAINS,
    ActivityFacts,
    BodyFacts,
    ComputeMeta,
    DailyFacts,
    NutritionFacts,
    RecoveryFacts,
    SleepFacts,
    StrengthFacts,
    StrengthVolume,
)

PIPELINE_VERSION = 1
HISTORY_DAYS = 6
CONFIDENCE_WINDOW_DAYS = 7


def _sum_or_none(values: Iterable[int | float | None]) -> int | float | None:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present)


def _mean_or_none(values: Iterable[int | float | None]) -> float | None:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def _domain(model_cls: type, fields: dict[str, Any]) -> Any:
    """Build a domain model, or None when nothing contributed."""
    present = {k: v for k, v in fields.items() if v is not None}
    if not present:
        return None
    return model_cls(**present)


def _fold_sleep(events: list[SleepCanonicalEvent]) -> SleepFacts | None:
    if not events:
        return None
    return _domain(SleepFacts, {
        "total_minutes": _sum_or_none(e.total_minutes for e in events),
        "main_sleep_minutes": _sum_or_none(
            e.total_minutes for e in events if e.is_main_sleep
        ),
        "efficiency": _mean_or_none(e.efficiency for e in events),
        "latency_minutes": _mean_or_none(e.latency_minutes for e in events),
        "awakenings": _sum_or_none(e.awakenings for e in events),
    })


def _fold_activity(
    steps_events: list[StepsCanonicalEvent],
    workouts: list[WorkoutCanonicalEvent],
) -> ActivityFacts | None:
    return _domain(ActivityFacts, {
        "steps": _sum_or_none(e.steps for e in steps_events),
        "distance_km": _sum_or_none(e.distance_km for e in steps_events),
        "move_minutes": _sum_or_none(e.move_minutes for e in steps_events),
        "training_load": _sum_or_none(e.training_load for e in workouts),
    })


def _fold_body(events: list[WeightCanonicalEvent]) -> BodyFacts | None:
    if not events:
        return None
    # Latest wins by ISO string order of start, not parsed time. Historical
    # aggregates depend on this ordering, so it stays a string comparison.
    latest = sorted(events, key=lambda e: (e.start, e.id))[-1]
    return _domain(BodyFacts, {
        "weight_kg": latest.weight_kg,
        "body_fat_percent": latest.body_fat_percent,
    })


def _fold_recovery(events: list[HrvCanonicalEvent]) -> RecoveryFacts | None:
    return _domain(RecoveryFacts, {
        "hrv_rmssd": _mean_or_none(e.rmssd_ms for e in events),
    })


def _fold_nutrition(events: list[NutritionCanonicalEvent]) -> NutritionFacts | None:
    return _domain(NutritionFacts, {
        "total_kcal": _sum_or_none(e.total_kcal for e in events),
        "protein_g": _sum_or_none(e.protein_g for e in events),
        "carbs_g": _sum_or_none(e.carbs_g for e in events),
        "fat_g": _sum_or_none(e.fat_g for e in events),
    })


def _fold_strength(events: list[StrengthWorkoutCanonicalEvent]) -> StrengthFacts | None:
    if not events:
        return None
    total_sets = 0
    total_reps = 0
    volume: dict[str, int | float] = {}
    for workout in events:
        for exercise in workout.exercises:
            for s in exercise.sets:
                if s.is_warmup:
                    continue
                total_sets += 1
                total_reps += s.reps
                volume[s.unit] = volume.get(s.unit, 0) + s.reps * s.load
    return StrengthFacts(
        workouts_count=len(events),
        total_sets=total_sets,
        total_reps=total_reps,
        total_volume_by_unit=StrengthVolume(**volume),
    )


def _of_kind(events: Sequence[CanonicalEventBase], model_cls: type) -> list[Any]:
    return [e for e in events if isinstance(e, model_cls)]


def aggregate_daily_facts(
    user_id: str,
    date: str,
    computed_at: str,
    events: Sequence[CanonicalEventBase],
    *,
    pipeline_version: int = PIPELINE_VERSION,
    meta: ComputeMeta | None = None,
) -> DailyFacts:
    """Fold one day's canonical events into DailyFacts."""
    ordered = sorted(events, key=lambda e: (e.start, e.id))
    return DailyFacts(
        user_id=user_id,
        date=date,
        computed_at=computed_at,
        pipeline_version=pipeline_version,
        meta=meta,
        sleep=_fold_sleep(_of_kind(ordered, SleepCanonicalEvent)),
        activity=_fold_activity(
            _of_kind(ordered, StepsCanonicalEvent),
            _of_kind(ordered, WorkoutCanonicalEvent),
        ),
        body=_fold_body(_of_kind(ordered, WeightCanonicalEvent)),
        recovery=_fold_recovery(_of_kind(ordered, HrvCanonicalEvent)),
        nutrition=_fold_nutrition(_of_kind(ordered, NutritionCanonicalEvent)),
        strength=_fold_strength(_of_kind(ordered, StrengthWorkoutCanonicalEvent)),
    )


def _prior_days(today: DailyFacts, history: Iterable[DailyFacts]) -> list[DailyFacts]:
    by_date: dict[str, DailyFacts] = {}
    for facts in history:
        if facts.date < today.date:
            by_date[facts.date] = facts
    return [by_date[d] for d in sorted(by_date)][-HISTORY_DAYS:]


def _activity_value(facts: DailyFacts, field_name: str) -> int | float | None:
    return getattr(facts.activity, field_name) if facts.activity else None


def _confidence(window: list[DailyFacts]) -> dict[str, float] | None:
    scores: dict[str, float] = {}
    for domain in FACT_DOMAINS:
        present = sum(1 for facts in window if getattr(facts, domain) is not None)
        if present == 0:
            continue
        scores[domain] = min(1.0, max(0.0, present / CONFIDENCE_WINDOW_DAYS))
    return scores or None


def enrich_daily_facts(today: DailyFacts, history: Iterable[DailyFacts]) -> DailyFacts:
    """Add 7-day averages, HRV baseline/deviation, and per-domain confidence.

    ``history`` may contain any stored days; only the six calendar-earlier
    days closest to ``today`` are used. Enrichment never creates a domain
    that aggregation left absent.
    """
    prior = _prior_days(today, history)
    window = (prior + [today])[-CONFIDENCE_WINDOW_DAYS:]
    update: dict[str, Any] = {"confidence": _confidence(window)}

    if prior and today.activity is not None:
        activity_update: dict[str, Any] = {}
        steps = [v for v in (_activity_value(f, "steps") for f in window) if v is not None]
        if today.activity.steps is not None and steps:
            activity_update["steps_avg_7d"] = sum(steps) / len(steps)
        loads = [
            v for v in (_activity_value(f, "training_load") for f in window) if v is not None
        ]
        if today.activity.training_load is not None and loads:
            activity_update["training_load_avg_7d"] = sum(loads) / len(loads)
        if activity_update:
            update["activity"] = today.activity.model_copy(update=activity_update)

    if today.recovery is not None and today.recovery.hrv_rmssd is not None:
        baseline = _mean_or_none(
            f.recovery.hrv_rmssd for f in prior if f.recovery is not None
        )
        if baseline is not None:
            recovery_update: dict[str, Any] = {"hrv_rmssd_baseline": baseline}
            if baseline != 0:
                recovery_update["hrv_rmssd_deviation"] = (
                    today.recovery.hrv_rmssd - baseline
                ) / baseline
            update["recovery"] = today.recovery.model_copy(update=recovery_update)

    return today.model_copy(update=update)


def filter_superseded(
    events: Iterable[CanonicalEventBase], superseded_ids: set[str]
) -> list[CanonicalEventBase]:
    """Drop canonical events whose RawEvent was replaced by a correction."""
    return [e for e in events if e.id not in superseded_ids]


def latest_event_timestamp(events: Iterable[CanonicalEventBase]) -> str | None:
    """Most recent created_at/updated_at across the events (ISO string order)."""
    stamps = [s for e in events for s in (e.updated_at, e.created_at) if s]
    return max(stamps) if stamps else None
