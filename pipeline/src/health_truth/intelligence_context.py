"""Daily intelligence context: one read-optimized document per (user, day).

Flattens selected DailyFacts fields and rolls up the day's insights. It only
restates what the facts and insights already say; nothing here derives new
facts or new insights.
"""

from __future__ import annotations

from collections.abc import Sequence

from .contract_types import is_finite_number
from .daily_facts_contract import ComputeMeta, DailyFacts
from .insight_contract import INSIGHT_SEVERITIES, Insight
from .insights import CONFIDENCE_GATE
from .intelligence_context_contract import (
    INTELLIGENCE_CONTEXT_VERSION,
    ContextFacts,
    ContextReadiness,
    InsightsRollup,
    IntelligenceContext,
    SeverityCounts,
)

# context field -> dotted DailyFacts path
_FLATTENED_FACTS: dict[str, str] = {
    "sleep_total_minutes": "sleep.total_minutes",
    "steps": "activity.steps",
    "training_load": "activity.training_load",
    "hrv_rmssd": "recovery.hrv_rmssd",
    "hrv_rmssd_baseline": "recovery.hrv_rmssd_baseline",
    "hrv_rmssd_deviation": "recovery.hrv_rmssd_deviation",
    "weight_kg": "body.weight_kg",
    "body_fat_percent": "body.body_fat_percent",
    "total_kcal": "nutrition.total_kcal",
    "strength_workouts_count": "strength.workouts_count",
}


def _lookup(facts: DailyFacts, path: str) -> int | float | None:
    node: object = facts
    for part in path.split("."):
        node = getattr(node, part, None)
        if node is None:
            return None
    return node if is_finite_number(node) else None


def _flatten_facts(facts: DailyFacts) -> ContextFacts:
    values = {
        name: value
        for name, path in _FLATTENED_FACTS.items()
        if (value := _lookup(facts, path)) is not None
    }
    return ContextFacts(**values)


def _rollup(insights: Sequence[Insight]) -> InsightsRollup:
    counts = {severity: 0 for severity in INSIGHT_SEVERITIES}
    for insight in insights:
        counts[insight.severity] += 1
    return InsightsRollup(
        count=len(insights),
        by_severity=SeverityCounts(**counts),
        tags=sorted({tag for insight in insights for tag in insight.tags}),
        kinds=sorted({insight.kind for insight in insights}),
        ids=sorted({insight.id for insight in insights}),
    )


def _readiness(facts: DailyFacts, insights: Sequence[Insight]) -> ContextReadiness:
    confidence = facts.confidence or {}
    return ContextReadiness(
        has_daily_facts=True,
        has_insights=len(insights) > 0,
        domain_meets_confidence={
            domain: score >= CONFIDENCE_GATE
            for domain, score in sorted(confidence.items())
        },
    )


def assemble_intelligence_context(
    facts: DailyFacts,
    insights: Sequence[Insight],
    *,
    computed_at: str,
    meta: ComputeMeta | None = None,
) -> IntelligenceContext:
    """Fold one day's facts and insights into an IntelligenceContext."""
    foreign = [i.id for i in insights if i.date != facts.date or i.user_id != facts.user_id]
    if foreign:
        raise ValueError(f"Insights do not belong to {facts.user_id}/{facts.date}: {foreign}")

    return IntelligenceContext(
        version=INTELLIGENCE_CONTEXT_VERSION,
        id=facts.date,
        user_id=facts.user_id,
        date=facts.date,
        computed_at=computed_at,
        facts=_flatten_facts(facts),
        insights=_rollup(insights),
        readiness=_readiness(facts, insights),
        confidence=dict(facts.confidence) if facts.confidence else None,
        meta=meta,
    )
