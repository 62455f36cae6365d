"""Insights rule engine.

Evaluates an ordered, versioned rule set against a window of DailyFacts for
one user. Rules are pure functions of the ``InsightRuleContext`` they are
given (including ``now``), so any historical window can be replayed for
auditing and yields the same insights.

Every rule is gated on the confidence score of the domain it reads: a rule
only speaks when its domain was observed on at least half of the window.
Insight ids are ``{date}_{kind}``, so a rerun for a day replaces rather than
appends.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any

from .contract_types import is_finite_number
from .daily_facts_contract import DailyFacts
from .insight_contract import Insight, InsightEvidence, InsightSeverity

RULE_VERSION = "baseline-insights-v1.2.0"
CONFIDENCE_GATE = 0.5
WINDOW_DAYS = 7

LOW_SLEEP_MINUTES = 420
LOW_STEPS = 8000
HIGH_TRAINING_LOAD = 150
LOW_HRV_MS = 50
HRV_DEVIATION_FLOOR = -0.2
SHORT_SLEEP_STREAK_DAYS = 3


@dataclass(frozen=True)
class InsightRuleContext:
    user_id: str
    date: str
    facts: DailyFacts
    window: tuple[DailyFacts, ...]
    now: str

    def fact(self, path: str, facts: DailyFacts | None = None) -> int | float | None:
        """Resolve a dotted fact path like ``sleep.total_minutes`` to a number."""
        node: Any = facts if facts is not None else self.facts
        for part in path.split("."):
            node = getattr(node, part, None)
            if node is None:
                return None
        return node if is_finite_number(node) else None

    def meets_confidence(self, domain: str) -> bool:
        scores = self.facts.confidence or {}
        score = scores.get(domain)
        return score is not None and score >= CONFIDENCE_GATE

    def trailing(self, days: int) -> tuple[DailyFacts, ...]:
        return self.window[-days:]


def build_rule_context(
    user_id: str,
    date: str,
    window: Iterable[DailyFacts],
    now: str,
) -> InsightRuleContext:
    """Dedupe the window by date, sort it, and keep the 7 days ending at ``date``."""
    by_date: dict[str, DailyFacts] = {}
    for facts in window:
        if facts.date <= date:
            by_date[facts.date] = facts
    if date not in by_date:
        raise ValueError(f"Insight window has no DailyFacts for {date}")
    ordered = tuple(by_date[d] for d in sorted(by_date))[-WINDOW_DAYS:]
    return InsightRuleContext(
        user_id=user_id,
        date=date,
        facts=by_date[date],
        window=ordered,
        now=now,
    )


def _insight(
    ctx: InsightRuleContext,
    *,
    kind: str,
    severity: InsightSeverity,
    title: str,
    message: str,
    tags: list[str],
    evidence: list[InsightEvidence],
) -> Insight:
    return Insight(
        id=f"{ctx.date}_{kind}",
        user_id=ctx.user_id,
        date=ctx.date,
        kind=kind,
        title=title,
        message=message,
        severity=severity,
        evidence=evidence,
        tags=tags,
        rule_version=RULE_VERSION,
        created_at=ctx.now,
        updated_at=ctx.now,
    )


def low_sleep_duration(ctx: InsightRuleContext) -> Insight | None:
    total = ctx.fact("sleep.total_minutes")
    if total is None or total >= LOW_SLEEP_MINUTES:
        return None
    return _insight(
        ctx,
        kind="low_sleep_duration",
        severity="warning",
        title="Low sleep duration",
        message=(
            f"You slept about {total / 60:.1f} hours, which is below the recommended "
            "7+ hours. Consider prioritizing an earlier bedtime or reducing pre-sleep "
            "screen time."
        ),
        tags=["sleep", "recovery"],
        evidence=[InsightEvidence(
            fact_path="sleep.total_minutes",
            value=total,
            threshold=LOW_SLEEP_MINUTES,
            direction="below",
        )],
    )


def low_steps(ctx: InsightRuleContext) -> Insight | None:
    steps = ctx.fact("activity.steps")
    if steps is None or steps >= LOW_STEPS:
        return None
    return _insight(
        ctx,
        kind="low_steps",
        severity="info",
        title="Low daily movement",
        message=(
            f"You logged {round(steps):,} steps, below the target of {LOW_STEPS:,}. "
            "Try adding a short walk or movement break tomorrow."
        ),
        tags=["activity", "movement"],
        evidence=[InsightEvidence(
            fact_path="activity.steps",
            value=steps,
            threshold=LOW_STEPS,
            direction="below",
        )],
    )


def high_training_load(ctx: InsightRuleContext) -> Insight | None:
    load = ctx.fact("activity.training_load")
    if load is None or load <= HIGH_TRAINING_LOAD:
        return None
    return _insight(
        ctx,
        kind="high_training_load",
        severity="warning",
        title="High training load",
        message=(
            f"Your training load ({load:.0f}) was high today. Make sure you have enough "
            "recovery planned over the next 24-48 hours."
        ),
        tags=["training", "recovery"],
        evidence=[InsightEvidence(
            fact_path="activity.training_load",
            value=load,
            threshold=HIGH_TRAINING_LOAD,
            direction="above",
        )],
    )


def low_hrv(ctx: InsightRuleContext) -> Insight | None:
    hrv = ctx.fact("recovery.hrv_rmssd")
    if hrv is None or hrv >= LOW_HRV_MS:
        return None
    return _insight(
        ctx,
        kind="low_hrv",
        severity="info",
        title="Low HRV today",
        message=(
            f"Your HRV (RMSSD) was {hrv:.0f} ms today, which may indicate higher stress "
            "or lower recovery. Consider prioritizing sleep, hydration, and light movement."
        ),
        tags=["recovery", "hrv"],
        evidence=[InsightEvidence(
            fact_path="recovery.hrv_rmssd",
            value=hrv,
            threshold=LOW_HRV_MS,
            direction="below",
        )],
    )


def hrv_below_baseline(ctx: InsightRuleContext) -> Insight | None:
    deviation = ctx.fact("recovery.hrv_rmssd_deviation")
    hrv = ctx.fact("recovery.hrv_rmssd")
    baseline = ctx.fact("recovery.hrv_rmssd_baseline")
    if deviation is None or hrv is None or baseline is None:
        return None
    if deviation > HRV_DEVIATION_FLOOR:
        return None
    return _insight(
        ctx,
        kind="hrv_below_baseline",
        severity="warning",
        title="HRV below your baseline",
        message=(
            f"Your HRV ({hrv:.0f} ms) is {abs(deviation) * 100:.0f}% below your recent "
            f"baseline of {baseline:.0f} ms. An easier day may help you recover."
        ),
        tags=["recovery", "hrv"],
        evidence=[
            InsightEvidence(
                fact_path="recovery.hrv_rmssd_deviation",
                value=deviation,
                threshold=HRV_DEVIATION_FLOOR,
                direction="below",
            ),
            InsightEvidence(fact_path="recovery.hrv_rmssd_baseline", value=baseline),
        ],
    )


def short_sleep_streak(ctx: InsightRuleContext) -> Insight | None:
    streak = ctx.trailing(SHORT_SLEEP_STREAK_DAYS)
    if len(streak) < SHORT_SLEEP_STREAK_DAYS or streak[-1].date != ctx.date:
        return None
    totals = [ctx.fact("sleep.total_minutes", day) for day in streak]
    if any(t is None or t >= LOW_SLEEP_MINUTES for t in totals):
        return None
    first = date.fromisoformat(streak[0].date)
    last = date.fromisoformat(streak[-1].date)
    if (last - first).days != SHORT_SLEEP_STREAK_DAYS - 1:
        return None
    return _insight(
        ctx,
        kind="short_sleep_streak",
        severity="critical",
        title="Short sleep streak",
        message=(
            f"You have slept under 7 hours for {SHORT_SLEEP_STREAK_DAYS} nights in a row. "
            "Accumulated sleep debt affects recovery; plan an early night."
        ),
        tags=["sleep", "recovery"],
        evidence=[
            InsightEvidence(
                fact_path=f"window[{day.date}].sleep.total_minutes",
                value=total,
                threshold=LOW_SLEEP_MINUTES,
                direction="below",
            )
            for day, total in zip(streak, totals)
        ],
    )


@dataclass(frozen=True)
class InsightRule:
    kind: str
    domain: str
    evaluate: Callable[[InsightRuleContext], Insight | None]


# Evaluation order is the output order.
RULES: tuple[InsightRule, ...] = (
    InsightRule("low_sleep_duration", "sleep", low_sleep_duration),
    InsightRule("low_steps", "activity", low_steps),
    InsightRule("high_training_load", "activity", high_training_load),
    InsightRule("low_hrv", "recovery", low_hrv),
    InsightRule("hrv_below_baseline", "recovery", hrv_below_baseline),
    InsightRule("short_sleep_streak", "sleep", short_sleep_streak),
)

RULE_KINDS: tuple[str, ...] = tuple(rule.kind for rule in RULES)


def evaluate_insights(
    ctx: InsightRuleContext,
    rules: tuple[InsightRule, ...] = RULES,
) -> list[Insight]:
    """Run every rule whose domain passes the confidence gate."""
    insights: list[Insight] = []
    for rule in rules:
        if not ctx.meets_confidence(rule.domain):
            continue
        insight = rule.evaluate(ctx)
        if insight is not None:
            insights.append(insight)
    return insights
