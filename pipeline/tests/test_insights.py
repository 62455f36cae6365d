"""Tests for the insights rule engine."""

import pytest

from health_truth.insights import (
    CONFIDENCE_GATE,
    RULE_KINDS,
    RULE_VERSION,
    InsightRule,
    build_rule_context,
    evaluate_insights,
)

from factories import USER, facts

NOW = "2025-01-15T23:00:00+00:00"
FULL = {"sleep": 1.0, "activity": 1.0, "recovery": 1.0, "body": 1.0}


def _ctx(today, history=()):
    return build_rule_context(USER, today.date, [*history, today], NOW)


def _kinds(insights):
    return [i.kind for i in insights]


class TestBuildRuleContext:
    def test_requires_today(self):
        with pytest.raises(ValueError, match="no DailyFacts for 2025-01-15"):
            build_rule_context(USER, "2025-01-15", [facts("2025-01-14")], NOW)

    def test_dedupes_sorts_and_trims_window(self):
        days = [facts(f"2025-01-{d:02d}") for d in range(15, 0, -1)]
        ctx = build_rule_context(USER, "2025-01-15", days + [facts("2025-01-16")], NOW)
        assert [f.date for f in ctx.window] == [f"2025-01-{d:02d}" for d in range(9, 16)]
        assert ctx.facts.date == "2025-01-15"

    def test_fact_path_resolution(self):
        ctx = _ctx(facts("2025-01-15", sleep={"total_minutes": 400}))
        assert ctx.fact("sleep.total_minutes") == 400
        assert ctx.fact("activity.steps") is None
        assert ctx.fact("sleep.nope") is None


class TestRules:
    def test_low_sleep_and_low_steps(self):
        today = facts(
            "2025-01-15",
            sleep={"total_minutes": 360},
            activity={"steps": 3000},
            confidence=FULL,
        )
        insights = evaluate_insights(_ctx(today))
        assert _kinds(insights) == ["low_sleep_duration", "low_steps"]
        low_sleep = insights[0]
        assert low_sleep.id == "2025-01-15_low_sleep_duration"
        assert low_sleep.severity == "warning"
        assert low_sleep.rule_version == RULE_VERSION
        assert low_sleep.evidence[0].fact_path == "sleep.total_minutes"
        assert low_sleep.evidence[0].direction == "below"
        assert low_sleep.created_at == NOW

    def test_healthy_day_has_no_insights(self):
        today = facts(
            "2025-01-15",
            sleep={"total_minutes": 480},
            activity={"steps": 12000, "training_load": 80},
            recovery={"hrv_rmssd": 70},
            confidence=FULL,
        )
        assert evaluate_insights(_ctx(today)) == []

    def test_high_training_load(self):
        today = facts("2025-01-15", activity={"steps": 12000, "training_load": 151}, confidence=FULL)
        assert _kinds(evaluate_insights(_ctx(today))) == ["high_training_load"]

    def test_training_load_at_threshold_is_not_high(self):
        today = facts("2025-01-15", activity={"steps": 12000, "training_load": 150}, confidence=FULL)
        assert evaluate_insights(_ctx(today)) == []

    def test_low_hrv_and_below_baseline(self):
        today = facts(
            "2025-01-15",
            recovery={"hrv_rmssd": 40, "hrv_rmssd_baseline": 60, "hrv_rmssd_deviation": -1 / 3},
            confidence=FULL,
        )
        assert _kinds(evaluate_insights(_ctx(today))) == ["low_hrv", "hrv_below_baseline"]

    def test_deviation_just_above_floor_is_quiet(self):
        today = facts(
            "2025-01-15",
            recovery={"hrv_rmssd": 55, "hrv_rmssd_baseline": 60, "hrv_rmssd_deviation": -0.08},
            confidence=FULL,
        )
        assert evaluate_insights(_ctx(today)) == []

    def test_short_sleep_streak_needs_three_consecutive_days(self):
        history = [
            facts("2025-01-13", sleep={"total_minutes": 350}),
            facts("2025-01-14", sleep={"total_minutes": 380}),
        ]
        today = facts("2025-01-15", sleep={"total_minutes": 400}, confidence=FULL)
        insights = evaluate_insights(_ctx(today, history))
        assert _kinds(insights) == ["low_sleep_duration", "short_sleep_streak"]
        streak = insights[1]
        assert streak.severity == "critical"
        assert len(streak.evidence) == 3

    def test_gap_breaks_the_streak(self):
        history = [
            facts("2025-01-12", sleep={"total_minutes": 350}),
            facts("2025-01-14", sleep={"total_minutes": 380}),
        ]
        today = facts("2025-01-15", sleep={"total_minutes": 400}, confidence=FULL)
        assert _kinds(evaluate_insights(_ctx(today, history))) == ["low_sleep_duration"]


class TestConfidenceGate:
    def test_rules_silent_below_gate(self):
        today = facts(
            "2025-01-15",
            sleep={"total_minutes": 300},
            confidence={"sleep": CONFIDENCE_GATE - 0.01},
        )
        assert evaluate_insights(_ctx(today)) == []

    def test_rules_speak_at_gate(self):
        today = facts(
            "2025-01-15",
            sleep={"total_minutes": 300},
            confidence={"sleep": CONFIDENCE_GATE},
        )
        assert _kinds(evaluate_insights(_ctx(today))) == ["low_sleep_duration"]

    def test_missing_confidence_blocks_every_rule(self):
        today = facts("2025-01-15", sleep={"total_minutes": 300})
        assert evaluate_insights(_ctx(today)) == []


class TestRuleSet:
    def test_kinds_are_unique(self):
        assert len(set(RULE_KINDS)) == len(RULE_KINDS)

    def test_custom_rule_set_runs_in_order_with_domain_gate(self):
        calls = []

        def record(name):
            def evaluate(ctx):
                calls.append(name)
                return None
            return evaluate

        rules = (
            InsightRule("first", "sleep", record("first")),
            InsightRule("gated", "nutrition", record("gated")),
            InsightRule("second", "activity", record("second")),
        )
        today = facts("2025-01-15", sleep={"total_minutes": 300}, confidence=FULL)
        assert evaluate_insights(_ctx(today), rules) == []
        assert calls == ["first", "second"]

    def test_same_input_same_output(self):
        today = facts("2025-01-15", sleep={"total_minutes": 300}, confidence=FULL)
        first = evaluate_insights(_ctx(today))
        second = evaluate_insights(_ctx(today))
        assert [i.model_dump() for i in first] == [i.model_dump() for i in second]
