"""Tests for the health score model and health signals."""

import pytest

from builders import DAY, USER
from oli_workers.health_score import (
    body_domain,
    compose_health_score,
    nutrition_domain,
    recovery_domain,
    score_to_tier,
    training_domain,
)
from oli_workers.health_signals import SignalThresholds, compute_health_signals
from oli_workers.intelligence_context import build_intelligence_context
from oli_workers.utils import add_days

COMPUTED_AT = f"{DAY}T23:00:00.000Z"
CONFIDENT = {"sleep": 1.0, "activity": 1.0, "nutrition": 1.0, "recovery": 1.0, "body": 1.0}


def _facts(**sections):
    return {"user_id": USER, "date": DAY, "computed_at": COMPUTED_AT, **sections}


def _context(facts, history_days=1):
    history = [{"date": add_days(DAY, -d)} for d in range(1, history_days + 1)]
    return build_intelligence_context(facts, history, 0.5)


def _full_facts():
    return _facts(
        confidence=CONFIDENT,
        recovery={"readiness_score": 90},
        activity={"steps": 12000},
        nutrition={"total_kcal": 2000, "protein_g": 120, "carbs_g": 200, "fat_g": 70},
        body={"weight_kg": 80},
    )


class TestDomains:
    @pytest.mark.parametrize("score,tier", [(80, "excellent"), (79.9, "good"), (60, "good"), (40, "fair"), (39, "poor")])
    def test_tiers(self, score, tier):
        assert score_to_tier(score) == tier

    def test_recovery_prefers_readiness(self):
        assert recovery_domain(_facts(recovery={"readiness_score": 70, "hrv_rmssd": 120}))["score"] == 70

    def test_recovery_from_hrv(self):
        assert recovery_domain(_facts(recovery={"hrv_rmssd": 65}))["score"] == 50

    def test_recovery_missing(self):
        domain = recovery_domain(_facts())
        assert domain == {"score": 0, "tier": "poor", "missing": ["recovery_data"]}

    def test_training_takes_best_signal(self):
        assert training_domain(_facts(activity={"steps": 6000, "training_load": 400}))["score"] == 100

    def test_training_strength_only_day(self):
        assert training_domain(_facts(strength={"total_sets": 12}))["score"] == 50

    def test_nutrition_completeness(self):
        domain = nutrition_domain(_facts(nutrition={"total_kcal": 1800, "protein_g": 90}))
        assert domain["score"] == 50
        assert domain["missing"] == ["carbs_g", "fat_g"]

    def test_body(self):
        assert body_domain(_facts(body={"weight_kg": 80}))["score"] == 100
        assert body_domain(_facts())["missing"] == ["weight"]


class TestComposeHealthScore:
    def test_stable_when_everything_present(self):
        facts = _full_facts()
        score = compose_health_score(facts, _context(facts), date=DAY, computed_at=COMPUTED_AT, pipeline_version=1)
        assert score["composite_score"] == 98
        assert score["composite_tier"] == "excellent"
        assert score["status"] == "stable"
        assert score["inputs"] == {"has_daily_facts": True, "history_days_used": 1}

    def test_no_history_is_insufficient(self):
        facts = _full_facts()
        score = compose_health_score(facts, _context(facts, 0), date=DAY, computed_at=COMPUTED_AT, pipeline_version=1)
        assert score["status"] == "insufficient_data"

    def test_low_confidence_requires_attention(self):
        facts = {**_full_facts(), "confidence": {"recovery": 1.0, "activity": 0.1}}
        score = compose_health_score(facts, _context(facts), date=DAY, computed_at=COMPUTED_AT, pipeline_version=1)
        assert score["status"] == "attention_required"

    def test_missing_facts(self):
        score = compose_health_score(None, None, date=DAY, computed_at=COMPUTED_AT, pipeline_version=1)
        assert score["composite_score"] == 0
        assert score["status"] == "insufficient_data"
        assert score["inputs"]["has_daily_facts"] is False

    def test_deterministic(self):
        facts = _full_facts()
        a = compose_health_score(facts, _context(facts), date=DAY, computed_at=COMPUTED_AT, pipeline_version=1)
        b = compose_health_score(facts, _context(facts), date=DAY, computed_at=COMPUTED_AT, pipeline_version=1)
        assert a == b


def _score(composite, recovery=80, training=80, nutrition=80, body=80, day=DAY):
    return {
        "date": day,
        "composite_score": composite,
        "domain_scores": {
            "recovery": {"score": recovery},
            "training": {"score": training},
            "nutrition": {"score": nutrition},
            "body": {"score": body},
        },
    }


class TestHealthSignals:
    def test_missing_score_fails_closed(self):
        doc = compute_health_signals(DAY, None, [], computed_at=COMPUTED_AT, pipeline_version=1)
        assert doc["status"] == "attention_required"
        assert doc["readiness"] == "missing"
        assert doc["reasons"] == ["missing_health_score"]

    def test_stable_with_baseline(self):
        history = [_score(80, day=add_days(DAY, -d)) for d in range(1, 4)]
        doc = compute_health_signals(DAY, _score(80), history, computed_at=COMPUTED_AT, pipeline_version=1)
        assert doc["status"] == "stable"
        assert doc["readiness"] == "ready"
        assert doc["reasons"] == []
        assert doc["domain_evidence"]["recovery"] == {"score": 80, "baseline_mean": 80, "deviation_pct": 0}

    def test_no_baseline_is_partial(self):
        doc = compute_health_signals(DAY, _score(80), [], computed_at=COMPUTED_AT, pipeline_version=1)
        assert doc["status"] == "stable"
        assert doc["readiness"] == "partial"
        assert doc["missing_inputs"] == ["baseline_history"]

    def test_thresholds_trigger_reasons(self):
        history = [_score(90, recovery=90, day=add_days(DAY, -1))]
        doc = compute_health_signals(DAY, _score(60, recovery=40), history, computed_at=COMPUTED_AT, pipeline_version=1)
        assert doc["status"] == "attention_required"
        assert "composite_below_threshold" in doc["reasons"]
        assert "domain_recovery_below_threshold" in doc["reasons"]
        assert "domain_recovery_deviation_below_threshold" in doc["reasons"]

    def test_missing_domain_is_partial(self):
        score = _score(80)
        del score["domain_scores"]["body"]
        history = [_score(80, day=add_days(DAY, -1))]
        doc = compute_health_signals(DAY, score, history, computed_at=COMPUTED_AT, pipeline_version=1)
        assert doc["readiness"] == "partial"
        assert "domain_body_missing" in doc["reasons"]

    def test_custom_thresholds_recorded(self):
        thresholds = SignalThresholds(composite_attention_lt=90)
        doc = compute_health_signals(
            DAY, _score(80), [], computed_at=COMPUTED_AT, pipeline_version=1, thresholds=thresholds
        )
        assert doc["inputs"]["thresholds"]["composite_attention_lt"] == 90
        assert doc["status"] == "attention_required"

    def test_history_on_or_after_day_ignored(self):
        history = [_score(10, day=DAY), _score(10, day=add_days(DAY, 1))]
        doc = compute_health_signals(DAY, _score(80), history, computed_at=COMPUTED_AT, pipeline_version=1)
        assert doc["inputs"]["baseline_days_present"] == 0
