"""Health score model v1.0. Pure and deterministic.

Four domain scores (0-100), each carrying a `missing` list explaining why it
is degraded, an equal-weight composite and a stability status. Never reads
the store and never raises for well-formed facts.
"""

from __future__ import annotations

from typing import Any, Literal

from .intelligence_context import IntelligenceContext
from .utils import clamp, is_finite_number

HEALTH_SCORE_SCHEMA_VERSION = 1
HEALTH_SCORE_MODEL_VERSION = "1.0"

# Minimum prior days in the context window before a status other than
# insufficient_data is reported.
MIN_HISTORY_DAYS = 1

DOMAIN_WEIGHTS = {"recovery": 0.25, "training": 0.25, "nutrition": 0.25, "body": 0.25}

# Health score domain -> intelligence context confidence domain that gates it.
GATING_DOMAINS = {"recovery": "recovery", "training": "activity"}

Tier = Literal["excellent", "good", "fair", "poor"]


def score_to_tier(score: float) -> Tier:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    return "poor"


def _clamp100(value: float) -> float:
    return clamp(value, 0.0, 100.0)


def _section(facts: dict[str, Any] | None, name: str) -> dict[str, Any] | None:
    if not facts:
        return None
    section = facts.get(name)
    return section if isinstance(section, dict) else None


def _domain(score: float, missing: list[str]) -> dict[str, Any]:
    return {"score": score, "tier": score_to_tier(score), "missing": missing}


def recovery_domain(facts: dict[str, Any] | None) -> dict[str, Any]:
    """Readiness (0-100) when present, else HRV RMSSD mapped 10-120 ms onto 0-100."""
    r = _section(facts, "recovery")
    if r is not None and is_finite_number(r.get("readiness_score")):
        return _domain(_clamp100(r["readiness_score"]), [])
    if r is not None and is_finite_number(r.get("hrv_rmssd")):
        return _domain(_clamp100((r["hrv_rmssd"] - 10) / 110 * 100), [])
    if r is not None:
        return _domain(0, ["readiness", "hrv"])
    return _domain(0, ["recovery_data"])


def training_domain(facts: dict[str, Any] | None) -> dict[str, Any]:
    """Best of steps (12k), training load (400) and move minutes (60)."""
    a = _section(facts, "activity") or {}
    missing: list[str] = []
    score = 0.0
    if is_finite_number(a.get("steps")):
        score = max(score, _clamp100(a["steps"] / 12000 * 100))
    else:
        missing.append("steps")
    if is_finite_number(a.get("training_load")):
        score = max(score, _clamp100(a["training_load"] / 400 * 100))
    else:
        missing.append("training_load")
    if is_finite_number(a.get("move_minutes")):
        score = max(score, _clamp100(a["move_minutes"] / 60 * 100))
    elif "steps" not in missing and "training_load" not in missing:
        missing.append("move_minutes")

    strength = _section(facts, "strength")
    if score == 0 and strength is not None and strength.get("total_sets", 0) > 0:
        # Strength-only day scores a fixed 50.
        return _domain(50, [])
    if score == 0:
        missing.append("activity_data")
    return _domain(score, missing)


def nutrition_domain(facts: dict[str, Any] | None) -> dict[str, Any]:
    """Macro completeness: each of kcal, protein, carbs and fat is worth 25."""
    n = _section(facts, "nutrition") or {}
    missing = [key for key in ("total_kcal", "protein_g", "carbs_g", "fat_g") if not is_finite_number(n.get(key))]
    present = 4 - len(missing)
    if present == 0:
        missing.append("nutrition_data")
        return _domain(0, missing)
    return _domain(_clamp100(present / 4 * 100), missing)


def body_domain(facts: dict[str, Any] | None) -> dict[str, Any]:
    b = _section(facts, "body") or {}
    if is_finite_number(b.get("weight_kg")) or is_finite_number(b.get("body_fat_percent")):
        return _domain(100, [])
    return _domain(0, ["weight"])


def derive_status(
    domain_scores: dict[str, dict[str, Any]],
    composite_tier: Tier,
    context: IntelligenceContext | None,
    history_days: int,
) -> str:
    if history_days < MIN_HISTORY_DAYS:
        return "insufficient_data"
    if not any(d["score"] > 0 for d in domain_scores.values()):
        return "insufficient_data"
    if context is None:
        return "attention_required"
    for confidence_domain in GATING_DOMAINS.values():
        if not context.confidence.meets_threshold(confidence_domain):
            return "attention_required"
    if composite_tier in ("fair", "poor"):
        return "attention_required"
    return "stable"


def compose_health_score(
    facts: dict[str, Any] | None,
    context: IntelligenceContext | None,
    *,
    date: str,
    computed_at: str,
    pipeline_version: int,
) -> dict[str, Any]:
    domain_scores = {
        "recovery": recovery_domain(facts),
        "training": training_domain(facts),
        "nutrition": nutrition_domain(facts),
        "body": body_domain(facts),
    }
    composite_score = round(sum(domain_scores[d]["score"] * w for d, w in DOMAIN_WEIGHTS.items()))
    composite_tier = score_to_tier(composite_score)
    history_days = context.history_days() if context is not None else 0

    return {
        "schema_version": HEALTH_SCORE_SCHEMA_VERSION,
        "model_version": HEALTH_SCORE_MODEL_VERSION,
        "date": date,
        "composite_score": composite_score,
        "composite_tier": composite_tier,
        "domain_scores": domain_scores,
        "status": derive_status(domain_scores, composite_tier, context, history_days),
        "computed_at": computed_at,
        "pipeline_version": pipeline_version,
        "inputs": {
            "has_daily_facts": facts is not None,
            "history_days_used": history_days,
        },
    }
