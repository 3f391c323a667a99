"""Health signals v1.0: threshold checks of a day's health score against its
own recent baseline.

Fail-closed: without a health score for the day the result is
attention_required with readiness "missing", never stable.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .utils import mean

HEALTH_SIGNALS_SCHEMA_VERSION = 1
HEALTH_SIGNALS_MODEL_VERSION = "1.0"
BASELINE_WINDOW_DAYS = 14
REQUIRED_DOMAINS = ("recovery", "training", "nutrition", "body")


@dataclass(frozen=True)
class SignalThresholds:
    composite_attention_lt: float = 65
    domain_attention_lt: float = 50
    deviation_attention_pct_lt: float = -0.2

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


DEFAULT_THRESHOLDS = SignalThresholds()


def _deviation(score: float, baseline: float | None) -> float | None:
    if baseline is None or baseline <= 0:
        return None
    return (score - baseline) / baseline


def compute_health_signals(
    day: str,
    health_score: dict[str, Any] | None,
    history: list[dict[str, Any]],
    *,
    computed_at: str,
    pipeline_version: int,
    thresholds: SignalThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any]:
    """history: health score docs for the BASELINE_WINDOW_DAYS days before day."""
    baseline_docs = [h for h in history if h.get("date", "") < day]
    doc: dict[str, Any] = {
        "schema_version": HEALTH_SIGNALS_SCHEMA_VERSION,
        "model_version": HEALTH_SIGNALS_MODEL_VERSION,
        "date": day,
        "computed_at": computed_at,
        "pipeline_version": pipeline_version,
        "inputs": {
            "health_score_day_key": day,
            "baseline_window_days": BASELINE_WINDOW_DAYS,
            "baseline_days_present": len(baseline_docs),
            "thresholds": thresholds.as_dict(),
        },
    }

    if health_score is None:
        doc.update(
            status="attention_required",
            readiness="missing",
            reasons=["missing_health_score"],
            missing_inputs=["health_score"],
            domain_evidence={
                d: {"score": 0, "baseline_mean": None, "deviation_pct": None} for d in REQUIRED_DOMAINS
            },
        )
        return doc

    reasons: list[str] = []
    missing_inputs: list[str] = []
    domain_evidence: dict[str, dict[str, Any]] = {}
    for domain in REQUIRED_DOMAINS:
        entry = health_score.get("domain_scores", {}).get(domain)
        if entry is None:
            missing_inputs.append(f"domain_{domain}")
            reasons.append(f"domain_{domain}_missing")
            domain_evidence[domain] = {"score": 0, "baseline_mean": None, "deviation_pct": None}
            continue
        score = entry["score"]
        baseline = mean([h["domain_scores"][domain]["score"] for h in baseline_docs if domain in h.get("domain_scores", {})])
        deviation = _deviation(score, baseline)
        domain_evidence[domain] = {"score": score, "baseline_mean": baseline, "deviation_pct": deviation}
        if score < thresholds.domain_attention_lt:
            reasons.append(f"domain_{domain}_below_threshold")
        if deviation is not None and deviation < thresholds.deviation_attention_pct_lt:
            reasons.append(f"domain_{domain}_deviation_below_threshold")

    composite = health_score.get("composite_score", 0)
    if composite < thresholds.composite_attention_lt:
        reasons.append("composite_below_threshold")
    composite_baseline = mean([h["composite_score"] for h in baseline_docs if "composite_score" in h])
    composite_deviation = _deviation(composite, composite_baseline)
    if composite_deviation is not None and composite_deviation < thresholds.deviation_attention_pct_lt:
        reasons.append("composite_deviation_below_threshold")

    if missing_inputs:
        readiness = "partial"
    elif not baseline_docs:
        readiness = "partial"
        missing_inputs.append("baseline_history")
    else:
        readiness = "ready"

    doc.update(
        status="attention_required" if reasons else "stable",
        readiness=readiness,
        reasons=reasons,
        missing_inputs=missing_inputs,
        domain_evidence=domain_evidence,
    )
    return doc
