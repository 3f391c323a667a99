"""Baseline insight rules and authoritative insight pruning.

Each rule is pure: it reads the intelligence context and returns zero or
more insight documents. Insight ids are deterministic per (date, kind), so a
rerun overwrites the same documents, and anything stored for the day that
the current run did not produce is deleted (see compute_insight_prune_plan).

Rule thresholds are conservative and explicit; no rule fires for a domain
whose confidence is absent or below the context threshold.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from .errors import DuplicateInsightError
from .intelligence_context import IntelligenceContext
from .utils import is_finite_number

RULE_VERSION = "baseline-insights-v1.0.0"
INSIGHT_SCHEMA_VERSION = 1
DELETE_BATCH_SIZE = 450

Severity = Literal["info", "warning", "critical"]
Direction = Literal["above", "below", "outside_range"]

LOW_SLEEP_MINUTES = 420
LOW_STEPS = 8000
HIGH_TRAINING_LOAD = 150
LOW_HRV_MS = 50
HRV_DEVIATION_WARNING = -0.2
WEIGHT_CHANGE_KG = 1.5


def build_insight_id(date: str, kind: str) -> str:
    return f"{date}_{kind}"


def evidence_point(
    fact_path: str,
    value: float | None,
    threshold: float | None = None,
    direction: Direction | None = None,
) -> dict[str, Any]:
    point: dict[str, Any] = {"fact_path": fact_path, "value": value}
    if threshold is not None:
        point["threshold"] = threshold
    if direction is not None:
        point["direction"] = direction
    return point


@dataclass(frozen=True)
class InsightRule:
    kind: str
    domain: str
    evaluate_fn: Callable[["InsightRule", IntelligenceContext], list[dict[str, Any]]]
    rule_version: str = RULE_VERSION
    tags: tuple[str, ...] = field(default_factory=tuple)

    def evaluate(self, context: IntelligenceContext) -> list[dict[str, Any]]:
        if not context.confidence.meets_threshold(self.domain):
            return []
        return self.evaluate_fn(self, context)

    def insight(
        self,
        context: IntelligenceContext,
        *,
        title: str,
        message: str,
        severity: Severity,
        evidence: list[dict[str, Any]],
    ) -> dict[str, Any]:
        # Timestamps come from the facts being evaluated, keeping the output a
        # pure function of the context.
        stamp = context.computed_at
        return {
            "schema_version": INSIGHT_SCHEMA_VERSION,
            "id": build_insight_id(context.date, self.kind),
            "user_id": context.user_id,
            "date": context.date,
            "kind": self.kind,
            "title": title,
            "message": message,
            "severity": severity,
            "evidence": evidence,
            "tags": list(self.tags),
            "created_at": stamp,
            "updated_at": stamp,
            "rule_version": self.rule_version,
        }


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _low_sleep_duration(rule: InsightRule, ctx: IntelligenceContext) -> list[dict[str, Any]]:
    minutes = ctx.facts.sleep_total_minutes()
    if minutes is None or minutes >= LOW_SLEEP_MINUTES:
        return []
    return [
        rule.insight(
            ctx,
            title="Short sleep",
            message=f"You slept {minutes / 60:.1f} h, below the 7 h baseline.",
            severity="warning",
            evidence=[evidence_point("sleep.total_minutes", minutes, LOW_SLEEP_MINUTES, "below")],
        )
    ]


def _low_steps(rule: InsightRule, ctx: IntelligenceContext) -> list[dict[str, Any]]:
    steps = ctx.facts.steps()
    if steps is None or steps >= LOW_STEPS:
        return []
    evidence = [evidence_point("activity.steps", steps, LOW_STEPS, "below")]
    avg = ctx.facts.steps_avg_7d()
    if avg is not None:
        evidence.append(evidence_point("activity.steps_avg_7d", avg))
    return [
        rule.insight(
            ctx,
            title="Low step count",
            message=f"{int(steps)} steps today, under the {LOW_STEPS} step target.",
            severity="info",
            evidence=evidence,
        )
    ]


def _high_training_load(rule: InsightRule, ctx: IntelligenceContext) -> list[dict[str, Any]]:
    load = ctx.facts.training_load()
    if load is None or load <= HIGH_TRAINING_LOAD:
        return []
    evidence = [evidence_point("activity.training_load", load, HIGH_TRAINING_LOAD, "above")]
    avg = ctx.facts.training_load_avg_7d()
    if avg is not None:
        evidence.append(evidence_point("activity.training_load_avg_7d", avg))
    return [
        rule.insight(
            ctx,
            title="High training load",
            message=f"Training load of {load:.0f} is above {HIGH_TRAINING_LOAD}. Plan recovery.",
            severity="warning",
            evidence=evidence,
        )
    ]


def _low_hrv(rule: InsightRule, ctx: IntelligenceContext) -> list[dict[str, Any]]:
    hrv = ctx.facts.hrv_rmssd()
    if hrv is None or hrv >= LOW_HRV_MS:
        return []
    return [
        rule.insight(
            ctx,
            title="Low HRV",
            message=f"HRV (RMSSD) of {hrv:.0f} ms is below {LOW_HRV_MS} ms.",
            severity="info",
            evidence=[evidence_point("recovery.hrv_rmssd", hrv, LOW_HRV_MS, "below")],
        )
    ]


def _hrv_below_baseline(rule: InsightRule, ctx: IntelligenceContext) -> list[dict[str, Any]]:
    deviation = ctx.facts.hrv_rmssd_deviation()
    if deviation is None or deviation > HRV_DEVIATION_WARNING:
        return []
    return [
        rule.insight(
            ctx,
            title="HRV below your baseline",
            message=f"HRV is {abs(deviation) * 100:.0f}% below your recent baseline.",
            severity="warning",
            evidence=[
                evidence_point("recovery.hrv_rmssd_deviation", deviation, HRV_DEVIATION_WARNING, "below"),
                evidence_point("recovery.hrv_rmssd_baseline", ctx.facts.hrv_rmssd_baseline()),
            ],
        )
    ]


def _weight_change(rule: InsightRule, ctx: IntelligenceContext) -> list[dict[str, Any]]:
    current = ctx.facts.weight_kg()
    reference = None
    for item in ctx.window_7d:
        if item["date"] == ctx.date:
            continue
        body = item.get("body")
        if isinstance(body, dict) and is_finite_number(body.get("weight_kg")):
            reference = body["weight_kg"]
            break
    change = ctx.comparisons.delta(current, reference)
    if change is None or abs(change) < WEIGHT_CHANGE_KG:
        return []
    direction = "up" if change > 0 else "down"
    return [
        rule.insight(
            ctx,
            title="Weight change",
            message=f"Weight is {direction} {abs(change):.1f} kg over the last week.",
            severity="info",
            evidence=[
                evidence_point("body.weight_kg", current),
                evidence_point("body.weight_kg_delta_7d", change, WEIGHT_CHANGE_KG, "outside_range"),
            ],
        )
    ]


RULES: tuple[InsightRule, ...] = (
    InsightRule("low_sleep_duration", "sleep", _low_sleep_duration, tags=("sleep", "recovery")),
    InsightRule("low_steps", "activity", _low_steps, tags=("activity",)),
    InsightRule("high_training_load", "activity", _high_training_load, tags=("training", "load")),
    InsightRule("low_hrv", "recovery", _low_hrv, tags=("recovery", "hrv")),
    InsightRule("hrv_below_baseline", "recovery", _hrv_below_baseline, tags=("recovery", "hrv")),
    InsightRule("weight_change", "body", _weight_change, tags=("body",)),
)


def evaluate_insight_rules(
    context: IntelligenceContext,
    rules: Iterable[InsightRule] = RULES,
) -> list[dict[str, Any]]:
    """Run every rule and return the authoritative insight set for the day."""
    insights: list[dict[str, Any]] = []
    seen: set[str] = set()
    for rule in rules:
        for insight in rule.evaluate(context):
            if insight["id"] in seen:
                raise DuplicateInsightError(f"Insight id {insight['id']!r} emitted twice")
            seen.add(insight["id"])
            insights.append(insight)
    return insights


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PrunePlan:
    to_delete: list[str]


def compute_insight_prune_plan(existing_ids: Iterable[str], keep_ids: Iterable[str]) -> PrunePlan:
    """to_delete = existing_ids - keep_ids, preserving existing_ids order."""
    keep = set(keep_ids)
    to_delete: list[str] = []
    seen: set[str] = set()
    for insight_id in existing_ids:
        if insight_id in keep or insight_id in seen:
            continue
        seen.add(insight_id)
        to_delete.append(insight_id)
    return PrunePlan(to_delete=to_delete)


def chunked(items: list[str], size: int = DELETE_BATCH_SIZE) -> Iterator[list[str]]:
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]
