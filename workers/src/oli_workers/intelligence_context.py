"""Intelligence context: the deterministic, confidence-gated view over a day's
facts and its trailing history that insight rules read from.

Pure: no store access. Missing or non-finite values surface as None, never
as 0 or NaN, and a domain without a confidence score never passes the gate.
"""

from __future__ import annotations

import enum
from typing import Any

from .utils import clamp01, is_finite_number, safe_number

INTELLIGENCE_CONTEXT_VERSION = "intelligence-context-v1.0.0"
INTELLIGENCE_CONTEXT_SCHEMA_VERSION = 1
DEFAULT_DOMAIN_CONFIDENCE_THRESHOLD = 0.5
WINDOW_DAYS = 7

DOMAINS = ("sleep", "activity", "nutrition", "recovery", "body")


class ConfidenceState(enum.Enum):
    ABOVE_THRESHOLD = "above_threshold"
    BELOW_THRESHOLD = "below_threshold"
    ABSENT = "absent"


def resolve_threshold(value: Any) -> float:
    if not is_finite_number(value):
        return DEFAULT_DOMAIN_CONFIDENCE_THRESHOLD
    return clamp01(float(value))


def _section_value(facts: dict[str, Any], section: str, key: str) -> float | None:
    data = facts.get(section)
    if not isinstance(data, dict):
        return None
    return safe_number(data.get(key))


class Confidence:
    def __init__(self, today: dict[str, Any], threshold: float) -> None:
        self._scores = today.get("confidence") if isinstance(today.get("confidence"), dict) else {}
        self.threshold = threshold

    def get(self, domain: str) -> float | None:
        value = self._scores.get(domain)
        return clamp01(value) if is_finite_number(value) else None

    def state(self, domain: str) -> ConfidenceState:
        score = self.get(domain)
        if score is None:
            return ConfidenceState.ABSENT
        if score >= self.threshold:
            return ConfidenceState.ABOVE_THRESHOLD
        return ConfidenceState.BELOW_THRESHOLD

    def meets_threshold(self, domain: str) -> bool:
        return self.state(domain) is ConfidenceState.ABOVE_THRESHOLD


class Facts:
    """Typed accessors over today's facts."""

    def __init__(self, today: dict[str, Any]) -> None:
        self._today = today

    def sleep_total_minutes(self) -> float | None:
        return _section_value(self._today, "sleep", "total_minutes")

    def steps(self) -> float | None:
        return _section_value(self._today, "activity", "steps")

    def move_minutes(self) -> float | None:
        return _section_value(self._today, "activity", "move_minutes")

    def training_load(self) -> float | None:
        return _section_value(self._today, "activity", "training_load")

    def steps_avg_7d(self) -> float | None:
        return _section_value(self._today, "activity", "steps_avg_7d")

    def training_load_avg_7d(self) -> float | None:
        return _section_value(self._today, "activity", "training_load_avg_7d")

    def hrv_rmssd(self) -> float | None:
        return _section_value(self._today, "recovery", "hrv_rmssd")

    def hrv_rmssd_baseline(self) -> float | None:
        return _section_value(self._today, "recovery", "hrv_rmssd_baseline")

    def hrv_rmssd_deviation(self) -> float | None:
        return _section_value(self._today, "recovery", "hrv_rmssd_deviation")

    def readiness_score(self) -> float | None:
        return _section_value(self._today, "recovery", "readiness_score")

    def total_kcal(self) -> float | None:
        return _section_value(self._today, "nutrition", "total_kcal")

    def weight_kg(self) -> float | None:
        return _section_value(self._today, "body", "weight_kg")

    def body_fat_percent(self) -> float | None:
        return _section_value(self._today, "body", "body_fat_percent")

    def strength_total_sets(self) -> float | None:
        return _section_value(self._today, "strength", "total_sets")


class Comparisons:
    @staticmethod
    def delta(current: float | None, reference: float | None) -> float | None:
        if not is_finite_number(current) or not is_finite_number(reference):
            return None
        return current - reference

    @staticmethod
    def ratio(current: float | None, reference: float | None) -> float | None:
        if not is_finite_number(current) or not is_finite_number(reference):
            return None
        if reference == 0:
            return None
        return current / reference


def _dedupe_sorted(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_date: dict[str, dict[str, Any]] = {}
    for item in history:
        by_date[item["date"]] = item
    return [by_date[d] for d in sorted(by_date)]


class IntelligenceContext:
    def __init__(
        self,
        today: dict[str, Any],
        history: list[dict[str, Any]],
        domain_confidence_threshold: float,
    ) -> None:
        self.version = INTELLIGENCE_CONTEXT_VERSION
        self.user_id = today.get("user_id")
        self.date = today["date"]
        self.today = today
        self.history = _dedupe_sorted(history)
        window = {item["date"]: item for item in self.history}
        window[self.date] = today
        self.window_7d = [window[d] for d in sorted(window)][-WINDOW_DAYS:]
        self.domain_confidence_threshold = domain_confidence_threshold
        self.confidence = Confidence(today, domain_confidence_threshold)
        self.facts = Facts(today)
        self.comparisons = Comparisons()

    @property
    def computed_at(self) -> str | None:
        return self.today.get("computed_at")

    def history_days(self) -> int:
        """Days of prior history in the window (today excluded)."""
        return sum(1 for item in self.window_7d if item["date"] != self.date)

    def to_document(self) -> dict[str, Any]:
        """Serializable summary persisted as the day's intelligenceContext."""
        f = self.facts
        return {
            "schema_version": INTELLIGENCE_CONTEXT_SCHEMA_VERSION,
            "version": self.version,
            "user_id": self.user_id,
            "date": self.date,
            "computed_at": self.computed_at,
            "domain_confidence_threshold": self.domain_confidence_threshold,
            "window_days": [item["date"] for item in self.window_7d],
            "confidence": {
                domain: {
                    "value": self.confidence.get(domain),
                    "state": self.confidence.state(domain).value,
                }
                for domain in DOMAINS
            },
            "facts": {
                "sleep_total_minutes": f.sleep_total_minutes(),
                "steps": f.steps(),
                "training_load": f.training_load(),
                "steps_avg_7d": f.steps_avg_7d(),
                "training_load_avg_7d": f.training_load_avg_7d(),
                "hrv_rmssd": f.hrv_rmssd(),
                "hrv_rmssd_baseline": f.hrv_rmssd_baseline(),
                "hrv_rmssd_deviation": f.hrv_rmssd_deviation(),
                "weight_kg": f.weight_kg(),
                "body_fat_percent": f.body_fat_percent(),
            },
        }


def build_intelligence_context(
    today: dict[str, Any],
    history: list[dict[str, Any]],
    domain_confidence_threshold: float | None = None,
) -> IntelligenceContext:
    return IntelligenceContext(
        today=today,
        history=history,
        domain_confidence_threshold=resolve_threshold(domain_confidence_threshold),
    )
