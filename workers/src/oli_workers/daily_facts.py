"""Daily facts: fold one day's canonical events into a DailyFacts document.

aggregate_daily_facts is a single pass over the events. Sums use math.fsum
(exactly rounded), so the result does not depend on input order. The only
"latest wins" field is body weight, chosen by (start, id).

enrich_daily_facts layers on fields that need the trailing history
(days day-6..day-1): 7-day averages, the HRV baseline and per-domain
coverage confidence.
"""

from __future__ import annotations

import math
from typing import Any

from .utils import add_days, clamp01, is_finite_number

DAILY_FACTS_SCHEMA_VERSION = 1
HISTORY_DAYS = 6
CONFIDENCE_WINDOW_DAYS = 7

CONFIDENCE_DOMAINS = ("sleep", "activity", "nutrition", "recovery", "body")


def _fsum(values: list[float]) -> float:
    return math.fsum(values)


def _avg(values: list[float]) -> float | None:
    if not values:
        return None
    return math.fsum(values) / len(values)


def _numbers(events: list[dict[str, Any]], key: str) -> list[float]:
    return [e[key] for e in events if is_finite_number(e.get(key))]


def _compact(section: dict[str, Any]) -> dict[str, Any] | None:
    out = {k: v for k, v in section.items() if v is not None}
    return out or None


def _positive(value: float) -> float | None:
    return value if value > 0 else None


def _sleep_section(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not events:
        return None
    return _compact(
        {
            "total_minutes": _positive(_fsum(_numbers(events, "total_minutes"))),
            "main_sleep_minutes": _positive(
                _fsum(_numbers([e for e in events if e.get("is_main_sleep")], "total_minutes"))
            ),
            "efficiency": _avg(_numbers(events, "efficiency")),
            "latency_minutes": _avg(_numbers(events, "latency_minutes")),
            "awakenings": _positive(_fsum(_numbers(events, "awakenings"))),
            "sessions": len(events),
        }
    )


def _activity_section(steps: list[dict[str, Any]], workouts: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not steps and not workouts:
        return None
    return _compact(
        {
            "steps": _positive(_fsum(_numbers(steps, "steps"))),
            "distance_km": _positive(_fsum(_numbers(steps, "distance_km"))),
            "move_minutes": _positive(_fsum(_numbers(steps, "move_minutes"))),
            "training_load": _positive(_fsum(_numbers(workouts, "training_load"))),
            "workout_minutes": _positive(_fsum(_numbers(workouts, "duration_minutes"))),
        }
    )


def _strength_section(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not events:
        return None
    exercise_names: set[str] = set()
    sets = 0
    reps: list[float] = []
    volume: list[float] = []
    for event in events:
        for exercise in event.get("exercises") or []:
            exercise_names.add(str(exercise.get("name", "")).strip().lower())
            for s in exercise.get("sets") or []:
                sets += 1
                if is_finite_number(s.get("reps")):
                    reps.append(s["reps"])
                    if is_finite_number(s.get("load_kg")):
                        volume.append(s["reps"] * s["load_kg"])
    return {
        "sessions": len(events),
        "exercises": len(exercise_names),
        "total_sets": sets,
        "total_reps": _fsum(reps),
        "total_volume_kg": _fsum(volume),
    }


def _nutrition_section(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not events:
        return None

    def total(key: str) -> float | None:
        values = _numbers(events, key)
        return _fsum(values) if values else None

    return _compact(
        {
            "total_kcal": total("total_kcal"),
            "protein_g": total("protein_g"),
            "carbs_g": total("carbs_g"),
            "fat_g": total("fat_g"),
        }
    )


def _recovery_section(recovery: list[dict[str, Any]], hrv: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not recovery and not hrv:
        return None
    return _compact(
        {
            "hrv_rmssd": _avg(_numbers(hrv, "rmssd_ms")),
            "readiness_score": _avg(_numbers(recovery, "readiness_score")),
            "resting_heart_rate": _avg(_numbers(recovery, "resting_heart_rate")),
        }
    )


def _body_section(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    readings = [e for e in events if is_finite_number(e.get("weight_kg"))]
    if not readings:
        return None
    latest = max(readings, key=lambda e: (str(e.get("start", "")), str(e.get("id", ""))))
    body: dict[str, Any] = {"weight_kg": latest["weight_kg"]}
    if is_finite_number(latest.get("body_fat_percent")):
        body["body_fat_percent"] = latest["body_fat_percent"]
    return body


def aggregate_daily_facts(
    user_id: str,
    day: str,
    events: list[dict[str, Any]],
    *,
    computed_at: str,
) -> dict[str, Any]:
    """Aggregate canonical events for one user-day. Unknown kinds are ignored."""
    by_kind: dict[str, list[dict[str, Any]]] = {
        "sleep": [],
        "steps": [],
        "workout": [],
        "strength_workout": [],
        "nutrition": [],
        "recovery": [],
        "weight": [],
        "hrv": [],
    }
    for event in events:
        bucket = by_kind.get(event.get("kind"))
        if bucket is not None:
            bucket.append(event)

    facts: dict[str, Any] = {
        "schema_version": DAILY_FACTS_SCHEMA_VERSION,
        "user_id": user_id,
        "date": day,
        "computed_at": computed_at,
        "counts": {
            "events": sum(len(v) for v in by_kind.values()),
            "workouts": len(by_kind["workout"]) + len(by_kind["strength_workout"]),
            "cardio_sessions": len(by_kind["workout"]),
            "nutrition_logs": len(by_kind["nutrition"]),
            "recovery_logs": len(by_kind["recovery"]) + len(by_kind["hrv"]),
        },
    }

    sections = {
        "sleep": _sleep_section(by_kind["sleep"]),
        "activity": _activity_section(by_kind["steps"], by_kind["workout"]),
        "strength": _strength_section(by_kind["strength_workout"]),
        "nutrition": _nutrition_section(by_kind["nutrition"]),
        "recovery": _recovery_section(by_kind["recovery"], by_kind["hrv"]),
        "body": _body_section(by_kind["weight"]),
    }
    for name, section in sections.items():
        if section is not None:
            facts[name] = section
    return facts


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


def _has_signal(facts: dict[str, Any], domain: str) -> bool:
    section = facts.get(domain)
    if not isinstance(section, dict):
        return False
    if domain == "activity":
        keys = ("steps", "distance_km", "move_minutes", "training_load")
    elif domain == "recovery":
        keys = ("hrv_rmssd", "readiness_score", "resting_heart_rate")
    elif domain == "nutrition":
        keys = ("total_kcal", "protein_g", "carbs_g", "fat_g")
    else:
        return any(v is not None for v in section.values())
    return any(is_finite_number(section.get(k)) for k in keys)


def history_window(day: str, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """History restricted to day-6..day-1, deduplicated by date (later wins), ascending."""
    first = add_days(day, -HISTORY_DAYS)
    by_date: dict[str, dict[str, Any]] = {}
    for item in history:
        date = item.get("date")
        if isinstance(date, str) and first <= date < day:
            by_date[date] = item
    return [by_date[d] for d in sorted(by_date)]


def enrich_daily_facts(today: dict[str, Any], history: list[dict[str, Any]]) -> dict[str, Any]:
    """Return a copy of today with rolling averages, HRV baseline and confidence.

    Idempotent: derived fields are recomputed from scratch, never patched.
    """
    prior = history_window(today["date"], history)
    enriched = {k: (dict(v) if isinstance(v, dict) else v) for k, v in today.items()}
    for section, keys in (
        ("activity", ("steps_avg_7d", "training_load_avg_7d")),
        ("recovery", ("hrv_rmssd_baseline", "hrv_rmssd_deviation")),
    ):
        for key in keys:
            enriched.get(section, {}).pop(key, None)
    enriched.pop("confidence", None)

    if prior:
        window = prior + [today]
        steps_avg = _avg([f["activity"]["steps"] for f in window if is_finite_number(f.get("activity", {}).get("steps"))])
        load_avg = _avg(
            [f["activity"]["training_load"] for f in window if is_finite_number(f.get("activity", {}).get("training_load"))]
        )
        if steps_avg is not None or load_avg is not None:
            activity = enriched.setdefault("activity", {})
            if steps_avg is not None:
                activity["steps_avg_7d"] = steps_avg
            if load_avg is not None:
                activity["training_load_avg_7d"] = load_avg

    baseline = _avg(
        [f["recovery"]["hrv_rmssd"] for f in prior if is_finite_number(f.get("recovery", {}).get("hrv_rmssd"))]
    )
    if baseline is not None:
        recovery = enriched.setdefault("recovery", {})
        recovery["hrv_rmssd_baseline"] = baseline
        today_hrv = recovery.get("hrv_rmssd")
        if is_finite_number(today_hrv) and baseline != 0:
            recovery["hrv_rmssd_deviation"] = (today_hrv - baseline) / baseline

    # Missing days count as "no data": the divisor stays at the full window.
    window = (prior + [today])[-CONFIDENCE_WINDOW_DAYS:]
    confidence: dict[str, float] = {}
    for domain in CONFIDENCE_DOMAINS:
        present = sum(1 for f in window if _has_signal(f, domain))
        if present:
            confidence[domain] = clamp01(present / CONFIDENCE_WINDOW_DAYS)
    if confidence:
        enriched["confidence"] = confidence
    return enriched


def build_daily_facts(
    user_id: str,
    day: str,
    events: list[dict[str, Any]],
    history: list[dict[str, Any]],
    *,
    computed_at: str,
) -> dict[str, Any]:
    return enrich_daily_facts(aggregate_daily_facts(user_id, day, events, computed_at=computed_at), history)
