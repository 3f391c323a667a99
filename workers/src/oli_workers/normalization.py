"""RawEvent → CanonicalEvent mapping.

Pure and deterministic: the same raw event always maps to the same canonical
event (same id, same timestamps). Kinds accepted at ingestion but not yet
projected (file, lab_result) map to None, as do unknown kinds.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .document_store import DocumentStore, UserPaths, create_immutable
from .errors import MalformedEventError
from .event_contracts import validate_payload
from .raw_events import event_day

logger = logging.getLogger(__name__)

CANONICAL_SCHEMA_VERSION = 1

_Mapper = Callable[[dict[str, Any]], dict[str, Any]]


def _sleep(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "total_minutes": p["total_minutes"],
        "efficiency": p.get("efficiency"),
        "latency_minutes": p.get("latency_minutes"),
        "awakenings": p.get("awakenings"),
        "is_main_sleep": p["is_main_sleep"],
    }


def _steps(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "steps": p["steps"],
        "distance_km": p.get("distance_km"),
        "move_minutes": p.get("move_minutes"),
    }


def _workout(p: dict[str, Any]) -> dict[str, Any]:
    out = {
        "sport": p["sport"],
        "duration_minutes": p["duration_minutes"],
        "training_load": p.get("training_load"),
    }
    if p.get("intensity"):
        out["intensity"] = p["intensity"]
    return out


def _strength_workout(p: dict[str, Any]) -> dict[str, Any]:
    exercises = []
    for exercise in p["exercises"]:
        exercises.append(
            {
                "name": exercise["name"],
                "sets": [
                    {
                        "reps": s["reps"],
                        "load_kg": s.get("load_kg"),
                        "rpe": s.get("rpe"),
                    }
                    for s in exercise["sets"]
                ],
            }
        )
    return {"exercises": exercises}


def _nutrition(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "total_kcal": p["total_kcal"],
        "protein_g": p.get("protein_g"),
        "carbs_g": p.get("carbs_g"),
        "fat_g": p.get("fat_g"),
    }


def _recovery(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "readiness_score": p.get("readiness_score"),
        "resting_heart_rate": p.get("resting_heart_rate"),
    }


def _weight(p: dict[str, Any]) -> dict[str, Any]:
    return {"weight_kg": p["weight_kg"], "body_fat_percent": p.get("body_fat_percent")}


def _hrv(p: dict[str, Any]) -> dict[str, Any]:
    return {
        "rmssd_ms": p.get("rmssd_ms"),
        "sdnn_ms": p.get("sdnn_ms"),
        "measurement_type": p.get("measurement_type"),
    }


# kind -> (mapper, windowed). Windowed payloads carry start/end, point
# payloads a single `time` used for both.
_PROJECTIONS: dict[str, tuple[_Mapper, bool]] = {
    "sleep": (_sleep, True),
    "steps": (_steps, True),
    "workout": (_workout, True),
    "strength_workout": (_strength_workout, True),
    "nutrition": (_nutrition, False),
    "recovery": (_recovery, False),
    "weight": (_weight, False),
    "hrv": (_hrv, False),
}

CANONICAL_KINDS = tuple(_PROJECTIONS)


def normalize(raw_event: dict[str, Any]) -> dict[str, Any] | None:
    """Map a stored raw event to its canonical event, or None when the kind is
    not projected.

    Raises MalformedEventError when a projected kind's payload fails its
    contract (stored raw events were validated at ingestion, so this means
    the stored document is corrupt).
    """
    kind = raw_event.get("kind")
    projection = _PROJECTIONS.get(kind)
    if projection is None:
        return None
    mapper, windowed = projection

    result = validate_payload(kind, raw_event.get("payload"))
    if not result.ok:
        raise MalformedEventError(raw_event.get("id", "?"), result.issues)
    payload = result.payload

    if windowed:
        start, end = payload["start"], payload["end"]
    else:
        start = end = payload["time"]

    canonical: dict[str, Any] = {
        "id": raw_event["id"],
        "user_id": raw_event["user_id"],
        "source_id": raw_event["source_id"],
        "kind": kind,
        "start": start,
        "end": end,
        "day": event_day(payload, raw_event["observed_at"]),
        "timezone": payload["timezone"],
        "created_at": raw_event["received_at"],
        "updated_at": raw_event["received_at"],
        "schema_version": CANONICAL_SCHEMA_VERSION,
    }
    canonical.update(mapper(payload))
    return canonical


async def write_canonical_event(
    store: DocumentStore, user_id: str, event: dict[str, Any]
) -> bool:
    """Append the canonical event. Returns False when an identical copy exists."""
    path = UserPaths(user_id).event(event["id"])
    created = await create_immutable(store, path, event)
    if created:
        logger.info(
            "Canonical event written (kind=%s, day=%s)",
            event["kind"],
            event["day"],
            extra={"oli_user_id": user_id, "oli_event_id": event["id"]},
        )
    return created


async def load_events_for_day(store: DocumentStore, user_id: str, day: str) -> list[dict[str, Any]]:
    return [doc for _, doc in await store.list_where(UserPaths(user_id).events(), "day", day)]
