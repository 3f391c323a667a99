"""Ingest-body and canonical-event builders shared by the tests."""

from __future__ import annotations

from typing import Any

USER = "user-1"
DAY = "2026-03-10"


def body(kind: str, payload: dict[str, Any], **envelope: Any) -> dict[str, Any]:
    out = {
        "provider": "manual",
        "kind": kind,
        "observed_at": envelope.pop("observed_at", f"{payload.get('day', DAY)}T12:00:00.000Z"),
        "payload": payload,
    }
    out.update(envelope)
    return out


def steps_payload(steps: int, day: str = DAY, **extra: Any) -> dict[str, Any]:
    return {
        "day": day,
        "timezone": "UTC",
        "start": f"{day}T00:00:00.000Z",
        "end": f"{day}T23:59:00.000Z",
        "steps": steps,
        **extra,
    }


def sleep_payload(minutes: float, day: str = DAY, **extra: Any) -> dict[str, Any]:
    return {
        "day": day,
        "timezone": "UTC",
        "start": f"{day}T00:00:00.000Z",
        "end": f"{day}T07:00:00.000Z",
        "total_minutes": minutes,
        "is_main_sleep": True,
        **extra,
    }


def weight_payload(kg: float, day: str = DAY, time: str = "07:00:00.000Z", **extra: Any) -> dict[str, Any]:
    return {"day": day, "timezone": "UTC", "time": f"{day}T{time}", "weight_kg": kg, **extra}


def canonical(kind: str, event_id: str, day: str = DAY, **fields: Any) -> dict[str, Any]:
    """Canonical event as the normalizer would write it."""
    start = fields.pop("start", f"{day}T08:00:00.000Z")
    return {
        "id": event_id,
        "user_id": USER,
        "source_id": "manual",
        "kind": kind,
        "start": start,
        "end": fields.pop("end", start),
        "day": day,
        "timezone": "UTC",
        "created_at": fields.pop("created_at", f"{day}T09:00:00.000Z"),
        "updated_at": fields.pop("updated_at", f"{day}T09:00:00.000Z"),
        "schema_version": 1,
        **fields,
    }
