"""Provenance: how current is a derived document?

is_fresh is the only staleness check in the package; every read surface goes
through build_provenance.
"""

from __future__ import annotations

from typing import Any

from .document_store import DocumentStore
from .normalization import load_events_for_day
from .utils import parse_iso_datetime, stable_hash


def is_fresh(computed_at: str | None, latest_event_at: str | None) -> bool:
    """computed_at >= latest_event_at.

    No computed_at (or an unparseable one) is never fresh. No events for the
    day is vacuously fresh. An unparseable event timestamp is not fresh.
    """
    computed = parse_iso_datetime(computed_at) if computed_at else None
    if computed is None:
        return False
    if latest_event_at is None:
        return True
    latest = parse_iso_datetime(latest_event_at)
    if latest is None:
        return False
    return computed >= latest


def latest_event_timestamp(events: list[dict[str, Any]]) -> str | None:
    """Latest updated_at (else created_at) across canonical events, by instant."""
    latest_raw: str | None = None
    latest_ts = None
    for event in events:
        raw = event.get("updated_at") or event.get("created_at")
        ts = parse_iso_datetime(raw)
        if ts is None:
            continue
        if latest_ts is None or ts > latest_ts:
            latest_raw, latest_ts = raw, ts
    return latest_raw


def build_provenance(
    doc: dict[str, Any] | None,
    latest_event_at: str | None,
    events_count: int,
    *,
    include_hash: bool = True,
) -> dict[str, Any]:
    computed_at = doc.get("computed_at") if doc else None
    provenance: dict[str, Any] = {
        "computed_at": computed_at,
        "pipeline_version": doc.get("pipeline_version") if doc else None,
        "latest_canonical_event_at": latest_event_at,
        "events_count": events_count,
        "is_fresh": is_fresh(computed_at, latest_event_at),
    }
    if include_hash and doc is not None:
        provenance["hash"] = stable_hash(doc)
    return provenance


async def day_truth(store: DocumentStore, user_id: str, day: str) -> dict[str, Any]:
    events = await load_events_for_day(store, user_id, day)
    return {
        "day": day,
        "events_count": len(events),
        "latest_canonical_event_at": latest_event_timestamp(events),
    }
