"""Failure memory: user-visible records of events the pipeline could not use.

Entries live at users/{uid}/failures/{id}. Ids are deterministic so a retried
job finds its earlier entry instead of writing a second one. Details are
scrubbed: no payloads, request bodies or credentials are ever stored.
"""

from __future__ import annotations

import logging
from typing import Any

from .document_store import DocumentStore, UserPaths
from .utils import (
    is_day_key,
    local_date_for_timezone,
    normalize_timezone_name,
    parse_iso_datetime,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

RAW_EVENT_INVALID = "RAW_EVENT_INVALID"
NORMALIZATION_FAILED = "NORMALIZATION_FAILED"

_BLOCKED_KEYS = frozenset(
    {
        "payload",
        "raw",
        "body",
        "request",
        "response",
        "headers",
        "authorization",
        "cookie",
        "token",
        "tokens",
    }
)
_BLOCKED_FRAGMENTS = ("payload", "token", "secret", "authorization", "cookie")
_MAX_STRING = 500
_MAX_ITEMS = 25


def scrub_details(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """Keep scalar, payload-free details. Nested objects are redacted."""
    if not details:
        return None
    out: dict[str, Any] = {}
    for key, value in details.items():
        lowered = key.lower()
        if lowered in _BLOCKED_KEYS or any(f in lowered for f in _BLOCKED_FRAGMENTS):
            continue
        if isinstance(value, str):
            out[key] = value if len(value) <= _MAX_STRING else value[:_MAX_STRING] + "..."
        elif value is None or isinstance(value, (bool, int, float)):
            out[key] = value
        elif isinstance(value, (list, tuple)):
            out[key] = [v if isinstance(v, (str, int, float, bool)) or v is None else str(v) for v in value[:_MAX_ITEMS]]
        elif isinstance(value, dict):
            out[key] = "[redacted-object]"
        else:
            out[key] = str(value)
    return out


def failure_day(observed_at: Any, timezone_name: Any, fallback_day: Any = None) -> str:
    """Day key a failure is listed under.

    fallback_day (usually the payload's own day) wins when it is a valid key;
    otherwise observed_at in its timezone, then UTC, then today.
    """
    if is_day_key(fallback_day):
        return fallback_day
    observed = parse_iso_datetime(observed_at)
    if observed is None:
        return utc_now_iso()[:10]
    tz_name = normalize_timezone_name(timezone_name)
    if tz_name is not None:
        return local_date_for_timezone(observed, tz_name).isoformat()
    return observed.date().isoformat()


async def write_failure_entry(
    store: DocumentStore,
    user_id: str,
    *,
    failure_id: str,
    failure_type: str,
    code: str,
    message: str,
    day: str,
    observed_at: str | None = None,
    timezone_name: str | None = None,
    raw_event_id: str | None = None,
    details: dict[str, Any] | None = None,
    created_at: str | None = None,
) -> bool:
    """Create the entry if absent. Returns False when it already existed."""
    paths = UserPaths(user_id)
    doc: dict[str, Any] = {
        "id": failure_id,
        "user_id": user_id,
        "type": failure_type,
        "code": code,
        "message": message[:_MAX_STRING],
        "day": day,
        "created_at": created_at or utc_now_iso(),
    }
    if observed_at:
        doc["observed_at"] = observed_at
    if timezone_name:
        doc["timezone"] = timezone_name
    if raw_event_id:
        doc["raw_event_id"] = raw_event_id
        doc["raw_event_path"] = paths.raw_event(raw_event_id)
    scrubbed = scrub_details(details)
    if scrubbed is not None:
        doc["details"] = scrubbed

    created = await store.create(paths.failure(failure_id), doc)
    if created:
        logger.warning(
            "Failure recorded (%s: %s)",
            failure_type,
            code,
            extra={"oli_user_id": user_id, "oli_day": day, "oli_raw_event_id": raw_event_id},
        )
    return created


async def list_failures(store: DocumentStore, user_id: str, day: str) -> list[dict[str, Any]]:
    """Failures listed under day, oldest first."""
    docs = [doc for _, doc in await store.list_where(UserPaths(user_id).failures(), "day", day)]
    docs.sort(key=lambda d: (d.get("created_at") or "", d.get("id") or ""))
    return docs
