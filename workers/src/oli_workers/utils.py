"""Shared utility functions for Oli workers."""

import hashlib
import json
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_ASSUMED_TIMEZONE = "UTC"


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def is_finite_number(value: Any) -> bool:
    """True for int/float values that are finite. Booleans are not numbers here."""
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float)) and math.isfinite(value)


def safe_number(value: Any) -> float | None:
    """Return value when it is a finite number, else None (never NaN, never 0)."""
    return value if is_finite_number(value) else None


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def mean(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


# ---------------------------------------------------------------------------
# Days and timestamps
# ---------------------------------------------------------------------------


def parse_day(value: str) -> date:
    """Parse a strict YYYY-MM-DD day key."""
    if not isinstance(value, str) or len(value) != 10:
        raise ValueError(f"Invalid day key: {value!r}")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid day key: {value!r}") from exc


def is_day_key(value: Any) -> bool:
    try:
        parse_day(value)
    except ValueError:
        return False
    return True


def add_days(day: str, delta_days: int) -> str:
    return (parse_day(day) + timedelta(days=delta_days)).isoformat()


def day_range(start_day: str, end_day: str) -> list[str]:
    """Inclusive ascending list of day keys."""
    start = parse_day(start_day)
    end = parse_day(end_day)
    out: list[str] = []
    cursor = start
    while cursor <= end:
        out.append(cursor.isoformat())
        cursor += timedelta(days=1)
    return out


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 instant (must contain 'T'). Returns None when unparseable."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or "T" not in value:
        return None
    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def to_iso(ts: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with millisecond precision and 'Z'."""
    utc = as_utc(ts)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def normalize_timezone_name(value: Any) -> str | None:
    """Normalize timezone name and verify it's a valid IANA name."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return raw


def local_date_for_timezone(ts: datetime, timezone_name: str) -> date:
    """Project event timestamp into the configured local date."""
    return as_utc(ts).astimezone(ZoneInfo(timezone_name)).date()


# ---------------------------------------------------------------------------
# Stable hashing
# ---------------------------------------------------------------------------


def stable_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace, arrays keep order."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def stable_hash(value: Any) -> str:
    return sha256_hex(stable_json(value))
