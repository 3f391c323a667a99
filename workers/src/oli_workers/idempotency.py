"""Deterministic idempotency keys.

Keys identify an observation, not a delivery: retrying a write or re-running a
backfill chunk derives the same key, so the raw event document id collides and
the write becomes a no-op.
"""

from __future__ import annotations

from .utils import sha256_hex

IDEMPOTENCY_KEY_VERSION = "v1"


def _part(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def idempotency_key(
    *,
    provider: str,
    device_id: str,
    kind: str,
    day: str,
    start_iso: str | None = None,
) -> str:
    """Return a SHA-256 hex key for (provider, device, kind, day, start).

    Pure and deterministic. Provider and kind are case-insensitive.
    """
    canonical = "|".join(
        [
            IDEMPOTENCY_KEY_VERSION,
            _part(provider).lower(),
            _part(device_id),
            _part(kind).lower(),
            _part(day),
            _part(start_iso),
        ]
    )
    return sha256_hex(canonical)


def ledger_run_id(prefix: str, seed: str) -> str:
    """Deterministic ledger run id for scheduler retries and replays."""
    digest = sha256_hex(seed)[:32]
    return f"{prefix}_{digest}".replace("/", "_")


def backfill_sample_key(
    *,
    provider: str,
    user_id: str,
    kind: str,
    measured_at_iso: str,
    group_id: str | int | None = None,
) -> str:
    """Key for a provider sample pulled during backfill or sync."""
    return idempotency_key(
        provider=provider,
        device_id=f"{user_id}:{_part(group_id)}",
        kind=kind,
        day=measured_at_iso[:10],
        start_iso=measured_at_iso,
    )
