"""Read-only access to derived truth.

Every read returns a ReadResult with status ok | missing | error. Reads never
raise for bad input or store failures: they log and answer status="error"
with no data (fail-closed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from . import failures
from .document_store import DocumentStore, UserPaths
from .errors import ImmutabilityViolation
from .ledger import SNAPSHOT_KINDS, DerivedLedger
from .provenance import build_provenance, day_truth
from .utils import is_day_key, parse_iso_datetime

logger = logging.getLogger(__name__)

OK = "ok"
MISSING = "missing"
ERROR = "error"


@dataclass(frozen=True)
class ReadResult:
    status: str
    data: Any = None
    provenance: dict[str, Any] | None = None
    error: dict[str, str] | None = None

    @property
    def ok(self) -> bool:
        return self.status == OK


def _error(code: str, message: str) -> ReadResult:
    return ReadResult(status=ERROR, error={"code": code, "message": message})


def _invalid_day(day: Any) -> ReadResult | None:
    if not is_day_key(day):
        return _error("INVALID_DAY", f"day must be YYYY-MM-DD, got {day!r}")
    return None


async def _read_day_document(store: DocumentStore, user_id: str, day: str, path: str, what: str) -> ReadResult:
    invalid = _invalid_day(day)
    if invalid is not None:
        return invalid
    try:
        doc = await store.get(path)
        truth = await day_truth(store, user_id, day)
    except Exception:
        logger.exception("Failed to read %s", what, extra={"oli_user_id": user_id, "oli_day": day})
        return _error("READ_FAILED", f"could not read {what}")
    provenance = build_provenance(doc, truth["latest_canonical_event_at"], truth["events_count"])
    if doc is None:
        return ReadResult(status=MISSING, provenance=provenance)
    return ReadResult(status=OK, data=doc, provenance=provenance)


async def get_health_score(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    return await _read_day_document(store, user_id, day, UserPaths(user_id).health_score(day), "health score")


async def get_health_signals(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    return await _read_day_document(store, user_id, day, UserPaths(user_id).health_signals(day), "health signals")


async def get_daily_facts(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    return await _read_day_document(store, user_id, day, UserPaths(user_id).daily_facts(day), "daily facts")


async def get_intelligence_context(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    return await _read_day_document(
        store, user_id, day, UserPaths(user_id).intelligence_context(day), "intelligence context"
    )


async def get_day_truth(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    invalid = _invalid_day(day)
    if invalid is not None:
        return invalid
    try:
        truth = await day_truth(store, user_id, day)
    except Exception:
        logger.exception("Failed to read day truth", extra={"oli_user_id": user_id, "oli_day": day})
        return _error("READ_FAILED", "could not read day truth")
    return ReadResult(status=OK, data=truth)


async def list_failures(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    invalid = _invalid_day(day)
    if invalid is not None:
        return invalid
    try:
        items = await failures.list_failures(store, user_id, day)
    except Exception:
        logger.exception("Failed to list failures", extra={"oli_user_id": user_id, "oli_day": day})
        return _error("READ_FAILED", "could not list failures")
    return ReadResult(status=OK, data={"day": day, "items": items})


async def list_derived_ledger_runs(store: DocumentStore, user_id: str, day: str) -> ReadResult:
    invalid = _invalid_day(day)
    if invalid is not None:
        return invalid
    ledger = DerivedLedger(store)
    try:
        pointer = await ledger.get_pointer(user_id, day)
        runs = await ledger.list_runs(user_id, day)
    except Exception:
        logger.exception("Failed to list ledger runs", extra={"oli_user_id": user_id, "oli_day": day})
        return _error("READ_FAILED", "could not list ledger runs")
    if pointer is None and not runs:
        return ReadResult(status=MISSING, data={"day": day, "pointer": None, "runs": []})
    return ReadResult(status=OK, data={"day": day, "pointer": pointer, "runs": runs})


async def get_derived_ledger_snapshot(
    store: DocumentStore, user_id: str, day: str, run_id: str, kind: str
) -> ReadResult:
    invalid = _invalid_day(day)
    if invalid is not None:
        return invalid
    if kind not in SNAPSHOT_KINDS:
        return _error("INVALID_KIND", f"kind must be one of {', '.join(SNAPSHOT_KINDS)}")
    try:
        snapshot = await DerivedLedger(store).get_snapshot(user_id, day, run_id, kind)
    except Exception:
        logger.exception(
            "Failed to read ledger snapshot",
            extra={"oli_user_id": user_id, "oli_day": day, "oli_run_id": run_id},
        )
        return _error("READ_FAILED", "could not read ledger snapshot")
    if snapshot is None:
        return ReadResult(status=MISSING)
    return ReadResult(status=OK, data=snapshot)


async def replay_derived_ledger(
    store: DocumentStore,
    user_id: str,
    day: str,
    *,
    run_id: str | None = None,
    as_of: str | None = None,
) -> ReadResult:
    invalid = _invalid_day(day)
    if invalid is not None:
        return invalid
    if as_of is not None and parse_iso_datetime(as_of) is None:
        return _error("INVALID_AS_OF", "as_of must be an ISO-8601 datetime")
    try:
        replay = await DerivedLedger(store).replay(user_id, day, run_id=run_id, as_of=as_of)
    except ImmutabilityViolation as exc:
        logger.error(
            "Ledger snapshot failed integrity check: %s",
            exc.path,
            extra={"oli_user_id": user_id, "oli_day": day, "oli_run_id": run_id},
        )
        return _error("IMMUTABILITY_VIOLATION", str(exc))
    except Exception:
        logger.exception("Failed to replay ledger", extra={"oli_user_id": user_id, "oli_day": day})
        return _error("READ_FAILED", "could not replay ledger")
    if replay is None:
        return ReadResult(status=MISSING)
    return ReadResult(
        status=OK,
        data={
            "day": day,
            "run_id": replay.run_id,
            "run": replay.run,
            "documents": replay.documents,
            "hashes": replay.hashes,
        },
    )
