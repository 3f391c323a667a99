"""Derived ledger: append-only record of recompute runs per user-day.

Layout:
    users/{uid}/derivedLedger/{day}                         latest-run pointer (mutable)
    users/{uid}/derivedLedger/{day}/runs/{run_id}           run record
    users/{uid}/derivedLedger/{day}/runs/{run_id}/snapshots/{kind}

Run state machine:

    started -> outputs_computed -> snapshotted -> pointer_updated
        \\____________\\__________________\\_______-> failed

Only pointer_updated runs are authoritative. The pointer moves with a
compare-and-swap against the latest_run_id seen when the run started, so an
overlapping run for the same day fails with PointerConflictError instead of
clobbering it. Snapshots are create-or-assert-identical.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .document_store import DocumentStore, UserPaths, create_immutable
from .errors import ImmutabilityViolation, LedgerStateError, PointerConflictError
from .utils import stable_hash, stable_json, utc_now_iso

logger = logging.getLogger(__name__)

LEDGER_SCHEMA_VERSION = 1

STARTED = "started"
OUTPUTS_COMPUTED = "outputs_computed"
SNAPSHOTTED = "snapshotted"
POINTER_UPDATED = "pointer_updated"
FAILED = "failed"

_TRANSITIONS: dict[str, frozenset[str]] = {
    STARTED: frozenset({OUTPUTS_COMPUTED, FAILED}),
    OUTPUTS_COMPUTED: frozenset({SNAPSHOTTED, FAILED}),
    SNAPSHOTTED: frozenset({POINTER_UPDATED, FAILED}),
    POINTER_UPDATED: frozenset(),
    FAILED: frozenset(),
}

SNAPSHOT_KINDS = ("dailyFacts", "intelligenceContext", "insights", "healthScore", "healthSignals")


@dataclass(frozen=True)
class ReplayResult:
    run_id: str
    run: dict[str, Any]
    documents: dict[str, Any]
    hashes: dict[str, str]

    def canonical_bytes(self, kind: str) -> bytes:
        return stable_json(self.documents[kind]).encode("utf-8")


class DerivedLedger:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # -- write side ---------------------------------------------------------

    async def start_run(
        self,
        user_id: str,
        day: str,
        *,
        run_id: str,
        computed_at: str,
        pipeline_version: int,
        trigger: dict[str, Any],
        inputs_hash: str,
        canonical_event_ids: list[str],
        latest_canonical_event_at: str | None,
    ) -> dict[str, Any]:
        paths = UserPaths(user_id)
        pointer = await self.store.get(paths.ledger_pointer(day))
        run: dict[str, Any] = {
            "schema_version": LEDGER_SCHEMA_VERSION,
            "run_id": run_id,
            "user_id": user_id,
            "day": day,
            "state": STARTED,
            "started_at": computed_at,
            "completed_at": None,
            "computed_at": computed_at,
            "pipeline_version": pipeline_version,
            "inputs_hash": inputs_hash,
            "trigger": trigger,
            "canonical_event_ids": sorted(canonical_event_ids),
            "previous_run_id": pointer.get("latest_run_id") if pointer else None,
            "outputs": None,
            "snapshot_hashes": None,
            "error": None,
        }
        if latest_canonical_event_at is not None:
            run["latest_canonical_event_at"] = latest_canonical_event_at
        if not await self.store.create(paths.ledger_run(day, run_id), run):
            raise LedgerStateError(f"Ledger run {run_id} already exists for {user_id}/{day}")
        logger.info(
            "Ledger run started",
            extra={"oli_user_id": user_id, "oli_day": day, "oli_run_id": run_id},
        )
        return run

    async def _transition(self, run: dict[str, Any], to_state: str, **updates: Any) -> dict[str, Any]:
        from_state = run["state"]
        if to_state not in _TRANSITIONS.get(from_state, frozenset()):
            raise LedgerStateError(f"Illegal ledger transition {from_state} -> {to_state} (run {run['run_id']})")
        path = UserPaths(run["user_id"]).ledger_run(run["day"], run["run_id"])
        updated = {**run, **updates, "state": to_state}
        if not await self.store.compare_and_set(path, updated, field="state", expected=from_state):
            raise LedgerStateError(f"Ledger run {run['run_id']} left state {from_state} concurrently")
        return updated

    async def mark_outputs_computed(self, run: dict[str, Any], outputs: dict[str, Any]) -> dict[str, Any]:
        return await self._transition(run, OUTPUTS_COMPUTED, outputs=outputs)

    async def write_snapshots(self, run: dict[str, Any], documents: dict[str, Any]) -> dict[str, Any]:
        if run["state"] != OUTPUTS_COMPUTED:
            raise LedgerStateError(f"Cannot snapshot run {run['run_id']} in state {run['state']}")
        unknown = set(documents) - set(SNAPSHOT_KINDS)
        if unknown:
            raise ValueError(f"Unknown snapshot kinds: {sorted(unknown)}")
        paths = UserPaths(run["user_id"])
        hashes: dict[str, str] = {}
        for kind in SNAPSHOT_KINDS:
            if kind not in documents:
                continue
            data = documents[kind]
            digest = stable_hash(data)
            await create_immutable(
                self.store,
                paths.ledger_snapshot(run["day"], run["run_id"], kind),
                {"schema_version": LEDGER_SCHEMA_VERSION, "kind": kind, "hash": digest, "data": data},
            )
            hashes[kind] = digest
        return await self._transition(run, SNAPSHOTTED, snapshot_hashes=hashes)

    async def update_pointer(self, run: dict[str, Any], *, completed_at: str | None = None) -> dict[str, Any]:
        if run["state"] != SNAPSHOTTED:
            raise LedgerStateError(f"Cannot publish run {run['run_id']} in state {run['state']}")
        completed_at = completed_at or utc_now_iso()
        path = UserPaths(run["user_id"]).ledger_pointer(run["day"])
        pointer = {
            "schema_version": LEDGER_SCHEMA_VERSION,
            "user_id": run["user_id"],
            "date": run["day"],
            "latest_run_id": run["run_id"],
            "latest_computed_at": run["computed_at"],
            "pipeline_version": run["pipeline_version"],
            "trigger": run["trigger"],
            "updated_at": completed_at,
        }
        expected = run.get("previous_run_id")
        if not await self.store.compare_and_set(path, pointer, field="latest_run_id", expected=expected):
            current = await self.store.get(path)
            raise PointerConflictError(path, expected, current.get("latest_run_id") if current else None)
        updated = await self._transition(run, POINTER_UPDATED, completed_at=completed_at)
        logger.info(
            "Ledger pointer updated",
            extra={"oli_user_id": run["user_id"], "oli_day": run["day"], "oli_run_id": run["run_id"]},
        )
        return updated

    async def mark_failed(
        self, run: dict[str, Any], error: BaseException | str, *, failed_at: str | None = None
    ) -> dict[str, Any]:
        """Record a failure. Never touches the pointer."""
        path = UserPaths(run["user_id"]).ledger_run(run["day"], run["run_id"])
        current = await self.store.get(path) or run
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        failed = await self._transition(
            current,
            FAILED,
            completed_at=failed_at or utc_now_iso(),
            error={"message": message[:2000], "failed_in_state": current["state"]},
        )
        logger.warning(
            "Ledger run failed in state %s",
            current["state"],
            extra={"oli_user_id": run["user_id"], "oli_day": run["day"], "oli_run_id": run["run_id"]},
        )
        return failed

    # -- read side ----------------------------------------------------------

    async def get_pointer(self, user_id: str, day: str) -> dict[str, Any] | None:
        return await self.store.get(UserPaths(user_id).ledger_pointer(day))

    async def get_run(self, user_id: str, day: str, run_id: str) -> dict[str, Any] | None:
        return await self.store.get(UserPaths(user_id).ledger_run(day, run_id))

    async def list_runs(self, user_id: str, day: str) -> list[dict[str, Any]]:
        runs = [doc for _, doc in await self.store.list(UserPaths(user_id).ledger_runs(day))]
        runs.sort(key=lambda r: (r.get("started_at") or "", r.get("run_id") or ""))
        return runs

    async def get_snapshot(self, user_id: str, day: str, run_id: str, kind: str) -> dict[str, Any] | None:
        if kind not in SNAPSHOT_KINDS:
            return None
        return await self.store.get(UserPaths(user_id).ledger_snapshot(day, run_id, kind))

    async def _resolve_run_id(self, user_id: str, day: str, as_of: str | None) -> str | None:
        if as_of is None:
            pointer = await self.get_pointer(user_id, day)
            return pointer.get("latest_run_id") if pointer else None
        candidates = [
            r for r in await self.list_runs(user_id, day)
            if r.get("state") == POINTER_UPDATED and (r.get("computed_at") or "") <= as_of
        ]
        if not candidates:
            return None
        best = max(candidates, key=lambda r: (r["computed_at"], r["run_id"]))
        return best["run_id"]

    async def replay(
        self,
        user_id: str,
        day: str,
        run_id: str | None = None,
        as_of: str | None = None,
    ) -> ReplayResult | None:
        """Reconstruct a run's output documents from its snapshots. Read-only.

        run_id wins over as_of; with neither, the pointer's latest run is used.
        Returns None when no replayable run exists.
        """
        if run_id is None:
            run_id = await self._resolve_run_id(user_id, day, as_of)
            if run_id is None:
                return None
        run = await self.get_run(user_id, day, run_id)
        if run is None or not run.get("snapshot_hashes"):
            return None

        documents: dict[str, Any] = {}
        hashes: dict[str, str] = {}
        for kind, expected_hash in run["snapshot_hashes"].items():
            snapshot = await self.get_snapshot(user_id, day, run_id, kind)
            path = UserPaths(user_id).ledger_snapshot(day, run_id, kind)
            if snapshot is None or snapshot.get("hash") != expected_hash:
                raise ImmutabilityViolation(path)
            if stable_hash(snapshot["data"]) != expected_hash:
                raise ImmutabilityViolation(path)
            documents[kind] = snapshot["data"]
            hashes[kind] = expected_hash
        return ReplayResult(run_id=run_id, run=run, documents=documents, hashes=hashes)
