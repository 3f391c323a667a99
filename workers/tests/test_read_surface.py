"""Tests for the fail-closed read surface."""

import pytest

from builders import DAY, USER, body, sleep_payload
from oli_workers import read_surface
from oli_workers.document_store import MemoryDocumentStore, UserPaths
from oli_workers.pipeline import make_trigger, project_raw_event, recompute_for_day
from oli_workers.raw_events import RawEventStore

PATHS = UserPaths(USER)


@pytest.fixture
async def computed(store):
    await RawEventStore(store).ingest(
        USER, body("sleep", sleep_payload(300)), idempotency_key="z1", received_at=f"{DAY}T09:00:00.000Z"
    )
    await project_raw_event(store, USER, "z1")
    result = await recompute_for_day(
        store,
        USER,
        DAY,
        trigger=make_trigger("manual", "test"),
        confidence_threshold=0.0,
        computed_at=f"{DAY}T10:00:00.000Z",
    )
    return result


class _BrokenStore(MemoryDocumentStore):
    async def get(self, path):
        raise ConnectionError("store unavailable")

    async def list(self, collection):
        raise ConnectionError("store unavailable")


class TestDayDocuments:
    @pytest.mark.parametrize(
        "reader",
        [
            read_surface.get_health_score,
            read_surface.get_health_signals,
            read_surface.get_daily_facts,
            read_surface.get_intelligence_context,
        ],
    )
    async def test_ok_with_fresh_provenance(self, store, computed, reader):
        result = await reader(store, USER, DAY)
        assert result.ok
        assert result.provenance["is_fresh"] is True
        assert result.provenance["events_count"] == 1
        assert result.provenance["latest_canonical_event_at"] == f"{DAY}T09:00:00.000Z"

    async def test_stale_after_new_event(self, store, computed):
        await RawEventStore(store).ingest(
            USER, body("sleep", sleep_payload(60)), idempotency_key="z2", received_at=f"{DAY}T11:00:00.000Z"
        )
        await project_raw_event(store, USER, "z2")
        result = await read_surface.get_health_score(store, USER, DAY)
        assert result.ok
        assert result.provenance["is_fresh"] is False

    async def test_missing(self, store):
        result = await read_surface.get_health_score(store, USER, DAY)
        assert result.status == read_surface.MISSING
        assert result.data is None
        assert result.provenance["is_fresh"] is False

    async def test_invalid_day(self, store):
        result = await read_surface.get_health_signals(store, USER, "10-03-2026")
        assert result.status == read_surface.ERROR
        assert result.error["code"] == "INVALID_DAY"

    async def test_store_failure_is_error_without_data(self):
        result = await read_surface.get_health_score(_BrokenStore(), USER, DAY)
        assert result.status == read_surface.ERROR
        assert result.error["code"] == "READ_FAILED"
        assert result.data is None

    async def test_day_truth(self, store, computed):
        result = await read_surface.get_day_truth(store, USER, DAY)
        assert result.data["events_count"] == 1


class TestLedgerReads:
    async def test_list_runs(self, store, computed):
        result = await read_surface.list_derived_ledger_runs(store, USER, DAY)
        assert result.ok
        assert result.data["pointer"]["latest_run_id"] == computed.run_id
        assert [r["run_id"] for r in result.data["runs"]] == [computed.run_id]

    async def test_list_runs_missing(self, store):
        result = await read_surface.list_derived_ledger_runs(store, USER, DAY)
        assert result.status == read_surface.MISSING

    async def test_snapshot(self, store, computed):
        result = await read_surface.get_derived_ledger_snapshot(store, USER, DAY, computed.run_id, "healthScore")
        assert result.ok
        assert result.data["data"] == await store.get(PATHS.health_score(DAY))

    async def test_snapshot_invalid_kind(self, store, computed):
        result = await read_surface.get_derived_ledger_snapshot(store, USER, DAY, computed.run_id, "other")
        assert result.error["code"] == "INVALID_KIND"

    async def test_replay(self, store, computed):
        result = await read_surface.replay_derived_ledger(store, USER, DAY)
        assert result.ok
        assert result.data["run_id"] == computed.run_id
        assert set(result.data["documents"]) == {
            "dailyFacts",
            "intelligenceContext",
            "insights",
            "healthScore",
            "healthSignals",
        }

    async def test_replay_as_of_before_any_run(self, store, computed):
        result = await read_surface.replay_derived_ledger(store, USER, DAY, as_of=f"{DAY}T00:00:00.000Z")
        assert result.status == read_surface.MISSING

    async def test_replay_invalid_as_of(self, store):
        result = await read_surface.replay_derived_ledger(store, USER, DAY, as_of="yesterday")
        assert result.error["code"] == "INVALID_AS_OF"

    async def test_replay_detects_tampering(self, store, computed):
        path = PATHS.ledger_snapshot(DAY, computed.run_id, "insights")
        snapshot = await store.get(path)
        snapshot["data"]["items"] = []
        await store.set(path, snapshot)
        result = await read_surface.replay_derived_ledger(store, USER, DAY)
        assert result.error["code"] == "IMMUTABILITY_VIOLATION"
        assert result.data is None
