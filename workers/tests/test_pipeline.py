"""End-to-end recompute tests on the in-memory store."""

import asyncio

import pytest

from builders import DAY, USER, body, sleep_payload, steps_payload, weight_payload
from oli_workers import pipeline, read_surface
from oli_workers.document_store import MemoryDocumentStore, UserPaths
from oli_workers.errors import PipelineError, RunFailedError, TransientPipelineError
from oli_workers.ledger import FAILED, DerivedLedger
from oli_workers.pipeline import make_trigger, project_raw_event, recompute_for_day
from oli_workers.raw_events import RawEventStore

TRIGGER = make_trigger("manual", "test")
PATHS = UserPaths(USER)


async def _ingest(store, kind, payload, key, received_at=f"{DAY}T09:00:00.000Z"):
    result = await RawEventStore(store).ingest(USER, body(kind, payload), idempotency_key=key, received_at=received_at)
    assert result.accepted
    await project_raw_event(store, USER, key)
    return result


async def _recompute(store, computed_at=f"{DAY}T10:00:00.000Z"):
    return await recompute_for_day(
        store, USER, DAY, trigger=TRIGGER, confidence_threshold=0.0, computed_at=computed_at
    )


class TestProjection:
    async def test_missing_raw_event(self, store):
        with pytest.raises(PipelineError):
            await project_raw_event(store, USER, "nope")

    async def test_unprojected_kind(self, store):
        await store.set(PATHS.raw_event("r1"), {"id": "r1", "user_id": USER, "kind": "lab_result", "payload": {}})
        assert await project_raw_event(store, USER, "r1") is None
        assert await store.get(PATHS.event("r1")) is None

    async def test_projection_is_idempotent(self, store):
        await _ingest(store, "steps", steps_payload(5000), "k1")
        again = await project_raw_event(store, USER, "k1")
        assert again["id"] == "k1"
        assert len(await store.list(PATHS.events())) == 1

    async def test_malformed_stored_event_leaves_failure_entry(self, store):
        await _ingest(store, "steps", steps_payload(5000), "k1")
        raw = await store.get(PATHS.raw_event("k1"))
        raw["id"] = raw["idempotency_key"] = "bad"
        raw["payload"]["steps"] = -1
        await store.set(PATHS.raw_event("bad"), raw)

        assert await project_raw_event(store, USER, "bad") is None
        assert await project_raw_event(store, USER, "bad") is None
        assert await store.get(PATHS.event("bad")) is None

        listed = await read_surface.list_failures(store, USER, DAY)
        assert listed.ok
        [entry] = listed.data["items"]
        assert entry["id"] == "normalize_bad"
        assert entry["code"] == "RAW_EVENT_INVALID"
        assert entry["raw_event_path"] == PATHS.raw_event("bad")
        assert entry["details"]["kind"] == "steps"
        assert "payload" not in entry["details"]


class TestRecompute:
    async def test_writes_every_derived_document(self, store):
        await _ingest(store, "steps", steps_payload(5000), "k1")
        result = await _recompute(store)
        assert result.events_count == 1
        facts = await store.get(PATHS.daily_facts(DAY))
        assert facts["activity"]["steps"] == 5000
        assert facts["computed_at"] == f"{DAY}T10:00:00.000Z"
        assert await store.get(PATHS.intelligence_context(DAY)) is not None
        assert (await store.get(PATHS.health_score(DAY)))["status"] == result.health_score_status
        assert (await store.get(PATHS.health_signals(DAY)))["status"] == result.health_signals_status

    async def test_duplicate_ingest_counts_once(self, store):
        await _ingest(store, "steps", steps_payload(5000), "k1")
        before = (await _recompute(store)).events_count
        replay = await _ingest(store, "steps", steps_payload(5000), "k1")
        assert replay.idempotent_replay
        after = await _recompute(store, f"{DAY}T11:00:00.000Z")
        assert after.events_count == before
        await _ingest(store, "weight", weight_payload(80.0), "k2")
        assert (await _recompute(store, f"{DAY}T12:00:00.000Z")).events_count == before + 1

    async def test_retracted_insight_is_deleted(self, store):
        await _ingest(store, "sleep", sleep_payload(300), "z1")
        first = await _recompute(store)
        insight_id = f"{DAY}_low_sleep_duration"
        assert insight_id in first.insight_ids
        assert await store.get(PATHS.insight(insight_id)) is not None

        await _ingest(store, "sleep", sleep_payload(200), "z2")
        second = await _recompute(store, f"{DAY}T11:00:00.000Z")
        assert insight_id not in second.insight_ids
        assert second.insights_deleted == 1
        assert await store.get(PATHS.insight(insight_id)) is None

    async def test_ledger_pointer_and_replay(self, store):
        await _ingest(store, "sleep", sleep_payload(300), "z1")
        result = await _recompute(store)
        ledger = DerivedLedger(store)
        assert (await ledger.get_pointer(USER, DAY))["latest_run_id"] == result.run_id
        replay = await ledger.replay(USER, DAY)
        assert replay.documents["healthScore"] == await store.get(PATHS.health_score(DAY))
        assert replay.documents["dailyFacts"] == await store.get(PATHS.daily_facts(DAY))
        assert [i["id"] for i in replay.documents["insights"]["items"]] == result.insight_ids

    async def test_deterministic_across_stores(self):
        results = []
        for _ in range(2):
            store = MemoryDocumentStore()
            await _ingest(store, "sleep", sleep_payload(300), "z1")
            await _ingest(store, "steps", steps_payload(3000), "k1")
            result = await _recompute(store)
            results.append((result.run_id, await DerivedLedger(store).replay(USER, DAY)))
        (run_a, replay_a), (run_b, replay_b) = results
        assert run_a == run_b
        assert replay_a.hashes == replay_b.hashes

    async def test_invalid_day_rejected(self, store):
        with pytest.raises(ValueError):
            await recompute_for_day(store, USER, "2026-13-40", trigger=TRIGGER)


class TestRunIdentity:
    async def test_same_trigger_same_instant_gets_distinct_runs(self, store):
        await _ingest(store, "steps", steps_payload(5000), "k1")
        first = await _recompute(store)
        second = await _recompute(store)
        assert first.run_id != second.run_id
        ledger = DerivedLedger(store)
        assert (await ledger.get_run(USER, DAY, second.run_id))["previous_run_id"] == first.run_id
        assert (await ledger.get_pointer(USER, DAY))["latest_run_id"] == second.run_id

    async def test_computed_at_taken_under_day_lock(self, store, monkeypatch):
        stamped = []

        def fake_now():
            stamped.append(True)
            return f"{DAY}T10:00:00.000Z"

        monkeypatch.setattr(pipeline, "utc_now_iso", fake_now)
        await _ingest(store, "steps", steps_payload(5000), "k1")
        async with store.lock(f"recompute:{USER}:{DAY}"):
            task = asyncio.create_task(
                recompute_for_day(store, USER, DAY, trigger=TRIGGER, confidence_threshold=0.0)
            )
            await asyncio.sleep(0.01)
            assert stamped == []
        result = await task
        assert stamped == [True]
        assert (await store.get(PATHS.daily_facts(DAY)))["computed_at"] == f"{DAY}T10:00:00.000Z"
        assert result.events_count == 1

    async def test_lock_released_after_recompute(self, store):
        await _ingest(store, "steps", steps_payload(5000), "k1")
        await asyncio.gather(_recompute(store), _recompute(store, f"{DAY}T10:00:01.000Z"))
        assert store.lock_keys() == []
        assert len(await DerivedLedger(store).list_runs(USER, DAY)) == 2


class _FailingStore(MemoryDocumentStore):
    def __init__(self, exc):
        super().__init__()
        self.exc = exc

    async def set(self, path, data):
        if self.exc is not None and "/healthScores/" in path:
            raise self.exc
        await super().set(path, data)


class TestFailure:
    async def test_failure_marks_run_and_keeps_pointer(self):
        store = _FailingStore(RuntimeError("disk full"))
        await _ingest(store, "steps", steps_payload(5000), "k1")
        with pytest.raises(RunFailedError) as excinfo:
            await _recompute(store)
        assert excinfo.value.retryable is False
        assert excinfo.value.run["state"] == FAILED
        assert "disk full" in excinfo.value.run["error"]["message"]
        assert await DerivedLedger(store).get_pointer(USER, DAY) is None

    async def test_transient_failure_is_retryable(self):
        store = _FailingStore(TransientPipelineError("busy"))
        await _ingest(store, "steps", steps_payload(5000), "k1")
        with pytest.raises(RunFailedError) as excinfo:
            await _recompute(store)
        assert excinfo.value.retryable is True

    async def test_retry_after_failure_starts_a_new_run(self):
        store = _FailingStore(TransientPipelineError("busy"))
        await _ingest(store, "steps", steps_payload(5000), "k1")
        with pytest.raises(RunFailedError) as excinfo:
            await _recompute(store)
        store.exc = None
        result = await _recompute(store)
        assert result.run_id != excinfo.value.run["run_id"]
        assert (await DerivedLedger(store).get_pointer(USER, DAY))["latest_run_id"] == result.run_id
