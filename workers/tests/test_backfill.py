"""Tests for chunked provider backfill."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from builders import USER
from oli_workers.backfill import (
    COMPLETE,
    ERROR,
    IDLE,
    RUNNING,
    BackfillRequest,
    parse_backfill_request,
    run_backfill,
    sample_body,
)
from oli_workers.document_store import MemoryDocumentStore, UserPaths
from oli_workers.errors import ProviderError, TransientPipelineError
from oli_workers.provider_client import ProviderSample
from oli_workers.utils import parse_iso_datetime, to_iso

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
PROVIDER = "acme"
CURSOR_PATH = UserPaths(USER).integration(PROVIDER)


class FakeClient:
    """Returns one weight sample per window, one hour before the window end."""

    def __init__(self, fail_with=None, kind="weight"):
        self.calls = []
        self.fail_with = fail_with
        self.kind = kind

    async def fetch_measures(self, user_id, start_iso, end_iso):
        self.calls.append((start_iso, end_iso))
        if self.fail_with is not None:
            raise self.fail_with
        measured = parse_iso_datetime(end_iso) - timedelta(hours=1)
        return [ProviderSample(self.kind, to_iso(measured), "UTC", {"weight_kg": 80.0, "body_fat_percent": None})]


def _request(mode="start", **kw):
    return BackfillRequest(mode=mode, **{"years_back": 1, "chunk_days": 180, "max_chunks": 5, **kw})


class TestRequest:
    def test_defaults(self):
        request, issues = parse_backfill_request({"mode": "start", "unknown": 1})
        assert issues == ()
        assert (request.years_back, request.chunk_days, request.max_chunks) == (10, 90, 5)

    @pytest.mark.parametrize(
        "body",
        [
            {"mode": "go"},
            {"mode": "start", "chunk_days": 6},
            {"mode": "start", "years_back": 21},
            {"mode": "start", "max_chunks": 0},
            "start",
        ],
    )
    def test_rejected(self, body):
        request, issues = parse_backfill_request(body)
        assert request is None
        assert issues


class TestSampleBody:
    def test_local_day_and_drops_none(self):
        sample = ProviderSample("weight", "2026-03-09T23:30:00.000Z", "Europe/Berlin", {"weight_kg": 80, "x": None})
        out = sample_body(PROVIDER, sample)
        assert out["payload"] == {
            "weight_kg": 80,
            "day": "2026-03-10",
            "timezone": "Europe/Berlin",
            "time": "2026-03-09T23:30:00.000Z",
        }
        assert out["source_type"] == "device"
        assert out["source_id"] == PROVIDER


class TestRunBackfill:
    async def test_start_walks_to_completion(self, store):
        client = FakeClient()
        result = await run_backfill(store, client, USER, PROVIDER, _request(), now=NOW)
        assert result.status == COMPLETE
        assert result.chunks_processed == 3
        assert result.events_created == 3
        assert len(result.touched_days) == 3
        # newest window first, contiguous, oldest window clipped at the start
        assert client.calls[0][1] == to_iso(NOW)
        assert client.calls[0][0] == client.calls[1][1]
        assert client.calls[-1][0] == to_iso(NOW - timedelta(days=365))
        cursor = await store.get(CURSOR_PATH)
        assert cursor["status"] == COMPLETE
        assert cursor["processed_count"] == 3
        assert len(await store.list(UserPaths(USER).events())) == 3

    async def test_max_chunks_then_resume(self, store):
        first = await run_backfill(store, FakeClient(), USER, PROVIDER, _request(max_chunks=1), now=NOW)
        assert first.status == RUNNING
        assert first.stopped_reason == "max_chunks"
        assert first.cursor["cursor_end"] == to_iso(NOW - timedelta(days=180))

        second = await run_backfill(store, FakeClient(), USER, PROVIDER, _request("resume"), now=NOW)
        assert second.chunks_processed == 1
        assert second.cursor["cursor_end"] == to_iso(NOW - timedelta(days=360))
        assert second.cursor["processed_count"] == 2

    async def test_resume_without_cursor(self, store):
        client = FakeClient()
        result = await run_backfill(store, client, USER, PROVIDER, _request("resume"), now=NOW)
        assert result.status == IDLE
        assert result.stopped_reason == "not_resumable"
        assert client.calls == []

    async def test_resume_complete_is_noop(self, store):
        await run_backfill(store, FakeClient(), USER, PROVIDER, _request(), now=NOW)
        result = await run_backfill(store, FakeClient(), USER, PROVIDER, _request("resume"), now=NOW)
        assert result.status == COMPLETE
        assert result.stopped_reason == "not_resumable"

    async def test_stop(self, store):
        await run_backfill(store, FakeClient(), USER, PROVIDER, _request(max_chunks=1), now=NOW)
        result = await run_backfill(store, FakeClient(), USER, PROVIDER, _request("stop"), now=NOW)
        assert result.status == IDLE
        assert (await store.get(CURSOR_PATH))["status"] == IDLE
        again = await run_backfill(store, FakeClient(), USER, PROVIDER, _request("resume"), now=NOW)
        assert again.stopped_reason == "not_resumable"

    async def test_cancelled_between_chunks(self, store):
        cancel = asyncio.Event()
        cancel.set()
        client = FakeClient()
        result = await run_backfill(store, client, USER, PROVIDER, _request(), now=NOW, cancel_event=cancel)
        assert result.stopped_reason == "cancelled"
        assert result.status == RUNNING
        assert client.calls == []

    async def test_deadline(self, store):
        result = await run_backfill(
            store, FakeClient(), USER, PROVIDER, _request(), now=NOW, deadline=time.monotonic() - 1
        )
        assert result.stopped_reason == "deadline"
        assert result.chunks_processed == 0

    async def test_rerun_is_idempotent(self, store):
        await run_backfill(store, FakeClient(), USER, PROVIDER, _request(), now=NOW)
        again = await run_backfill(store, FakeClient(), USER, PROVIDER, _request(), now=NOW)
        assert again.events_created == 0
        assert again.events_replayed == 3
        assert len(await store.list(UserPaths(USER).raw_events())) == 3

    async def test_rejected_samples_counted(self, store):
        result = await run_backfill(store, FakeClient(kind="mystery"), USER, PROVIDER, _request(), now=NOW)
        assert result.samples_rejected == 3
        assert result.events_created == 0
        assert result.touched_days == []
        assert result.status == COMPLETE

    async def test_provider_error_stored_on_cursor(self, store):
        client = FakeClient(fail_with=ProviderError("HTTP_401", "unauthorized"))
        result = await run_backfill(store, client, USER, PROVIDER, _request(), now=NOW)
        assert result.status == ERROR
        cursor = await store.get(CURSOR_PATH)
        assert cursor["status"] == ERROR
        assert cursor["last_error"]["code"] == "HTTP_401"

        resumed = await run_backfill(store, FakeClient(), USER, PROVIDER, _request("resume"), now=NOW)
        assert resumed.status == COMPLETE
        assert resumed.cursor["last_error"] is None

    async def test_transient_error_raises(self, store):
        client = FakeClient(fail_with=TransientPipelineError("upstream 503"))
        with pytest.raises(TransientPipelineError):
            await run_backfill(store, client, USER, PROVIDER, _request(), now=NOW)
        cursor = await store.get(CURSOR_PATH)
        assert cursor["status"] == ERROR
        assert cursor["last_error"]["code"] == "PROVIDER_UNAVAILABLE"


class _SlowCreateStore(MemoryDocumentStore):
    def __init__(self):
        super().__init__()
        self.slow = True

    async def create(self, path, data):
        if self.slow:
            await asyncio.sleep(1)
        return await super().create(path, data)


class TestIngestTimeout:
    async def test_slow_ingest_marks_cursor_and_raises(self):
        store = _SlowCreateStore()
        with pytest.raises(TransientPipelineError):
            await run_backfill(
                store, FakeClient(), USER, PROVIDER, _request(), now=NOW, ingest_timeout_seconds=0.01
            )
        cursor = await store.get(CURSOR_PATH)
        assert cursor["status"] == ERROR
        assert cursor["last_error"]["code"] == "INGEST_UNAVAILABLE"
        assert cursor["cursor_end"] == to_iso(NOW)

        store.slow = False
        resumed = await run_backfill(
            store, FakeClient(), USER, PROVIDER, _request("resume"), now=NOW, ingest_timeout_seconds=5
        )
        assert resumed.status == COMPLETE
        assert resumed.events_created == 3
