"""Chunked historical import from a measures provider.

The cursor lives at users/{uid}/integrations/{provider}:

    {status, cursor_start, cursor_end, processed_count, last_error,
     chunk_days, max_chunks, years_back, updated_at}

Windows are walked newest -> oldest; each window is [max(start, end - chunk), end).
The cursor is persisted after every chunk, so an interrupted run resumes at the
first unfinished window. Every sample is keyed with backfill_sample_key, so a
re-fetched window produces idempotent replays instead of duplicates.

Modes:
    start   reset the cursor to [now - years_back, now] and process chunks
    resume  continue a running or errored cursor; idle/complete cursors are left alone
    stop    set status idle; nothing is fetched
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .document_store import DocumentStore, UserPaths
from .errors import ProviderError, TransientPipelineError
from .event_contracts import ValidationIssue
from .idempotency import backfill_sample_key
from .metrics import record_backfill_chunk
from .pipeline import project_raw_event
from .provider_client import MeasuresClient, ProviderSample
from .raw_events import RawEventStore
from .utils import (
    local_date_for_timezone,
    normalize_timezone_name,
    parse_iso_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"
COMPLETE = "complete"
ERROR = "error"

DAYS_PER_YEAR = 365


class BackfillRequest(BaseModel):
    """Body of a backfill.run job."""

    model_config = ConfigDict(extra="ignore")

    mode: Literal["start", "resume", "stop"]
    years_back: int = Field(default=10, ge=1, le=20)
    chunk_days: int = Field(default=90, ge=7, le=180)
    max_chunks: int = Field(default=5, ge=1, le=20)


def parse_backfill_request(body: Any) -> tuple[BackfillRequest | None, tuple[ValidationIssue, ...]]:
    try:
        return BackfillRequest.model_validate(body), ()
    except ValidationError as exc:
        issues = tuple(
            ValidationIssue(
                path=".".join(str(p) for p in err["loc"]) or "$",
                message=err["msg"],
                code=err["type"],
            )
            for err in exc.errors()
        )
        return None, issues


@dataclass
class BackfillResult:
    user_id: str
    provider: str
    status: str
    chunks_processed: int = 0
    samples_fetched: int = 0
    events_created: int = 0
    events_replayed: int = 0
    samples_rejected: int = 0
    touched_days: list[str] = field(default_factory=list)
    stopped_reason: str | None = None
    cursor: dict[str, Any] | None = None


def sample_body(provider: str, sample: ProviderSample) -> dict[str, Any]:
    """Ingest body for one provider sample; the day is the sample's local date."""
    tz = normalize_timezone_name(sample.timezone) or "UTC"
    measured = parse_iso_datetime(sample.measured_at)
    payload = {k: v for k, v in sample.values.items() if v is not None}
    payload.update(
        day=local_date_for_timezone(measured, tz).isoformat(),
        timezone=tz,
        time=sample.measured_at,
    )
    return {
        "provider": provider,
        "kind": sample.kind,
        "observed_at": sample.measured_at,
        "source_id": provider,
        "source_type": "device",
        "payload": payload,
    }


def _initial_cursor(request: BackfillRequest, now: datetime) -> dict[str, Any]:
    return {
        "status": RUNNING,
        "cursor_start": to_iso(now - timedelta(days=request.years_back * DAYS_PER_YEAR)),
        "cursor_end": to_iso(now),
        "processed_count": 0,
        "last_error": None,
        "years_back": request.years_back,
        "chunk_days": request.chunk_days,
        "max_chunks": request.max_chunks,
        "updated_at": to_iso(now),
    }


async def _save_cursor(store: DocumentStore, path: str, cursor: dict[str, Any], now: datetime) -> dict[str, Any]:
    cursor = {**cursor, "updated_at": to_iso(now)}
    await store.set(path, cursor)
    return cursor


async def _ingest_sample(
    raw_store: RawEventStore,
    store: DocumentStore,
    user_id: str,
    provider: str,
    sample: ProviderSample,
    result: BackfillResult,
    touched: set[str],
    now: datetime,
    timeout_seconds: float | None,
) -> None:
    key = backfill_sample_key(
        provider=provider,
        user_id=user_id,
        kind=sample.kind,
        measured_at_iso=sample.measured_at,
        group_id=sample.group_id,
    )
    body = sample_body(provider, sample)
    if timeout_seconds is None:
        ingested = await raw_store.ingest(user_id, body, idempotency_key=key, received_at=to_iso(now))
    else:
        ingested = await raw_store.ingest_with_timeout(
            user_id, body, idempotency_key=key, timeout_seconds=timeout_seconds, received_at=to_iso(now)
        )
    if not ingested.accepted:
        result.samples_rejected += 1
        logger.warning(
            "Backfill sample rejected (%s)",
            ingested.error_code,
            extra={"oli_user_id": user_id, "oli_raw_event_id": key},
        )
        return
    if ingested.idempotent_replay:
        result.events_replayed += 1
    else:
        result.events_created += 1
    await project_raw_event(store, user_id, key)
    touched.add(ingested.day)


async def run_backfill(
    store: DocumentStore,
    client: MeasuresClient,
    user_id: str,
    provider: str,
    request: BackfillRequest,
    *,
    now: datetime,
    cancel_event: asyncio.Event | None = None,
    deadline: float | None = None,
    ingest_timeout_seconds: float | None = None,
) -> BackfillResult:
    """Process up to max_chunks windows for one user.

    deadline is a time.monotonic() value. Cancellation and the deadline are
    checked between chunks only; a chunk in progress always finishes and
    persists its cursor.

    With ingest_timeout_seconds, each sample ingest is bounded; a timeout
    marks the cursor errored and re-raises TransientPipelineError so the job
    retries.
    """
    path = UserPaths(user_id).integration(provider)
    existing = await store.get(path)

    if request.mode == "stop":
        cursor = await _save_cursor(store, path, {**(existing or {}), "status": IDLE}, now)
        logger.info("Backfill stopped", extra={"oli_user_id": user_id, "oli_provider": provider})
        return BackfillResult(user_id, provider, IDLE, stopped_reason="stop_requested", cursor=cursor)

    if request.mode == "start":
        cursor = await _save_cursor(store, path, _initial_cursor(request, now), now)
    else:
        if existing is None or existing.get("status") not in (RUNNING, ERROR):
            status = existing.get("status") if existing else IDLE
            return BackfillResult(user_id, provider, status, stopped_reason="not_resumable", cursor=existing)
        cursor = {**existing, "status": RUNNING, "last_error": None}

    result = BackfillResult(user_id, provider, RUNNING)
    raw_store = RawEventStore(store)
    chunk = timedelta(days=int(cursor.get("chunk_days") or request.chunk_days))
    max_chunks = int(cursor.get("max_chunks") or request.max_chunks)
    start = parse_iso_datetime(cursor["cursor_start"])
    touched: set[str] = set()

    while result.chunks_processed < max_chunks:
        if cancel_event is not None and cancel_event.is_set():
            result.stopped_reason = "cancelled"
            break
        if deadline is not None and time.monotonic() >= deadline:
            result.stopped_reason = "deadline"
            break

        window_end = parse_iso_datetime(cursor["cursor_end"])
        if window_end <= start:
            cursor["status"] = COMPLETE
            break
        window_start = max(start, window_end - chunk)

        stage = "fetch"
        try:
            samples = await client.fetch_measures(user_id, to_iso(window_start), to_iso(window_end))
            stage = "ingest"
            for sample in samples:
                await _ingest_sample(
                    raw_store, store, user_id, provider, sample, result, touched, now, ingest_timeout_seconds
                )
        except (ProviderError, TransientPipelineError) as exc:
            # The window's cursor_end is not advanced; a resume re-fetches it.
            if isinstance(exc, ProviderError):
                code = exc.code
            else:
                code = "PROVIDER_UNAVAILABLE" if stage == "fetch" else "INGEST_UNAVAILABLE"
            cursor["status"] = ERROR
            cursor["last_error"] = {"code": code, "message": str(exc)[:500], "at": to_iso(now)}
            result.cursor = await _save_cursor(store, path, cursor, now)
            result.status = ERROR
            result.touched_days = sorted(touched)
            logger.warning(
                "Backfill window failed (%s)",
                code,
                extra={"oli_user_id": user_id, "oli_provider": provider},
            )
            if isinstance(exc, TransientPipelineError):
                raise
            return result

        result.samples_fetched += len(samples)
        result.chunks_processed += 1
        cursor["processed_count"] = int(cursor.get("processed_count") or 0) + len(samples)
        cursor["cursor_end"] = to_iso(window_start)
        if window_start <= start:
            cursor["status"] = COMPLETE
        cursor = await _save_cursor(store, path, cursor, now)
        record_backfill_chunk()
        if cursor["status"] == COMPLETE:
            break

    if result.stopped_reason is None and cursor["status"] == RUNNING:
        result.stopped_reason = "max_chunks"
    result.cursor = await _save_cursor(store, path, cursor, now)
    result.status = cursor["status"]
    result.touched_days = sorted(touched)
    logger.info(
        "Backfill invocation finished (status=%s, chunks=%d, created=%d, replayed=%d)",
        result.status,
        result.chunks_processed,
        result.events_created,
        result.events_replayed,
        extra={"oli_user_id": user_id, "oli_provider": provider},
    )
    return result
