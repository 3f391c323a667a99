"""PostgreSQL ingestion entry point.

A newly accepted raw event and its raw_event.normalize job are written in one
transaction, so an event is never stored without the job that projects it.
Idempotent replays and rejections enqueue nothing.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from .pg_store import PostgresDocumentStore
from .raw_events import IngestResult, RawEventStore
from .scheduler import NORMALIZE_JOB_TYPE, enqueue_job

logger = logging.getLogger(__name__)


def normalize_job_hook(conn: psycopg.AsyncConnection[Any]):
    """on_accepted hook that enqueues raw_event.normalize on conn."""

    async def enqueue_normalize(user_id: str, raw_event_id: str) -> None:
        job_id = await enqueue_job(
            conn,
            user_id,
            NORMALIZE_JOB_TYPE,
            {"user_id": user_id, "raw_event_id": raw_event_id},
        )
        logger.debug(
            "Enqueued %s job %d",
            NORMALIZE_JOB_TYPE,
            job_id,
            extra={"oli_user_id": user_id, "oli_raw_event_id": raw_event_id},
        )

    return enqueue_normalize


async def ingest_raw_event(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    body: Any,
    *,
    idempotency_key: str | None,
    received_at: str | None = None,
    timeout_seconds: float | None = None,
) -> IngestResult:
    """Ingest one raw event and queue its normalization.

    With timeout_seconds, a slow store raises TransientPipelineError and the
    transaction rolls back.
    """
    raw_store = RawEventStore(PostgresDocumentStore(conn), on_accepted=normalize_job_hook(conn))
    async with conn.transaction():
        if timeout_seconds is None:
            return await raw_store.ingest(
                user_id, body, idempotency_key=idempotency_key, received_at=received_at
            )
        return await raw_store.ingest_with_timeout(
            user_id,
            body,
            idempotency_key=idempotency_key,
            timeout_seconds=timeout_seconds,
            received_at=received_at,
        )
