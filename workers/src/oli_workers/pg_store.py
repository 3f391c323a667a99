"""PostgreSQL-backed document store.

All documents share one table keyed by path; `parent` indexes direct
children so collection listing is a single index scan. Works on the
connection the worker hands to a job, so every write joins the job's
transaction and rolls back with it.

Per-key serialization uses pg_advisory_xact_lock (transaction-scoped,
auto-releases on commit/rollback).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .document_store import doc_id_of, parent_of, user_id_of

logger = logging.getLogger(__name__)

DOCUMENTS_DDL = """
CREATE TABLE IF NOT EXISTS documents (
    path TEXT PRIMARY KEY,
    parent TEXT NOT NULL,
    doc_id TEXT NOT NULL,
    user_id TEXT,
    data JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS documents_parent_idx ON documents (parent, doc_id);
CREATE INDEX IF NOT EXISTS documents_user_idx ON documents (user_id);
"""

BACKGROUND_JOBS_DDL = """
CREATE TABLE IF NOT EXISTS background_jobs (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT,
    job_type TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 0,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    scheduled_for TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS background_jobs_pending_idx
    ON background_jobs (status, scheduled_for, priority DESC, id);

CREATE TABLE IF NOT EXISTS scheduler_state (
    scheduler_key TEXT PRIMARY KEY,
    interval_hours INTEGER NOT NULL,
    next_run_at TIMESTAMPTZ NOT NULL,
    in_flight_job_id BIGINT,
    last_run_status TEXT NOT NULL DEFAULT 'idle',
    last_error TEXT,
    total_runs INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


async def ensure_schema(conn: psycopg.AsyncConnection[Any]) -> None:
    """Create tables if missing. Safe to call on every startup."""
    await conn.execute(DOCUMENTS_DDL)
    await conn.execute(BACKGROUND_JOBS_DDL)
    await conn.commit()
    logger.info("Document store schema ensured")


class PostgresDocumentStore:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def get(self, path: str) -> dict[str, Any] | None:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute("SELECT data FROM documents WHERE path = %s", (path,))
            row = await cur.fetchone()
        return None if row is None else row["data"]

    async def create(self, path: str, data: dict[str, Any]) -> bool:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO documents (path, parent, doc_id, user_id, data)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (path) DO NOTHING
                """,
                (path, parent_of(path), doc_id_of(path), user_id_of(path), Json(data)),
            )
            return cur.rowcount == 1

    async def set(self, path: str, data: dict[str, Any]) -> None:
        await self.conn.execute(
            """
            INSERT INTO documents (path, parent, doc_id, user_id, data)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (path) DO UPDATE SET
                data = EXCLUDED.data,
                updated_at = NOW()
            """,
            (path, parent_of(path), doc_id_of(path), user_id_of(path), Json(data)),
        )

    async def compare_and_set(
        self, path: str, data: dict[str, Any], *, field: str, expected: Any
    ) -> bool:
        async with self.conn.transaction():
            async with self.conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    "SELECT data FROM documents WHERE path = %s FOR UPDATE",
                    (path,),
                )
                row = await cur.fetchone()
                current = None if row is None else row["data"].get(field)
                if current != expected:
                    return False
                await cur.execute(
                    """
                    INSERT INTO documents (path, parent, doc_id, user_id, data)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (path) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = NOW()
                    """,
                    (path, parent_of(path), doc_id_of(path), user_id_of(path), Json(data)),
                )
        return True

    async def delete_many(self, paths: Iterable[str]) -> int:
        batch = list(paths)
        if not batch:
            return 0
        async with self.conn.transaction():
            async with self.conn.cursor() as cur:
                await cur.execute("DELETE FROM documents WHERE path = ANY(%s)", (batch,))
                return cur.rowcount

    async def list(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT doc_id, data FROM documents WHERE parent = %s ORDER BY doc_id",
                (collection.rstrip("/"),),
            )
            rows = await cur.fetchall()
        return [(row["doc_id"], row["data"]) for row in rows]

    async def list_where(
        self, collection: str, field: str, value: Any
    ) -> list[tuple[str, dict[str, Any]]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT doc_id, data FROM documents
                WHERE parent = %s AND data -> %s = %s
                ORDER BY doc_id
                """,
                (collection.rstrip("/"), field, Json(value)),
            )
            rows = await cur.fetchall()
        return [(row["doc_id"], row["data"]) for row in rows]

    async def user_days_with_events(self, days: list[str]) -> list[tuple[str, str]]:
        """(user_id, day) pairs that have canonical events on any of days."""
        if not days:
            return []
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                SELECT DISTINCT user_id, data ->> 'day' AS day
                FROM documents
                WHERE parent = 'users/' || user_id || '/events'
                  AND data ->> 'day' = ANY(%s)
                ORDER BY user_id, day
                """,
                (days,),
            )
            rows = await cur.fetchall()
        return [(row[0], row[1]) for row in rows]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with self.conn.transaction():
            await self.conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
                (key,),
            )
            yield

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        async with self.conn.transaction():
            yield
