"""Durable recurring scheduler for the daily recompute sweep.

One row in scheduler_state tracks the next slot and the in-flight sweep job.
Each due slot becomes one pipeline.daily_sweep job; missed slots (worker
down across several intervals) are folded into the same job as extra
catch-up days.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

logger = logging.getLogger(__name__)

DAILY_SWEEP_SCHEDULER_KEY = "daily_recompute"
DAILY_SWEEP_JOB_TYPE = "pipeline.daily_sweep"
RECOMPUTE_JOB_TYPE = "pipeline.recompute"
NORMALIZE_JOB_TYPE = "raw_event.normalize"
MAX_CATCH_UP_DAYS = 14


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def due_run_count(now: datetime, next_run_at: datetime, interval_hours: int) -> int:
    """Return how many runs are due, including missed catch-up slots."""
    if interval_hours <= 0:
        raise ValueError("interval_hours must be positive")

    now_utc = _as_utc(now)
    next_run_utc = _as_utc(next_run_at)
    if now_utc < next_run_utc:
        return 0

    elapsed_seconds = (now_utc - next_run_utc).total_seconds()
    slot_seconds = interval_hours * 3600
    return int(elapsed_seconds // slot_seconds) + 1


def sweep_days(now: datetime, due_runs: int, interval_hours: int) -> list[str]:
    """Day keys a sweep should recompute: yesterday plus one day per missed slot.

    Capped at MAX_CATCH_UP_DAYS, ascending.
    """
    if due_runs <= 0:
        return []
    missed_hours = (due_runs - 1) * interval_hours
    span_days = min(MAX_CATCH_UP_DAYS, 1 + missed_hours // 24)
    yesterday = (_as_utc(now) - timedelta(days=1)).date()
    return [(yesterday - timedelta(days=offset)).isoformat() for offset in range(span_days - 1, -1, -1)]


async def enqueue_job(
    conn: psycopg.AsyncConnection[Any],
    user_id: str | None,
    job_type: str,
    payload: dict[str, Any],
    *,
    priority: int = 0,
    max_retries: int | None = None,
) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload, priority, max_retries, scheduled_for)
            VALUES (%s, %s, %s, %s, COALESCE(%s, 3), NOW())
            RETURNING id
            """,
            (user_id, job_type, Json(payload), priority, max_retries),
        )
        row = await cur.fetchone()
    return int(row[0])


async def ensure_daily_recompute_scheduler(
    conn: psycopg.AsyncConnection[Any],
    interval_hours: int,
    *,
    now: datetime | None = None,
) -> int | None:
    """Maintain scheduler state and enqueue at most one in-flight sweep.

    Returns the new sweep job id, or None when nothing was scheduled.
    """
    interval_hours = max(1, interval_hours)
    now = _as_utc(now or datetime.now(timezone.utc))

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO scheduler_state (scheduler_key, interval_hours, next_run_at, last_run_status)
            VALUES (%s, %s, %s, 'idle')
            ON CONFLICT (scheduler_key) DO NOTHING
            """,
            (DAILY_SWEEP_SCHEDULER_KEY, interval_hours, now),
        )
        await cur.execute(
            """
            SELECT interval_hours, next_run_at, in_flight_job_id
            FROM scheduler_state
            WHERE scheduler_key = %s
            FOR UPDATE
            """,
            (DAILY_SWEEP_SCHEDULER_KEY,),
        )
        state = await cur.fetchone()
        if state is None:
            return None

        in_flight_job_id = state["in_flight_job_id"]
        if in_flight_job_id is not None:
            await cur.execute(
                "SELECT status, error_message FROM background_jobs WHERE id = %s",
                (in_flight_job_id,),
            )
            job = await cur.fetchone()
            if job is not None and job["status"] in ("pending", "processing"):
                return None
            if job is not None and job["status"] == "completed":
                last_status, last_error = "completed", None
            else:
                last_status = "failed"
                last_error = (job or {}).get("error_message") or "in-flight sweep job missing"
            await cur.execute(
                """
                UPDATE scheduler_state
                SET in_flight_job_id = NULL,
                    last_run_status = %s,
                    last_error = %s,
                    total_runs = total_runs + CASE WHEN %s = 'completed' THEN 1 ELSE 0 END,
                    updated_at = NOW()
                WHERE scheduler_key = %s
                """,
                (last_status, last_error, last_status, DAILY_SWEEP_SCHEDULER_KEY),
            )

        run_count = due_run_count(now, state["next_run_at"], interval_hours)
        if run_count == 0:
            return None

        days = sweep_days(now, run_count, interval_hours)
        payload = {
            "scheduler_key": DAILY_SWEEP_SCHEDULER_KEY,
            "days": days,
            "due_runs": run_count,
            "missed_runs": run_count - 1,
        }
        job_id = await enqueue_job(conn, None, DAILY_SWEEP_JOB_TYPE, payload, priority=10)
        await cur.execute(
            """
            UPDATE scheduler_state
            SET in_flight_job_id = %s,
                interval_hours = %s,
                last_run_status = 'running',
                next_run_at = next_run_at + make_interval(hours => %s),
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (job_id, interval_hours, interval_hours * run_count, DAILY_SWEEP_SCHEDULER_KEY),
        )

    logger.info(
        "Scheduled %s (job_id=%d, days=%s, missed_runs=%d)",
        DAILY_SWEEP_JOB_TYPE,
        job_id,
        ",".join(days),
        run_count - 1,
    )
    return job_id
