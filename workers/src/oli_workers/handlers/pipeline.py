"""Job handlers that drive the derived-truth pipeline.

    raw_event.normalize   {user_id, raw_event_id}  project + recompute that day
    pipeline.recompute    {user_id, day, trigger?} recompute one user-day
    pipeline.daily_sweep  {days}                   fan out recompute jobs
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from ..config import Config
from ..errors import PipelineError
from ..pg_store import PostgresDocumentStore
from ..pipeline import make_trigger, project_raw_event, recompute_for_day
from ..registry import register
from ..scheduler import NORMALIZE_JOB_TYPE, RECOMPUTE_JOB_TYPE, enqueue_job
from ..utils import is_day_key

logger = logging.getLogger(__name__)


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise PipelineError(f"Job payload missing {key!r}")
    return value


@register(NORMALIZE_JOB_TYPE)
async def handle_raw_event_normalize(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    config = Config.from_env()
    user_id = _require(payload, "user_id")
    raw_event_id = _require(payload, "raw_event_id")
    store = PostgresDocumentStore(conn)

    canonical = await project_raw_event(store, user_id, raw_event_id)
    if canonical is None:
        return
    await recompute_for_day(
        store,
        user_id,
        canonical["day"],
        trigger=make_trigger("realtime", NORMALIZE_JOB_TYPE, raw_event_id),
        pipeline_version=config.pipeline_version,
        confidence_threshold=config.confidence_threshold,
    )


@register(RECOMPUTE_JOB_TYPE)
async def handle_pipeline_recompute(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    config = Config.from_env()
    user_id = _require(payload, "user_id")
    day = _require(payload, "day")
    if not is_day_key(day):
        raise PipelineError(f"Job payload day must be YYYY-MM-DD, got {day!r}")
    trigger = payload.get("trigger") or make_trigger("manual", RECOMPUTE_JOB_TYPE)

    await recompute_for_day(
        PostgresDocumentStore(conn),
        user_id,
        day,
        trigger=trigger,
        pipeline_version=config.pipeline_version,
        confidence_threshold=config.confidence_threshold,
    )


@register("pipeline.daily_sweep")
async def handle_daily_sweep(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    days = [d for d in payload.get("days") or [] if is_day_key(d)]
    pairs = await PostgresDocumentStore(conn).user_days_with_events(days)
    for user_id, day in pairs:
        await enqueue_job(
            conn,
            user_id,
            RECOMPUTE_JOB_TYPE,
            {"day": day, "trigger": make_trigger("scheduled", "daily_sweep")},
        )
    logger.info(
        "Daily sweep enqueued %d recompute job(s) for %d day(s)",
        len(pairs),
        len(days),
    )
