"""backfill.run job: pull provider history in chunks, then recompute touched days."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import psycopg

from ..backfill import parse_backfill_request, run_backfill
from ..config import Config
from ..errors import PipelineError
from ..pg_store import PostgresDocumentStore
from ..pipeline import make_trigger
from ..provider_client import ProviderClient
from ..registry import register
from ..scheduler import RECOMPUTE_JOB_TYPE, enqueue_job

logger = logging.getLogger(__name__)

# Wall-clock budget for one invocation; the cursor carries the rest.
JOB_BUDGET_SECONDS = 240


@register("backfill.run")
async def handle_backfill_run(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    config = Config.from_env()
    user_id = payload.get("user_id")
    provider = payload.get("provider")
    if not user_id or not provider:
        raise PipelineError("backfill.run requires user_id and provider")
    request, issues = parse_backfill_request(payload)
    if request is None:
        raise PipelineError(
            "Invalid backfill request: " + "; ".join(f"{i.path}: {i.message}" for i in issues)
        )
    if request.mode != "stop" and not config.provider_base_url:
        raise PipelineError("OLI_PROVIDER_BASE_URL must be set for backfill")

    store = PostgresDocumentStore(conn)
    async with ProviderClient(
        config.provider_base_url or "http://localhost",
        provider=provider,
        timeout_seconds=config.provider_timeout_seconds,
        api_token=config.provider_api_token,
    ) as client:
        result = await run_backfill(
            store,
            client,
            user_id,
            provider,
            request,
            now=datetime.now(timezone.utc),
            deadline=time.monotonic() + JOB_BUDGET_SECONDS,
            ingest_timeout_seconds=config.ingest_timeout_seconds,
        )

    for day in result.touched_days:
        await enqueue_job(
            conn,
            user_id,
            RECOMPUTE_JOB_TYPE,
            {"day": day, "trigger": make_trigger("backfill", provider)},
        )
    logger.info(
        "Backfill %s for %s finished with status=%s (%d day(s) queued for recompute)",
        request.mode,
        provider,
        result.status,
        len(result.touched_days),
        extra={"oli_user_id": user_id, "oli_provider": provider},
    )
