"""Recompute derived truth for one user-day.

Flow (under a per-(user, day) lock):

    canonical events (day) + daily facts (day-6..day-1)
      -> daily facts -> intelligence context -> insights (pruned to authoritative)
      -> health score -> health signals
      -> ledger: outputs_computed -> snapshotted -> pointer_updated

Derived documents are overwritten in full on every run. A failure after the
ledger run starts marks the run failed and leaves the pointer where it was.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from .daily_facts import HISTORY_DAYS, build_daily_facts
from .document_store import DocumentStore, UserPaths
from .errors import MalformedEventError, PipelineError, RunFailedError, TransientPipelineError
from .failures import RAW_EVENT_INVALID, failure_day, write_failure_entry
from .health_score import compose_health_score
from .health_signals import BASELINE_WINDOW_DAYS, DEFAULT_THRESHOLDS, SignalThresholds, compute_health_signals
from .idempotency import ledger_run_id
from .insight_rules import chunked, compute_insight_prune_plan, evaluate_insight_rules
from .intelligence_context import build_intelligence_context, resolve_threshold
from .ledger import DerivedLedger
from .metrics import record_insights_pruned, record_recompute_run
from .normalization import load_events_for_day, normalize, write_canonical_event
from .provenance import latest_event_timestamp
from .utils import add_days, day_range, parse_day, stable_hash, stable_json, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_VERSION = 1


@dataclass(frozen=True)
class RecomputeResult:
    user_id: str
    day: str
    run_id: str
    events_count: int
    insight_ids: list[str]
    insights_deleted: int
    health_score_status: str
    health_signals_status: str


def make_trigger(trigger_type: str, name: str, source_id: str | None = None) -> dict[str, Any]:
    trigger = {"type": trigger_type, "name": name}
    if source_id is not None:
        trigger["source_id"] = source_id
    return trigger


async def _load_days(store: DocumentStore, paths: list[str]) -> list[dict[str, Any]]:
    docs = []
    for path in paths:
        doc = await store.get(path)
        if doc is not None:
            docs.append(doc)
    return docs


async def recompute_for_day(
    store: DocumentStore,
    user_id: str,
    day: str,
    *,
    trigger: dict[str, Any],
    pipeline_version: int = DEFAULT_PIPELINE_VERSION,
    confidence_threshold: float | None = None,
    signal_thresholds: SignalThresholds = DEFAULT_THRESHOLDS,
    computed_at: str | None = None,
) -> RecomputeResult:
    parse_day(day)
    threshold = resolve_threshold(confidence_threshold)
    paths = UserPaths(user_id)
    ledger = DerivedLedger(store)
    started = time.monotonic()

    async with store.lock(f"recompute:{user_id}:{day}"):
        # Stamped under the lock so runs for one day are ordered by computed_at.
        computed_at = computed_at or utc_now_iso()
        events = await load_events_for_day(store, user_id, day)
        events.sort(key=lambda e: e["id"])
        history = await _load_days(
            store, [paths.daily_facts(d) for d in day_range(add_days(day, -HISTORY_DAYS), add_days(day, -1))]
        )
        score_history = await _load_days(
            store, [paths.health_score(d) for d in day_range(add_days(day, -BASELINE_WINDOW_DAYS), add_days(day, -1))]
        )
        inputs_hash = stable_hash(
            {
                "events": events,
                "history": history,
                "score_history": score_history,
                "pipeline_version": pipeline_version,
                "confidence_threshold": threshold,
            }
        )
        pointer = await ledger.get_pointer(user_id, day)
        prior_runs = len(await ledger.list_runs(user_id, day))
        run_id = ledger_run_id(
            "run",
            stable_json(
                [
                    trigger,
                    user_id,
                    day,
                    computed_at,
                    pointer.get("latest_run_id") if pointer else None,
                    prior_runs,
                ]
            ),
        )
        run = await ledger.start_run(
            user_id,
            day,
            run_id=run_id,
            computed_at=computed_at,
            pipeline_version=pipeline_version,
            trigger=trigger,
            inputs_hash=inputs_hash,
            canonical_event_ids=[e["id"] for e in events],
            latest_canonical_event_at=latest_event_timestamp(events),
        )

        try:
            async with store.savepoint():
                facts = build_daily_facts(user_id, day, events, history, computed_at=computed_at)
                context = build_intelligence_context(facts, history, threshold)
                insights = evaluate_insight_rules(context)
                health_score = compose_health_score(
                    facts, context, date=day, computed_at=computed_at, pipeline_version=pipeline_version
                )
                signals = compute_health_signals(
                    day,
                    health_score,
                    score_history,
                    computed_at=computed_at,
                    pipeline_version=pipeline_version,
                    thresholds=signal_thresholds,
                )
                context_doc = context.to_document()

                await store.set(paths.daily_facts(day), facts)
                await store.set(paths.intelligence_context(day), context_doc)
                for insight in insights:
                    await store.set(paths.insight(insight["id"]), insight)

                keep_ids = [insight["id"] for insight in insights]
                existing = await store.list_where(paths.insights(), "date", day)
                plan = compute_insight_prune_plan([doc_id for doc_id, _ in existing], keep_ids)
                deleted = 0
                for batch in chunked(plan.to_delete):
                    deleted += await store.delete_many([paths.insight(i) for i in batch])
                record_insights_pruned(deleted)

                await store.set(paths.health_score(day), health_score)
                await store.set(paths.health_signals(day), signals)

                run = await ledger.mark_outputs_computed(
                    run,
                    {
                        "has_daily_facts": True,
                        "has_intelligence_context": True,
                        "insights_count": len(insights),
                        "insights_deleted": deleted,
                        "has_health_score": True,
                        "has_health_signals": True,
                    },
                )
                run = await ledger.write_snapshots(
                    run,
                    {
                        "dailyFacts": facts,
                        "intelligenceContext": context_doc,
                        "insights": {"items": insights},
                        "healthScore": health_score,
                        "healthSignals": signals,
                    },
                )
                run = await ledger.update_pointer(run)
        except Exception as exc:
            record_recompute_run(False)
            failed = await ledger.mark_failed(run, exc)
            raise RunFailedError(
                paths.ledger_run(day, run_id),
                failed,
                retryable=isinstance(exc, TransientPipelineError),
            ) from exc

    record_recompute_run(True)
    logger.info(
        "Recomputed day (events=%d, insights=%d, pruned=%d, status=%s)",
        len(events),
        len(insights),
        deleted,
        health_score["status"],
        extra={
            "oli_user_id": user_id,
            "oli_day": day,
            "oli_run_id": run_id,
            "oli_duration_ms": round((time.monotonic() - started) * 1000, 1),
        },
    )
    return RecomputeResult(
        user_id=user_id,
        day=day,
        run_id=run_id,
        events_count=len(events),
        insight_ids=keep_ids,
        insights_deleted=deleted,
        health_score_status=health_score["status"],
        health_signals_status=signals["status"],
    )


async def project_raw_event(store: DocumentStore, user_id: str, raw_event_id: str) -> dict[str, Any] | None:
    """Normalize a stored raw event and append its canonical event.

    Returns the canonical event, or None for kinds that are not projected and
    for events whose stored payload fails its contract. The latter leave a
    failure entry instead; retrying them cannot succeed.
    """
    raw_event = await store.get(UserPaths(user_id).raw_event(raw_event_id))
    if raw_event is None:
        raise PipelineError(f"Raw event {raw_event_id} not found for user {user_id}")
    try:
        canonical = normalize(raw_event)
    except MalformedEventError as exc:
        await _record_malformed(store, user_id, raw_event_id, raw_event, exc)
        return None
    if canonical is None:
        logger.info(
            "Raw event kind %s is not projected",
            raw_event.get("kind"),
            extra={"oli_user_id": user_id, "oli_raw_event_id": raw_event_id},
        )
        return None
    await write_canonical_event(store, user_id, canonical)
    return canonical


async def _record_malformed(
    store: DocumentStore,
    user_id: str,
    raw_event_id: str,
    raw_event: dict[str, Any],
    exc: MalformedEventError,
) -> None:
    payload = raw_event.get("payload") if isinstance(raw_event.get("payload"), dict) else {}
    observed_at = raw_event.get("observed_at")
    await write_failure_entry(
        store,
        user_id,
        failure_id=f"normalize_{raw_event_id}",
        failure_type=RAW_EVENT_INVALID,
        code=RAW_EVENT_INVALID,
        message="Stored raw event failed payload validation",
        day=failure_day(observed_at, payload.get("timezone"), payload.get("day")),
        observed_at=observed_at,
        timezone_name=payload.get("timezone"),
        raw_event_id=raw_event_id,
        details={
            "kind": raw_event.get("kind"),
            "issue_paths": [issue.path for issue in exc.issues],
            "issue_codes": [issue.code for issue in exc.issues],
        },
    )
