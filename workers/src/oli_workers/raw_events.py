"""Raw event store: append-only ingestion of provider events.

The document id of a raw event is its idempotency key. Re-submitting the
same observation is a reported no-op (idempotent_replay=True); re-using a
key for a different payload is rejected and nothing is written.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .document_store import DocumentStore, UserPaths
from .errors import TransientPipelineError
from .event_contracts import ValidationIssue, validate_ingest_request
from .metrics import record_ingest
from .utils import parse_iso_datetime, stable_hash, utc_now_iso

logger = logging.getLogger(__name__)

RAW_EVENT_SCHEMA_VERSION = 1

MISSING_IDEMPOTENCY_KEY = "MISSING_IDEMPOTENCY_KEY"
INVALID_IDEMPOTENCY_KEY = "INVALID_IDEMPOTENCY_KEY"
IDEMPOTENCY_KEY_REUSE_CONFLICT = "IDEMPOTENCY_KEY_REUSE_CONFLICT"
VALIDATION_FAILED = "VALIDATION_FAILED"

_MAX_KEY_LENGTH = 256


@dataclass(frozen=True)
class IngestResult:
    accepted: bool
    raw_event_id: str | None = None
    idempotent_replay: bool = False
    day: str | None = None
    kind: str | None = None
    issues: tuple[ValidationIssue, ...] = field(default_factory=tuple)
    error_code: str | None = None

    def as_response(self) -> dict[str, Any]:
        """Shape returned at the ingestion boundary (202 body or 4xx body)."""
        if self.accepted:
            body: dict[str, Any] = {"ok": True, "raw_event_id": self.raw_event_id}
            if self.idempotent_replay:
                body["idempotent_replay"] = True
            return body
        return {
            "ok": False,
            "error": {
                "code": self.error_code,
                "issues": [issue.as_dict() for issue in self.issues],
            },
        }


def _rejected(code: str, message: str, path: str = "idempotency_key") -> IngestResult:
    return IngestResult(
        accepted=False,
        issues=(ValidationIssue(path=path, message=message, code=code.lower()),),
        error_code=code,
    )


def payload_fingerprint(raw_event: dict[str, Any]) -> str:
    """Hash of everything the submitter controls. received_at is excluded."""
    return stable_hash(
        {
            "provider": raw_event["provider"],
            "kind": raw_event["kind"],
            "source_id": raw_event["source_id"],
            "source_type": raw_event["source_type"],
            "observed_at": raw_event["observed_at"],
            "payload": raw_event["payload"],
            "uncertainty_state": raw_event.get("uncertainty_state"),
        }
    )


def event_day(kind_payload: dict[str, Any], observed_at: str) -> str:
    """Day key for a raw event: payload day, else the UTC date of observed_at."""
    day = kind_payload.get("day")
    if isinstance(day, str) and day:
        return day
    observed = parse_iso_datetime(observed_at)
    if observed is None:
        raise ValueError(f"observed_at is not an ISO-8601 instant: {observed_at!r}")
    return observed.date().isoformat()


# Called with (user_id, raw_event_id) once per newly written raw event.
AcceptHook = Callable[[str, str], Awaitable[None]]


class RawEventStore:
    def __init__(self, store: DocumentStore, on_accepted: AcceptHook | None = None) -> None:
        self.store = store
        self.on_accepted = on_accepted

    async def ingest(
        self,
        user_id: str,
        body: Any,
        *,
        idempotency_key: str | None,
        received_at: str | None = None,
    ) -> IngestResult:
        """Validate and append one raw event.

        Every rejection happens before the first store write. on_accepted runs
        only for a new event, never for an idempotent replay.
        """
        key = (idempotency_key or "").strip()
        if not key:
            record_ingest("rejected")
            return _rejected(MISSING_IDEMPOTENCY_KEY, "Idempotency-Key header is required")
        if "/" in key or len(key) > _MAX_KEY_LENGTH:
            record_ingest("rejected")
            return _rejected(INVALID_IDEMPOTENCY_KEY, "Idempotency-Key must be <=256 chars without '/'")

        request, issues = validate_ingest_request(body)
        if request is None:
            record_ingest("rejected")
            logger.info(
                "Raw event rejected: %d validation issue(s)",
                len(issues),
                extra={"oli_user_id": user_id, "oli_issue_codes": [i.code for i in issues]},
            )
            return IngestResult(accepted=False, issues=issues, error_code=VALIDATION_FAILED)

        raw_event: dict[str, Any] = {
            "schema_version": RAW_EVENT_SCHEMA_VERSION,
            "id": key,
            "user_id": user_id,
            "source_id": request.source_id,
            "provider": request.provider,
            "source_type": request.source_type,
            "kind": request.kind,
            "received_at": received_at or utc_now_iso(),
            "observed_at": request.observed_at,
            "payload": request.payload,
            "idempotency_key": key,
        }
        if request.uncertainty_state is not None:
            raw_event["uncertainty_state"] = request.uncertainty_state
        raw_event["payload_hash"] = payload_fingerprint(raw_event)
        day = event_day(request.payload, request.observed_at)

        path = UserPaths(user_id).raw_event(key)
        if await self.store.create(path, raw_event):
            if self.on_accepted is not None:
                await self.on_accepted(user_id, key)
            record_ingest("accepted")
            logger.info(
                "Raw event accepted (kind=%s, day=%s)",
                request.kind,
                day,
                extra={"oli_user_id": user_id, "oli_raw_event_id": key},
            )
            return IngestResult(accepted=True, raw_event_id=key, day=day, kind=request.kind)

        existing = await self.store.get(path)
        if existing is not None and existing.get("payload_hash") == raw_event["payload_hash"]:
            record_ingest("replayed")
            logger.info(
                "Raw event idempotent replay",
                extra={"oli_user_id": user_id, "oli_raw_event_id": key},
            )
            return IngestResult(
                accepted=True,
                raw_event_id=key,
                idempotent_replay=True,
                day=day,
                kind=request.kind,
            )

        record_ingest("conflict")
        logger.warning(
            "Idempotency key reused with a different payload",
            extra={"oli_user_id": user_id, "oli_raw_event_id": key},
        )
        return _rejected(
            IDEMPOTENCY_KEY_REUSE_CONFLICT,
            "Idempotency-Key was already used for a different payload",
        )

    async def ingest_with_timeout(
        self,
        user_id: str,
        body: Any,
        *,
        idempotency_key: str | None,
        timeout_seconds: float,
        received_at: str | None = None,
    ) -> IngestResult:
        try:
            async with asyncio.timeout(timeout_seconds):
                return await self.ingest(
                    user_id,
                    body,
                    idempotency_key=idempotency_key,
                    received_at=received_at,
                )
        except TimeoutError as exc:
            record_ingest("timeout")
            raise TransientPipelineError(
                f"Raw event ingest timed out after {timeout_seconds}s"
            ) from exc

    async def get(self, user_id: str, raw_event_id: str) -> dict[str, Any] | None:
        return await self.store.get(UserPaths(user_id).raw_event(raw_event_id))

    async def list(self, user_id: str) -> list[dict[str, Any]]:
        return [doc for _, doc in await self.store.list(UserPaths(user_id).raw_events())]
