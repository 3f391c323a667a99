"""Hierarchical document store abstraction.

Pipeline components receive a store handle explicitly; nothing reaches for a
global client. Documents live at slash-separated paths mirroring the
per-user layout:

    users/{uid}/rawEvents/{id}
    users/{uid}/events/{id}
    users/{uid}/dailyFacts/{day}
    users/{uid}/insights/{id}
    users/{uid}/intelligenceContext/{day}
    users/{uid}/healthScores/{day}
    users/{uid}/healthSignals/{day}
    users/{uid}/derivedLedger/{day}                      (latest-run pointer)
    users/{uid}/derivedLedger/{day}/runs/{runId}
    users/{uid}/derivedLedger/{day}/runs/{runId}/snapshots/{kind}
    users/{uid}/integrations/{provider}                  (backfill cursor)
    users/{uid}/failures/{id}                          (failure memory)

Two implementations: MemoryDocumentStore (below) and PostgresDocumentStore
(pg_store.py). Every method that touches storage is a coroutine.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any, Protocol

from .errors import ImmutabilityViolation
from .utils import stable_json


class DocumentStore(Protocol):
    async def get(self, path: str) -> dict[str, Any] | None: ...

    async def create(self, path: str, data: dict[str, Any]) -> bool:
        """Write data only if path is absent. Returns True when written."""
        ...

    async def set(self, path: str, data: dict[str, Any]) -> None: ...

    async def compare_and_set(
        self, path: str, data: dict[str, Any], *, field: str, expected: Any
    ) -> bool:
        """Atomically replace path when its current `field` equals expected.

        expected=None matches an absent document (or one without the field).
        """
        ...

    async def delete_many(self, paths: Iterable[str]) -> int:
        """Delete all paths in one atomic commit. Returns number deleted."""
        ...

    async def list(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """Direct children of collection as (doc_id, data), ordered by doc_id."""
        ...

    async def list_where(
        self, collection: str, field: str, value: Any
    ) -> list[tuple[str, dict[str, Any]]]: ...

    def lock(self, key: str) -> Any:
        """Async context manager serializing work for key."""
        ...

    def savepoint(self) -> Any:
        """Async context manager; writes inside roll back together on error
        where the backend supports it."""
        ...


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def _doc_id(value: str) -> str:
    value = str(value)
    if not value or "/" in value:
        raise ValueError(f"Invalid document id: {value!r}")
    return value


def parent_of(path: str) -> str:
    return path.rsplit("/", 1)[0]


def doc_id_of(path: str) -> str:
    return path.rsplit("/", 1)[1]


def user_id_of(path: str) -> str | None:
    parts = path.split("/")
    if len(parts) >= 2 and parts[0] == "users":
        return parts[1]
    return None


class UserPaths:
    """Path builder for one user's documents."""

    def __init__(self, user_id: str) -> None:
        self.user_id = _doc_id(user_id)
        self.root = f"users/{self.user_id}"

    def raw_events(self) -> str:
        return f"{self.root}/rawEvents"

    def raw_event(self, raw_event_id: str) -> str:
        return f"{self.raw_events()}/{_doc_id(raw_event_id)}"

    def events(self) -> str:
        return f"{self.root}/events"

    def event(self, event_id: str) -> str:
        return f"{self.events()}/{_doc_id(event_id)}"

    def daily_facts(self, day: str) -> str:
        return f"{self.root}/dailyFacts/{_doc_id(day)}"

    def insights(self) -> str:
        return f"{self.root}/insights"

    def insight(self, insight_id: str) -> str:
        return f"{self.insights()}/{_doc_id(insight_id)}"

    def intelligence_context(self, day: str) -> str:
        return f"{self.root}/intelligenceContext/{_doc_id(day)}"

    def health_scores(self) -> str:
        return f"{self.root}/healthScores"

    def health_score(self, day: str) -> str:
        return f"{self.health_scores()}/{_doc_id(day)}"

    def health_signals(self, day: str) -> str:
        return f"{self.root}/healthSignals/{_doc_id(day)}"

    def ledger_pointer(self, day: str) -> str:
        return f"{self.root}/derivedLedger/{_doc_id(day)}"

    def ledger_runs(self, day: str) -> str:
        return f"{self.ledger_pointer(day)}/runs"

    def ledger_run(self, day: str, run_id: str) -> str:
        return f"{self.ledger_runs(day)}/{_doc_id(run_id)}"

    def ledger_snapshots(self, day: str, run_id: str) -> str:
        return f"{self.ledger_run(day, run_id)}/snapshots"

    def ledger_snapshot(self, day: str, run_id: str, kind: str) -> str:
        return f"{self.ledger_snapshots(day, run_id)}/{_doc_id(kind)}"

    def integration(self, provider: str) -> str:
        return f"{self.root}/integrations/{_doc_id(provider)}"

    def failures(self) -> str:
        return f"{self.root}/failures"

    def failure(self, failure_id: str) -> str:
        return f"{self.failures()}/{_doc_id(failure_id)}"


async def create_immutable(store: DocumentStore, path: str, doc: dict[str, Any]) -> bool:
    """Create doc at path, or verify the existing doc is identical.

    Returns True when newly written, False for an identical replay.
    Raises ImmutabilityViolation when different content already exists.
    """
    if await store.create(path, doc):
        return True
    existing = await store.get(path)
    if existing is None:
        # Deleted between create and get; append-only paths are never deleted.
        raise ImmutabilityViolation(path)
    if stable_json(existing) != stable_json(doc):
        raise ImmutabilityViolation(path)
    return False


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class MemoryDocumentStore:
    """Process-local store. Documents are kept as stable JSON text.

    Used by tests and offline replay tooling. Safe for concurrent asyncio
    tasks: every mutation completes without awaiting.
    """

    def __init__(self) -> None:
        self._docs: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    async def get(self, path: str) -> dict[str, Any] | None:
        raw = self._docs.get(path)
        return None if raw is None else json.loads(raw)

    async def create(self, path: str, data: dict[str, Any]) -> bool:
        if path in self._docs:
            return False
        self._docs[path] = stable_json(data)
        return True

    async def set(self, path: str, data: dict[str, Any]) -> None:
        self._docs[path] = stable_json(data)

    async def compare_and_set(
        self, path: str, data: dict[str, Any], *, field: str, expected: Any
    ) -> bool:
        raw = self._docs.get(path)
        current = None if raw is None else json.loads(raw).get(field)
        if current != expected:
            return False
        self._docs[path] = stable_json(data)
        return True

    async def delete_many(self, paths: Iterable[str]) -> int:
        deleted = 0
        for path in list(paths):
            if self._docs.pop(path, None) is not None:
                deleted += 1
        return deleted

    async def list(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        prefix = collection.rstrip("/") + "/"
        out = [
            (path[len(prefix):], json.loads(raw))
            for path, raw in self._docs.items()
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]
        out.sort(key=lambda item: item[0])
        return out

    async def list_where(
        self, collection: str, field: str, value: Any
    ) -> list[tuple[str, dict[str, Any]]]:
        return [(doc_id, data) for doc_id, data in await self.list(collection) if data.get(field) == value]

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Last holder or waiter out drops the entry.
            self._lock_holders[key] -= 1
            if self._lock_holders[key] == 0:
                del self._lock_holders[key]
                del self._locks[key]

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        # No rollback: partial writes stay visible, the ledger pointer does not move.
        yield

    def paths(self) -> list[str]:
        return sorted(self._docs)

    def lock_keys(self) -> list[str]:
        return sorted(self._locks)
