"""Shared fixtures."""

from __future__ import annotations

import pytest

from oli_workers.document_store import MemoryDocumentStore


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()
