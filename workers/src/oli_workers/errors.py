"""Pipeline error taxonomy.

Validation failures and confidence gaps are data, not exceptions. The classes
here cover I/O-edge failures (retryable or not) and invariant violations.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for derived-truth pipeline failures."""


class TransientPipelineError(PipelineError):
    """Retryable failure: store unavailable, upstream timeout, lost race."""


class PointerConflictError(TransientPipelineError):
    """Latest-run pointer changed underneath a compare-and-swap."""

    def __init__(self, path: str, expected: str | None, actual: str | None) -> None:
        super().__init__(
            f"Pointer {path} moved: expected latest_run_id={expected!r}, found {actual!r}"
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class ImmutabilityViolation(PipelineError):
    """Attempt to overwrite an append-only document with different content."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"Immutability violation: attempted to overwrite {path} with different content"
        )
        self.path = path


class LedgerStateError(PipelineError):
    """Illegal derived-ledger run state transition."""


class DuplicateInsightError(PipelineError):
    """Two rules emitted the same insight id within one run."""


class MalformedEventError(PipelineError):
    """Stored raw event no longer satisfies its payload contract."""

    def __init__(self, raw_event_id: str, issues: tuple) -> None:
        super().__init__(f"Raw event {raw_event_id} failed payload validation: {list(issues)}")
        self.raw_event_id = raw_event_id
        self.issues = issues


class ProviderError(PipelineError):
    """Upstream provider rejected a request (not retryable)."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code


class RunFailedError(PipelineError):
    """A recompute run failed after its ledger run was started.

    Carries the failed run document so the job edge can persist it after
    the job transaction is rolled back.
    """

    def __init__(self, path: str, run: dict, retryable: bool) -> None:
        super().__init__(f"Derived ledger run {path} failed: {run.get('error')}")
        self.path = path
        self.run = run
        self.retryable = retryable
