"""Pipeline error taxonomy.

Key exports:
    SwitchyardError — base class
    DefinitionError — malformed pipeline definition (rejected at load)
    MissingParameter — activation aborted before any job starts
    UpstreamNotResolved — gate could not settle the upstream run
    ExecutorFailure — external executor error, recorded as a job failure
    CancelRequested — run cancelled on request
    LedgerError — run ledger read/write failure
"""

from __future__ import annotations


class SwitchyardError(Exception):
    """Base class for all orchestrator errors."""


class DefinitionError(SwitchyardError):
    """A pipeline definition is invalid (cyclic graph, unknown reference, ...).

    Raised once at load time; the offending pipeline never runs.
    """

    def __init__(self, pipeline: str, errors: list[str]):
        self.pipeline = pipeline
        self.errors = list(errors)
        super().__init__(f"Pipeline '{pipeline}': " + "; ".join(self.errors))


class MissingParameter(SwitchyardError):
    """Required executor parameters are absent after parameter resolution."""

    def __init__(self, pipeline: str, missing: dict[str, list[str]]):
        self.pipeline = pipeline
        self.missing = {job: sorted(names) for job, names in missing.items()}
        details = ", ".join(
            f"{job}: {names}" for job, names in sorted(self.missing.items())
        )
        super().__init__(f"Pipeline '{pipeline}' is missing parameters ({details})")


class UpstreamNotResolved(SwitchyardError):
    """The upstream run is still pending (or not yet written) after a re-check."""

    def __init__(self, pipeline: str, upstream_run_id: str | None):
        self.pipeline = pipeline
        self.upstream_run_id = upstream_run_id
        super().__init__(
            f"Upstream run {upstream_run_id or '<unknown>'} for pipeline "
            f"'{pipeline}' is not resolved"
        )


class ExecutorFailure(SwitchyardError):
    """The external job executor reported an error for a job."""

    def __init__(self, job: str, message: str):
        self.job = job
        super().__init__(f"Job '{job}': {message}")


class CancelRequested(SwitchyardError):
    """A run was cancelled by an explicit request."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} cancelled")


class LedgerError(SwitchyardError):
    """The run ledger could not be read or written."""
