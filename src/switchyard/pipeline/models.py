"""Pipeline Pydantic models — definitions and runtime state.

Key exports:
    Definition models: PathGroup, TriggerRule, ExecutorRef, JobDefinition,
        GatePolicy, PipelineDefinition
    Runtime state models: Activation, JobOutcome, Run
    Enums: JobStatus, SkipReason, RunOutcome
"""

from __future__ import annotations

import fnmatch
import re
import secrets
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from switchyard.models import Event, EventKind


# ── Enums ────────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.SKIPPED})


class SkipReason(str, Enum):
    """Why a job ended up skipped."""

    CONDITION = "condition"  # its own or an ancestor's path-group condition was not met
    UPSTREAM = "upstream"  # an ancestor failed
    CANCELLED = "cancelled"
    ABORTED = "aborted"  # the run aborted before any job started


class RunOutcome(str, Enum):
    """Run lifecycle states. ``skipped`` is reserved and never assigned by the scheduler."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


UPSTREAM_OUTCOMES = frozenset({RunOutcome.SUCCESS, RunOutcome.FAILURE})


# ── Validation helpers ───────────────────────────────────────────────────────

JOB_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")
PLACEHOLDER_PATTERN = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


def _stringify_mapping(v: Any) -> Any:
    """YAML happily yields ints and bools for parameter values; params are strings."""
    if isinstance(v, dict):
        return {str(k): str(val).lower() if isinstance(val, bool) else str(val) for k, val in v.items()}
    return v


# ── Definition Models (parsed from YAML config) ─────────────────────────────


class PathGroup(BaseModel):
    """A named set of glob patterns used to classify changed files."""

    name: str
    patterns: list[str] = Field(min_length=1)


class TriggerRule(BaseModel):
    """When a pipeline should be activated by an event."""

    event_kind: EventKind = Field(alias="event")
    branches: set[str] = set()  # empty = any branch; fnmatch globs allowed
    path_groups: set[str] = set()  # empty = match regardless of changes
    upstream_pipeline: str | None = None
    upstream_outcomes: set[RunOutcome] = set()

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def validate_rule(self) -> TriggerRule:
        bad = self.upstream_outcomes - UPSTREAM_OUTCOMES
        if bad:
            msg = f"upstream_outcomes may only contain success/failure, got {sorted(o.value for o in bad)}"
            raise ValueError(msg)
        if self.upstream_pipeline and not self.upstream_outcomes:
            self.upstream_outcomes = {RunOutcome.SUCCESS}
        return self

    def matches_branch(self, branch: str) -> bool:
        if not self.branches:
            return True
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.branches)

    def matches_groups(self, touched: set[str]) -> bool:
        if not self.path_groups:
            return True
        return bool(self.path_groups & touched)


class ExecutorRef(BaseModel):
    """Opaque job target handed to the executor, plus the params it needs.

    ``{name}`` placeholders inside ``target`` are required parameters too.
    """

    target: str
    params: list[str] = []

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"target": data}
        return data

    @property
    def required_params(self) -> set[str]:
        return set(self.params) | set(PLACEHOLDER_PATTERN.findall(self.target))

    def render(self, params: dict[str, str]) -> str:
        """Substitute ``{name}`` placeholders from resolved params."""
        return PLACEHOLDER_PATTERN.sub(lambda m: params[m.group(1)], self.target)


class JobDefinition(BaseModel):
    """A single job in a pipeline definition."""

    name: str
    depends_on: set[str] = set()
    condition: str | None = None  # path-group name; job skipped unless touched
    executor_ref: ExecutorRef = Field(alias="executor")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def validate_job(self) -> JobDefinition:
        if not JOB_NAME_PATTERN.match(self.name):
            msg = f"Job name '{self.name}' must match pattern {JOB_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        return self


class GatePolicy(BaseModel):
    """Upstream preconditions enforced by the dependency gate."""

    required_branches: set[str] = set()
    accepted_outcomes: set[RunOutcome] = set()  # empty = the trigger rule's outcomes


class PipelineDefinition(BaseModel):
    """Complete pipeline definition parsed from YAML config."""

    name: str
    description: str = ""
    triggers: list[TriggerRule] = []
    jobs: list[JobDefinition] = Field(min_length=1)
    default_params: dict[str, str] = {}
    gate: GatePolicy | None = None

    @field_validator("default_params", mode="before")
    @classmethod
    def _stringify_defaults(cls, v: Any) -> Any:
        return _stringify_mapping(v)

    @model_validator(mode="after")
    def validate_unique_job_names(self) -> PipelineDefinition:
        names = [j.name for j in self.jobs]
        dupes = [n for n in names if names.count(n) > 1]
        if dupes:
            msg = f"Duplicate job names: {sorted(set(dupes))}"
            raise ValueError(msg)
        return self

    def get_job(self, name: str) -> JobDefinition | None:
        """Look up a job by name."""
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    @property
    def job_names(self) -> list[str]:
        return [j.name for j in self.jobs]

    def referenced_path_groups(self) -> set[str]:
        """All path-group names used by triggers and job conditions."""
        refs: set[str] = set()
        for rule in self.triggers:
            refs |= rule.path_groups
        for job in self.jobs:
            if job.condition:
                refs.add(job.condition)
        return refs


# ── Runtime State Models (persisted in the run ledger) ──────────────────────


class Activation(BaseModel):
    """A resolved (pipeline, parameters) pair ready for execution."""

    pipeline_name: str
    event: Event
    resolved_params: dict[str, str] = {}
    rule_index: int = 0
    upstream_run_id: str | None = None


class JobOutcome(BaseModel):
    """Runtime state of a single job within a run."""

    status: JobStatus = JobStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    skip_reason: SkipReason | None = None
    handle: str | None = None  # executor handle while/after running
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class Run(BaseModel):
    """One concrete execution of a pipeline's job graph."""

    run_id: str = Field(default_factory=lambda: new_run_id())
    pipeline_name: str
    activation: Activation
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    jobs: dict[str, JobOutcome] = {}
    outcome: RunOutcome = RunOutcome.PENDING
    ended_at: datetime | None = None

    # Run-level failure (aborted before any job started, or cancelled)
    error_kind: str | None = None
    error_message: str | None = None

    @property
    def branch(self) -> str:
        return self.activation.event.branch

    @property
    def is_terminal(self) -> bool:
        return self.outcome != RunOutcome.PENDING

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def compute_outcome(self) -> RunOutcome:
        """Outcome once every job is terminal: failure if any job failed."""
        if self.error_kind:
            return RunOutcome.FAILURE
        if any(j.status == JobStatus.FAILURE for j in self.jobs.values()):
            return RunOutcome.FAILURE
        return RunOutcome.SUCCESS


# ── Helpers ──────────────────────────────────────────────────────────────────

_id_lock = threading.Lock()
_last_id_ns = 0


def new_run_id() -> str:
    """Globally unique run id whose lexical order follows creation order."""
    global _last_id_ns
    with _id_lock:
        now = max(time.time_ns(), _last_id_ns + 1)
        _last_id_ns = now
    return f"run-{now:020d}-{secrets.token_hex(2)}"
