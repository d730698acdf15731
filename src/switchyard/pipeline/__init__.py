"""Pipeline orchestration core.

Key exports:
    PipelineEngine — event → activation → run
    RunLedger — SQLite run history
    ExecutionScheduler — per-run job state machine
    HttpJobExecutor, JobExecutor — external job runner interface
    PipelineDefinition, Run, JobOutcome — config and runtime models
"""

from switchyard.pipeline.engine import PipelineEngine, PlannedActivation, RunCompletedCallback
from switchyard.pipeline.errors import (
    CancelRequested,
    DefinitionError,
    ExecutorFailure,
    LedgerError,
    MissingParameter,
    SwitchyardError,
    UpstreamNotResolved,
)
from switchyard.pipeline.executor import HttpJobExecutor, JobExecutor
from switchyard.pipeline.gates import DenyReason, GateDecision, authorize
from switchyard.pipeline.graph import JobGraph, JobPlan, build, validate_definition
from switchyard.pipeline.ledger import RunLedger
from switchyard.pipeline.models import (
    Activation,
    ExecutorRef,
    GatePolicy,
    JobDefinition,
    JobOutcome,
    JobStatus,
    PathGroup,
    PipelineDefinition,
    Run,
    RunOutcome,
    SkipReason,
    TriggerRule,
)
from switchyard.pipeline.params import resolve
from switchyard.pipeline.scheduler import ExecutionScheduler
from switchyard.pipeline.triggers import TriggerCandidate, match

__all__ = [
    "Activation",
    "CancelRequested",
    "DefinitionError",
    "DenyReason",
    "ExecutionScheduler",
    "ExecutorFailure",
    "ExecutorRef",
    "GateDecision",
    "GatePolicy",
    "HttpJobExecutor",
    "JobDefinition",
    "JobExecutor",
    "JobGraph",
    "JobOutcome",
    "JobPlan",
    "JobStatus",
    "LedgerError",
    "MissingParameter",
    "PathGroup",
    "PipelineDefinition",
    "PipelineEngine",
    "PlannedActivation",
    "Run",
    "RunCompletedCallback",
    "RunLedger",
    "RunOutcome",
    "SkipReason",
    "SwitchyardError",
    "TriggerCandidate",
    "TriggerRule",
    "UpstreamNotResolved",
    "authorize",
    "build",
    "match",
    "resolve",
    "validate_definition",
]
