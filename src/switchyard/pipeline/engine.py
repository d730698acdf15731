"""Pipeline engine — turns events into runs.

Key exports:
    PipelineEngine — add_pipeline()/load(), handle_event(), plan(),
        cancel_run(), wait(), drain()
    RunCompletedCallback — Protocol for the chaining hook (wired to the
        event queue by the server)

Per event: classify changed paths → match triggers → authorize through the
dependency gate → resolve parameters → build the job plan → append the run to
the ledger → schedule it as an asyncio task. When a run finishes, the engine
emits a ``run_completed`` event so downstream pipelines can chain off it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from switchyard.models import Event, EventKind
from switchyard.pipeline.errors import DefinitionError, LedgerError, MissingParameter
from switchyard.pipeline.executor import JobExecutor
from switchyard.pipeline.gates import DenyReason, authorize
from switchyard.pipeline.graph import JobGraph, build, validate_definition
from switchyard.pipeline.ledger import RunLedger
from switchyard.pipeline.models import (
    Activation,
    JobOutcome,
    PathGroup,
    PipelineDefinition,
    Run,
)
from switchyard.pipeline.params import layered_params, resolve
from switchyard.pipeline.scheduler import ExecutionScheduler, abort_run
from switchyard.pipeline.triggers import TriggerCandidate, match

if TYPE_CHECKING:
    from switchyard.config import GateConfig, SwitchyardConfig

logger = logging.getLogger("switchyard.pipeline.engine")


# ── Callback Protocols ───────────────────────────────────────────────────────


class RunCompletedCallback(Protocol):
    """Called with a synthesized run_completed event whenever a run finishes."""

    async def __call__(self, event: Event) -> None: ...


@dataclass
class PlannedActivation:
    """Dry-run result for one candidate pipeline."""

    pipeline: str
    rule_index: int
    allowed: bool
    reason: DenyReason | None = None
    message: str = ""
    upstream_run_id: str | None = None
    params: dict[str, str] = field(default_factory=dict)
    jobs: dict[str, str] = field(default_factory=dict)  # job → initial status
    targets: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "pipeline": self.pipeline,
            "rule_index": self.rule_index,
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "upstream_run_id": self.upstream_run_id,
            "params": self.params,
            "jobs": self.jobs,
            "targets": self.targets,
            "error": self.error,
        }


# ── Pipeline Engine ──────────────────────────────────────────────────────────


class PipelineEngine:
    """Event-driven pipeline orchestration.

    Usage:
        engine = PipelineEngine(ledger, executor)
        engine.load(config)
        engine.set_run_completed_callback(queue.put)
        runs = await engine.handle_event(event)
    """

    def __init__(
        self,
        ledger: RunLedger,
        executor: JobExecutor,
        *,
        path_groups: list[PathGroup] | None = None,
        upstream_retry_delay: float = 2.0,
        ledger_retry_backoff: float = 0.5,
        poll_interval: float = 2.0,
    ):
        self._ledger = ledger
        self._executor = executor
        self._groups: list[PathGroup] = list(path_groups or [])
        self._upstream_retry_delay = upstream_retry_delay
        self._ledger_retry_backoff = ledger_retry_backoff
        self._poll_interval = poll_interval

        # Executor capacity shared by every run
        self._slots = asyncio.Semaphore(max(1, getattr(executor, "max_concurrency", 1)))

        # Pipeline definitions and their load-time graphs (name → ...)
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._graphs: dict[str, JobGraph] = {}
        self._load_errors: dict[str, list[str]] = {}

        # Active runs (run_id → ...)
        self._schedulers: dict[str, ExecutionScheduler] = {}
        self._tasks: dict[str, asyncio.Task] = {}

        self._on_run_completed: RunCompletedCallback | None = None

    @property
    def ledger(self) -> RunLedger:
        return self._ledger

    # ── Configuration ────────────────────────────────────────────────────────

    def configure_gate(self, gate: GateConfig) -> None:
        self._upstream_retry_delay = gate.upstream_retry_delay
        self._ledger_retry_backoff = gate.ledger_retry_backoff

    def set_path_groups(self, groups: list[PathGroup]) -> None:
        self._groups = list(groups)

    def set_run_completed_callback(self, callback: RunCompletedCallback | None) -> None:
        """Set the hook that receives run_completed events."""
        self._on_run_completed = callback

    def add_pipeline(self, definition: PipelineDefinition) -> None:
        """Validate and register a pipeline definition.

        Raises:
            DefinitionError: the job graph or a reference is invalid.
        """
        validate_definition(definition, [g.name for g in self._groups])
        self._graphs[definition.name] = JobGraph.from_definition(definition)
        self._pipelines[definition.name] = definition
        self._load_errors.pop(definition.name, None)
        logger.info("Registered pipeline '%s' (%d jobs)", definition.name, len(definition.jobs))

    def load(self, config: SwitchyardConfig) -> list[str]:
        """Replace all definitions from config. Returns load error messages.

        A definition that fails validation is rejected and never runs; the
        others load normally.
        """
        self.set_path_groups(config.groups)
        self.configure_gate(config.gate)
        self._poll_interval = config.executor.poll_interval
        self._pipelines.clear()
        self._graphs.clear()
        self._load_errors.clear()

        for name, raw in config.pipelines.items():
            try:
                definition = PipelineDefinition.model_validate({"name": name, **raw})
                self.add_pipeline(definition)
            except ValidationError as exc:
                self._load_errors[name] = [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
                ]
            except DefinitionError as exc:
                self._load_errors[name] = exc.errors
            if name in self._load_errors:
                logger.error("Rejected pipeline '%s': %s", name, "; ".join(self._load_errors[name]))

        return self.validate_all_pipelines()

    def validate_all_pipelines(self) -> list[str]:
        """Re-validate every registered pipeline. Returns error messages."""
        errors: list[str] = []
        for name, errs in self._load_errors.items():
            errors.extend(f"Pipeline '{name}': {e}" for e in errs)

        group_names = [g.name for g in self._groups]
        for name, definition in self._pipelines.items():
            try:
                validate_definition(definition, group_names)
            except DefinitionError as exc:
                errors.extend(f"Pipeline '{name}': {e}" for e in exc.errors)
            for i, rule in enumerate(definition.triggers):
                if rule.upstream_pipeline and rule.upstream_pipeline not in self._pipelines:
                    errors.append(
                        f"Pipeline '{name}': trigger {i} references unknown "
                        f"upstream pipeline '{rule.upstream_pipeline}'"
                    )
        return errors

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        return self._pipelines.get(name)

    @property
    def pipelines(self) -> dict[str, PipelineDefinition]:
        return dict(self._pipelines)

    @property
    def load_errors(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._load_errors.items()}

    @property
    def active_run_ids(self) -> list[str]:
        return list(self._tasks)

    # ── Event Handling ───────────────────────────────────────────────────────

    async def handle_event(self, event: Event, *, only: str | None = None) -> list[Run]:
        """Activate every pipeline the event triggers. Returns the runs created.

        ``only`` restricts matching to one pipeline (manual dispatch).
        """
        definitions = [
            d for name, d in self._pipelines.items() if only is None or name == only
        ]
        candidates = await match(event, definitions, self._groups, self._ledger)
        if not candidates:
            return []
        results = await asyncio.gather(*(self._activate(c) for c in candidates))
        return [r for r in results if r is not None]

    async def _activate(self, candidate: TriggerCandidate) -> Run | None:
        decision = await authorize(
            candidate,
            self._ledger,
            retry_delay=self._upstream_retry_delay,
            ledger_backoff=self._ledger_retry_backoff,
        )
        if not decision.allowed:
            return None

        definition = candidate.definition
        event = candidate.event
        upstream = decision.upstream
        activation = Activation(
            pipeline_name=definition.name,
            event=event,
            rule_index=candidate.rule_index,
            upstream_run_id=upstream.run_id if upstream else None,
        )

        try:
            activation.resolved_params = resolve(event, definition, upstream)
        except MissingParameter as exc:
            return await self._record_aborted(definition, activation, upstream, exc)

        plan = build(
            definition,
            activation.resolved_params,
            candidate.touched_groups,
            graph=self._graphs[definition.name],
        )
        run = Run(pipeline_name=definition.name, activation=activation, jobs=dict(plan.outcomes))
        try:
            await self._ledger.append(run)
        except LedgerError:
            logger.exception("Could not record run for pipeline '%s'; dropping activation", definition.name)
            return None

        scheduler = ExecutionScheduler(
            run,
            plan,
            self._executor,
            self._ledger,
            poll_interval=self._poll_interval,
            slots=self._slots,
        )
        self._schedulers[run.run_id] = scheduler
        self._tasks[run.run_id] = asyncio.create_task(
            self._execute(scheduler), name=run.run_id
        )
        logger.info(
            "Activated pipeline '%s' run %s (event=%s, branch=%s, rule=%d)",
            definition.name,
            run.run_id,
            event.id,
            event.branch,
            candidate.rule_index,
        )
        return run

    async def _record_aborted(
        self,
        definition: PipelineDefinition,
        activation: Activation,
        upstream: Run | None,
        error: MissingParameter,
    ) -> Run | None:
        """A run that fails before any job starts stays visible in the ledger."""
        activation.resolved_params = layered_params(activation.event, definition, upstream)
        run = Run(
            pipeline_name=definition.name,
            activation=activation,
            jobs={name: JobOutcome() for name in definition.job_names},
        )
        try:
            await self._ledger.append(run)
            await abort_run(run, error, self._ledger)
        except LedgerError:
            logger.exception("Could not record aborted run for pipeline '%s'", definition.name)
            return None
        await self._notify_completed(run)
        return run

    async def _execute(self, scheduler: ExecutionScheduler) -> Run:
        run_id = scheduler.run.run_id
        try:
            run = await scheduler.execute()
        finally:
            self._schedulers.pop(run_id, None)
        try:
            await self._notify_completed(run)
        finally:
            self._tasks.pop(run_id, None)
        return run

    async def _notify_completed(self, run: Run) -> None:
        if self._on_run_completed is None:
            return
        event = Event(
            id=f"run-completed-{run.run_id}",
            kind=EventKind.RUN_COMPLETED,
            branch=run.branch,
            source_run_id=run.run_id,
        )
        try:
            await self._on_run_completed(event)
        except Exception:
            logger.exception("run_completed callback failed for run %s", run.run_id)

    # ── Dry Run ──────────────────────────────────────────────────────────────

    async def plan(self, event: Event) -> list[PlannedActivation]:
        """Resolve what ``event`` would activate without creating runs."""
        planned: list[PlannedActivation] = []
        candidates = await match(event, self._pipelines.values(), self._groups, self._ledger)
        for candidate in candidates:
            decision = await authorize(
                candidate,
                self._ledger,
                retry_delay=self._upstream_retry_delay,
                ledger_backoff=self._ledger_retry_backoff,
            )
            entry = PlannedActivation(
                pipeline=candidate.pipeline_name,
                rule_index=candidate.rule_index,
                allowed=decision.allowed,
                reason=decision.reason,
                message=decision.message,
                upstream_run_id=decision.upstream.run_id if decision.upstream else None,
            )
            planned.append(entry)
            if not decision.allowed:
                continue
            try:
                entry.params = resolve(event, candidate.definition, decision.upstream)
            except MissingParameter as exc:
                entry.error = str(exc)
                continue
            job_plan = build(
                candidate.definition,
                entry.params,
                candidate.touched_groups,
                graph=self._graphs[candidate.pipeline_name],
            )
            entry.jobs = {name: o.status.value for name, o in job_plan.outcomes.items()}
            entry.targets = job_plan.targets
        return planned

    # ── Run Control ──────────────────────────────────────────────────────────

    async def cancel_run(self, run_id: str) -> bool:
        """Cancel an active run. Returns False if it is unknown or already finished."""
        scheduler = self._schedulers.get(run_id)
        if scheduler is None or not scheduler.cancel():
            return False
        task = self._tasks.get(run_id)
        if task:
            await asyncio.gather(task, return_exceptions=True)
        return True

    async def wait(self, run_id: str) -> Run | None:
        """Wait for a run to finish and return its ledger record."""
        task = self._tasks.get(run_id)
        if task:
            await asyncio.gather(task, return_exceptions=True)
        return await self._ledger.get(run_id)

    async def drain(self) -> None:
        """Wait until no run is active (including runs started while waiting)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            for run_id, task in list(self._tasks.items()):
                if task.done():
                    self._tasks.pop(run_id, None)

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to record their outcome."""
        for scheduler in list(self._schedulers.values()):
            scheduler.cancel()
        await self.drain()
