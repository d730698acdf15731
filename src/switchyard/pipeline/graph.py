"""Job graph builder — DAG validation at load time and per-run planning.

Key exports:
    validate_definition — reject malformed definitions once, at load
    JobGraph — adjacency + stable topological order for one pipeline
    JobPlan / build — per-run initial job states and rendered executor targets
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from switchyard.models import EventKind
from switchyard.pipeline.errors import DefinitionError
from switchyard.pipeline.models import (
    JobOutcome,
    JobStatus,
    PipelineDefinition,
    SkipReason,
)

logger = logging.getLogger("switchyard.pipeline.graph")


def _topological_order(definition: PipelineDefinition) -> tuple[list[str], list[str]]:
    """Kahn's algorithm. Returns (order, stuck) where ``stuck`` is non-empty on a cycle.

    Ties are broken by declaration order so the order is stable across loads.
    """
    position = {name: i for i, name in enumerate(definition.job_names)}
    indeg = {job.name: 0 for job in definition.jobs}
    dependents: dict[str, set[str]] = {job.name: set() for job in definition.jobs}
    for job in definition.jobs:
        for dep in job.depends_on:
            if dep in dependents:
                dependents[dep].add(job.name)
                indeg[job.name] += 1

    heap = [(position[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (position[child], child))

    stuck = sorted(n for n, d in indeg.items() if d > 0)
    return order, stuck


def validate_definition(
    definition: PipelineDefinition, path_groups: Iterable[str] = ()
) -> None:
    """Validate a pipeline definition. Raises DefinitionError listing every problem."""
    errors: list[str] = []
    names = set(definition.job_names)
    known_groups = set(path_groups)

    for job in definition.jobs:
        if job.name in job.depends_on:
            errors.append(f"Job '{job.name}' depends on itself")
        for dep in sorted(job.depends_on - names):
            errors.append(f"Job '{job.name}' depends on unknown job '{dep}'")
        if job.condition and job.condition not in known_groups:
            errors.append(f"Job '{job.name}' condition references unknown path group '{job.condition}'")

    for i, rule in enumerate(definition.triggers):
        for group in sorted(rule.path_groups - known_groups):
            errors.append(f"Trigger {i} references unknown path group '{group}'")
        if rule.event_kind == EventKind.RUN_COMPLETED and not rule.upstream_pipeline:
            errors.append(f"Trigger {i}: run_completed triggers require 'upstream_pipeline'")

    if not errors:
        _, stuck = _topological_order(definition)
        if stuck:
            errors.append(f"Job graph has a cycle. Stuck jobs: {stuck}")

    if errors:
        raise DefinitionError(definition.name, errors)


@dataclass
class JobGraph:
    """Dependency structure of one pipeline, computed once per definition."""

    pipeline: str
    order: list[str]
    deps: dict[str, frozenset[str]]
    dependents: dict[str, frozenset[str]]

    @classmethod
    def from_definition(cls, definition: PipelineDefinition) -> JobGraph:
        order, stuck = _topological_order(definition)
        if stuck:
            raise DefinitionError(definition.name, [f"Job graph has a cycle. Stuck jobs: {stuck}"])
        deps = {job.name: frozenset(job.depends_on) for job in definition.jobs}
        dependents: dict[str, set[str]] = {name: set() for name in deps}
        for name, parents in deps.items():
            for parent in parents:
                dependents[parent].add(name)
        return cls(
            pipeline=definition.name,
            order=order,
            deps=deps,
            dependents={k: frozenset(v) for k, v in dependents.items()},
        )

    def descendants(self, name: str) -> list[str]:
        """All transitive dependents of ``name``, in topological order."""
        seen: set[str] = set()
        stack = list(self.dependents.get(name, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.dependents[node])
        return [n for n in self.order if n in seen]

    def ready(self, outcomes: dict[str, JobOutcome]) -> list[str]:
        """Pending jobs whose dependencies have all succeeded."""
        return [
            name
            for name in self.order
            if outcomes[name].status == JobStatus.PENDING
            and all(outcomes[d].status == JobStatus.SUCCESS for d in self.deps[name])
        ]

    def initial_outcomes(
        self, definition: PipelineDefinition, touched_groups: set[str]
    ) -> dict[str, JobOutcome]:
        """Per-run starting states: condition-gated jobs whose group was not touched
        start skipped, and so does everything downstream of them."""
        outcomes = {name: JobOutcome() for name in self.order}
        for name in self.order:
            if outcomes[name].status != JobStatus.PENDING:
                continue
            job = definition.get_job(name)
            if job and job.condition and job.condition not in touched_groups:
                outcomes[name] = JobOutcome(
                    status=JobStatus.SKIPPED, skip_reason=SkipReason.CONDITION
                )
                for child in self.descendants(name):
                    if outcomes[child].status == JobStatus.PENDING:
                        outcomes[child] = JobOutcome(
                            status=JobStatus.SKIPPED, skip_reason=SkipReason.CONDITION
                        )
        return outcomes


@dataclass
class JobPlan:
    """Everything the scheduler needs for one run."""

    graph: JobGraph
    outcomes: dict[str, JobOutcome]
    targets: dict[str, str] = field(default_factory=dict)


def build(
    definition: PipelineDefinition,
    resolved_params: dict[str, str],
    touched_groups: set[str],
    *,
    graph: JobGraph | None = None,
) -> JobPlan:
    """Expand a definition into a per-run job plan.

    ``graph`` is the cached graph from load time; it is computed on the fly
    when omitted. Executor targets are rendered only for jobs that will run.
    """
    graph = graph or JobGraph.from_definition(definition)
    outcomes = graph.initial_outcomes(definition, touched_groups)
    targets = {
        job.name: job.executor_ref.render(resolved_params)
        for job in definition.jobs
        if outcomes[job.name].status == JobStatus.PENDING
    }
    skipped = [n for n, o in outcomes.items() if o.status == JobStatus.SKIPPED]
    if skipped:
        logger.debug("Pipeline '%s': jobs skipped by condition: %s", definition.name, skipped)
    return JobPlan(graph=graph, outcomes=outcomes, targets=targets)
