"""Shared fixtures: a tmp-path run ledger and a scriptable in-process executor."""

from __future__ import annotations

import asyncio
import itertools

import aiosqlite
import pytest_asyncio

from switchyard.models import Event, EventKind
from switchyard.pipeline.errors import ExecutorFailure
from switchyard.pipeline.ledger import RunLedger
from switchyard.pipeline.models import (
    Activation,
    JobOutcome,
    JobStatus,
    PipelineDefinition,
    Run,
    RunOutcome,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    db_path = tmp_path / "test_ledger.db"
    async with aiosqlite.connect(str(db_path)) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def ledger(db):
    led = RunLedger(db)
    await led.initialize()
    return led


# ── Fake Executor ────────────────────────────────────────────────────────────


class FakeExecutor:
    """In-process JobExecutor.

    Every target succeeds unless listed in ``results``. Targets in ``blocked``
    keep reporting running until ``release()`` is called. ``fail_submit``
    targets raise ExecutorFailure on submit.
    """

    def __init__(
        self,
        results: dict[str, JobStatus] | None = None,
        *,
        max_concurrency: int = 8,
        blocked: set[str] | None = None,
        fail_submit: set[str] | None = None,
    ):
        self.results = results or {}
        self.max_concurrency = max_concurrency
        self.blocked = set(blocked or ())
        self.fail_submit = set(fail_submit or ())

        # (run_id, job_name, target, params) per submission
        self.submitted: list[tuple[str, str, str, dict[str, str]]] = []
        self.cancelled: list[str] = []
        self.running = 0
        self.peak_running = 0
        self._ids = itertools.count(1)
        self._targets: dict[str, str] = {}
        self._released = asyncio.Event()

    def release(self) -> None:
        self._released.set()

    async def submit(self, job_name: str, target: str, params: dict[str, str], *, run_id: str) -> str:
        if target in self.fail_submit:
            raise ExecutorFailure(target, "runner rejected job")
        handle = f"h-{next(self._ids)}"
        self._targets[handle] = target
        self.submitted.append((run_id, job_name, target, dict(params)))
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        return handle

    async def poll(self, handle: str) -> JobStatus:
        target = self._targets[handle]
        if target in self.blocked and not self._released.is_set():
            await asyncio.sleep(0.01)
            return JobStatus.RUNNING
        # give sibling jobs a chance to start before this one finishes
        await asyncio.sleep(0.01)
        self.running -= 1
        return self.results.get(target, JobStatus.SUCCESS)

    async def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)

    @property
    def submitted_targets(self) -> list[str]:
        return [target for _, _, target, _ in self.submitted]


# ── Factory Helpers ──────────────────────────────────────────────────────────


def make_event(kind: EventKind = EventKind.PUSH, branch: str = "main", **overrides) -> Event:
    return Event(kind=kind, branch=branch, **overrides)


def make_definition(name: str = "ci", **overrides) -> PipelineDefinition:
    data: dict = {
        "name": name,
        "triggers": [{"event": "push"}],
        "jobs": [{"name": "build", "executor": "build"}],
    }
    data.update(overrides)
    return PipelineDefinition.model_validate(data)


def make_run(
    pipeline_name: str = "ci",
    branch: str = "main",
    outcome: RunOutcome = RunOutcome.SUCCESS,
    params: dict[str, str] | None = None,
    jobs: dict[str, JobOutcome] | None = None,
) -> Run:
    event = make_event(branch=branch)
    return Run(
        pipeline_name=pipeline_name,
        activation=Activation(
            pipeline_name=pipeline_name, event=event, resolved_params=params or {}
        ),
        jobs=jobs if jobs is not None else {"build": JobOutcome()},
        outcome=outcome,
    )


async def record_run(ledger: RunLedger, run: Run) -> Run:
    """Append a run and, if its outcome is terminal, finish it."""
    outcome = run.outcome
    pending = run.model_copy(update={"outcome": RunOutcome.PENDING})
    await ledger.append(pending)
    if outcome != RunOutcome.PENDING:
        pending.outcome = outcome
        await ledger.finish(pending)
    return pending
