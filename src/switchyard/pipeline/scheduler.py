"""Execution scheduler — drives one run's job graph to a terminal outcome.

Job state machine::

    pending → running → success | failure
    pending → skipped   (condition unmet, ancestor failed/skipped, cancel, abort)

A job is submitted only once every dependency has succeeded. When a job
fails, every pending descendant is skipped at once without waiting for
unrelated siblings. Each transition is committed to the ledger before the
scheduler moves on; the run outcome is computed only after all jobs are
terminal.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from switchyard.pipeline.errors import CancelRequested, LedgerError
from switchyard.pipeline.executor import JobExecutor
from switchyard.pipeline.graph import JobPlan
from switchyard.pipeline.ledger import RunLedger
from switchyard.pipeline.models import JobOutcome, JobStatus, Run, SkipReason

logger = logging.getLogger("switchyard.pipeline.scheduler")


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def abort_run(run: Run, error: Exception, ledger: RunLedger) -> Run:
    """Record a run-level failure: every unfinished job is skipped as aborted."""
    for name, outcome in run.jobs.items():
        if not outcome.is_terminal:
            run.jobs[name] = outcome.model_copy(
                update={"status": JobStatus.SKIPPED, "skip_reason": SkipReason.ABORTED, "ended_at": _now()}
            )
    run.error_kind = type(error).__name__
    run.error_message = str(error)
    run.outcome = run.compute_outcome()
    run.ended_at = _now()
    logger.warning("Run %s (%s) aborted: %s", run.run_id, run.pipeline_name, error)
    await ledger.finish(run)
    return run


class ExecutionScheduler:
    """Runs the pending jobs of one ``Run`` against an executor.

    Usage:
        scheduler = ExecutionScheduler(run, plan, executor, ledger)
        run = await scheduler.execute()
    """

    def __init__(
        self,
        run: Run,
        plan: JobPlan,
        executor: JobExecutor,
        ledger: RunLedger,
        *,
        poll_interval: float = 2.0,
        slots: asyncio.Semaphore | None = None,
    ):
        self.run = run
        self.plan = plan
        self.graph = plan.graph
        self.executor = executor
        self.ledger = ledger
        self.poll_interval = poll_interval

        # Executor capacity; the engine passes one semaphore shared by all runs
        if slots is None:
            slots = asyncio.Semaphore(max(1, getattr(executor, "max_concurrency", 1)))
        self._slots = slots
        self._tasks: dict[str, asyncio.Task] = {}
        self._wake = asyncio.Event()
        self._cancel_requested = False

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    # ── Public API ───────────────────────────────────────────────────────────

    async def execute(self) -> Run:
        """Drive the run to completion and write its outcome to the ledger."""
        logger.info(
            "Run %s (%s) started on %s: %d jobs",
            self.run.run_id,
            self.run.pipeline_name,
            self.run.branch,
            len(self.run.jobs),
        )
        try:
            await self._drive()
        except Exception as exc:
            logger.exception("Scheduler error in run %s", self.run.run_id)
            await self._stop_tasks()
            return await abort_run(self.run, exc, self.ledger)

        if self._cancel_requested:
            return await self._finish_cancelled()
        return await self._finish()

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the run is already finished."""
        if self.run.is_terminal or self._cancel_requested:
            return False
        self._cancel_requested = True
        self._wake.set()
        return True

    async def abort(self, error: Exception) -> Run:
        """Fail the run before (or instead of) scheduling any job."""
        await self._stop_tasks()
        return await abort_run(self.run, error, self.ledger)

    # ── Main loop ────────────────────────────────────────────────────────────

    async def _drive(self) -> None:
        while not self._cancel_requested:
            for name in self.graph.ready(self.run.jobs):
                if name not in self._tasks:
                    self._tasks[name] = asyncio.create_task(
                        self._run_job(name), name=f"{self.run.run_id}:{name}"
                    )

            active = [t for t in self._tasks.values() if not t.done()]
            if not active:
                break

            waiter = asyncio.ensure_future(self._wake.wait())
            try:
                done, _ = await asyncio.wait([*active, waiter], return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
            for task in done:
                if task is not waiter and not task.cancelled() and task.exception():
                    raise task.exception()

        leftover = [n for n, o in self.run.jobs.items() if o.status == JobStatus.PENDING]
        if leftover and not self._cancel_requested:
            logger.warning("Run %s: unreachable pending jobs %s, skipping", self.run.run_id, leftover)
            for name in leftover:
                await self._transition(
                    name, JobOutcome(status=JobStatus.SKIPPED, skip_reason=SkipReason.UPSTREAM, ended_at=_now())
                )

    async def _run_job(self, name: str) -> None:
        async with self._slots:
            if self._cancel_requested or self.run.jobs[name].status != JobStatus.PENDING:
                return

            target = self.plan.targets[name]
            params = self.run.activation.resolved_params
            started = _now()
            await self._transition(name, JobOutcome(status=JobStatus.RUNNING, started_at=started))

            handle: str | None = None
            error: str | None = None
            try:
                handle = await self.executor.submit(name, target, params, run_id=self.run.run_id)
                await self._transition(
                    name, JobOutcome(status=JobStatus.RUNNING, started_at=started, handle=handle)
                )
                status = JobStatus.RUNNING
                while status == JobStatus.RUNNING:
                    await asyncio.sleep(self.poll_interval)
                    status = await self.executor.poll(handle)
            except Exception as exc:  # executor errors are job failures, never retried
                logger.warning("Job %s of run %s failed in executor: %s", name, self.run.run_id, exc)
                status = JobStatus.FAILURE
                error = str(exc)

        await self._transition(
            name,
            JobOutcome(status=status, started_at=started, ended_at=_now(), handle=handle, error=error),
        )
        logger.info("Run %s: job %s %s", self.run.run_id, name, status.value)
        if status == JobStatus.FAILURE:
            await self._skip_descendants(name)

    async def _skip_descendants(self, name: str) -> None:
        for child in self.graph.descendants(name):
            if self.run.jobs[child].status == JobStatus.PENDING:
                await self._transition(
                    child,
                    JobOutcome(status=JobStatus.SKIPPED, skip_reason=SkipReason.UPSTREAM, ended_at=_now()),
                )

    async def _transition(self, name: str, outcome: JobOutcome) -> None:
        self.run.jobs[name] = outcome
        try:
            await self.ledger.record_job(self.run.run_id, name, outcome)
        except LedgerError:
            # finish() rewrites every job row, so the final state still lands
            logger.exception("Failed to record %s -> %s for run %s", name, outcome.status.value, self.run.run_id)

    # ── Completion ───────────────────────────────────────────────────────────

    async def _stop_tasks(self) -> None:
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _finish(self) -> Run:
        self.run.outcome = self.run.compute_outcome()
        self.run.ended_at = _now()
        await self._write_outcome()
        logger.info(
            "Run %s (%s) finished: %s in %.1fs",
            self.run.run_id,
            self.run.pipeline_name,
            self.run.outcome.value,
            self.run.duration_seconds,
        )
        return self.run

    async def _finish_cancelled(self) -> Run:
        await self._stop_tasks()
        cancel = getattr(self.executor, "cancel", None)
        for name, outcome in self.run.jobs.items():
            if outcome.status == JobStatus.RUNNING and outcome.handle and cancel:
                try:
                    await cancel(outcome.handle)
                except Exception as exc:
                    logger.warning("Best-effort cancel of job %s (%s) failed: %s", name, outcome.handle, exc)

        for name, outcome in self.run.jobs.items():
            if not outcome.is_terminal:
                self.run.jobs[name] = outcome.model_copy(
                    update={"status": JobStatus.SKIPPED, "skip_reason": SkipReason.CANCELLED, "ended_at": _now()}
                )
        err = CancelRequested(self.run.run_id)
        self.run.error_kind = type(err).__name__
        self.run.error_message = str(err)
        logger.info("Run %s (%s) cancelled", self.run.run_id, self.run.pipeline_name)
        return await self._finish()

    async def _write_outcome(self) -> None:
        try:
            await self.ledger.finish(self.run)
        except LedgerError:
            logger.exception("Failed to write outcome of run %s", self.run.run_id)
