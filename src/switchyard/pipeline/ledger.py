"""Run ledger — append-only SQLite record of every pipeline run.

Key exports:
    RunLedger — append(), get(), latest(), list_runs(), record_job(), finish()

Each run is one row in ``runs`` plus one row per job in ``run_jobs``. Job
transitions are committed one at a time; a run whose outcome is terminal is
immutable.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import aiosqlite

from switchyard.pipeline.errors import LedgerError
from switchyard.pipeline.models import (
    Activation,
    JobOutcome,
    JobStatus,
    Run,
    RunOutcome,
    SkipReason,
)

logger = logging.getLogger("switchyard.pipeline.ledger")


class RunLedger:
    """SQLite-backed persistence for pipeline runs.

    Takes an already-open aiosqlite connection. Call `initialize()` to create
    tables. All access is serialized through one lock so readers only ever see
    committed state.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: str) -> RunLedger:
        """Open (or create) a ledger database at ``path``."""
        db = await aiosqlite.connect(path)
        ledger = cls(db)
        await ledger.initialize()
        return ledger

    async def initialize(self) -> None:
        """Create ledger tables if they don't exist."""
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run ledger tables initialized")

    async def close(self) -> None:
        await self._db.close()

    # ── Writes ───────────────────────────────────────────────────────────────

    async def append(self, run: Run) -> None:
        """Insert a new run and its initial job states atomically."""
        async with self._lock:
            try:
                await self._db.execute(
                    """
                    INSERT INTO runs (
                        run_id, pipeline_name, branch, activation,
                        started_at, ended_at, outcome, error_kind, error_message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run.run_id,
                        run.pipeline_name,
                        run.branch,
                        run.activation.model_dump_json(),
                        _dt_to_str(run.started_at),
                        _dt_to_str(run.ended_at),
                        run.outcome.value,
                        run.error_kind,
                        run.error_message,
                    ),
                )
                await self._db.executemany(
                    """
                    INSERT INTO run_jobs (
                        run_id, job_name, position, status,
                        started_at, ended_at, skip_reason, handle, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (run.run_id, name, i, *_job_columns(outcome))
                        for i, (name, outcome) in enumerate(run.jobs.items())
                    ],
                )
                await self._db.commit()
            except aiosqlite.Error as exc:
                await self._db.rollback()
                raise LedgerError(f"Failed to append run {run.run_id}: {exc}") from exc

    async def record_job(self, run_id: str, job_name: str, outcome: JobOutcome) -> None:
        """Commit one job transition. Rejected once the job or run is terminal."""
        async with self._lock:
            try:
                cursor = await self._db.execute(
                    """
                    UPDATE run_jobs SET
                        status = ?, started_at = ?, ended_at = ?,
                        skip_reason = ?, handle = ?, error = ?
                    WHERE run_id = ? AND job_name = ?
                      AND status NOT IN ('success', 'failure', 'skipped')
                      AND EXISTS (
                          SELECT 1 FROM runs WHERE run_id = ? AND outcome = 'pending'
                      )
                    """,
                    (*_job_columns(outcome), run_id, job_name, run_id),
                )
                await self._db.commit()
            except aiosqlite.Error as exc:
                raise LedgerError(f"Failed to record job {job_name} of {run_id}: {exc}") from exc
        if cursor.rowcount == 0:
            raise LedgerError(
                f"Job '{job_name}' of run {run_id} is unknown or already terminal"
            )

    async def finish(self, run: Run) -> None:
        """Write the terminal outcome (and final job states) of a run."""
        if not run.is_terminal:
            raise LedgerError(f"Run {run.run_id} has no terminal outcome")
        async with self._lock:
            try:
                cursor = await self._db.execute(
                    """
                    UPDATE runs SET
                        outcome = ?, ended_at = ?, error_kind = ?, error_message = ?
                    WHERE run_id = ? AND outcome = 'pending'
                    """,
                    (
                        run.outcome.value,
                        _dt_to_str(run.ended_at),
                        run.error_kind,
                        run.error_message,
                        run.run_id,
                    ),
                )
                if cursor.rowcount == 0:
                    await self._db.rollback()
                    raise LedgerError(f"Run {run.run_id} is unknown or already terminal")
                await self._db.executemany(
                    """
                    UPDATE run_jobs SET
                        status = ?, started_at = ?, ended_at = ?,
                        skip_reason = ?, handle = ?, error = ?
                    WHERE run_id = ? AND job_name = ?
                    """,
                    [(*_job_columns(o), run.run_id, name) for name, o in run.jobs.items()],
                )
                await self._db.commit()
            except aiosqlite.Error as exc:
                await self._db.rollback()
                raise LedgerError(f"Failed to finish run {run.run_id}: {exc}") from exc
        logger.info(
            "Run %s (%s) finished: %s", run.run_id, run.pipeline_name, run.outcome.value
        )

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get(self, run_id: str) -> Run | None:
        """Fetch a run by ID."""
        async with self._lock:
            try:
                cursor = await self._db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
                row = await cursor.fetchone()
                if not row:
                    return None
                return await self._load_run(row)
            except aiosqlite.Error as exc:
                raise LedgerError(f"Failed to read run {run_id}: {exc}") from exc

    async def latest(self, pipeline_name: str, branch: str) -> Run | None:
        """Most recently created run of a pipeline on a branch (any outcome)."""
        async with self._lock:
            try:
                cursor = await self._db.execute(
                    "SELECT * FROM runs WHERE pipeline_name = ? AND branch = ? "
                    "ORDER BY seq DESC LIMIT 1",
                    (pipeline_name, branch),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return await self._load_run(row)
            except aiosqlite.Error as exc:
                raise LedgerError(
                    f"Failed to query latest run of '{pipeline_name}' on {branch}: {exc}"
                ) from exc

    async def list_runs(
        self,
        *,
        pipeline_name: str | None = None,
        outcome: RunOutcome | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """Most recent runs first, optionally filtered."""
        clauses: list[str] = []
        args: list[object] = []
        if pipeline_name:
            clauses.append("pipeline_name = ?")
            args.append(pipeline_name)
        if outcome:
            clauses.append("outcome = ?")
            args.append(outcome.value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        async with self._lock:
            try:
                cursor = await self._db.execute(
                    f"SELECT * FROM runs {where}ORDER BY seq DESC LIMIT ?",
                    (*args, limit),
                )
                rows = await cursor.fetchall()
                return [await self._load_run(r) for r in rows]
            except aiosqlite.Error as exc:
                raise LedgerError(f"Failed to list runs: {exc}") from exc

    async def _load_run(self, row: aiosqlite.Row) -> Run:
        cursor = await self._db.execute(
            "SELECT * FROM run_jobs WHERE run_id = ? ORDER BY position",
            (row["run_id"],),
        )
        job_rows = await cursor.fetchall()
        return _row_to_run(row, job_rows)


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL UNIQUE,
    pipeline_name TEXT NOT NULL,
    branch TEXT NOT NULL,
    activation TEXT NOT NULL,

    started_at TEXT NOT NULL,
    ended_at TEXT,
    outcome TEXT NOT NULL DEFAULT 'pending',

    error_kind TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_runs_pipeline_branch
    ON runs(pipeline_name, branch, seq);
CREATE INDEX IF NOT EXISTS idx_runs_outcome
    ON runs(outcome);

CREATE TABLE IF NOT EXISTS run_jobs (
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    job_name TEXT NOT NULL,
    position INTEGER NOT NULL,

    status TEXT NOT NULL DEFAULT 'pending',
    started_at TEXT,
    ended_at TEXT,
    skip_reason TEXT,
    handle TEXT,
    error TEXT,

    PRIMARY KEY (run_id, job_name)
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _job_columns(outcome: JobOutcome) -> tuple:
    return (
        outcome.status.value,
        _dt_to_str(outcome.started_at),
        _dt_to_str(outcome.ended_at),
        outcome.skip_reason.value if outcome.skip_reason else None,
        outcome.handle,
        outcome.error,
    )


def _row_to_job_outcome(row: aiosqlite.Row) -> JobOutcome:
    return JobOutcome(
        status=JobStatus(row["status"]),
        started_at=_str_to_dt(row["started_at"]),
        ended_at=_str_to_dt(row["ended_at"]),
        skip_reason=SkipReason(row["skip_reason"]) if row["skip_reason"] else None,
        handle=row["handle"],
        error=row["error"],
    )


def _row_to_run(row: aiosqlite.Row, job_rows: list[aiosqlite.Row]) -> Run:
    """Convert database rows to a Run model."""
    return Run(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        activation=Activation.model_validate_json(row["activation"]),
        started_at=_str_to_dt(row["started_at"]),
        jobs={r["job_name"]: _row_to_job_outcome(r) for r in job_rows},
        outcome=RunOutcome(row["outcome"]),
        ended_at=_str_to_dt(row["ended_at"]),
        error_kind=row["error_kind"],
        error_message=row["error_message"],
    )
