"""Job executor interface and the HTTP implementation.

The orchestrator never runs job bodies itself. A job is handed to an external
executor by run id and job name, with an opaque target string and the resolved
parameters. The scheduler polls the returned handle until the executor reports
a terminal status.

Key exports:
    JobExecutor — Protocol the scheduler depends on
    HttpJobExecutor — httpx client for a REST job runner
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from switchyard.pipeline.errors import ExecutorFailure
from switchyard.pipeline.models import JobStatus

logger = logging.getLogger("switchyard.pipeline.executor")

_STATUS_MAP = {
    "pending": JobStatus.RUNNING,
    "queued": JobStatus.RUNNING,
    "running": JobStatus.RUNNING,
    "in_progress": JobStatus.RUNNING,
    "success": JobStatus.SUCCESS,
    "succeeded": JobStatus.SUCCESS,
    "completed": JobStatus.SUCCESS,
    "failure": JobStatus.FAILURE,
    "failed": JobStatus.FAILURE,
    "error": JobStatus.FAILURE,
    "cancelled": JobStatus.FAILURE,
    "canceled": JobStatus.FAILURE,
}


@runtime_checkable
class JobExecutor(Protocol):
    """External capability that runs job bodies."""

    max_concurrency: int

    async def submit(self, job_name: str, target: str, params: dict[str, str], *, run_id: str) -> str:
        """Start job ``job_name`` of run ``run_id`` and return an execution handle."""
        ...

    async def poll(self, handle: str) -> JobStatus:
        """Current status of a submitted job (running, success or failure)."""
        ...


def parse_status(raw: str | None) -> JobStatus:
    """Map an executor status string onto a job status; unknown means still running."""
    status = _STATUS_MAP.get((raw or "").lower())
    if status is None:
        logger.debug("Unknown executor status %r, treating as running", raw)
        return JobStatus.RUNNING
    return status


class HttpJobExecutor:
    """Executor backed by a REST job runner.

    ``POST /jobs`` with ``{"run_id", "job", "target", "params"}`` returns ``{"id"}``;
    ``GET /jobs/{id}`` returns ``{"status"}``; ``POST /jobs/{id}/cancel``
    requests cancellation.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        max_concurrency: int = 4,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=self.timeout)
        logger.info("HTTP job executor started (%s, max_concurrency=%d)", self.base_url, self.max_concurrency)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Job executor not started")
        return self._client

    async def submit(self, job_name: str, target: str, params: dict[str, str], *, run_id: str) -> str:
        body = {"run_id": run_id, "job": job_name, "target": target, "params": params}
        try:
            resp = await self.client.post("/jobs", json=body)
            resp.raise_for_status()
            handle = resp.json()["id"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise ExecutorFailure(job_name, f"submit failed: {exc}") from exc
        logger.debug("Submitted %s/%s (%s) as %s", run_id, job_name, target, handle)
        return str(handle)

    async def poll(self, handle: str) -> JobStatus:
        try:
            resp = await self.client.get(f"/jobs/{handle}")
            resp.raise_for_status()
            raw = resp.json().get("status")
        except (httpx.HTTPError, ValueError) as exc:
            raise ExecutorFailure(handle, f"poll failed: {exc}") from exc
        return parse_status(raw)

    async def cancel(self, handle: str) -> None:
        try:
            resp = await self.client.post(f"/jobs/{handle}/cancel")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExecutorFailure(handle, f"cancel failed: {exc}") from exc
