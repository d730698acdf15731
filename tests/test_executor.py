"""Contract tests for HttpJobExecutor — request shapes and error mapping."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from switchyard.pipeline.errors import ExecutorFailure
from switchyard.pipeline.executor import HttpJobExecutor, JobExecutor, parse_status
from switchyard.pipeline.models import JobStatus

BASE = "http://runner.test"


@pytest.fixture
async def executor():
    ex = HttpJobExecutor(BASE + "/", token="runner-token", max_concurrency=3)
    await ex.start()
    yield ex
    await ex.close()


class TestParseStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("queued", JobStatus.RUNNING),
            ("in_progress", JobStatus.RUNNING),
            ("SUCCEEDED", JobStatus.SUCCESS),
            ("failed", JobStatus.FAILURE),
            ("cancelled", JobStatus.FAILURE),
            ("something-new", JobStatus.RUNNING),
            (None, JobStatus.RUNNING),
        ],
    )
    def test_mapping(self, raw, expected):
        assert parse_status(raw) == expected


class TestProtocol:
    def test_http_executor_satisfies_protocol(self):
        assert isinstance(HttpJobExecutor(BASE), JobExecutor)

    def test_not_started(self):
        with pytest.raises(RuntimeError, match="not started"):
            HttpJobExecutor(BASE).client


class TestSubmit:
    @respx.mock
    async def test_request_shape(self, executor):
        route = respx.post(f"{BASE}/jobs").mock(return_value=httpx.Response(201, json={"id": 42}))

        handle = await executor.submit("apply", "apply:east", {"cluster": "east"}, run_id="run-1")

        assert handle == "42"
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer runner-token"
        assert json.loads(request.content) == {
            "run_id": "run-1",
            "job": "apply",
            "target": "apply:east",
            "params": {"cluster": "east"},
        }

    @respx.mock
    async def test_http_error(self, executor):
        respx.post(f"{BASE}/jobs").mock(return_value=httpx.Response(503))
        with pytest.raises(ExecutorFailure, match="submit failed"):
            await executor.submit("apply", "apply", {}, run_id="run-1")

    @respx.mock
    async def test_missing_id(self, executor):
        respx.post(f"{BASE}/jobs").mock(return_value=httpx.Response(200, json={"ok": True}))
        with pytest.raises(ExecutorFailure):
            await executor.submit("apply", "apply", {}, run_id="run-1")

    @respx.mock
    async def test_connection_error(self, executor):
        respx.post(f"{BASE}/jobs").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ExecutorFailure):
            await executor.submit("apply", "apply", {}, run_id="run-1")


class TestPoll:
    @respx.mock
    async def test_status(self, executor):
        respx.get(f"{BASE}/jobs/42").mock(return_value=httpx.Response(200, json={"status": "success"}))
        assert await executor.poll("42") == JobStatus.SUCCESS

    @respx.mock
    async def test_not_found(self, executor):
        respx.get(f"{BASE}/jobs/42").mock(return_value=httpx.Response(404))
        with pytest.raises(ExecutorFailure, match="poll failed"):
            await executor.poll("42")


class TestCancel:
    @respx.mock
    async def test_request_shape(self, executor):
        route = respx.post(f"{BASE}/jobs/42/cancel").mock(return_value=httpx.Response(202))
        await executor.cancel("42")
        assert route.called

    @respx.mock
    async def test_error(self, executor):
        respx.post(f"{BASE}/jobs/42/cancel").mock(return_value=httpx.Response(500))
        with pytest.raises(ExecutorFailure):
            await executor.cancel("42")
