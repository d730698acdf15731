"""End-to-end tests for the pipeline engine: events in, runs in the ledger out."""

from __future__ import annotations

import asyncio

import pytest

from switchyard.config import SwitchyardConfig
from switchyard.models import EventKind
from switchyard.pipeline.engine import PipelineEngine
from switchyard.pipeline.errors import DefinitionError
from switchyard.pipeline.gates import DenyReason
from switchyard.pipeline.models import JobStatus, PathGroup, RunOutcome, SkipReason

from conftest import FakeExecutor, make_definition, make_event

GROUPS = [
    PathGroup(name="backend", patterns=["backend/**"]),
    PathGroup(name="frontend", patterns=["frontend/**"]),
]

CI = {
    "triggers": [{"event": "push"}, {"event": "manual"}],
    "jobs": [
        {"name": "lint", "executor": "lint"},
        {"name": "test-backend", "executor": "pytest", "condition": "backend"},
        {"name": "test-frontend", "executor": "npm-test", "condition": "frontend"},
    ],
    "default_params": {"sha": "unknown"},
}

DEPLOY = {
    "triggers": [
        {"event": "run_completed", "upstream_pipeline": "ci", "branches": ["main"]},
        {"event": "manual", "upstream_pipeline": "ci"},
    ],
    "gate": {"required_branches": ["main"]},
    "jobs": [
        {"name": "apply", "executor": "apply:{cluster}"},
        {"name": "smoke", "executor": "smoke:{cluster}", "depends_on": ["apply"]},
    ],
    "default_params": {"cluster": "staging"},
}


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def engine(ledger, executor):
    eng = PipelineEngine(ledger, executor, path_groups=GROUPS, upstream_retry_delay=0, poll_interval=0)
    eng.add_pipeline(make_definition("ci", **CI))
    eng.add_pipeline(make_definition("deploy", **DEPLOY))
    return eng


@pytest.fixture
def chained(engine):
    """Feed run_completed events straight back into the engine."""
    emitted = []

    async def on_completed(event):
        emitted.append(event)
        await engine.handle_event(event)

    engine.set_run_completed_callback(on_completed)
    return emitted


class TestRegistration:
    def test_add_pipeline_rejects_cycle(self, engine):
        bad = make_definition(
            "loop",
            jobs=[
                {"name": "a", "executor": "a", "depends_on": ["b"]},
                {"name": "b", "executor": "b", "depends_on": ["a"]},
            ],
        )
        with pytest.raises(DefinitionError):
            engine.add_pipeline(bad)
        assert engine.get_pipeline("loop") is None

    def test_load_rejects_only_invalid_pipelines(self, ledger, executor):
        config = SwitchyardConfig(
            project={"name": "test"},
            path_groups={"backend": ["backend/**"]},
            pipelines={
                "ci": {"triggers": [{"event": "push"}], "jobs": [{"name": "build", "executor": "make"}]},
                "broken": {"jobs": [{"name": "a", "executor": "a", "depends_on": ["ghost"]}]},
                "malformed": {"jobs": []},
            },
        )
        engine = PipelineEngine(ledger, executor)
        errors = engine.load(config)

        assert list(engine.pipelines) == ["ci"]
        assert set(engine.load_errors) == {"broken", "malformed"}
        assert any("ghost" in e for e in errors)
        assert any("malformed" in e for e in errors)

    def test_unknown_upstream_reported(self, ledger, executor):
        engine = PipelineEngine(ledger, executor)
        engine.add_pipeline(make_definition("deploy", triggers=[{"event": "run_completed", "upstream_pipeline": "ci"}]))
        errors = engine.validate_all_pipelines()
        assert errors == ["Pipeline 'deploy': trigger 0 references unknown upstream pipeline 'ci'"]

    def test_load_applies_settings(self, ledger, executor):
        config = SwitchyardConfig(
            project={"name": "test"},
            path_groups={"docs": "docs/**"},
            gate={"upstream_retry_delay": 0.25},
            executor={"poll_interval": 0.5},
        )
        engine = PipelineEngine(ledger, executor)
        assert engine.load(config) == []
        assert engine._groups == [PathGroup(name="docs", patterns=["docs/**"])]
        assert engine._upstream_retry_delay == 0.25
        assert engine._poll_interval == 0.5


class TestPushActivation:
    async def test_changed_paths_select_jobs(self, engine, executor):
        event = make_event(changed_paths=frozenset({"backend/app.py"}))

        runs = await engine.handle_event(event)
        await engine.drain()

        assert [r.pipeline_name for r in runs] == ["ci"]
        run = await engine.ledger.get(runs[0].run_id)
        assert run.outcome == RunOutcome.SUCCESS
        assert run.jobs["test-frontend"].skip_reason == SkipReason.CONDITION
        assert sorted(executor.submitted_targets) == ["lint", "pytest"]
        assert run.activation.event.id == event.id

    async def test_no_match(self, engine):
        assert await engine.handle_event(make_event(EventKind.PULL_REQUEST)) == []
        assert await engine.ledger.list_runs() == []


class TestChaining:
    async def test_success_on_main_chains_deploy(self, engine, executor, chained):
        runs = await engine.handle_event(make_event(manual_inputs={}, changed_paths=frozenset({"backend/x.py"})))
        await engine.drain()

        ci_run = runs[0]
        deploys = await engine.ledger.list_runs(pipeline_name="deploy")
        assert len(deploys) == 1
        deploy = deploys[0]
        assert deploy.outcome == RunOutcome.SUCCESS
        assert deploy.activation.upstream_run_id == ci_run.run_id
        params = deploy.activation.resolved_params
        assert {"cluster": "staging", "sha": "unknown", "branch": "main"}.items() <= params.items()
        assert params["event_id"] == ci_run.activation.event.id
        assert "apply:staging" in executor.submitted_targets
        assert [e.source_run_id for e in chained][:1] == [ci_run.run_id]

    async def test_upstream_params_propagate(self, engine, executor, chained):
        event = make_event(EventKind.MANUAL, manual_inputs={"cluster": "east", "sha": "abc123"})
        await engine.handle_event(event, only="ci")
        await engine.drain()

        deploy = (await engine.ledger.list_runs(pipeline_name="deploy"))[0]
        assert {"cluster": "east", "sha": "abc123"}.items() <= deploy.activation.resolved_params.items()
        assert executor.submitted_targets[-1] == "smoke:east"

    async def test_failed_upstream_does_not_chain(self, engine, chained):
        engine._executor.results["lint"] = JobStatus.FAILURE
        await engine.handle_event(make_event())
        await engine.drain()

        assert await engine.ledger.list_runs(pipeline_name="deploy") == []
        assert (await engine.ledger.list_runs(pipeline_name="ci"))[0].outcome == RunOutcome.FAILURE
        assert len(chained) == 1

    async def test_feature_branch_does_not_chain(self, engine, chained):
        await engine.handle_event(make_event(branch="feature-x"))
        await engine.drain()
        assert await engine.ledger.list_runs(pipeline_name="deploy") == []

    async def test_completion_event_ids_are_stable(self, engine, chained):
        runs = await engine.handle_event(make_event(branch="feature-x"))
        await engine.drain()
        assert chained[0].id == f"run-completed-{runs[0].run_id}"
        assert chained[0].branch == "feature-x"


class TestManualDispatch:
    async def test_gate_denies_without_upstream(self, engine):
        runs = await engine.handle_event(make_event(EventKind.MANUAL), only="deploy")
        assert runs == []
        assert await engine.ledger.list_runs() == []

    async def test_only_restricts_pipelines(self, engine):
        runs = await engine.handle_event(make_event(EventKind.MANUAL), only="ci")
        await engine.drain()
        assert [r.pipeline_name for r in runs] == ["ci"]

    async def test_manual_after_upstream_success(self, engine):
        await engine.handle_event(make_event(EventKind.MANUAL), only="ci")
        await engine.drain()

        runs = await engine.handle_event(
            make_event(EventKind.MANUAL, manual_inputs={"cluster": "prod"}), only="deploy"
        )
        await engine.drain()

        deploy = await engine.ledger.get(runs[0].run_id)
        assert deploy.outcome == RunOutcome.SUCCESS
        assert deploy.activation.resolved_params["cluster"] == "prod"


class TestMissingParameter:
    async def test_run_recorded_as_aborted(self, ledger, executor):
        engine = PipelineEngine(ledger, executor, poll_interval=0)
        engine.add_pipeline(
            make_definition(
                "release",
                triggers=[{"event": "manual"}],
                jobs=[{"name": "publish", "executor": "publish:{version}"}],
            )
        )
        emitted = []

        async def on_completed(event):
            emitted.append(event)

        engine.set_run_completed_callback(on_completed)

        runs = await engine.handle_event(make_event(EventKind.MANUAL))

        run = await ledger.get(runs[0].run_id)
        assert run.outcome == RunOutcome.FAILURE
        assert run.error_kind == "MissingParameter"
        assert run.jobs["publish"].skip_reason == SkipReason.ABORTED
        assert executor.submitted == []
        assert [e.source_run_id for e in emitted] == [run.run_id]


class TestPlan:
    async def test_dry_run_creates_nothing(self, engine, executor):
        planned = await engine.plan(make_event(changed_paths=frozenset({"frontend/app.ts"})))

        assert [p.pipeline for p in planned] == ["ci"]
        entry = planned[0]
        assert entry.allowed
        assert entry.jobs == {"lint": "pending", "test-backend": "skipped", "test-frontend": "pending"}
        assert entry.targets == {"lint": "lint", "test-frontend": "npm-test"}
        assert await engine.ledger.list_runs() == []
        assert executor.submitted == []

    async def test_dry_run_reports_denial(self, engine):
        planned = await engine.plan(make_event(EventKind.MANUAL))
        by_name = {p.pipeline: p for p in planned}
        assert by_name["deploy"].reason == DenyReason.UPSTREAM_MISSING
        assert by_name["deploy"].to_dict()["reason"] == "upstream_missing"


class TestRunControl:
    async def test_cancel_active_run(self, ledger):
        executor = FakeExecutor(blocked={"lint"})
        engine = PipelineEngine(ledger, executor, path_groups=GROUPS, poll_interval=0)
        engine.add_pipeline(make_definition("ci", **CI))

        runs = await engine.handle_event(make_event())
        while not executor.submitted:
            await asyncio.sleep(0.01)

        assert await engine.cancel_run(runs[0].run_id)
        run = await ledger.get(runs[0].run_id)
        assert run.outcome == RunOutcome.FAILURE
        assert run.error_kind == "CancelRequested"
        assert engine.active_run_ids == []

    async def test_cancel_unknown_run(self, engine):
        assert not await engine.cancel_run("run-nope")

    async def test_wait_returns_final_record(self, engine):
        runs = await engine.handle_event(make_event())
        run = await engine.wait(runs[0].run_id)
        assert run.outcome == RunOutcome.SUCCESS

    async def test_shutdown_cancels_active_runs(self, ledger):
        executor = FakeExecutor(blocked={"lint"})
        engine = PipelineEngine(ledger, executor, path_groups=GROUPS, poll_interval=0)
        engine.add_pipeline(make_definition("ci", **CI))
        runs = await engine.handle_event(make_event())
        while not executor.submitted:
            await asyncio.sleep(0.01)

        await engine.shutdown()

        assert (await ledger.get(runs[0].run_id)).error_kind == "CancelRequested"
        assert engine.active_run_ids == []


class TestExecutorCapacity:
    async def test_limit_shared_across_runs(self, ledger):
        executor = FakeExecutor(max_concurrency=1)
        engine = PipelineEngine(ledger, executor, poll_interval=0)
        engine.add_pipeline(make_definition("ci", jobs=[{"name": "build", "executor": "make"}]))
        engine.add_pipeline(make_definition("docs", jobs=[{"name": "site", "executor": "mkdocs"}]))

        runs = await engine.handle_event(make_event())
        await engine.drain()

        assert sorted(r.pipeline_name for r in runs) == ["ci", "docs"]
        assert sorted(executor.submitted_targets) == ["make", "mkdocs"]
        assert executor.peak_running == 1
        for run in runs:
            assert (await ledger.get(run.run_id)).outcome == RunOutcome.SUCCESS
