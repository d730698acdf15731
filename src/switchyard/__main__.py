"""Switchyard CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import subprocess
import sys
from pathlib import Path

from pydantic import ValidationError

# ── Default templates for `switchyard init` ──────────────────────────────────

_DEFAULT_CONFIG = """\
# Switchyard project configuration

project:
  name: "{project_name}"
  owner: "{owner}"
  repo: "{repo}"
  default_branch: main

path_groups:
  backend: ["backend/**", "pyproject.toml"]
  frontend: ["frontend/**"]
  infra: ["infra/**"]

executor:
  url: http://localhost:9000
  token_env: SWITCHYARD_EXECUTOR_TOKEN
  poll_interval: 2
  max_concurrency: 4

gate:
  upstream_retry_delay: 2

runtime:
  data_dir: .switchyard-data
  queue_size: 1000
  webhook_rate_limit: 60
"""

_DEFAULT_CI = """\
# Build and test on every push and pull request.
description: Build and test
triggers:
  - event: push
  - event: pull_request
  - event: manual
jobs:
  - name: lint
    executor: "lint:{{branch}}"
  - name: test-backend
    condition: backend
    executor: "pytest:{{branch}}"
  - name: test-frontend
    condition: frontend
    executor: "npm-test:{{branch}}"
  - name: image
    depends_on: [lint, test-backend]
    executor:
      target: "docker-build:{{registry}}"
      params: [branch]
default_params:
  branch: main
  registry: registry.example.com/{repo}
"""

_DEFAULT_DEPLOY = """\
# Deploy after a successful ci run on main.
description: Deploy to the cluster
triggers:
  - event: run_completed
    branches: [main]
    upstream_pipeline: ci
    upstream_outcomes: [success]
  - event: manual
    upstream_pipeline: ci
gate:
  required_branches: [main]
jobs:
  - name: apply
    executor: "kubectl-apply:{{cluster}}"
  - name: smoke
    depends_on: [apply]
    executor: "smoke-test:{{cluster}}"
default_params:
  cluster: staging
"""


def _init_project(repo_root: Path) -> None:
    """Scaffold a .switchyard/ directory with default configuration."""
    from switchyard.api_security import API_KEY_ENV, generate_api_key

    config_dir = repo_root / ".switchyard"
    pipelines_dir = config_dir / "pipelines"

    if config_dir.exists():
        print(f"Error: {config_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    project_name = repo_root.resolve().name
    owner = ""
    repo = project_name

    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=str(repo_root),
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            url = result.stdout.strip()
            # Parse github.com/owner/repo from SSH or HTTPS URL
            if "github.com" in url:
                parts = url.removesuffix(".git").split("github.com")[-1]
                parts = parts.lstrip("/:").split("/")
                if len(parts) >= 2:
                    owner = parts[0]
                    repo = parts[1]
    except (OSError, subprocess.SubprocessError):
        pass  # not a git checkout; keep directory-derived defaults

    pipelines_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text(
        _DEFAULT_CONFIG.format(project_name=project_name, owner=owner, repo=repo)
    )
    (pipelines_dir / "ci.yaml").write_text(_DEFAULT_CI.format(repo=repo))
    (pipelines_dir / "deploy.yaml").write_text(_DEFAULT_DEPLOY.format())

    print(f"Initialized Switchyard project at {config_dir}")
    print(f"  Project: {project_name}")
    if owner:
        print(f"  Owner:   {owner}")
    print(f"  Repo:    {repo}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_dir / 'config.yaml'} and {pipelines_dir}")
    print("  2. Set GITHUB_WEBHOOK_SECRET, GITHUB_TOKEN and SWITCHYARD_EXECUTOR_URL")
    print(f"  3. Protect the control API: export {API_KEY_ENV}={generate_api_key()}")
    print(f"  4. Run: switchyard serve --repo-root {repo_root}")


class _DryRunExecutor:
    """Stand-in executor for commands that never start jobs."""

    max_concurrency = 1

    async def submit(self, job_name: str, target: str, params: dict[str, str], *, run_id: str) -> str:
        raise RuntimeError("dry run: jobs are never submitted")

    async def poll(self, handle: str):
        raise RuntimeError("dry run: jobs are never polled")


def _load(repo_root: Path):
    """Load config or exit with a readable error."""
    from switchyard.config import load_config, resolve_config_dir

    config_dir = resolve_config_dir(repo_root)
    try:
        return load_config(config_dir)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'switchyard init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)
    except (ValidationError, ValueError) as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)


def _validate(repo_root: Path) -> int:
    from switchyard.pipeline import PipelineEngine

    config = _load(repo_root)
    engine = PipelineEngine(None, _DryRunExecutor())
    errors = engine.load(config)

    for name, definition in engine.pipelines.items():
        print(f"ok    {name} ({len(definition.jobs)} jobs, {len(definition.triggers)} triggers)")
    for err in errors:
        print(f"error {err}", file=sys.stderr)
    return 1 if errors else 0


async def _plan(repo_root: Path, event_file: Path) -> int:
    from switchyard import ingress
    from switchyard.pipeline import PipelineEngine, RunLedger

    config = _load(repo_root)
    try:
        event = ingress.from_payload(json.loads(event_file.read_text()))
    except (OSError, ValueError) as exc:
        print(f"Error: cannot read event {event_file}: {exc}", file=sys.stderr)
        return 1

    ledger_path = Path(config.runtime.data_dir)
    if not ledger_path.is_absolute():
        ledger_path = repo_root / ledger_path
    ledger_path = ledger_path / "ledger.db"
    ledger = await RunLedger.open(str(ledger_path) if ledger_path.exists() else ":memory:")
    try:
        engine = PipelineEngine(ledger, _DryRunExecutor())
        for err in engine.load(config):
            print(f"warning: {err}", file=sys.stderr)
        planned = await engine.plan(event)
    finally:
        await ledger.close()

    print(json.dumps({"event_id": event.id, "activations": [p.to_dict() for p in planned]}, indent=2))
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="switchyard",
        description="Switchyard — event-driven CI/CD pipeline orchestrator",
    )

    subparsers = parser.add_subparsers(dest="command")

    def _repo_root_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--repo-root",
            type=Path,
            default=Path.cwd(),
            help="Path to the repository root (default: current directory)",
        )

    # switchyard init
    init_parser = subparsers.add_parser("init", help="Initialize a new Switchyard project")
    _repo_root_arg(init_parser)

    # switchyard validate
    validate_parser = subparsers.add_parser("validate", help="Load and validate all pipelines")
    _repo_root_arg(validate_parser)

    # switchyard plan
    plan_parser = subparsers.add_parser("plan", help="Show what an event would activate (dry run)")
    _repo_root_arg(plan_parser)
    plan_parser.add_argument(
        "--event",
        type=Path,
        required=True,
        help="JSON file holding a canonical event record",
    )

    # switchyard serve
    serve_parser = subparsers.add_parser("serve", help="Start the Switchyard server")
    _repo_root_arg(serve_parser)
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )

    for p in (validate_parser, plan_parser, serve_parser):
        p.add_argument(
            "--log-level",
            default="INFO" if p is serve_parser else "WARNING",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level",
        )

    args = parser.parse_args(argv)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        sys.exit(_validate(args.repo_root))

    if args.command == "plan":
        sys.exit(asyncio.run(_plan(args.repo_root, args.event)))

    # serve
    from dotenv import load_dotenv

    env_file = args.repo_root / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    from switchyard.config import resolve_config_dir

    config_dir = resolve_config_dir(args.repo_root)
    if not config_dir.exists():
        print(f"Error: .switchyard/ directory not found at {config_dir}", file=sys.stderr)
        print("Run 'switchyard init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    import uvicorn

    from switchyard.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
