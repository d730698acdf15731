"""Configuration loading for Switchyard.

Reads .switchyard/config.yaml and pipeline definitions from
.switchyard/pipelines/*.yaml. Pipelines are kept as raw mappings here and
validated by the engine so one broken definition does not take down the rest.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from switchyard.pipeline.models import PathGroup

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".switchyard"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str
    owner: str = ""  # GitHub org/user
    repo: str = ""  # GitHub repo name
    default_branch: str = "main"

    @property
    def full_name(self) -> str | None:
        if self.owner and self.repo:
            return f"{self.owner}/{self.repo}"
        return None


class ExecutorConfig(BaseModel):
    url: str | None = None  # base URL of the REST job runner
    token_env: str = "SWITCHYARD_EXECUTOR_TOKEN"
    poll_interval: float = Field(default=2.0, ge=0)
    max_concurrency: int = Field(default=4, ge=1)
    timeout: float = 30.0  # per HTTP request, not per job

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env)


class GateConfig(BaseModel):
    upstream_retry_delay: float = Field(default=2.0, ge=0)  # one re-check of a pending upstream
    ledger_retry_backoff: float = Field(default=0.5, ge=0)


class RuntimeConfig(BaseModel):
    data_dir: str = ".switchyard-data"  # holds ledger.db
    queue_size: int = 1000
    webhook_rate_limit: int = 60  # deliveries per minute (0 = unlimited)
    dedup_window: int = 10_000  # recently seen event ids remembered by the router
    event_concurrency: int = Field(default=32, ge=1)  # events handled at once by the router

    @property
    def ledger_path(self) -> Path:
        return Path(self.data_dir) / "ledger.db"


class SwitchyardConfig(BaseModel):
    """Top-level configuration (matches .switchyard/config.yaml)."""

    project: ProjectConfig
    path_groups: dict[str, list[str]] = Field(default_factory=dict)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    # Raw pipeline mappings (inline here, or one file per pipeline)
    pipelines: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("path_groups", mode="before")
    @classmethod
    def _single_pattern(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: [p] if isinstance(p, str) else p for k, p in v.items()}
        return v

    @property
    def groups(self) -> list[PathGroup]:
        return [PathGroup(name=n, patterns=p) for n, p in self.path_groups.items()]


# ── Config Loader ────────────────────────────────────────────────────────────


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return raw


def load_pipeline_files(config_dir: Path) -> dict[str, dict[str, Any]]:
    """Load .switchyard/pipelines/*.yaml; the file stem is the default name."""
    pipelines_dir = config_dir / "pipelines"
    pipelines: dict[str, dict[str, Any]] = {}
    if not pipelines_dir.exists():
        return pipelines

    for path in sorted([*pipelines_dir.glob("*.yaml"), *pipelines_dir.glob("*.yml")]):
        raw = _read_yaml(path)
        name = raw.pop("name", None) or path.stem
        pipelines[name] = raw
        logger.info("Loaded pipeline file: %s", path.name)
    return pipelines


def load_config(config_dir: Path) -> SwitchyardConfig:
    """Load Switchyard configuration from a .switchyard/ directory.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Switchyard config not found: {config_path}")

    raw = _read_yaml(config_path)
    inline = raw.pop("pipelines", None) or {}
    config = SwitchyardConfig(**raw)

    for name, body in inline.items():
        config.pipelines[name] = dict(body or {})
    for name, body in load_pipeline_files(config_dir).items():
        if name in config.pipelines:
            logger.warning("Pipeline '%s' defined inline and in pipelines/; file wins", name)
        config.pipelines[name] = body

    # Environment variable overrides for deployment
    data_dir = os.environ.get("SWITCHYARD_DATA_DIR")
    if data_dir:
        config.runtime.data_dir = data_dir

    executor_url = os.environ.get("SWITCHYARD_EXECUTOR_URL")
    if executor_url:
        config.executor.url = executor_url

    logger.info(
        "Loaded Switchyard config: project=%s, pipelines=%d",
        config.project.name,
        len(config.pipelines),
    )
    return config


def resolve_config_dir(repo_root: Path) -> Path:
    """SWITCHYARD_CONFIG_DIR if set, else <repo_root>/.switchyard."""
    override = os.environ.get("SWITCHYARD_CONFIG_DIR")
    if override:
        return Path(override)
    return repo_root / CONFIG_DIR_NAME
