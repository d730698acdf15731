"""Switchyard Server — FastAPI application that ties all components together.

Startup sequence:
1. Load .switchyard/ config and pipeline definitions
2. Open the run ledger (SQLite)
3. Start the GitHub client and job executor
4. Load pipelines into the engine (invalid ones are rejected and reported)
5. Start the Event Router consumer loop
6. Begin accepting webhooks and API calls

Shutdown:
1. Stop the Event Router
2. Cancel active runs (recorded as cancelled in the ledger)
3. Close clients and the ledger
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from switchyard import __version__
from switchyard.api import configure as configure_api
from switchyard.api import router as api_router
from switchyard.api_security import get_security_config
from switchyard.config import SwitchyardConfig, load_config, resolve_config_dir
from switchyard.event_router import EventRouter
from switchyard.github_client import GitHubClient
from switchyard.models import Event, GitHubEvent
from switchyard.pipeline import HttpJobExecutor, JobExecutor, PipelineEngine, RunLedger
from switchyard.webhook import configure as configure_webhook
from switchyard.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class SwitchyardServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None, *, executor: JobExecutor | None = None):
        self.repo_root = repo_root or Path.cwd()
        self.config_dir = resolve_config_dir(self.repo_root)

        # Components (initialized in start())
        self.config: SwitchyardConfig | None = None
        self.ledger: RunLedger | None = None
        self.github: GitHubClient | None = None
        self.executor: JobExecutor | None = executor
        self._owns_executor = executor is None
        self.engine: PipelineEngine | None = None
        self.event_queue: asyncio.Queue[GitHubEvent | Event] | None = None
        self.router: EventRouter | None = None

    async def start(self) -> None:
        """Initialize all components and start the event loop consumer."""
        logger.info("Switchyard server starting (repo=%s)", self.repo_root)

        # 1. Load config
        self.config = load_config(self.config_dir)

        # 2. Run ledger
        data_dir = Path(self.config.runtime.data_dir)
        if not data_dir.is_absolute():
            data_dir = self.repo_root / data_dir
        data_dir.mkdir(parents=True, exist_ok=True)
        ledger_path = data_dir / "ledger.db"
        logger.info("Run ledger path: %s", ledger_path)
        self.ledger = await RunLedger.open(str(ledger_path))

        # 3. GitHub client + job executor
        self.github = GitHubClient(
            token=os.environ.get("GITHUB_TOKEN"),
            webhook_secret=os.environ.get("GITHUB_WEBHOOK_SECRET"),
        )
        await self.github.start()

        if self.executor is None:
            executor_cfg = self.config.executor
            if not executor_cfg.url:
                raise RuntimeError(
                    "No job executor configured. Set executor.url in config.yaml "
                    "or SWITCHYARD_EXECUTOR_URL"
                )
            http_executor = HttpJobExecutor(
                executor_cfg.url,
                token=executor_cfg.token,
                max_concurrency=executor_cfg.max_concurrency,
                timeout=executor_cfg.timeout,
            )
            await http_executor.start()
            self.executor = http_executor

        # 4. Pipelines
        self.engine = PipelineEngine(self.ledger, self.executor)
        errors = self.engine.load(self.config)
        for err in errors:
            logger.error("Pipeline validation error: %s", err)
        logger.info(
            "Loaded %d pipeline(s): %s",
            len(self.engine.pipelines),
            list(self.engine.pipelines),
        )

        # 5. Event queue + router (run_completed events feed back into the queue)
        self.event_queue = asyncio.Queue(maxsize=self.config.runtime.queue_size)
        self.engine.set_run_completed_callback(self._enqueue_run_completed)
        self.router = EventRouter(
            self.event_queue,
            self.engine,
            github=self.github,
            dedup_window=self.config.runtime.dedup_window,
            max_in_flight=self.config.runtime.event_concurrency,
        )
        await self.router.start()

        # 6. HTTP surfaces
        configure_webhook(
            self.event_queue,
            self.github,
            expected_repo_full_name=self.config.project.full_name,
            rate_limit_max=self.config.runtime.webhook_rate_limit,
        )
        configure_api(self.engine, self.event_queue)

        logger.info("Switchyard server started (project=%s)", self.config.project.name)

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Switchyard server stopping")
        if self.router:
            await self.router.stop()
        if self.engine:
            self.engine.set_run_completed_callback(None)
            await self.engine.shutdown()
        if self._owns_executor and isinstance(self.executor, HttpJobExecutor):
            await self.executor.close()
        if self.github:
            await self.github.close()
        if self.ledger:
            await self.ledger.close()
        logger.info("Switchyard server stopped")

    async def _enqueue_run_completed(self, event: Event) -> None:
        if self.event_queue is None:
            return
        await self.event_queue.put(event)


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = SwitchyardServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None, *, executor: JobExecutor | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = SwitchyardServer(repo_root, executor=executor)

    app = FastAPI(
        title="Switchyard",
        version=__version__,
        description="Event-driven CI/CD pipeline orchestrator",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        engine = _server.engine
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "pipelines": len(engine.pipelines) if engine else 0,
            "pipeline_errors": len(engine.load_errors) if engine else 0,
            "active_runs": len(engine.active_run_ids) if engine else 0,
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
            "last_event_time": _server.router.last_event_time if _server.router else None,
            "events_processed": _server.router.events_processed if _server.router else 0,
            "events_in_flight": _server.router.in_flight if _server.router else 0,
            "security": get_security_config(),
        }

    return app
