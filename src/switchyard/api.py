"""Control API — canonical events, manual dispatch and run queries.

Endpoints:
    - POST /events — enqueue a canonical event record (202)
    - POST /pipelines/{name}/dispatch — manual run of one pipeline
    - GET /pipelines — loaded definitions and load errors
    - GET /runs — recent runs (?pipeline=&outcome=&limit=)
    - GET /runs/{run_id} — one run with its job states
    - POST /runs/{run_id}/cancel — cancel an active run

All endpoints respect SWITCHYARD_API_KEY when configured.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from switchyard import ingress
from switchyard.api_security import require_api_key
from switchyard.pipeline.errors import LedgerError
from switchyard.pipeline.models import RunOutcome

if TYPE_CHECKING:
    from switchyard.models import Event, GitHubEvent
    from switchyard.pipeline.engine import PipelineEngine

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_api_key)])

# Module-level references (configured at startup)
_engine: "PipelineEngine | None" = None
_event_queue: "asyncio.Queue[Event | GitHubEvent] | None" = None


def configure(engine: "PipelineEngine", event_queue: "asyncio.Queue[Event | GitHubEvent]") -> None:
    """Wire the API to the engine and event queue."""
    global _engine, _event_queue
    _engine = engine
    _event_queue = event_queue
    logger.info("Control API configured")


def _require_engine() -> "PipelineEngine":
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return _engine


class DispatchRequest(BaseModel):
    branch: str
    inputs: dict[str, Any] = Field(default_factory=dict)


# ── Events ────────────────────────────────────────────────────────────────────


@router.post("/events", status_code=202)
async def post_event(body: dict[str, Any]):
    """Validate a canonical event record and enqueue it."""
    try:
        event = ingress.from_payload(body)
    except ValidationError as exc:
        detail = exc.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=detail) from exc

    if _event_queue is None:
        raise HTTPException(status_code=503, detail="Event queue not configured")
    try:
        _event_queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning("Event queue full, rejecting event %s", event.id)
        raise HTTPException(status_code=503, detail="Event queue full") from None

    logger.info("Event accepted: %s (%s on %s)", event.id, event.kind.value, event.branch)
    return {"event_id": event.id}


@router.post("/pipelines/{name}/dispatch")
async def dispatch_pipeline(name: str, body: DispatchRequest):
    """Manually activate one pipeline. It needs a matching ``manual`` trigger."""
    engine = _require_engine()
    if engine.get_pipeline(name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline '{name}'")

    try:
        event = ingress.manual(body.branch, body.inputs)
    except ValidationError as exc:
        detail = exc.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=detail) from exc

    runs = await engine.handle_event(event, only=name)
    if not runs:
        return JSONResponse(
            status_code=409,
            content={
                "event_id": event.id,
                "detail": f"Pipeline '{name}' was not activated (no manual trigger for "
                f"'{body.branch}' or dependency gate denied)",
            },
        )
    return {"event_id": event.id, "runs": [r.run_id for r in runs]}


# ── Pipelines ─────────────────────────────────────────────────────────────────


@router.get("/pipelines")
async def list_pipelines():
    engine = _require_engine()
    return {
        "pipelines": [
            {
                "name": d.name,
                "description": d.description,
                "jobs": d.job_names,
                "triggers": [t.model_dump(mode="json", by_alias=True) for t in d.triggers],
            }
            for d in engine.pipelines.values()
        ],
        "errors": engine.load_errors,
    }


# ── Runs ──────────────────────────────────────────────────────────────────────


@router.get("/runs")
async def list_runs(
    pipeline: str | None = None,
    outcome: RunOutcome | None = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    engine = _require_engine()
    try:
        runs = await engine.ledger.list_runs(pipeline_name=pipeline, outcome=outcome, limit=limit)
    except LedgerError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"runs": [r.model_dump(mode="json") for r in runs]}


@router.get("/runs/{run_id}")
async def get_run(run_id: str):
    engine = _require_engine()
    try:
        run = await engine.ledger.get(run_id)
    except LedgerError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run.model_dump(mode="json")


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    engine = _require_engine()
    if await engine.cancel_run(run_id):
        return {"run_id": run_id, "cancelled": True}

    run = await engine.ledger.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    raise HTTPException(status_code=409, detail=f"Run {run_id} already finished ({run.outcome.value})")
