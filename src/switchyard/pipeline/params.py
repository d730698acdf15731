"""Parameter resolution — one precedence-ordered merge per activation.

Precedence, highest first:
    1. manual inputs carried on the event
    2. params of the upstream run's activation (run_completed events only)
    3. params derived from the triggering event (branch, base_branch, event_id)
    4. the pipeline's default_params
"""

from __future__ import annotations

from switchyard.models import Event, EventKind
from switchyard.pipeline.errors import MissingParameter
from switchyard.pipeline.models import PipelineDefinition, Run


def merge_params(*layers: dict[str, str]) -> dict[str, str]:
    """Merge parameter layers given highest precedence first."""
    merged: dict[str, str] = {}
    for layer in reversed(layers):
        merged.update(layer)
    return merged


def event_params(event: Event) -> dict[str, str]:
    """Parameters every activation gets from its triggering event."""
    params = {"branch": event.branch, "event_id": event.id}
    if event.base_branch:
        params["base_branch"] = event.base_branch
    return params


def layered_params(
    event: Event,
    definition: PipelineDefinition,
    upstream: Run | None = None,
) -> dict[str, str]:
    """All parameter layers merged, without checking required params."""
    propagated: dict[str, str] = {}
    if event.kind == EventKind.RUN_COMPLETED and upstream is not None:
        propagated = upstream.activation.resolved_params

    return merge_params(
        event.manual_inputs,
        propagated,
        event_params(event),
        definition.default_params,
    )


def missing_params(definition: PipelineDefinition, params: dict[str, str]) -> dict[str, list[str]]:
    """Required executor params absent from ``params``, keyed by job name."""
    missing: dict[str, list[str]] = {}
    for job in definition.jobs:
        absent = sorted(job.executor_ref.required_params - params.keys())
        if absent:
            missing[job.name] = absent
    return missing


def resolve(
    event: Event,
    definition: PipelineDefinition,
    upstream: Run | None = None,
) -> dict[str, str]:
    """Resolve the canonical parameter set for an activation.

    Raises:
        MissingParameter: a job's executor ref declares a param nobody supplied.
    """
    params = layered_params(event, definition, upstream)

    missing = missing_params(definition, params)
    if missing:
        raise MissingParameter(definition.name, missing)
    return params
