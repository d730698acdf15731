"""Dependency gate — upstream-run preconditions for a trigger candidate.

A candidate is gated when its matched rule names an ``upstream_pipeline`` or
its pipeline carries a ``gate`` policy. The upstream run is the event's
``source_run_id`` when present, otherwise the latest run of the upstream
pipeline on the event's branch.

A pending (or not yet written) upstream run is re-checked exactly once after
``retry_delay``; if it is still unresolved the candidate is denied. Transient
ledger read failures are retried once after ``ledger_backoff``.

Denials are logged and dropped. They are never recorded as failed runs.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from dataclasses import dataclass
from enum import Enum

from switchyard.pipeline.errors import LedgerError, UpstreamNotResolved
from switchyard.pipeline.models import Run, RunOutcome
from switchyard.pipeline.triggers import RunLookup, TriggerCandidate

logger = logging.getLogger("switchyard.pipeline.gates")


class DenyReason(str, Enum):
    BRANCH_MISMATCH = "branch_mismatch"
    OUTCOME_NOT_ACCEPTED = "outcome_not_accepted"
    UPSTREAM_MISSING = "upstream_missing"
    WRONG_PIPELINE = "wrong_pipeline"
    UPSTREAM_NOT_RESOLVED = "upstream_not_resolved"
    LEDGER_UNAVAILABLE = "ledger_unavailable"


@dataclass
class GateDecision:
    """Result of authorizing one candidate."""

    allowed: bool
    reason: DenyReason | None = None
    message: str = ""
    upstream: Run | None = None

    @classmethod
    def allow(cls, upstream: Run | None = None) -> GateDecision:
        return cls(allowed=True, upstream=upstream)

    @classmethod
    def deny(cls, reason: DenyReason, message: str, upstream: Run | None = None) -> GateDecision:
        return cls(allowed=False, reason=reason, message=message, upstream=upstream)


class _LedgerUnavailable(Exception):
    pass


async def _read_upstream(
    ledger: RunLookup,
    candidate: TriggerCandidate,
    upstream_pipeline: str,
    ledger_backoff: float,
) -> Run | None:
    """One upstream lookup, retrying a failed ledger read once."""
    event = candidate.event
    for attempt in (1, 2):
        try:
            if event.source_run_id:
                return await ledger.get(event.source_run_id)
            return await ledger.latest(upstream_pipeline, event.branch)
        except LedgerError as exc:
            if attempt == 2:
                raise _LedgerUnavailable(str(exc)) from exc
            logger.warning(
                "Ledger read failed for %s upstream (%s); retrying in %.2fs",
                candidate.pipeline_name,
                exc,
                ledger_backoff,
            )
            await asyncio.sleep(ledger_backoff)
    return None


async def authorize(
    candidate: TriggerCandidate,
    ledger: RunLookup,
    *,
    retry_delay: float = 1.0,
    ledger_backoff: float = 0.5,
) -> GateDecision:
    """Decide whether ``candidate`` may activate."""
    decision = await _evaluate(candidate, ledger, retry_delay, ledger_backoff)
    if not decision.allowed:
        logger.info(
            "Gate denied pipeline '%s' for event %s: %s (%s)",
            candidate.pipeline_name,
            candidate.event.id,
            decision.reason.value,
            decision.message,
        )
    return decision


async def _evaluate(
    candidate: TriggerCandidate,
    ledger: RunLookup,
    retry_delay: float,
    ledger_backoff: float,
) -> GateDecision:
    rule = candidate.rule
    policy = candidate.definition.gate
    event = candidate.event

    if not rule.upstream_pipeline and policy is None:
        return GateDecision.allow()

    # A policy without an upstream pipeline constrains the event's own branch
    if not rule.upstream_pipeline:
        if policy.required_branches and not _branch_allowed(event.branch, policy.required_branches):
            return GateDecision.deny(
                DenyReason.BRANCH_MISMATCH,
                f"branch '{event.branch}' not in {sorted(policy.required_branches)}",
            )
        return GateDecision.allow()

    upstream_pipeline = rule.upstream_pipeline
    upstream = candidate.source_run
    if upstream is None or upstream.outcome == RunOutcome.PENDING:
        try:
            upstream = await _read_upstream(ledger, candidate, upstream_pipeline, ledger_backoff)
            if upstream is None or upstream.outcome == RunOutcome.PENDING:
                if upstream is None and not event.source_run_id:
                    return GateDecision.deny(
                        DenyReason.UPSTREAM_MISSING,
                        f"no '{upstream_pipeline}' run on branch '{event.branch}'",
                    )
                await asyncio.sleep(retry_delay)
                upstream = await _read_upstream(ledger, candidate, upstream_pipeline, ledger_backoff)
        except _LedgerUnavailable as exc:
            return GateDecision.deny(DenyReason.LEDGER_UNAVAILABLE, str(exc))

        if upstream is None or upstream.outcome == RunOutcome.PENDING:
            err = UpstreamNotResolved(
                candidate.pipeline_name,
                upstream.run_id if upstream else event.source_run_id,
            )
            return GateDecision.deny(DenyReason.UPSTREAM_NOT_RESOLVED, str(err), upstream)

    if upstream.pipeline_name != upstream_pipeline:
        return GateDecision.deny(
            DenyReason.WRONG_PIPELINE,
            f"run {upstream.run_id} belongs to '{upstream.pipeline_name}', "
            f"expected '{upstream_pipeline}'",
            upstream,
        )

    accepted = (policy.accepted_outcomes if policy else set()) or rule.upstream_outcomes
    if upstream.outcome not in accepted:
        return GateDecision.deny(
            DenyReason.OUTCOME_NOT_ACCEPTED,
            f"upstream run {upstream.run_id} ended '{upstream.outcome.value}', "
            f"accepted {sorted(o.value for o in accepted)}",
            upstream,
        )

    if policy and policy.required_branches and not _branch_allowed(upstream.branch, policy.required_branches):
        return GateDecision.deny(
            DenyReason.BRANCH_MISMATCH,
            f"upstream run {upstream.run_id} is on '{upstream.branch}', "
            f"required {sorted(policy.required_branches)}",
            upstream,
        )

    return GateDecision.allow(upstream)


def _branch_allowed(branch: str, patterns: set[str]) -> bool:
    return any(fnmatch.fnmatchcase(branch, p) for p in patterns)
