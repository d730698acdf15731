"""Trigger matcher — which pipelines does an event activate?

Rules of one pipeline are evaluated in declaration order and the first match
wins, so a pipeline yields at most one candidate per event.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from switchyard.models import Event, EventKind
from switchyard.pipeline.changes import classify
from switchyard.pipeline.errors import LedgerError
from switchyard.pipeline.models import (
    PathGroup,
    PipelineDefinition,
    Run,
    RunOutcome,
    TriggerRule,
)

logger = logging.getLogger("switchyard.pipeline.triggers")


class RunLookup(Protocol):
    """The slice of the run ledger the matcher and gate read from."""

    async def get(self, run_id: str) -> Run | None: ...

    async def latest(self, pipeline_name: str, branch: str) -> Run | None: ...


@dataclass
class TriggerCandidate:
    """A pipeline whose trigger rule matched, awaiting the dependency gate."""

    definition: PipelineDefinition
    rule: TriggerRule
    rule_index: int
    event: Event
    touched_groups: set[str] = field(default_factory=set)
    # Source run of a run_completed event, when it was already terminal
    source_run: Run | None = None
    # Source run missing or still pending; the gate settles it
    provisional: bool = False

    @property
    def pipeline_name(self) -> str:
        return self.definition.name


def rule_matches(rule: TriggerRule, event: Event, touched_groups: set[str]) -> bool:
    """Static part of a rule match: kind, branch and path groups."""
    return (
        rule.event_kind == event.kind
        and rule.matches_branch(event.branch)
        and rule.matches_groups(touched_groups)
    )


async def match(
    event: Event,
    definitions: Iterable[PipelineDefinition],
    groups: Iterable[PathGroup],
    ledger: RunLookup,
) -> list[TriggerCandidate]:
    """Return one candidate per pipeline activated by ``event``."""
    touched = classify(event.changed_paths, groups)

    source_run: Run | None = None
    source_known = False
    if event.kind == EventKind.RUN_COMPLETED:
        try:
            source_run = await ledger.get(event.source_run_id)
            source_known = True
        except LedgerError:
            logger.warning(
                "Ledger read failed for source run %s; deferring to gate",
                event.source_run_id,
            )

    candidates: list[TriggerCandidate] = []
    for definition in definitions:
        for i, rule in enumerate(definition.triggers):
            if not rule_matches(rule, event, touched):
                continue

            provisional = False
            if event.kind == EventKind.RUN_COMPLETED:
                if not source_known or source_run is None:
                    provisional = True
                elif source_run.pipeline_name != rule.upstream_pipeline:
                    continue
                elif source_run.outcome == RunOutcome.PENDING:
                    # pipeline known, outcome not yet; the gate re-checks it
                    provisional = True
                elif source_run.outcome not in rule.upstream_outcomes:
                    continue

            candidates.append(
                TriggerCandidate(
                    definition=definition,
                    rule=rule,
                    rule_index=i,
                    event=event,
                    touched_groups=touched,
                    source_run=None if provisional else source_run,
                    provisional=provisional,
                )
            )
            break

    if candidates:
        logger.info(
            "Event %s (%s on %s) matched pipelines: %s",
            event.id,
            event.kind.value,
            event.branch,
            [c.pipeline_name for c in candidates],
        )
    else:
        logger.debug("Event %s (%s on %s) matched no pipelines", event.id, event.kind.value, event.branch)
    return candidates
