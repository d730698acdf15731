"""Event ingress — normalize transport-specific inputs into canonical Events.

GitHub push and pull_request webhooks are the transports handled here; the
HTTP API and CLI hand over canonical event records directly.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from switchyard.models import Event, EventKind

if TYPE_CHECKING:
    from switchyard.github_client import GitHubClient

logger = logging.getLogger(__name__)

PR_ACTIONS = {"opened", "synchronize", "reopened"}

# GitHub lists at most 20 commits in a push payload
PUSH_COMMIT_LIMIT = 20

_NULL_SHA = "0" * 40


def branch_from_ref(ref: str) -> str | None:
    """refs/heads/main → main. Tags and other refs → None."""
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return None


def push_changed_paths(payload: dict[str, Any]) -> set[str]:
    """Union of added/modified/removed paths across a push's commits."""
    paths: set[str] = set()
    for commit in payload.get("commits") or []:
        for key in ("added", "modified", "removed"):
            paths.update(commit.get(key) or [])
    return paths


def _repo(payload: dict[str, Any]) -> tuple[str, str] | None:
    full_name = (payload.get("repository") or {}).get("full_name") or ""
    if "/" not in full_name:
        return None
    owner, repo = full_name.split("/", 1)
    return owner, repo


async def _from_push(
    payload: dict[str, Any], delivery_id: str, github: GitHubClient | None
) -> Event | None:
    ref = payload.get("ref", "")
    branch = branch_from_ref(ref)
    if branch is None:
        logger.debug("Ignoring push to non-branch ref %s", ref)
        return None
    if payload.get("deleted"):
        logger.debug("Ignoring deletion of branch %s", branch)
        return None

    paths = push_changed_paths(payload)
    before, after = payload.get("before"), payload.get("after")
    repo = _repo(payload)
    truncated = len(payload.get("commits") or []) >= PUSH_COMMIT_LIMIT
    if truncated and github and repo and before and after and before != _NULL_SHA:
        try:
            paths.update(await github.compare_files(*repo, before, after))
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch full diff for push %s: %s", delivery_id, exc)

    return Event(id=delivery_id, kind=EventKind.PUSH, branch=branch, changed_paths=frozenset(paths))


async def _from_pull_request(
    payload: dict[str, Any], delivery_id: str, github: GitHubClient | None
) -> Event | None:
    action = payload.get("action")
    if action not in PR_ACTIONS:
        logger.debug("Ignoring pull_request.%s", action)
        return None

    pr = payload.get("pull_request") or {}
    branch = (pr.get("head") or {}).get("ref")
    base = (pr.get("base") or {}).get("ref")
    if not branch:
        logger.warning("pull_request delivery %s has no head ref", delivery_id)
        return None

    paths: set[str] = set()
    repo = _repo(payload)
    number = pr.get("number") or payload.get("number")
    if github and repo and number:
        try:
            paths.update(await github.list_pull_request_files(*repo, int(number)))
        except httpx.HTTPError as exc:
            logger.warning("Could not list files for PR #%s: %s", number, exc)

    return Event(
        id=delivery_id,
        kind=EventKind.PULL_REQUEST,
        branch=branch,
        base_branch=base,
        changed_paths=frozenset(paths),
    )


async def from_github(
    event_type: str,
    payload: dict[str, Any],
    delivery_id: str,
    *,
    github: GitHubClient | None = None,
) -> Event | None:
    """Normalize a GitHub webhook into an Event, or None if it is not actionable."""
    if event_type == "push":
        return await _from_push(payload, delivery_id, github)
    if event_type == "pull_request":
        return await _from_pull_request(payload, delivery_id, github)
    logger.debug("Ignoring GitHub event type %s", event_type)
    return None


def from_payload(data: dict[str, Any]) -> Event:
    """Validate a canonical event record (POST /events, plan --event)."""
    return Event.model_validate(data)


def manual(branch: str, inputs: dict[str, Any] | None = None) -> Event:
    """Build a manual-dispatch event."""
    return Event(kind=EventKind.MANUAL, branch=branch, manual_inputs=inputs or {})
