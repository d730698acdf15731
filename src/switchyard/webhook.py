"""Webhook receiver — FastAPI endpoint for GitHub webhook delivery.

Validates the HMAC-SHA256 signature, repository scope and rate limit before
enqueuing the raw event for the Event Router, which normalizes it into a
canonical Event. Responds 200 immediately to stay inside GitHub's 10-second
delivery timeout, or 503 when the event queue is full.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from switchyard.models import GitHubEvent

if TYPE_CHECKING:
    from switchyard.github_client import GitHubClient
    from switchyard.models import Event

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_event_queue: asyncio.Queue[GitHubEvent | Event] | None = None
_github_client: GitHubClient | None = None
_expected_repo_full_name: str | None = None

# Rate limiting state
_rate_limit_max: int = 60  # max webhook deliveries per window
_rate_limit_window: float = 60.0  # window in seconds
_rate_limit_timestamps: list[float] = []


def configure(
    event_queue: asyncio.Queue[GitHubEvent | Event],
    github_client: GitHubClient | None,
    *,
    expected_repo_full_name: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Wire the webhook endpoint to the event queue and GitHub client.

    Args:
        event_queue: Queue consumed by the Event Router.
        github_client: GitHub client for signature verification.
        expected_repo_full_name: If set, reject webhooks for other repos (owner/repo).
        rate_limit_max: Max webhook deliveries per minute (0 = unlimited).
    """
    global _event_queue, _github_client, _expected_repo_full_name
    global _rate_limit_max, _rate_limit_timestamps
    _event_queue = event_queue
    _github_client = github_client
    _expected_repo_full_name = expected_repo_full_name
    _rate_limit_max = rate_limit_max
    _rate_limit_timestamps = []


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive and enqueue a GitHub webhook event.

    Checks, in order: rate limit, signature, payload, repository scope.
    """
    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()

    if _github_client and not _github_client.verify_webhook_signature(body, x_hub_signature_256):
        logger.warning("Invalid webhook signature for delivery %s", x_github_delivery)
        return Response(status_code=401, content="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Malformed webhook body for delivery %s", x_github_delivery)
        return Response(status_code=400, content="Malformed JSON")
    if not isinstance(payload, dict):
        return Response(status_code=400, content="Expected a JSON object")

    if x_github_event == "ping":
        logger.info("Webhook ping received (delivery=%s)", x_github_delivery)
        return Response(status_code=200, content="pong")

    event = GitHubEvent(
        delivery_id=x_github_delivery,
        event_type=x_github_event,
        action=payload.get("action"),
        payload=payload,
    )

    if _expected_repo_full_name:
        webhook_repo = event.repo_full_name
        if webhook_repo and webhook_repo != _expected_repo_full_name:
            logger.warning(
                "Webhook for unexpected repo %s (expected %s, delivery=%s)",
                webhook_repo,
                _expected_repo_full_name,
                x_github_delivery,
            )
            return Response(status_code=403, content="Unknown repository")

    logger.info(
        "Webhook received: %s (delivery=%s, sender=%s)",
        event.full_type,
        x_github_delivery,
        event.sender,
    )

    if _event_queue is not None:
        try:
            _event_queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full, rejecting delivery %s", x_github_delivery)
            return Response(status_code=503, content="Event queue full")
    else:
        logger.error("Event queue not configured, dropping event %s", x_github_delivery)

    return Response(status_code=200, content="ok")
