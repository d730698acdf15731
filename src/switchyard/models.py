"""Core data models for Switchyard."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator


# ── GitHub Events ────────────────────────────────────────────────────────────


class GitHubEvent(BaseModel):
    """Raw GitHub webhook event."""

    delivery_id: str = Field(description="X-GitHub-Delivery UUID")
    event_type: str = Field(description="X-GitHub-Event header value")
    action: str | None = Field(default=None, description="Event action (e.g. 'opened', 'closed')")
    payload: dict = Field(default_factory=dict, description="Full webhook payload")

    @property
    def full_type(self) -> str:
        """e.g. 'push', 'pull_request.synchronize'."""
        if self.action:
            return f"{self.event_type}.{self.action}"
        return self.event_type

    @property
    def sender(self) -> str | None:
        """GitHub username of the event sender."""
        sender = self.payload.get("sender") or {}
        return sender.get("login")

    @property
    def repo_full_name(self) -> str | None:
        """owner/repo from the event payload."""
        repo = self.payload.get("repository") or {}
        return repo.get("full_name")


# ── Canonical Events ─────────────────────────────────────────────────────────


class EventKind(str, enum.Enum):
    """Kinds of events the orchestrator reacts to."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    RUN_COMPLETED = "run_completed"
    MANUAL = "manual"


class Event(BaseModel):
    """Canonical event record produced by ingress. Immutable once created."""

    model_config = {"frozen": True}

    id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        description="Event id (webhook delivery id when available)",
    )
    kind: EventKind
    branch: str
    base_branch: str | None = Field(default=None, description="Target branch of a pull request")
    changed_paths: frozenset[str] = Field(default_factory=frozenset)
    source_run_id: str | None = Field(
        default=None, description="Completed run that produced a run_completed event"
    )
    manual_inputs: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("manual_inputs", mode="before")
    @classmethod
    def _stringify_inputs(cls, v):
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def validate_event(self) -> Event:
        if not self.branch:
            raise ValueError("Event branch must not be empty")
        if self.kind == EventKind.RUN_COMPLETED and not self.source_run_id:
            raise ValueError("run_completed events require 'source_run_id'")
        return self
