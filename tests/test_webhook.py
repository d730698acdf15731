"""Tests for the webhook endpoint."""

import asyncio
import hashlib
import hmac
import json
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from switchyard.github_client import GitHubClient
from switchyard.models import GitHubEvent
from switchyard.webhook import configure, router

PUSH = {
    "ref": "refs/heads/main",
    "commits": [],
    "repository": {"full_name": "acme/widgets"},
    "sender": {"login": "alice"},
}


def _headers(event="push", delivery="delivery-1", signature="sha256=dummy"):
    return {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": signature,
    }


@pytest.fixture
def app():
    test_app = FastAPI()
    test_app.include_router(router)
    return test_app


@pytest.fixture
def event_queue():
    return asyncio.Queue()


@pytest.fixture
def github_client():
    """Mock GitHub client that accepts all signatures."""
    client = MagicMock()
    client.verify_webhook_signature = MagicMock(return_value=True)
    return client


@pytest.fixture
def client(app, event_queue, github_client):
    configure(event_queue, github_client, expected_repo_full_name="acme/widgets")
    return TestClient(app)


class TestWebhookEndpoint:
    def test_push_enqueued(self, client, event_queue):
        response = client.post("/webhook", json=PUSH, headers=_headers())

        assert response.status_code == 200
        event = event_queue.get_nowait()
        assert isinstance(event, GitHubEvent)
        assert event.delivery_id == "delivery-1"
        assert event.event_type == "push"
        assert event.sender == "alice"

    def test_queue_full(self, app, github_client):
        queue = asyncio.Queue(maxsize=1)
        configure(queue, github_client, expected_repo_full_name="acme/widgets")
        client = TestClient(app)

        first = client.post("/webhook", json=PUSH, headers=_headers(delivery="d-1"))
        second = client.post("/webhook", json=PUSH, headers=_headers(delivery="d-2"))

        assert first.status_code == 200
        assert second.status_code == 503
        assert queue.get_nowait().delivery_id == "d-1"

    def test_pull_request_action(self, client, event_queue):
        payload = {"action": "synchronize", "repository": {"full_name": "acme/widgets"}}
        client.post("/webhook", json=payload, headers=_headers(event="pull_request"))
        assert event_queue.get_nowait().full_type == "pull_request.synchronize"

    def test_missing_event_header(self, client):
        response = client.post("/webhook", json=PUSH, headers={"X-GitHub-Delivery": "d"})
        assert response.status_code == 422

    def test_missing_delivery_header(self, client):
        response = client.post("/webhook", json=PUSH, headers={"X-GitHub-Event": "push"})
        assert response.status_code == 422

    def test_ping(self, client, event_queue):
        response = client.post("/webhook", json={"zen": "Keep it simple."}, headers=_headers(event="ping"))
        assert response.status_code == 200
        assert response.text == "pong"
        assert event_queue.empty()

    def test_malformed_json(self, client, event_queue):
        response = client.post("/webhook", content=b"{not json", headers=_headers())
        assert response.status_code == 400
        assert event_queue.empty()

    def test_non_object_body(self, client):
        response = client.post("/webhook", json=["a"], headers=_headers())
        assert response.status_code == 400

    def test_other_repository_rejected(self, client, event_queue):
        payload = {**PUSH, "repository": {"full_name": "evil/fork"}}
        response = client.post("/webhook", json=payload, headers=_headers())
        assert response.status_code == 403
        assert event_queue.empty()


class TestSignature:
    def test_invalid_signature(self, app, event_queue):
        configure(event_queue, GitHubClient(webhook_secret="s3cret"))
        client = TestClient(app)

        response = client.post("/webhook", json=PUSH, headers=_headers(signature="sha256=bad"))

        assert response.status_code == 401
        assert event_queue.empty()

    def test_valid_signature(self, app, event_queue):
        configure(event_queue, GitHubClient(webhook_secret="s3cret"))
        client = TestClient(app)
        body = json.dumps(PUSH).encode()
        signature = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        response = client.post("/webhook", content=body, headers=_headers(signature=signature))

        assert response.status_code == 200
        assert not event_queue.empty()


class TestRateLimit:
    def test_rate_limit_exceeded(self, app, event_queue, github_client):
        configure(event_queue, github_client, rate_limit_max=2)
        client = TestClient(app)

        codes = [
            client.post("/webhook", json=PUSH, headers=_headers(delivery=f"d-{i}")).status_code
            for i in range(3)
        ]

        assert codes == [200, 200, 429]
        assert event_queue.qsize() == 2

    def test_unlimited(self, app, event_queue, github_client):
        configure(event_queue, github_client, rate_limit_max=0)
        client = TestClient(app)
        for i in range(5):
            assert client.post("/webhook", json=PUSH, headers=_headers(delivery=f"d-{i}")).status_code == 200
