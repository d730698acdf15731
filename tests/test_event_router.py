"""Tests for the event router."""

import asyncio

import pytest

from switchyard.event_router import EventRouter
from switchyard.models import EventKind, GitHubEvent

from conftest import make_event


class FakeEngine:
    def __init__(self, fail_on=None):
        self.events = []
        self.fail_on = fail_on

    async def handle_event(self, event, *, only=None):
        if event.id == self.fail_on:
            raise RuntimeError("engine exploded")
        self.events.append(event)
        return []


def _github_push(delivery_id="delivery-1"):
    return GitHubEvent(
        delivery_id=delivery_id,
        event_type="push",
        payload={
            "ref": "refs/heads/main",
            "commits": [{"added": ["backend/app.py"]}],
            "repository": {"full_name": "acme/widgets"},
        },
    )


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def router(engine):
    return EventRouter(asyncio.Queue(), engine)


class TestRoute:
    async def test_github_event_normalized(self, router, engine):
        await router.route(_github_push())

        assert len(engine.events) == 1
        event = engine.events[0]
        assert event.kind == EventKind.PUSH
        assert event.id == "delivery-1"
        assert event.changed_paths == {"backend/app.py"}
        assert router.events_processed == 1
        assert router.last_event_time is not None

    async def test_canonical_event_passed_through(self, router, engine):
        event = make_event(id="evt-1")
        await router.route(event)
        assert engine.events == [event]

    async def test_non_actionable_github_event(self, router, engine):
        await router.route(GitHubEvent(delivery_id="d", event_type="issues", action="opened"))
        assert engine.events == []
        assert router.events_processed == 0


class TestDeduplication:
    async def test_redelivery_filtered(self, router, engine):
        await router.route(_github_push("delivery-1"))
        await router.route(_github_push("delivery-1"))
        assert len(engine.events) == 1

    async def test_duplicate_run_completed_filtered(self, router, engine):
        event = make_event(EventKind.RUN_COMPLETED, id="run-completed-run-1", source_run_id="run-1")
        await router.route(event)
        await router.route(event)
        assert len(engine.events) == 1

    async def test_window_is_bounded(self, engine):
        router = EventRouter(asyncio.Queue(), engine, dedup_window=2)
        assert not router.seen("a")
        assert not router.seen("b")
        assert not router.seen("c")
        assert not router.seen("a")  # evicted
        assert router.seen("c")


class TestConsumerLoop:
    async def test_consumes_queue(self, engine):
        queue = asyncio.Queue()
        router = EventRouter(queue, engine)
        await router.start()
        try:
            await queue.put(make_event(id="evt-1"))
            await queue.put(_github_push("delivery-2"))
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await router.stop()

        assert [e.id for e in engine.events] == ["evt-1", "delivery-2"]

    async def test_error_isolated(self):
        engine = FakeEngine(fail_on="bad")
        queue = asyncio.Queue()
        router = EventRouter(queue, engine)
        await router.start()
        try:
            await queue.put(make_event(id="bad"))
            await queue.put(make_event(id="good"))
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await router.stop()

        assert [e.id for e in engine.events] == ["good"]


class SlowGateEngine(FakeEngine):
    """Holds one event (as a gate re-check would) until released."""

    def __init__(self, slow_id):
        super().__init__()
        self.slow_id = slow_id
        self.release = asyncio.Event()

    async def handle_event(self, event, *, only=None):
        if event.id == self.slow_id:
            await self.release.wait()
        return await super().handle_event(event, only=only)


class TestConcurrentHandling:
    async def test_waiting_event_does_not_block_later_events(self):
        engine = SlowGateEngine("deploy-dispatch")
        queue = asyncio.Queue()
        router = EventRouter(queue, engine)
        await router.start()
        try:
            await queue.put(make_event(EventKind.MANUAL, id="deploy-dispatch"))
            await queue.put(make_event(id="push-main"))
            for _ in range(200):
                if engine.events:
                    break
                await asyncio.sleep(0.01)

            assert [e.id for e in engine.events] == ["push-main"]
            assert router.in_flight == 1

            engine.release.set()
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await router.stop()

        assert [e.id for e in engine.events] == ["push-main", "deploy-dispatch"]
        assert router.in_flight == 0

    async def test_in_flight_bounded(self):
        engine = SlowGateEngine("first")
        queue = asyncio.Queue()
        router = EventRouter(queue, engine, max_in_flight=1)
        await router.start()
        try:
            await queue.put(make_event(id="first"))
            await queue.put(make_event(id="second"))
            await asyncio.sleep(0.05)
            assert engine.events == []
            assert queue.qsize() == 1

            engine.release.set()
            await asyncio.wait_for(queue.join(), timeout=5)
        finally:
            await router.stop()

        assert [e.id for e in engine.events] == ["first", "second"]
