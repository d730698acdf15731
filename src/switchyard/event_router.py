"""Event Router — consumes queued events and hands them to the pipeline engine.

Runs as an async consumer loop. Handles:
- GitHub webhook normalization (raw GitHubEvent → canonical Event)
- Deduplication by event id (webhook delivery id, run-completed id, ...)
- Error isolation: a failing event is logged and the loop moves on

Each dequeued event is handled in its own task, so an event waiting on the
dependency gate does not hold up the ones behind it. At most
``max_in_flight`` events are handled at once; the queue item is marked done
only when its handling finishes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING

from switchyard import ingress
from switchyard.models import Event, GitHubEvent

if TYPE_CHECKING:
    from switchyard.github_client import GitHubClient
    from switchyard.pipeline.engine import PipelineEngine

logger = logging.getLogger(__name__)


class EventRouter:
    """Async consumer loop feeding the pipeline engine."""

    def __init__(
        self,
        event_queue: asyncio.Queue[GitHubEvent | Event],
        engine: PipelineEngine,
        *,
        github: GitHubClient | None = None,
        dedup_window: int = 10_000,
        max_in_flight: int = 32,
    ):
        self.event_queue = event_queue
        self.engine = engine
        self.github = github
        self.dedup_window = dedup_window

        # Recently seen event ids, oldest first
        self._seen: OrderedDict[str, None] = OrderedDict()

        self.last_event_time: float | None = None
        self.events_processed = 0

        self._running = False
        self._task: asyncio.Task | None = None

        self._slots = asyncio.Semaphore(max(1, max_in_flight))
        self._in_flight: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the event consumer loop."""
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="event-router")
        logger.info("Event router started")

    async def stop(self) -> None:
        """Stop the event consumer loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        in_flight = list(self._in_flight)
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Event router stopped")

    @property
    def in_flight(self) -> int:
        """Events currently being handled."""
        return len(self._in_flight)

    async def _consumer_loop(self) -> None:
        """Main consumer loop — dequeue events and hand each to its own task."""
        while self._running:
            try:
                await self._slots.acquire()
            except asyncio.CancelledError:
                break
            try:
                item = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                self._slots.release()
                continue
            except asyncio.CancelledError:
                self._slots.release()
                break

            task = asyncio.create_task(self._handle(item), name=f"event-{_item_id(item)}")
            self._in_flight.add(task)
            task.add_done_callback(self._handled)

    async def _handle(self, item: GitHubEvent | Event) -> None:
        try:
            await self.route(item)
        except Exception:
            logger.exception("Error routing event %s", _item_id(item))

    def _handled(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._slots.release()
        self.event_queue.task_done()

    def seen(self, event_id: str) -> bool:
        """Record ``event_id``; True if it was already seen recently."""
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return True
        self._seen[event_id] = None
        while len(self._seen) > self.dedup_window:
            self._seen.popitem(last=False)
        return False

    async def route(self, item: GitHubEvent | Event) -> None:
        """Normalize, deduplicate and hand one queued item to the engine."""
        if self.seen(_item_id(item)):
            logger.debug("Duplicate event filtered: %s", _item_id(item))
            return

        if isinstance(item, GitHubEvent):
            event = await ingress.from_github(
                item.event_type, item.payload, item.delivery_id, github=self.github
            )
            if event is None:
                logger.debug("GitHub event %s is not actionable", item.full_type)
                return
        else:
            event = item

        self.last_event_time = time.time()
        self.events_processed += 1
        runs = await self.engine.handle_event(event)
        logger.info(
            "Event %s (%s on %s) started %d run(s)",
            event.id,
            event.kind.value,
            event.branch,
            len(runs),
        )


def _item_id(item: GitHubEvent | Event) -> str:
    if isinstance(item, GitHubEvent):
        return item.delivery_id
    return item.id
