"""Async pub/sub event bus."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from uuid import uuid4

from hookrelay.utils.logging import get_logger

if TYPE_CHECKING:
    from hookrelay.sources.base import SourceMessage

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    SOURCE_EVENT = "source.event"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SourceEventReceived(Event):
    type: EventType = field(default=EventType.SOURCE_EVENT, init=False)

    event_code: str = ""
    # Absent for lifecycle events (state changes, disconnects)
    message: SourceMessage | None = field(default=None)


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

Handler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """Fans events out to one queue per subscriber.

    Each subscriber has its own consumer task, so handlers never block one
    another and each sees events in publish order. ``max_queue_size=0``
    leaves the queues unbounded; with a bound, events that do not fit are
    dropped and counted.
    """

    def __init__(self, max_queue_size: int = 0) -> None:
        self._subscribers: dict[EventType, list[tuple[Handler, asyncio.Queue[Event]]]] = {}
        self._max_queue_size = max_queue_size
        self._tasks: list[asyncio.Task[None]] = []
        self.dropped = 0

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(event_type, []).append((handler, queue))

    async def publish(self, event: Event) -> None:
        for handler, queue in self._subscribers.get(event.type, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                log.warning(
                    "event_queue_full",
                    event_type=event.type.value,
                    handler=handler.__qualname__,
                    dropped=self.dropped,
                )

    async def start(self) -> None:
        for event_type, handler_list in self._subscribers.items():
            for handler, queue in handler_list:
                task = asyncio.create_task(
                    self._consumer(handler, queue, event_type.value),
                    name=f"bus-{event_type.value}-{handler.__qualname__}",
                )
                self._tasks.append(task)

    async def _consumer(
        self, handler: Handler, queue: asyncio.Queue[Event], event_type: str
    ) -> None:
        while True:
            event = await queue.get()
            try:
                await handler(event)
            except Exception:
                log.exception("handler_error", event_type=event_type, event_id=event.id)
            finally:
                queue.task_done()

    async def stop(self, drain_timeout: float = 0.0) -> None:
        """Stop the consumers, first giving queued events up to ``drain_timeout`` seconds."""
        if drain_timeout > 0 and self._tasks:
            queues = [q for handlers in self._subscribers.values() for _, q in handlers]
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(q.join() for q in queues)), timeout=drain_timeout
                )
            except asyncio.TimeoutError:
                log.warning("bus_drain_timeout", pending=sum(q.qsize() for q in queues))
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
