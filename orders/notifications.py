"""
Notification sink for order lifecycle events.

The core publishes into any object satisfying ``NotificationSink``. The
in-memory sink keeps a short per-user history (for polling) and fans events
out to live subscribers (for the websocket push adapter).
"""

import asyncio
from collections import defaultdict, deque
from typing import Optional, Protocol, runtime_checkable
from uuid import UUID

import structlog

from .models import OrderEvent

logger = structlog.get_logger(__name__)


@runtime_checkable
class NotificationSink(Protocol):
    async def publish(self, user_id: UUID, event: OrderEvent) -> None:
        ...


class InMemoryNotificationSink:
    def __init__(self, history_size: int = 100):
        self.history_size = history_size
        self._history: dict[UUID, deque] = defaultdict(lambda: deque(maxlen=self.history_size))
        self._subscribers: dict[UUID, set[asyncio.Queue]] = defaultdict(set)

    async def publish(self, user_id: UUID, event: OrderEvent) -> None:
        self._history[user_id].append(event)
        for queue in list(self._subscribers.get(user_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("subscriber queue full, dropping event", user_id=str(user_id), event_type=event.type)

    def history(self, user_id: UUID, event_type: Optional[str] = None) -> list[OrderEvent]:
        events = list(self._history.get(user_id, ()))
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events

    def subscribe(self, user_id: UUID, maxsize: int = 256) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers[user_id].add(queue)
        return queue

    def unsubscribe(self, user_id: UUID, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(user_id)
        if subscribers is not None:
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[user_id]
