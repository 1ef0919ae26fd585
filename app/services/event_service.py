"""
In-process event broadcaster.

Services emit events such as 'count-created' or 'request-status-changed';
listeners (a websocket bridge, tests) subscribe and read from a queue.
Delivery is at-most-once: emit never waits, and a subscriber whose queue
is full misses the event.

Usage:
    queue = broadcaster.subscribe()
    broadcaster.emit("count-created", {"id": 1, "folio": "CNT-202610-0001"})
    event = await queue.get()   # {"event": "count-created", "payload": {...}}
"""
import asyncio
import logging
from typing import Any, Dict, List

from app.database import utc_now

logger = logging.getLogger(__name__)


class EventType:
    """Event names emitted by the counting core."""
    COUNT_CREATED = "count-created"
    COUNT_STATUS_CHANGED = "count-status-changed"
    COUNT_REASSIGNED = "count-reassigned"
    COUNT_DETAIL_ADDED = "count-detail-added"
    COUNT_DETAIL_UPDATED = "count-detail-updated"
    REQUEST_CREATED = "request-created"
    REQUEST_STATUS_CHANGED = "request-status-changed"


class EventBroadcaster:
    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: str, payload: Dict[str, Any]) -> int:
        """Hand the event to every subscriber. Returns how many got it."""
        message = {"event": event, "payload": payload, "emitted_at": utc_now().isoformat()}
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Event '{event}' dropped for a slow subscriber")
        return delivered
