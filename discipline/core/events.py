"""
In-process fan-out of detention status changes to live dashboard subscribers.
Delivery is best-effort: slow subscribers drop events instead of blocking the publisher.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Set
from uuid import UUID

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Per-tenant set of subscriber queues."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[UUID, Set[asyncio.Queue]] = {}

    def subscribe(self, tenant_id: UUID) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(tenant_id, set()).add(queue)
        return queue

    def unsubscribe(self, tenant_id: UUID, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(tenant_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            self._subscribers.pop(tenant_id, None)

    def subscriber_count(self, tenant_id: UUID) -> int:
        return len(self._subscribers.get(tenant_id, ()))

    def publish(self, tenant_id: UUID, event: Dict[str, Any]) -> int:
        """Queue the event for every subscriber of the tenant; returns how many received it."""
        message = dict(event)
        message.setdefault("timestamp", datetime.utcnow().isoformat())
        delivered = 0
        for queue in list(self._subscribers.get(tenant_id, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for slow subscriber", message.get("type"))
        return delivered


# Global broadcaster instance
broadcaster = EventBroadcaster()
