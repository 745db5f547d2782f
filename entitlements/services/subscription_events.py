"""Per-user subscription change broker feeding the SSE change channel."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from entitlements.core.metrics import change_subscribers
from entitlements.services.access_types import format_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionChangeEvent:
    """Fact-of-change notification. Consumers must not patch state from ``data``."""

    user_id: str
    event_type: str  # INSERT | UPDATE | DELETE
    source: str  # webhook | verifier
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = dict(self.data)
        payload.setdefault("occurred_at", format_timestamp(utcnow()))
        payload.update({"user_id": self.user_id, "event_type": self.event_type, "source": self.source})
        return payload


class SubscriptionEventBroker:
    """管理按用户划分的订阅变更队列，每个连接（标签页）一条队列。"""

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue[Optional[SubscriptionChangeEvent]]]] = {}
        self._lock = asyncio.Lock()
        self._max_queue_size = max_queue_size

    async def subscribe(self, user_id: str) -> asyncio.Queue[Optional[SubscriptionChangeEvent]]:
        queue: asyncio.Queue[Optional[SubscriptionChangeEvent]] = asyncio.Queue(maxsize=self._max_queue_size)
        async with self._lock:
            self._subscribers.setdefault(user_id, set()).add(queue)
        change_subscribers.inc()
        return queue

    async def unsubscribe(self, user_id: str, queue: asyncio.Queue[Optional[SubscriptionChangeEvent]]) -> None:
        async with self._lock:
            queues = self._subscribers.get(user_id)
            if queues is None or queue not in queues:
                return
            queues.discard(queue)
            if not queues:
                self._subscribers.pop(user_id, None)
        change_subscribers.dec()

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    async def publish(self, event: SubscriptionChangeEvent) -> int:
        """Fan out to every open connection of the user; returns the number notified."""
        async with self._lock:
            queues = list(self._subscribers.get(event.user_id, ()))
        delivered = 0
        for queue in queues:
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                # any later event invalidates just the same
                logger.warning("Subscription change queue full user_id=%s, dropping event", event.user_id)
        logger.debug(
            "Published subscription change user_id=%s type=%s source=%s delivered=%d",
            event.user_id,
            event.event_type,
            event.source,
            delivered,
        )
        return delivered

    async def close_all(self) -> None:
        async with self._lock:
            all_queues = [q for queues in self._subscribers.values() for q in queues]
            self._subscribers.clear()
        for queue in all_queues:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            change_subscribers.dec()
