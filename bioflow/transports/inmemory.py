"""In-process notification bus."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Dict, Optional, Set

from ..contracts import WorkflowEvent
from .base import NotificationBus

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemoryNotificationBus(NotificationBus):
    """Fan out events to per-subscriber queues inside one process."""

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._max_queue_size = max_queue_size
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return sum(len(queues) for queues in self._subscribers.values())

    async def connect(self) -> None:
        self._closed = False

    async def disconnect(self) -> None:
        """Wake every subscriber so their iterators finish."""
        self._closed = True
        for queues in self._subscribers.values():
            for queue in queues:
                self._offer(queue, _CLOSED)
        self._subscribers.clear()

    async def publish(self, event: WorkflowEvent) -> None:
        for queue in list(self._subscribers.get(event.conversation_id, ())):
            self._offer(queue, event)

    def _offer(self, queue: asyncio.Queue, item: object) -> None:
        if queue.full():
            # Slow subscriber: drop the oldest event, it can re-query state.
            dropped = queue.get_nowait()
            logger.warning(f"Dropping event for slow subscriber: {dropped}")
        queue.put_nowait(item)

    async def subscribe(
        self, conversation_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowEvent]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[conversation_id].add(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while not self._closed:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                if item is _CLOSED:
                    break
                yield item
        finally:
            queues = self._subscribers.get(conversation_id)
            if queues is not None:
                queues.discard(queue)
                if not queues:
                    del self._subscribers[conversation_id]
