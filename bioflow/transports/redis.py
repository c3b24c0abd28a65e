"""Redis pub/sub notification bus for cross-process progress events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import WorkflowEvent
from .base import NotificationBus

logger = logging.getLogger(__name__)


class RedisNotificationBus(NotificationBus):
    """Publish workflow events on one Redis channel per conversation."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel_prefix: str = "bioflow:conversation",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisNotificationBus")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel_prefix = channel_prefix
        self._redis: Optional[Any] = None

    def channel(self, conversation_id: str) -> str:
        return f"{self.channel_prefix}:{conversation_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, event: WorkflowEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self.channel(event.conversation_id), event.to_json())

    async def subscribe(
        self, conversation_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowEvent]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel(conversation_id))
        start_time = asyncio.get_running_loop().time() if lifespan else None
        try:
            while True:
                if lifespan and start_time is not None:
                    elapsed = asyncio.get_running_loop().time() - start_time
                    if elapsed >= lifespan:
                        break

                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message is None:
                    continue
                try:
                    yield WorkflowEvent.from_json(message["data"])
                except ValueError as e:
                    logger.warning(f"Failed to parse workflow event: {e}")
                    continue
        finally:
            await pubsub.unsubscribe(self.channel(conversation_id))
            await pubsub.aclose()
