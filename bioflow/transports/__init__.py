"""Notification bus factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import BioflowConfig, load_config
from .base import NotificationBus
from .inmemory import InMemoryNotificationBus


def get_notification_bus(
    backend: Optional[str] = None, config: Optional[BioflowConfig] = None
) -> NotificationBus:
    """Factory function to get the configured notification bus."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("BIOFLOW_NOTIFICATIONS")
        or config.notifications.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryNotificationBus()
    elif backend == "redis":
        from .redis import RedisNotificationBus

        redis_conf = config.notifications.redis
        return RedisNotificationBus(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


__all__ = ["NotificationBus", "InMemoryNotificationBus", "get_notification_bus"]
