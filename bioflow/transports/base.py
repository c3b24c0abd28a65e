"""Base notification bus interface for workflow progress events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import WorkflowEvent


class NotificationBus(metaclass=abc.ABCMeta):
    """Abstract fan-out channel for workflow progress.

    Delivery is best-effort and at-least-once. The bus is never the source of
    truth: a subscriber that misses an event re-queries the workflow.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection and release subscribers (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: WorkflowEvent) -> None:
        """Deliver ``event`` to subscribers of its conversation."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, conversation_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowEvent]:
        """Yield events published for ``conversation_id``.

        Args:
            conversation_id: Conversation whose workflows to follow
            lifespan: Maximum time in seconds to keep the subscription open.
                If None, runs until the bus disconnects.
        """
        raise NotImplementedError
