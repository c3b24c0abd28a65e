"""Diagnostic records of individual provider calls."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from ..contracts import utcnow

logger = logging.getLogger(__name__)

CallOutcome = Literal["success", "transient_error", "permanent_error"]

DEFAULT_MAX_RECORDS = 1000


class ProviderCallRecord(BaseModel):
    provider_id: str
    model: str
    attempt_number: int
    latency: float
    outcome: CallOutcome
    error: Optional[str] = None
    request_id: Optional[str] = None
    total_tokens: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class CallRecorder(Protocol):
    """Sink for provider call records. Recording must never fail a call."""

    async def record(self, record: ProviderCallRecord) -> None:
        """Store one call record."""


class InMemoryCallRecorder:
    """Keep the most recent call records, mostly for tests and the CLI."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self.records: Deque[ProviderCallRecord] = deque(maxlen=max_records)

    async def record(self, record: ProviderCallRecord) -> None:
        self.records.append(record)

    def for_provider(self, provider_id: str) -> List[ProviderCallRecord]:
        return [r for r in self.records if r.provider_id == provider_id]

    def clear(self) -> None:
        self.records.clear()


class LoggingCallRecorder:
    """Write each record to the log at debug level. The gateway's default."""

    async def record(self, record: ProviderCallRecord) -> None:
        line = (
            f"{record.provider_id}/{record.model} attempt={record.attempt_number} "
            f"outcome={record.outcome} latency={record.latency:.3f}s"
        )
        if record.total_tokens:
            line += f" tokens={record.total_tokens}"
        if record.error:
            line += f" error={record.error}"
        logger.debug(line)
