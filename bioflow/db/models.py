from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from ..contracts import utcnow


class ProviderCall(SQLModel, table=True):
    """One attempt against an LLM provider, kept for diagnostics."""

    __tablename__ = "provider_calls"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    provider_id: str = Field(index=True)
    model: str
    attempt_number: int
    latency: float
    outcome: str
    error: Optional[str] = None
    request_id: Optional[str] = Field(default=None, index=True)
    total_tokens: int = 0
    created_at: datetime = Field(default_factory=utcnow)
