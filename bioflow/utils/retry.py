from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.5,
    cap: Optional[float] = None,
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` counts from 1. The exponential part is capped at ``cap``
    before jitter is added.
    """
    try:
        delay = base ** max(attempt, 0)
    except OverflowError:
        delay = float("inf")
    if cap is not None:
        delay = min(delay, cap)
    return delay + random.uniform(0, jitter)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base: float = 2.0,
    jitter: float = 0.5,
    cap: Optional[float] = 30.0,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or a non-retryable error occurs.

    Used by stage handlers to wrap flaky collaborators with the same
    discipline the LLM gateway applies to providers.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            delay = compute_backoff(attempt, base=base, jitter=jitter, cap=cap)
            logger.warning(
                f"{label} failed on attempt {attempt}/{max_attempts}: {exc}; "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)
