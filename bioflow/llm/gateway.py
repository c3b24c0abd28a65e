"""Resilient LLM invocation with per-provider retry and ordered fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from ..config import BackoffConfig, LLMConfig
from ..constants import (
    DEFAULT_LLM_MAX_ATTEMPTS,
    DEFAULT_LLM_TIMEOUT,
    DEFAULT_PROVIDER_CONCURRENCY,
)
from ..errors import (
    AggregateFailure,
    CapabilityError,
    PermanentProviderError,
    ProviderError,
    ProviderTimeout,
)
from ..utils.retry import compute_backoff
from .factory import build_providers
from .providers.base import BaseProvider
from .records import CallRecorder, LoggingCallRecorder, ProviderCallRecord
from .types import LLMRequest, LLMResponse

logger = logging.getLogger(__name__)


class PreparedInvocation(BaseModel):
    """A request validated against a provider order.

    ``calls`` holds the provider-specific request for every provider able to
    serve it, in order. ``rejected`` explains every provider that was dropped.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request: LLMRequest
    calls: List[Tuple[str, Any]]
    rejected: Dict[str, str] = {}

    @property
    def provider_order(self) -> List[str]:
        return [provider_id for provider_id, _ in self.calls]


class LLMGateway:
    """Single invocation contract over several LLM providers."""

    def __init__(
        self,
        providers: Dict[str, BaseProvider],
        default_order: Optional[Sequence[str]] = None,
        max_attempts: int = DEFAULT_LLM_MAX_ATTEMPTS,
        timeout_seconds: float = DEFAULT_LLM_TIMEOUT,
        backoff: Optional[BackoffConfig] = None,
        recorder: Optional[CallRecorder] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.providers = dict(providers)
        self.default_order = list(default_order or self.providers)
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.backoff = backoff or BackoffConfig(base=2.0, cap=30.0, jitter=0.5)
        self.recorder: CallRecorder = recorder or LoggingCallRecorder()
        self._sleep = sleep
        self._limiters = {
            provider_id: asyncio.Semaphore(provider.max_concurrency or DEFAULT_PROVIDER_CONCURRENCY)
            for provider_id, provider in self.providers.items()
        }

    @classmethod
    def from_config(
        cls, config: LLMConfig, recorder: Optional[CallRecorder] = None
    ) -> "LLMGateway":
        return cls(
            build_providers(config),
            default_order=config.provider_order,
            max_attempts=config.max_attempts,
            timeout_seconds=config.timeout_seconds,
            backoff=config.backoff,
            recorder=recorder,
        )

    def prepare(
        self, request: LLMRequest, provider_order: Optional[Sequence[str]] = None
    ) -> PreparedInvocation:
        """Check capabilities and build provider request shapes up front.

        Raises ``CapabilityError`` when no provider in the order can serve
        ``request``. Malformed requests surface here as pydantic validation
        errors, before any network call.
        """
        order = list(provider_order or self.default_order)
        calls: List[Tuple[str, Any]] = []
        rejected: Dict[str, str] = {}
        for provider_id in order:
            provider = self.providers.get(provider_id)
            if provider is None:
                rejected[provider_id] = "not configured"
                continue
            reason = provider.check(request)
            if reason:
                rejected[provider_id] = reason
                continue
            calls.append((provider_id, provider.build_request(request)))

        if not calls:
            detail = "; ".join(f"{pid}: {why}" for pid, why in rejected.items()) or "empty order"
            raise CapabilityError(f"No provider can serve the request ({detail})")
        for provider_id, why in rejected.items():
            logger.info(f"Dropping provider {provider_id} for request {request.label!r}: {why}")
        return PreparedInvocation(request=request, calls=calls, rejected=rejected)

    async def invoke(
        self, request: LLMRequest, provider_order: Optional[Sequence[str]] = None
    ) -> LLMResponse:
        """Return the first successful response along the provider order.

        Raises ``AggregateFailure`` with the last error of each provider when
        all of them are exhausted.
        """
        prepared = self.prepare(request, provider_order)
        errors: Dict[str, BaseException] = {}
        for provider_id, shaped in prepared.calls:
            try:
                return await self._invoke_provider(provider_id, shaped, request)
            except ProviderError as e:
                errors[provider_id] = e
                logger.warning(f"Provider {provider_id} exhausted for {request.label!r}: {e}")
        raise AggregateFailure(errors)

    async def _invoke_provider(
        self, provider_id: str, shaped: Any, request: LLMRequest
    ) -> LLMResponse:
        provider = self.providers[provider_id]
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            attempt += 1
            async with self._limiters[provider_id]:
                started = loop.time()
                try:
                    response = await asyncio.wait_for(
                        provider.complete(shaped), timeout=self.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    error: ProviderError = ProviderTimeout(
                        f"{provider_id} call exceeded {self.timeout_seconds}s deadline",
                        provider_id=provider_id,
                    )
                except ProviderError as e:
                    error = e
                except Exception as e:
                    logger.exception(f"Unexpected error from provider {provider_id}")
                    error = PermanentProviderError(
                        f"{type(e).__name__}: {e}", provider_id=provider_id
                    )
                else:
                    await self._record(
                        provider_id,
                        provider,
                        attempt,
                        loop.time() - started,
                        "success",
                        None,
                        request,
                        total_tokens=response.usage.total_tokens,
                    )
                    return response
                latency = loop.time() - started

            outcome = "transient_error" if error.retryable else "permanent_error"
            await self._record(provider_id, provider, attempt, latency, outcome, error, request)

            if not error.retryable or attempt >= self.max_attempts:
                raise error
            delay = compute_backoff(
                attempt, base=self.backoff.base, jitter=self.backoff.jitter, cap=self.backoff.cap
            )
            logger.warning(
                f"{provider_id} attempt {attempt}/{self.max_attempts} failed: {error}; "
                f"retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

    async def _record(
        self,
        provider_id: str,
        provider: BaseProvider,
        attempt: int,
        latency: float,
        outcome: str,
        error: Optional[BaseException],
        request: LLMRequest,
        total_tokens: int = 0,
    ) -> None:
        record = ProviderCallRecord(
            provider_id=provider_id,
            model=provider.model,
            attempt_number=attempt,
            latency=latency,
            outcome=outcome,
            error=str(error) if error else None,
            request_id=request.idempotency_key,
            total_tokens=total_tokens,
        )
        try:
            await self.recorder.record(record)
        except Exception as e:
            logger.warning(f"Failed to record provider call: {e}")
