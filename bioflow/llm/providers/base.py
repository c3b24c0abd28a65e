"""Base class for LLM provider adapters."""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ...config import ProviderConfig
from ..types import (
    ImageBase64Part,
    ImageUrlPart,
    LLMRequest,
    LLMResponse,
    ProviderCapabilities,
    TextPart,
)


class BaseProvider(metaclass=abc.ABCMeta):
    """One LLM backend behind the gateway.

    ``build_request`` turns a neutral request into the provider's closed
    request model and runs at prepare time. ``complete`` performs the network
    call and must translate SDK failures into ``TransientProviderError`` or
    ``PermanentProviderError``.
    """

    provider_id: str = ""
    default_capabilities = ProviderCapabilities()

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        capabilities: Optional[ProviderCapabilities] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.capabilities = capabilities or self.default_capabilities
        self.max_concurrency = max_concurrency

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "BaseProvider":
        overrides = {
            key: value
            for key, value in (
                ("supports_streaming", config.supports_streaming),
                ("supports_vision", config.supports_vision),
                ("max_context", config.max_context),
            )
            if value is not None
        }
        return cls(
            model=config.model,
            api_key=config.api_key,
            api_base=config.api_base,
            capabilities=cls.default_capabilities.model_copy(update=overrides),
            max_concurrency=config.max_concurrency,
        )

    def check(self, request: LLMRequest) -> Optional[str]:
        """Return why this provider cannot serve ``request``."""
        return self.capabilities.mismatch(request)

    @abc.abstractmethod
    def build_request(self, request: LLMRequest) -> Any:
        """Return the provider-specific request model."""
        raise NotImplementedError

    @abc.abstractmethod
    async def complete(self, prepared: Any) -> LLMResponse:
        """Send ``prepared`` to the provider and return its response."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider_id={self.provider_id!r}, model={self.model!r})"


def openai_messages(request: LLMRequest) -> List[Dict[str, Any]]:
    """Chat-completions message list, shared by OpenAI-compatible adapters."""
    messages: List[Dict[str, Any]] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})
    for message in request.messages:
        if not message.has_images:
            messages.append({"role": message.role, "content": message.text})
            continue
        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageUrlPart):
                parts.append({"type": "image_url", "image_url": {"url": part.url}})
            elif isinstance(part, ImageBase64Part):
                parts.append({"type": "image_url", "image_url": {"url": part.data_url}})
        messages.append({"role": message.role, "content": parts})
    return messages


def idempotency_headers(key: Optional[str]) -> Optional[Dict[str, str]]:
    return {"Idempotency-Key": key} if key else None
