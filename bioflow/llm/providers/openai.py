"""OpenAI chat completions adapter, also used for OpenRouter and GLM."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

import openai

from ...config import ProviderConfig
from ...errors import PermanentProviderError, ProviderError, TransientProviderError
from ..types import (
    ChatCompletionRequest,
    GLMChatRequest,
    LLMRequest,
    LLMResponse,
    OpenRouterChatRequest,
    ProviderCapabilities,
    TokenUsage,
)
from .base import BaseProvider, idempotency_headers, openai_messages

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

_TRANSIENT_STATUS = {408, 409, 425, 429}


def translate_openai_error(exc: Exception, provider_id: str) -> ProviderError:
    """Map an ``openai`` SDK exception onto the bioflow error families."""
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransientProviderError(str(exc), provider_id=provider_id)
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in _TRANSIENT_STATUS or status >= 500:
            return TransientProviderError(str(exc), provider_id=provider_id, status_code=status)
        return PermanentProviderError(str(exc), provider_id=provider_id, status_code=status)
    return PermanentProviderError(str(exc), provider_id=provider_id)


class OpenAIProvider(BaseProvider):
    """Chat completions via ``openai.AsyncOpenAI``."""

    provider_id = "openai"
    default_capabilities = ProviderCapabilities(
        supports_streaming=True, supports_vision=True, max_context=128_000
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._client: Optional[openai.AsyncOpenAI] = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise PermanentProviderError(
                    f"No API key configured for {self.provider_id}",
                    provider_id=self.provider_id,
                )
            # Retries are owned by the gateway.
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key, base_url=self.api_base, max_retries=0
            )
        return self._client

    def build_request(self, request: LLMRequest) -> ChatCompletionRequest:
        return ChatCompletionRequest(
            model=self.model,
            messages=openai_messages(request),
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            stream=request.stream,
            idempotency_key=request.idempotency_key,
        )

    def _headers(self, prepared: Any) -> Optional[Dict[str, str]]:
        return idempotency_headers(prepared.idempotency_key)

    async def complete(
        self, prepared: Union[ChatCompletionRequest, OpenRouterChatRequest, GLMChatRequest]
    ) -> LLMResponse:
        client = self._get_client()
        kwargs: Dict[str, Any] = {
            "model": prepared.model,
            "messages": prepared.messages,
            "max_tokens": prepared.max_tokens,
        }
        if prepared.temperature is not None:
            kwargs["temperature"] = prepared.temperature
        headers = self._headers(prepared)
        if headers:
            kwargs["extra_headers"] = headers

        try:
            if prepared.stream:
                return await self._complete_stream(client, kwargs, prepared)
            response = await client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise translate_openai_error(e, self.provider_id) from e

        if not response.choices:
            raise TransientProviderError(
                f"Empty response from {self.model}", provider_id=self.provider_id
            )
        choice = response.choices[0]
        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return LLMResponse(
            content=choice.message.content or "",
            provider_id=self.provider_id,
            model=response.model or self.model,
            usage=usage,
            finish_reason=choice.finish_reason,
            request_id=getattr(prepared, "idempotency_key", None),
        )

    async def _complete_stream(
        self, client: openai.AsyncOpenAI, kwargs: Dict[str, Any], prepared: Any
    ) -> LLMResponse:
        stream = await client.chat.completions.create(**kwargs, stream=True)
        chunks = []
        finish_reason = None
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                chunks.append(delta)
            finish_reason = chunk.choices[0].finish_reason or finish_reason
        return LLMResponse(
            content="".join(chunks),
            provider_id=self.provider_id,
            model=self.model,
            finish_reason=finish_reason,
            request_id=getattr(prepared, "idempotency_key", None),
        )


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter through its OpenAI-compatible endpoint."""

    provider_id = "openrouter"
    default_capabilities = ProviderCapabilities(
        supports_streaming=True, supports_vision=False, max_context=128_000
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.api_base = self.api_base or OPENROUTER_BASE_URL

    def build_request(self, request: LLMRequest) -> OpenRouterChatRequest:
        return OpenRouterChatRequest(
            model=self.model,
            messages=openai_messages(request),
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            stream=request.stream,
            idempotency_key=request.idempotency_key,
        )

    def _headers(self, prepared: Any) -> Optional[Dict[str, str]]:
        headers = idempotency_headers(prepared.idempotency_key) or {}
        headers["X-Title"] = prepared.app_title
        return headers


GLM_BASE_URL = "https://api.z.ai/api/paas/v4"


def is_glm_vision_model(model: str) -> bool:
    """GLM vision models: glm-4.6v, glm-4.6v-flash, glm-4.5v and the autoglm family."""
    name = model.lower()
    return (
        ".6v" in name
        or ".5v" in name
        or "-v-" in name
        or name.endswith("v")
        or "vision" in name
        or "autoglm" in name
    )


class GLMProvider(OpenAIProvider):
    """Zhipu GLM through its OpenAI-compatible endpoint.

    Text and vision models share one endpoint; vision support follows the
    configured model unless ``supports_vision`` is set explicitly.
    """

    provider_id = "glm"
    default_capabilities = ProviderCapabilities(
        supports_streaming=True, supports_vision=False, max_context=128_000
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.api_base = self.api_base or GLM_BASE_URL
        if kwargs.get("capabilities") is None:
            self.capabilities = self.capabilities.model_copy(
                update={"supports_vision": is_glm_vision_model(self.model)}
            )

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "GLMProvider":
        provider = super().from_config(config)
        if config.supports_vision is None:
            provider.capabilities = provider.capabilities.model_copy(
                update={"supports_vision": is_glm_vision_model(config.model)}
            )
        return provider

    def build_request(self, request: LLMRequest) -> GLMChatRequest:
        return GLMChatRequest(
            model=self.model,
            messages=openai_messages(request),
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            stream=request.stream,
            idempotency_key=request.idempotency_key,
        )
