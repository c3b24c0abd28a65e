"""Anthropic Messages API adapter."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import anthropic

from ...errors import PermanentProviderError, ProviderError, TransientProviderError
from ..types import (
    AnthropicMessagesRequest,
    ImageBase64Part,
    ImageUrlPart,
    LLMRequest,
    LLMResponse,
    ProviderCapabilities,
    TextPart,
    TokenUsage,
)
from .base import BaseProvider, idempotency_headers

# 529 is Anthropic's "overloaded".
_TRANSIENT_STATUS = {408, 409, 429, 529}


def translate_anthropic_error(exc: Exception, provider_id: str) -> ProviderError:
    if isinstance(exc, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
        return TransientProviderError(str(exc), provider_id=provider_id)
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status in _TRANSIENT_STATUS or status >= 500:
            return TransientProviderError(str(exc), provider_id=provider_id, status_code=status)
        return PermanentProviderError(str(exc), provider_id=provider_id, status_code=status)
    return PermanentProviderError(str(exc), provider_id=provider_id)


def _content_blocks(request: LLMRequest) -> List[Dict[str, Any]]:
    messages = []
    for message in request.messages:
        blocks: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImageUrlPart):
                blocks.append({"type": "image", "source": {"type": "url", "url": part.url}})
            elif isinstance(part, ImageBase64Part):
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": part.media_type,
                            "data": part.data,
                        },
                    }
                )
        messages.append({"role": message.role, "content": blocks})
    return messages


class AnthropicProvider(BaseProvider):
    """Claude models via ``anthropic.AsyncAnthropic``."""

    provider_id = "anthropic"
    default_capabilities = ProviderCapabilities(
        supports_streaming=True, supports_vision=True, max_context=200_000
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._client: Optional[anthropic.AsyncAnthropic] = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self.api_key:
                raise PermanentProviderError(
                    "No API key configured for anthropic", provider_id=self.provider_id
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key, base_url=self.api_base, max_retries=0
            )
        return self._client

    def build_request(self, request: LLMRequest) -> AnthropicMessagesRequest:
        return AnthropicMessagesRequest(
            model=self.model,
            system=request.system_instruction,
            messages=_content_blocks(request),
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            stream=request.stream,
            idempotency_key=request.idempotency_key,
        )

    async def complete(self, prepared: AnthropicMessagesRequest) -> LLMResponse:
        client = self._get_client()
        kwargs: Dict[str, Any] = {
            "model": prepared.model,
            "messages": prepared.messages,
            "max_tokens": prepared.max_tokens,
        }
        if prepared.system:
            kwargs["system"] = prepared.system
        if prepared.temperature is not None:
            kwargs["temperature"] = prepared.temperature
        headers = idempotency_headers(prepared.idempotency_key)
        if headers:
            kwargs["extra_headers"] = headers

        try:
            if prepared.stream:
                async with client.messages.stream(**kwargs) as stream:
                    async for _ in stream.text_stream:
                        pass
                    response = await stream.get_final_message()
            else:
                response = await client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise translate_anthropic_error(e, self.provider_id) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return LLMResponse(
            content=text,
            provider_id=self.provider_id,
            model=response.model or self.model,
            usage=TokenUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            finish_reason=response.stop_reason,
            request_id=prepared.idempotency_key,
        )
