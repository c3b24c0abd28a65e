"""Gemini adapter using the ``google-genai`` SDK."""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ...errors import PermanentProviderError, ProviderError, TransientProviderError
from ..types import (
    GoogleGenerateRequest,
    ImageBase64Part,
    ImageUrlPart,
    LLMRequest,
    LLMResponse,
    ProviderCapabilities,
    TextPart,
    TokenUsage,
)
from .base import BaseProvider

_TRANSIENT_STATUS = {408, 429}


def translate_google_error(exc: Exception, provider_id: str) -> ProviderError:
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientProviderError(str(exc), provider_id=provider_id)
    if isinstance(exc, genai_errors.APIError):
        status = exc.code
        if isinstance(exc, genai_errors.ServerError) or status in _TRANSIENT_STATUS:
            return TransientProviderError(str(exc), provider_id=provider_id, status_code=status)
        return PermanentProviderError(str(exc), provider_id=provider_id, status_code=status)
    return PermanentProviderError(str(exc), provider_id=provider_id)


def _contents(request: LLMRequest) -> List[Dict[str, Any]]:
    contents = []
    for message in request.messages:
        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ImageUrlPart):
                parts.append({"file_data": {"file_uri": part.url, "mime_type": "image/*"}})
            elif isinstance(part, ImageBase64Part):
                parts.append({"inline_data": {"mime_type": part.media_type, "data": part.data}})
        role = "model" if message.role == "assistant" else "user"
        contents.append({"role": role, "parts": parts})
    return contents


def _to_sdk_content(content: Dict[str, Any]) -> genai_types.Content:
    parts = []
    for part in content["parts"]:
        if "text" in part:
            parts.append(genai_types.Part.from_text(text=part["text"]))
        elif "inline_data" in part:
            blob = part["inline_data"]
            parts.append(
                genai_types.Part.from_bytes(
                    data=base64.b64decode(blob["data"]), mime_type=blob["mime_type"]
                )
            )
        elif "file_data" in part:
            ref = part["file_data"]
            parts.append(
                genai_types.Part.from_uri(file_uri=ref["file_uri"], mime_type=ref["mime_type"])
            )
    return genai_types.Content(role=content["role"], parts=parts)


class GoogleProvider(BaseProvider):
    """Gemini models through ``genai.Client().aio``."""

    provider_id = "google"
    default_capabilities = ProviderCapabilities(
        supports_streaming=True, supports_vision=True, max_context=1_048_576
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise PermanentProviderError(
                    "No API key configured for google", provider_id=self.provider_id
                )
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def build_request(self, request: LLMRequest) -> GoogleGenerateRequest:
        return GoogleGenerateRequest(
            model=self.model,
            contents=_contents(request),
            system_instruction=request.system_instruction,
            max_output_tokens=request.max_tokens,
            temperature=request.temperature,
            stream=request.stream,
        )

    async def complete(self, prepared: GoogleGenerateRequest) -> LLMResponse:
        client = self._get_client()
        config_kwargs: Dict[str, Any] = {"max_output_tokens": prepared.max_output_tokens}
        if prepared.system_instruction:
            config_kwargs["system_instruction"] = prepared.system_instruction
        if prepared.temperature is not None:
            config_kwargs["temperature"] = prepared.temperature
        config = genai_types.GenerateContentConfig(**config_kwargs)
        contents = [_to_sdk_content(c) for c in prepared.contents]

        try:
            if prepared.stream:
                chunks = []
                usage = None
                stream = await client.aio.models.generate_content_stream(
                    model=prepared.model, contents=contents, config=config
                )
                async for chunk in stream:
                    if chunk.text:
                        chunks.append(chunk.text)
                    usage = chunk.usage_metadata or usage
                text = "".join(chunks)
                finish_reason = None
            else:
                response = await client.aio.models.generate_content(
                    model=prepared.model, contents=contents, config=config
                )
                text = response.text or ""
                usage = response.usage_metadata
                finish_reason = None
                if response.candidates and response.candidates[0].finish_reason:
                    finish_reason = str(response.candidates[0].finish_reason)
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise translate_google_error(e, self.provider_id) from e

        token_usage = TokenUsage()
        if usage is not None:
            token_usage = TokenUsage(
                input_tokens=usage.prompt_token_count or 0,
                output_tokens=usage.candidates_token_count or 0,
            )
        return LLMResponse(
            content=text,
            provider_id=self.provider_id,
            model=prepared.model,
            usage=token_usage,
            finish_reason=finish_reason,
        )
