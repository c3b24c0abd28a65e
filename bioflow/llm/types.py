"""Request, response and provider-specific message models for the LLM gateway."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..constants import DEFAULT_LLM_MAX_TOKENS
from ..contracts import new_id


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    url: str


class ImageBase64Part(BaseModel):
    type: Literal["image_base64"] = "image_base64"
    data: str
    media_type: str = "image/png"

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


ContentPart = Annotated[
    Union[TextPart, ImageUrlPart, ImageBase64Part], Field(discriminator="type")
]


class LLMMessage(BaseModel):
    """Single chat message made of typed content parts."""

    role: Literal["user", "assistant"]
    content: List[ContentPart]

    @classmethod
    def user(cls, text: str) -> "LLMMessage":
        return cls(role="user", content=[TextPart(text=text)])

    @classmethod
    def assistant(cls, text: str) -> "LLMMessage":
        return cls(role="assistant", content=[TextPart(text=text)])

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def has_images(self) -> bool:
        return any(not isinstance(p, TextPart) for p in self.content)


class LLMRequest(BaseModel):
    """Provider-neutral completion request."""

    messages: List[LLMMessage]
    system_instruction: Optional[str] = None
    max_tokens: int = DEFAULT_LLM_MAX_TOKENS
    temperature: Optional[float] = None
    stream: bool = False
    idempotency_key: str = Field(default_factory=new_id)
    label: str = ""

    @classmethod
    def from_prompt(
        cls, prompt: str, system_instruction: Optional[str] = None, **kwargs: Any
    ) -> "LLMRequest":
        return cls(
            messages=[LLMMessage.user(prompt)],
            system_instruction=system_instruction,
            **kwargs,
        )

    @property
    def needs_vision(self) -> bool:
        return any(m.has_images for m in self.messages)

    def estimated_tokens(self) -> int:
        """Rough context size: four characters per token plus the output budget."""
        chars = len(self.system_instruction or "")
        chars += sum(len(m.text) for m in self.messages)
        return chars // 4 + self.max_tokens


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMResponse(BaseModel):
    content: str
    provider_id: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None
    request_id: Optional[str] = None


class ProviderCapabilities(BaseModel):
    """What a provider advertises to the gateway's capability check."""

    supports_streaming: bool = False
    supports_vision: bool = False
    max_context: int = 128_000

    def mismatch(self, request: LLMRequest) -> Optional[str]:
        """Return why ``request`` cannot be served, or ``None`` when it can."""
        if request.stream and not self.supports_streaming:
            return "streaming not supported"
        if request.needs_vision and not self.supports_vision:
            return "vision not supported"
        needed = request.estimated_tokens()
        if needed > self.max_context:
            return f"request needs ~{needed} tokens, context is {self.max_context}"
        return None


# ----------------------------------------------------------------------
# Provider request shapes. Each is closed (unknown fields are rejected) and
# is built when the gateway prepares an invocation.


class _ClosedModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ChatCompletionRequest(_ClosedModel):
    """OpenAI chat completions body."""

    provider: Literal["openai"] = "openai"
    model: str
    messages: List[Dict[str, Any]]
    max_tokens: int
    temperature: Optional[float] = None
    stream: bool = False
    idempotency_key: Optional[str] = None


class OpenRouterChatRequest(_ClosedModel):
    """OpenAI-compatible body sent to OpenRouter."""

    provider: Literal["openrouter"] = "openrouter"
    model: str
    messages: List[Dict[str, Any]]
    max_tokens: int
    temperature: Optional[float] = None
    stream: bool = False
    idempotency_key: Optional[str] = None
    app_title: str = "bioflow"


class GLMChatRequest(_ClosedModel):
    """Chat completions body for Zhipu GLM. Vision models take image parts."""

    provider: Literal["glm"] = "glm"
    model: str
    messages: List[Dict[str, Any]]
    max_tokens: int
    temperature: Optional[float] = None
    stream: bool = False
    idempotency_key: Optional[str] = None


class AnthropicMessagesRequest(_ClosedModel):
    """Anthropic messages body. The system prompt is a top-level field."""

    provider: Literal["anthropic"] = "anthropic"
    model: str
    system: Optional[str] = None
    messages: List[Dict[str, Any]]
    max_tokens: int
    temperature: Optional[float] = None
    stream: bool = False
    idempotency_key: Optional[str] = None


class GoogleGenerateRequest(_ClosedModel):
    """Gemini ``generate_content`` arguments. Gemini takes no idempotency key."""

    provider: Literal["google"] = "google"
    model: str
    contents: List[Dict[str, Any]]
    system_instruction: Optional[str] = None
    max_output_tokens: int
    temperature: Optional[float] = None
    stream: bool = False


ProviderRequest = Annotated[
    Union[
        ChatCompletionRequest,
        OpenRouterChatRequest,
        GLMChatRequest,
        AnthropicMessagesRequest,
        GoogleGenerateRequest,
    ],
    Field(discriminator="provider"),
]
