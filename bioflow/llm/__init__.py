"""LLM gateway: one invocation contract over several providers."""

from .factory import build_providers, get_provider
from .gateway import LLMGateway, PreparedInvocation
from .providers.base import BaseProvider
from .records import (
    CallRecorder,
    InMemoryCallRecorder,
    LoggingCallRecorder,
    ProviderCallRecord,
)
from .types import (
    ImageBase64Part,
    ImageUrlPart,
    LLMMessage,
    LLMRequest,
    LLMResponse,
    ProviderCapabilities,
    TextPart,
    TokenUsage,
)

__all__ = [
    "BaseProvider",
    "CallRecorder",
    "ImageBase64Part",
    "ImageUrlPart",
    "InMemoryCallRecorder",
    "LLMGateway",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
    "LoggingCallRecorder",
    "PreparedInvocation",
    "ProviderCallRecord",
    "ProviderCapabilities",
    "TextPart",
    "TokenUsage",
    "build_providers",
    "get_provider",
]
