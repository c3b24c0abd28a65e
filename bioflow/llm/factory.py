"""Provider factory keyed by provider id."""

from __future__ import annotations

import logging
from typing import Dict

from ..config import LLMConfig, ProviderConfig
from .providers.base import BaseProvider

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "openrouter", "anthropic", "google", "glm")

# Older configs name the same endpoint "glm-general".
PROVIDER_ALIASES = {"glm-general": "glm"}


def get_provider(name: str, config: ProviderConfig) -> BaseProvider:
    """Build the adapter for ``name``. SDKs are imported on demand."""

    name = PROVIDER_ALIASES.get(name.lower(), name.lower())
    if name == "openai":
        from .providers.openai import OpenAIProvider

        return OpenAIProvider.from_config(config)
    elif name == "openrouter":
        from .providers.openai import OpenRouterProvider

        return OpenRouterProvider.from_config(config)
    elif name == "anthropic":
        from .providers.anthropic import AnthropicProvider

        return AnthropicProvider.from_config(config)
    elif name == "google":
        from .providers.google import GoogleProvider

        return GoogleProvider.from_config(config)
    elif name == "glm":
        from .providers.openai import GLMProvider

        return GLMProvider.from_config(config)
    else:
        raise ValueError(
            f"Unsupported LLM provider: {name}. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )


def build_providers(config: LLMConfig) -> Dict[str, BaseProvider]:
    """Instantiate every provider listed in ``config.providers``."""
    providers = {}
    for name, provider_config in config.providers.items():
        providers[name] = get_provider(name, provider_config)
        if not provider_config.api_key:
            logger.warning(f"LLM provider {name} has no API key; its calls will fail")
    return providers
