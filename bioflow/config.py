from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_CAP,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_JOB_MAX_ATTEMPTS,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_LLM_MAX_ATTEMPTS,
    DEFAULT_LLM_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PROVIDER_CONCURRENCY,
    DEFAULT_SWEEP_INTERVAL,
    DEFAULT_WORKER_CONCURRENCY,
)

PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "glm": "GLM_API_KEY",
    "glm-general": "GLM_API_KEY",
}


class RedisConfig(BaseModel):
    """Configuration for the Redis notification bus."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class NotificationConfig(BaseModel):
    """Notification bus settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class BackoffConfig(BaseModel):
    """Exponential backoff with jitter, capped at ``cap`` seconds."""

    base: float = DEFAULT_BACKOFF_BASE
    cap: float = DEFAULT_BACKOFF_CAP
    jitter: float = DEFAULT_BACKOFF_JITTER


class QueueConfig(BaseModel):
    """Job dispatcher and worker pool settings."""

    lease_seconds: float = DEFAULT_LEASE_SECONDS
    max_attempts: int = DEFAULT_JOB_MAX_ATTEMPTS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    concurrency: int = DEFAULT_WORKER_CONCURRENCY
    backoff: BackoffConfig = BackoffConfig()


class ProviderConfig(BaseModel):
    """Settings for a single LLM provider."""

    model: str
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    max_concurrency: int = DEFAULT_PROVIDER_CONCURRENCY
    # Capability overrides; unset values fall back to the adapter defaults.
    supports_streaming: Optional[bool] = None
    supports_vision: Optional[bool] = None
    max_context: Optional[int] = None


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "anthropic": ProviderConfig(model="claude-sonnet-4-5"),
        "openai": ProviderConfig(model="gpt-4o"),
    }


class LLMConfig(BaseModel):
    """LLM gateway settings."""

    provider_order: List[str] = Field(default_factory=lambda: ["anthropic", "openai"])
    max_attempts: int = DEFAULT_LLM_MAX_ATTEMPTS
    timeout_seconds: float = DEFAULT_LLM_TIMEOUT
    backoff: BackoffConfig = BackoffConfig(base=2.0, cap=30.0, jitter=0.5)
    providers: Dict[str, ProviderConfig] = Field(default_factory=_default_providers)


class SearchConfig(BaseModel):
    """Literature search backend settings."""

    serpapi_key: Optional[str] = None
    scholar_enabled: bool = True
    light_enabled: bool = True
    max_results: int = 10


class BioflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    call_log_url: Optional[str] = None
    log_level: str = "INFO"
    notifications: NotificationConfig = NotificationConfig()
    queue: QueueConfig = QueueConfig()
    llm: LLMConfig = LLMConfig()
    search: SearchConfig = SearchConfig()


def load_config(path: Optional[str] = None) -> BioflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to BIOFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("BIOFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = BioflowConfig(**data)
    else:
        config = BioflowConfig()

    env_db_url = os.getenv("BIOFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_bus = os.getenv("BIOFLOW_NOTIFICATIONS")
    if env_bus:
        config.notifications.backend = env_bus.lower()  # type: ignore[assignment]

    for name, provider in config.llm.providers.items():
        env_var = PROVIDER_KEY_ENV.get(name)
        if provider.api_key is None and env_var:
            provider.api_key = os.getenv(env_var)

    if config.search.serpapi_key is None:
        config.search.serpapi_key = os.getenv("SERPAPI_KEY")
    return config
