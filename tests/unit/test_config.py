"""Tests for configuration loading."""

from bioflow.config import load_config
from bioflow.transports import InMemoryNotificationBus, get_notification_bus
from bioflow.transports.redis import RedisNotificationBus


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
notifications:
  backend: redis
  redis:
    host: testhost
    port: 1234
queue:
  lease_seconds: 60
  max_attempts: 5
llm:
  provider_order: [openai, anthropic]
  max_attempts: 2
  providers:
    openai:
      model: gpt-4o-mini
    anthropic:
      model: claude-sonnet-4-5
      supports_vision: false
"""
    )
    monkeypatch.setenv("BIOFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("BIOFLOW_NOTIFICATIONS", raising=False)

    config = load_config()
    assert config.notifications.backend == "redis"
    assert config.notifications.redis.host == "testhost"
    assert config.notifications.redis.port == 1234
    assert config.queue.lease_seconds == 60
    assert config.queue.max_attempts == 5
    assert config.llm.provider_order == ["openai", "anthropic"]
    assert config.llm.max_attempts == 2
    assert config.llm.providers["openai"].model == "gpt-4o-mini"
    assert config.llm.providers["anthropic"].supports_vision is False


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("BIOFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("BIOFLOW_NOTIFICATIONS", raising=False)
    monkeypatch.delenv("BIOFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.database_url is None
    assert config.notifications.backend == "inmemory"
    assert config.queue.max_attempts == 3
    assert config.llm.provider_order == ["anthropic", "openai"]


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("BIOFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("BIOFLOW_DATABASE_URL", "sqlite:///tmp/wf.db")
    monkeypatch.setenv("BIOFLOW_NOTIFICATIONS", "REDIS")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("SERPAPI_KEY", "serp-test")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/wf.db"
    assert config.notifications.backend == "redis"
    assert config.llm.providers["openai"].api_key == "sk-test"
    assert config.search.serpapi_key == "serp-test"


def test_get_notification_bus_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
notifications:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("BIOFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("BIOFLOW_NOTIFICATIONS", raising=False)

    bus = get_notification_bus()
    assert isinstance(bus, RedisNotificationBus)
    assert bus.host == "confighost"
    assert bus.port == 6380
    assert bus.channel("conv-1") == "bioflow:conversation:conv-1"


def test_get_notification_bus_inmemory_override():
    bus = get_notification_bus("inmemory")
    assert isinstance(bus, InMemoryNotificationBus)


def test_glm_key_comes_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
llm:
  provider_order: [glm, openai]
  providers:
    glm:
      model: glm-4.7
    openai:
      model: gpt-4o
"""
    )
    monkeypatch.setenv("BIOFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("GLM_API_KEY", "glm-test")

    config = load_config()
    assert config.llm.provider_order == ["glm", "openai"]
    assert config.llm.providers["glm"].api_key == "glm-test"
