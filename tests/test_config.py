"""
Configuration tests: defaults, environment overrides and credential handling
"""
import logging

import pytest
import pydantic
import structlog

from discovery_client import ConfigurationException, DiscoveryClient
from discovery_client.config import Settings, get_settings
from discovery_client.logging import NOISY_LOGGERS, configure_from_settings, configure_logging


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("REGISTRY_API_KEY", "REGISTRY_URL", "REGISTRY_REGION", "REGISTRY_RETRIES", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)


def test_settings_defaults():
    """Test that settings fall back to documented defaults"""
    settings = Settings(REGISTRY_API_KEY="k")

    assert settings.REGISTRY_URL == "http://localhost:8500"
    assert settings.REGISTRY_REGION is None
    assert settings.REGISTRY_RETRIES == 3
    assert settings.REGISTRY_CACHE_TTL == 30.0
    assert settings.REGISTRY_BREAKER_THRESHOLD == 5
    assert settings.REGISTRY_IDEMPOTENT_UPSERT is True
    assert settings.timeout_seconds == 5.0
    assert settings.backoff_base_seconds == 0.2
    assert settings.backoff_max_seconds == 10.0


def test_settings_from_environment(monkeypatch):
    """Test environment variables are picked up"""
    monkeypatch.setenv("REGISTRY_API_KEY", "env-key")
    monkeypatch.setenv("REGISTRY_URL", "https://registry.internal/")
    monkeypatch.setenv("REGISTRY_REGION", "eu-west-1")
    monkeypatch.setenv("REGISTRY_RETRIES", "5")

    settings = get_settings()

    assert settings.REGISTRY_API_KEY.get_secret_value() == "env-key"
    assert settings.REGISTRY_URL == "https://registry.internal"
    assert settings.REGISTRY_REGION == "eu-west-1"
    assert settings.REGISTRY_RETRIES == 5


def test_explicit_values_override_environment(monkeypatch):
    monkeypatch.setenv("REGISTRY_API_KEY", "env-key")
    monkeypatch.setenv("REGISTRY_REGION", "eu-west-1")

    settings = get_settings(REGISTRY_REGION="us-west-2")

    assert settings.REGISTRY_REGION == "us-west-2"
    assert settings.REGISTRY_API_KEY.get_secret_value() == "env-key"


def test_blank_api_key_rejected():
    with pytest.raises(pydantic.ValidationError):
        Settings(REGISTRY_API_KEY="   ")


def test_negative_retries_rejected():
    with pytest.raises(pydantic.ValidationError):
        Settings(REGISTRY_API_KEY="k", REGISTRY_RETRIES=-1)


def test_api_key_hidden_from_repr_and_dump():
    settings = Settings(REGISTRY_API_KEY="super-secret")

    assert "super-secret" not in repr(settings)
    assert "super-secret" not in str(settings.model_dump())


def test_client_without_api_key_raises_configuration_error():
    with pytest.raises(ConfigurationException) as exc_info:
        DiscoveryClient()

    assert "REGISTRY_API_KEY" in exc_info.value.message
    assert exc_info.value.error_code == "CONFIG_ERROR"


def test_client_builds_http_transport_from_environment(monkeypatch):
    monkeypatch.setenv("REGISTRY_API_KEY", "env-key")
    monkeypatch.setenv("REGISTRY_URL", "https://registry.internal")

    client = DiscoveryClient()

    assert client.transport.base_url == "https://registry.internal"
    assert client.retry_policy.retries == 3


def test_configure_logging_levels():
    level = configure_logging(log_level="DEBUG", json_format=True)

    assert level == logging.DEBUG
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING
    assert structlog.contextvars.get_contextvars()["service"] == "discovery-client"

    assert configure_from_settings(Settings(REGISTRY_API_KEY="k", LOG_LEVEL="ERROR")) == logging.ERROR
    assert logging.getLogger("httpx").level == logging.ERROR
    assert configure_logging(log_level="chatty") == logging.INFO
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
