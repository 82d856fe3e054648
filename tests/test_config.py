"""Tests for Settings: env prefix, vendor key aliases and budget validation."""

import pytest
from pydantic import ValidationError

from parley.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    settings = Settings(_env_file=None)

    assert settings.max_speak_retries == 3
    assert settings.max_turns == 5
    assert settings.request_cache_ttl == 259200
    assert settings.anthropic_api_key == ""
    assert settings.show_error_details


def test_prefixed_env_vars(monkeypatch):
    monkeypatch.setenv("PARLEY_MAX_TURNS", "7")
    monkeypatch.setenv("PARLEY_DEFAULT_PROVIDER", "openai")
    monkeypatch.setenv("PARLEY_IGNORE_LLM_REQUEST_CACHE", "true")

    settings = Settings(_env_file=None)

    assert settings.max_turns == 7
    assert settings.default_provider == "openai"
    assert settings.ignore_llm_request_cache is True


def test_vendor_keys_use_unprefixed_names(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-123")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai-456")

    settings = Settings(_env_file=None)

    assert settings.anthropic_api_key == "sk-ant-123"
    assert settings.openai_api_key == "sk-openai-456"


@pytest.mark.parametrize("field", ["max_speak_retries", "max_turns"])
def test_budgets_must_be_positive(field):
    with pytest.raises(ValidationError, match=f"{field} must be >= 1"):
        Settings(_env_file=None, **{field: 0})


def test_production_hides_error_details():
    assert not Settings(_env_file=None, environment="production").show_error_details
