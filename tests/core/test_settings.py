"""Tests for g8r.core.settings."""

import pytest
from pydantic import ValidationError

from g8r.core.settings import G8rSettings
from g8r.execution.retry import RetryPolicy


class TestG8rSettings:
    """Environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("G8R_MAX_CONCURRENCY", raising=False)
        settings = G8rSettings(_env_file=None)
        assert settings.database_url == "sqlite:///g8r.db"
        assert settings.max_concurrency == 4
        assert settings.retry_max_attempts == 5
        assert settings.lock_ttl_seconds == 3600

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("G8R_MAX_CONCURRENCY", "8")
        monkeypatch.setenv("G8R_RETRY_JITTER", "true")
        settings = G8rSettings(_env_file=None)
        assert settings.max_concurrency == 8
        assert settings.retry_jitter is True

    def test_bounds(self):
        with pytest.raises(ValidationError):
            G8rSettings(_env_file=None, max_concurrency=0)

    def test_retry_policy_from_settings(self):
        settings = G8rSettings(_env_file=None, retry_max_attempts=7, retry_base_delay=0.5)
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_attempts == 7
        assert policy.base_delay == 0.5
        assert policy.max_elapsed == 600.0
