"""Unit tests for application settings."""

import pytest
from pydantic import ValidationError

from stackplan.config.settings import Settings, get_settings


class TestSettings:
    """Test settings validation and environment loading."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.app_env == "development"
        assert settings.state_backend == "memory"
        assert settings.max_concurrency == 1
        assert settings.replace_strategy == "delete_before_create"
        assert settings.is_development is True

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENCY", "4")
        monkeypatch.setenv("REPLACE_STRATEGY", "create_before_destroy")

        settings = Settings(_env_file=None)

        assert settings.max_concurrency == 4
        assert settings.replace_strategy == "create_before_destroy"

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_concurrency=0)

    def test_unknown_replace_strategy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, replace_strategy="in_place")

    def test_backoff_bounds_ordered(self):
        with pytest.raises(ValidationError, match="provider_backoff_min_seconds"):
            Settings(_env_file=None, provider_backoff_min_seconds=10, provider_backoff_max_seconds=1)

    def test_production_requires_redis(self):
        with pytest.raises(ValidationError, match="state_backend must be 'redis'"):
            Settings(_env_file=None, app_env="production")

    def test_production_requires_json_logs(self):
        with pytest.raises(ValidationError, match="log_format"):
            Settings(
                _env_file=None,
                app_env="production",
                state_backend="redis",
                redis_url="redis://redis:6379",
                log_format="console",
            )

    def test_valid_production_settings(self):
        settings = Settings(
            _env_file=None,
            app_env="production",
            state_backend="redis",
            redis_url="redis://redis:6379",
        )

        assert settings.is_production is True

    def test_get_settings_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
