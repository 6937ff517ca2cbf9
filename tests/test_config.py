"""
Tests for the settings layer.
"""

from datetime import timedelta

import pytest

from payrecon.config import Settings, get_settings


class TestSettings:
    """Test suite for environment-driven settings."""

    def test_defaults(self, settings):
        assert settings.auto_match_threshold == 95
        assert settings.queue_max_retries == 5
        assert settings.amount_tolerance_minor_units == 1
        assert settings.retry_delay == timedelta(minutes=5)

    @pytest.mark.parametrize("days, expected", [(1, 75), (2, 70), (3, 65)])
    def test_near_date_confidence(self, settings, days, expected):
        assert settings.near_date_confidence(days) == expected

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("QUEUE_MAX_RETRIES", "3")
        monkeypatch.setenv("RETRY_DELAY_MINUTES", "10")
        monkeypatch.setenv("APP_ENV", "production")

        settings = Settings(_env_file=None)

        assert settings.queue_max_retries == 3
        assert settings.retry_delay == timedelta(minutes=10)
        assert settings.app_env == "production"

    def test_app_env_is_plain_setting(self, settings):
        assert settings.app_env == "development"
        assert not hasattr(settings, "is_production")

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
