"""
Tests for rehabflow.config (typed settings loaded from the environment).
"""

import pytest
from pydantic import ValidationError

from rehabflow.config import Settings, clear_settings_cache, get_settings


class TestSettingsValidation:

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        settings = Settings(_env_file=None)
        assert settings.ENABLE_REAL_SMS is False
        assert settings.SMS_SEND_RATE_PER_SECOND == 10.0
        assert settings.SMS_SEND_BURST == 1
        assert settings.LOG_LEVEL == "INFO"

    def test_missing_cron_secret_fails_fast(self, monkeypatch):
        monkeypatch.delenv("CRON_SECRET", raising=False)
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_blank_cron_secret_rejected(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "   ")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_malformed_boolean_rejected(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("ENABLE_REAL_SMS", "maybe")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_non_positive_send_rate_rejected(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("SMS_SEND_RATE_PER_SECOND", "0")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_log_level_normalised(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert Settings(_env_file=None).LOG_LEVEL == "DEBUG"

    def test_unknown_log_level_rejected(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)


class TestTwilioConfigured:

    def test_requires_all_three_values(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
        monkeypatch.setenv("TWILIO_MESSAGING_SERVICE_SID", "")
        assert Settings(_env_file=None).twilio_configured is False

        monkeypatch.setenv("TWILIO_MESSAGING_SERVICE_SID", "MG123")
        assert Settings(_env_file=None).twilio_configured is True


class TestGetSettings:

    def test_cached_until_cleared(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "first")
        assert get_settings().CRON_SECRET == "first"

        monkeypatch.setenv("CRON_SECRET", "second")
        assert get_settings().CRON_SECRET == "first"

        clear_settings_cache()
        assert get_settings().CRON_SECRET == "second"

    def test_production_refuses_real_sms_without_credentials(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("ENABLE_REAL_SMS", "true")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "")
        monkeypatch.setenv("TWILIO_MESSAGING_SERVICE_SID", "")
        with pytest.raises(RuntimeError, match="ENABLE_REAL_SMS"):
            get_settings()

    def test_development_allows_mock_sms(self, monkeypatch):
        monkeypatch.setenv("CRON_SECRET", "s3cret")
        monkeypatch.setenv("APP_ENV", "development")
        monkeypatch.setenv("ENABLE_REAL_SMS", "false")
        assert get_settings().ENABLE_REAL_SMS is False
