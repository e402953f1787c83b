"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from ssoauth.config import (
    DEFAULT_ALLOWED_EMAIL_DOMAINS,
    Settings,
    get_settings,
    reset_settings_cache,
)


def _secrets(**overrides):
    values = {"token_access_secret": "access-key", "token_refresh_secret": "refresh-key"}
    values.update(overrides)
    return values


class TestSettingsValidation:
    def test_defaults(self):
        settings = Settings(**_secrets())
        assert settings.access_token_ttl_seconds == 15 * 60
        assert settings.refresh_token_ttl_seconds == 168 * 60 * 60
        assert settings.allowed_email_domains == list(DEFAULT_ALLOWED_EMAIL_DOMAINS)
        assert settings.users_service_url == "http://localhost:8080"

    def test_missing_secret_fails(self):
        with pytest.raises(ValidationError, match="TOKEN_ACCESS_SECRET"):
            Settings(token_refresh_secret="refresh-key")

    def test_empty_secret_fails(self):
        with pytest.raises(ValidationError, match="TOKEN_REFRESH_SECRET"):
            Settings(**_secrets(token_refresh_secret=""))

    def test_secrets_must_differ(self):
        with pytest.raises(ValidationError, match="must differ"):
            Settings(**_secrets(token_refresh_secret="access-key"))

    @pytest.mark.parametrize("field", ["access_token_ttl_minutes", "refresh_token_ttl_minutes"])
    def test_ttl_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**_secrets(**{field: 0}))

    def test_domains_from_comma_string(self):
        settings = Settings(**_secrets(allowed_email_domains=" Corp.Example, ,mail.ru"))
        assert settings.allowed_email_domains == ["corp.example", "mail.ru"]


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("TOKEN_ACCESS_SECRET", "env-access")
        monkeypatch.setenv("TOKEN_REFRESH_SECRET", "env-refresh")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("ALLOWED_EMAIL_DOMAINS", "gmail.com")
        monkeypatch.setenv("USE_MEMORY_STORE", "false")

        settings = Settings.from_env()

        assert settings.token_access_secret == "env-access"
        assert settings.access_token_ttl_seconds == 300
        assert settings.allowed_email_domains == ["gmail.com"]
        assert settings.use_memory_store is False

    def test_dotenv_file_is_fallback(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text("USERS_SERVICE_URL=http://users.internal:9000\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("USERS_SERVICE_URL", raising=False)

        assert Settings.from_env().users_service_url == "http://users.internal:9000"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("OPERATION_TIMEOUT_SECONDS", "3")
        reset_settings_cache()
        assert get_settings().operation_timeout_seconds == 3.0
        reset_settings_cache()
