from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ssoauth.logging import get_logger

logger = get_logger(__name__)

# Pending registrations live for a fixed window and are never renewed.
PENDING_REGISTRATION_TTL_SECONDS = 3 * 60

DEFAULT_ALLOWED_EMAIL_DOMAINS = ("gmail.com", "yandex.ru", "mail.ru", "mail.com")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and token service.

    Built once at process start and handed to the codec, registry and
    collaborators by reference.
    """

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep session state in process memory instead of Redis (dev/test only)",
    )
    token_access_secret: str = env_field(None, "TOKEN_ACCESS_SECRET", validate_default=True)
    token_refresh_secret: str = env_field(None, "TOKEN_REFRESH_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    allowed_email_domains: list[str] = env_field(
        list(DEFAULT_ALLOWED_EMAIL_DOMAINS),
        "ALLOWED_EMAIL_DOMAINS",
        description="Comma separated list of domains accepted at registration",
    )
    operation_timeout_seconds: float = env_field(
        10.0,
        "OPERATION_TIMEOUT_SECONDS",
        description="Deadline applied to a whole auth flow when the caller sets none",
    )
    # User directory service
    users_service_url: str = env_field("http://localhost:8080", "USERS_SERVICE_URL")
    users_service_timeout_seconds: float = env_field(5.0, "USERS_SERVICE_TIMEOUT")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_timeout_seconds: int = env_field(10, "SMTP_TIMEOUT")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SSO", "EMAIL_FROM_NAME")
    support_email: str | None = env_field(None, "SUPPORT_EMAIL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60

    @field_validator("token_access_secret", "token_refresh_secret", mode="before")
    @classmethod
    def _require_secret(cls, value: str | None, info) -> str:
        if not value:
            raise ValueError(f"{info.field_name.upper()} is required")
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("allowed_email_domains", mode="before")
    @classmethod
    def _split_domains(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            return [str(part).strip().lower() for part in value if str(part).strip()]
        return value

    @model_validator(mode="after")
    def _separate_keys(self):
        # A leaked refresh secret must not be able to forge access tokens
        if self.token_access_secret == self.token_refresh_secret:
            raise ValueError("TOKEN_ACCESS_SECRET and TOKEN_REFRESH_SECRET must differ")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            access_token_ttl_minutes=_settings_cache.access_token_ttl_minutes,
            refresh_token_ttl_minutes=_settings_cache.refresh_token_ttl_minutes,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
