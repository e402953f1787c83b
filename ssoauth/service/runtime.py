from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from ssoauth.config import Settings, get_settings, reset_settings_cache
from ssoauth.logging import get_logger
from ssoauth.service.auth import AuthService
from ssoauth.service.email import EmailService
from ssoauth.service.tokens import HMACTokenCodec
from ssoauth.service.users import UsersDirectoryClient
from ssoauth.storage.memory import MemoryKV
from ssoauth.storage.redis_cache import SessionRegistry

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
    except ValueError:
        return "***url_parse_error***"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Builds the service graph once and owns its connections."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", use_memory_store=self.settings.use_memory_store)

        if self.settings.use_memory_store:
            self.registry = SessionRegistry(
                MemoryKV(), refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds
            )
            logger.warning(
                "memory_session_store",
                message="session state is process-local and lost on restart",
            )
        else:
            self.registry = SessionRegistry.from_url(
                self.settings.redis_url,
                refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
                socket_timeout=self.settings.redis_socket_timeout_seconds,
            )
            logger.info(
                "redis_session_store",
                redis_url=_mask_url_password(self.settings.redis_url),
            )

        self.codec = HMACTokenCodec(self.settings)
        self.users = UsersDirectoryClient.from_settings(self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.registry,
            self.codec,
            self.users,
            self.email,
            self.settings,
        )
        logger.info(
            "runtime_initialized",
            users_service_url=self.settings.users_service_url,
            email_configured=self.email.is_configured,
        )

    async def close(self, grace_seconds: float = 5.0) -> None:
        await self.auth.drain(timeout=grace_seconds)
        await self.users.close()
        await self.registry.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read.

    Only allowed with the in-memory store, so no live connections leak
    between tests.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.use_memory_store:
            raise RuntimeError("runtime reset is only allowed with USE_MEMORY_STORE")
        runtime = Runtime(settings)
        return runtime
