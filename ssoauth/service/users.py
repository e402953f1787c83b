from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import httpx

from ssoauth.config import Settings
from ssoauth.logging import get_logger
from ssoauth.service.errors import (
    DeadlineExceededError,
    InvalidCredentialsError,
    UpstreamError,
    UserExistsError,
    UserNotFoundError,
    ValidationError,
)
from ssoauth.storage.models import UserProfile

logger = get_logger(__name__)


class UsersDirectoryClient:
    """HTTP client for the user directory service.

    The directory owns names, emails and password hashes; this client only
    maps its status codes onto service errors.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "UsersDirectoryClient":
        return cls(
            settings.users_service_url,
            timeout=settings.users_service_timeout_seconds,
            **kwargs,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("users_service_timeout", path=path, error=str(e))
            raise DeadlineExceededError("user directory timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "users_service_unreachable",
                path=path,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamError("user directory unavailable") from e

    def _unexpected(self, response: httpx.Response, operation: str) -> UpstreamError:
        logger.error(
            "users_service_error",
            operation=operation,
            status_code=response.status_code,
            body_length=len(response.content),
        )
        return UpstreamError(
            f"user directory error {response.status_code}",
            detail={"status_code": response.status_code},
        )

    def _profile(self, response: httpx.Response, operation: str) -> UserProfile:
        if not response.content:
            logger.error("users_service_empty_body", operation=operation)
            raise UpstreamError("user directory returned an empty response")
        try:
            data = response.json()
        except ValueError as e:
            logger.error("users_service_decode_failed", operation=operation, error=str(e))
            raise UpstreamError("user directory returned malformed data") from e
        if not isinstance(data, dict) or not data.get("id"):
            logger.error("users_service_missing_id", operation=operation)
            raise UpstreamError("user directory returned no user id")
        return UserProfile(
            id=str(data["id"]),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
            role=str(data.get("role") or "user"),
        )

    async def authenticate_by_password(self, email: str, password: str) -> UserProfile:
        response = await self._request(
            "POST", "/user/login", json={"email": email, "password": password}
        )
        if response.status_code == 404:
            raise UserNotFoundError()
        if response.status_code == 401:
            raise InvalidCredentialsError()
        if response.status_code == 400:
            raise ValidationError("user directory rejected the login request")
        if response.status_code != 200:
            raise self._unexpected(response, "authenticate_by_password")
        return self._profile(response, "authenticate_by_password")

    async def create_user(self, email: str, name: str, password: str) -> str:
        response = await self._request(
            "POST",
            "/user/register",
            json={"email": email, "name": name, "password": password},
        )
        if response.status_code == 409:
            raise UserExistsError()
        if response.status_code == 400:
            raise ValidationError("user directory rejected the registration")
        if response.status_code != 201:
            raise self._unexpected(response, "create_user")

        body = response.text.strip()
        if not body:
            raise UpstreamError("user directory returned an empty response")
        # Either {"id": "..."} or a bare (optionally quoted) id
        try:
            data = response.json()
        except ValueError:
            data = body
        if isinstance(data, dict):
            data = data.get("id")
        user_id = str(data).strip().strip('"') if data is not None else ""
        if not user_id:
            raise UpstreamError("user directory returned no user id")
        logger.info("users_service_user_created", user_id=user_id)
        return user_id

    async def find_user_by_id(self, user_id: str) -> UserProfile:
        response = await self._request("GET", f"/users/{quote(user_id, safe='')}")
        if response.status_code == 404:
            raise UserNotFoundError()
        if response.status_code != 200:
            raise self._unexpected(response, "find_user_by_id")
        return self._profile(response, "find_user_by_id")

    async def check_email_registered(self, email: str) -> None:
        """Return when the address is free; raise ``UserExistsError`` when taken."""
        response = await self._request("GET", f"/check-email/{quote(email, safe='')}")
        if response.status_code == 409:
            raise UserExistsError()
        if response.status_code != 200:
            raise self._unexpected(response, "check_email_registered")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
