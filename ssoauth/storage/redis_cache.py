from __future__ import annotations

import contextlib
import json
from typing import Any, AsyncIterator, List

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ssoauth.config import PENDING_REGISTRATION_TTL_SECONDS
from ssoauth.logging import get_logger
from ssoauth.storage.errors import RecordNotFound, StoreTimeout, StoreUnavailable, WriteConflict
from ssoauth.storage.models import PendingRegistration

logger = get_logger(__name__)

# WATCH retries before a busy refresh key is reported as a conflict
_ROTATE_ATTEMPTS = 3


class SessionRegistry:
    """Keyed session bookkeeping over Redis.

    Holds the current refresh token and version counter per session, the
    set of device ids per user, and short-lived pending registrations.
    Every call is a single round-trip or one MULTI/EXEC transaction (refresh
    rotation adds a WATCH on the refresh key), so correctness under
    concurrency rests on Redis' per-key atomicity.

    Key layout:
        auth:refresh:{session}      refresh token string, TTL = refresh lifetime
        auth:token_ver:{session}    INCR counter, TTL re-applied on each bump
        auth:user_devices:{user}    set of device ids
        auth:pending:{pending_id}   JSON pending registration, fixed 3 min TTL
    """

    def __init__(self, client: Any, *, refresh_ttl_seconds: int) -> None:
        self.client = client
        self.refresh_ttl_seconds = refresh_ttl_seconds

    @classmethod
    def from_url(
        cls, redis_url: str, *, refresh_ttl_seconds: int, socket_timeout: float = 5.0
    ) -> "SessionRegistry":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, refresh_ttl_seconds=refresh_ttl_seconds)

    @staticmethod
    def _refresh_key(session: str) -> str:
        return f"auth:refresh:{session}"

    @staticmethod
    def _version_key(session: str) -> str:
        return f"auth:token_ver:{session}"

    @staticmethod
    def _devices_key(user_id: str) -> str:
        return f"auth:user_devices:{user_id}"

    @staticmethod
    def _pending_key(pending_session: str) -> str:
        return f"auth:pending:{pending_session}"

    @contextlib.asynccontextmanager
    async def _command(self, operation: str, key: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisTimeoutError as exc:
            logger.warning("session_store_timeout", operation=operation, key=key)
            raise StoreTimeout(f"{operation} timed out", {"key": key}) from exc
        except RedisConnectionError as exc:
            logger.error("session_store_unreachable", operation=operation, error=str(exc))
            raise StoreUnavailable(f"{operation} failed: store unreachable", {"key": key}) from exc
        except RedisError as exc:
            logger.error("session_store_error", operation=operation, error=str(exc))
            raise StoreUnavailable(f"{operation} failed", {"key": key}) from exc

    async def verify_connection(self) -> None:
        async with self._command("ping", "-"):
            await self.client.ping()

    async def close(self) -> None:
        await self.client.aclose()

    # Refresh tokens

    async def save_refresh_token(self, session: str, token: str) -> None:
        key = self._refresh_key(session)
        async with self._command("save_refresh_token", key):
            await self.client.set(key, token, ex=self.refresh_ttl_seconds)

    async def get_refresh_token(self, session: str) -> str:
        key = self._refresh_key(session)
        async with self._command("get_refresh_token", key):
            token = await self.client.get(key)
        if token is None:
            raise RecordNotFound("refresh token not found", {"session": session})
        return token

    async def delete_refresh_token(self, session: str) -> None:
        key = self._refresh_key(session)
        async with self._command("delete_refresh_token", key):
            await self.client.delete(key)

    async def rotate_refresh_token(self, session: str, expected: str, token: str) -> int:
        """Replace ``expected`` with ``token`` and bump the session version.

        The refresh key is WATCHed, compared, then the version INCR/EXPIRE and
        the new token are committed in one MULTI/EXEC, so a refresh token can
        be exchanged at most once. Returns the new version.

        Raises ``RecordNotFound`` when no token is stored and ``WriteConflict``
        when the stored token is no longer ``expected``.
        """
        key = self._refresh_key(session)
        version_key = self._version_key(session)
        async with self._command("rotate_refresh_token", key):
            for _ in range(_ROTATE_ATTEMPTS):
                async with self.client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is None:
                        raise RecordNotFound("refresh token not found", {"session": session})
                    if current != expected:
                        raise WriteConflict("refresh token already rotated", {"session": session})
                    pipe.multi()
                    pipe.incr(version_key)
                    pipe.expire(version_key, self.refresh_ttl_seconds)
                    pipe.set(key, token, ex=self.refresh_ttl_seconds)
                    try:
                        version, _, _ = await pipe.execute()
                    except WatchError:
                        logger.info("refresh_rotation_retry", session=session)
                        continue
                return int(version)
        raise WriteConflict("refresh token changed during rotation", {"session": session})

    # Version counters

    async def get_version(self, session: str) -> int:
        """Current version, or 1 when no counter has been stored yet."""
        key = self._version_key(session)
        async with self._command("get_version", key):
            raw = await self.client.get(key)
        if raw is None:
            return 1
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise StoreUnavailable("corrupt version counter", {"key": key}) from exc

    async def increment_version(self, session: str) -> int:
        key = self._version_key(session)
        async with self._command("increment_version", key):
            pipe = self.client.pipeline(transaction=True)
            pipe.incr(key)
            # Version state never outlives the refresh window
            pipe.expire(key, self.refresh_ttl_seconds)
            version, _ = await pipe.execute()
        return int(version)

    async def delete_version(self, session: str) -> None:
        key = self._version_key(session)
        async with self._command("delete_version", key):
            await self.client.delete(key)

    # Device sets

    async def add_device(self, user_id: str, device_id: str) -> None:
        key = self._devices_key(user_id)
        async with self._command("add_device", key):
            await self.client.sadd(key, device_id)

    async def remove_device(self, user_id: str, device_id: str) -> None:
        key = self._devices_key(user_id)
        async with self._command("remove_device", key):
            await self.client.srem(key, device_id)

    async def list_devices(self, user_id: str) -> List[str]:
        key = self._devices_key(user_id)
        async with self._command("list_devices", key):
            members = await self.client.smembers(key)
        return sorted(members or [])

    async def delete_device_set(self, user_id: str) -> None:
        key = self._devices_key(user_id)
        async with self._command("delete_device_set", key):
            await self.client.delete(key)

    # Pending registrations

    async def save_pending_registration(self, record: PendingRegistration) -> None:
        key = self._pending_key(record.session_id)
        async with self._command("save_pending_registration", key):
            await self.client.set(key, record.to_json(), ex=PENDING_REGISTRATION_TTL_SECONDS)

    async def get_pending_registration(self, pending_session: str) -> PendingRegistration:
        key = self._pending_key(pending_session)
        async with self._command("get_pending_registration", key):
            raw = await self.client.get(key)
        if raw is None:
            raise RecordNotFound("pending registration not found", {"session": pending_session})
        try:
            return PendingRegistration.from_json(raw)
        except (KeyError, TypeError, json.JSONDecodeError) as exc:
            logger.error("pending_registration_corrupt", session=pending_session)
            raise StoreUnavailable("corrupt pending registration", {"key": key}) from exc

    async def delete_pending_registration(self, pending_session: str) -> None:
        key = self._pending_key(pending_session)
        async with self._command("delete_pending_registration", key):
            await self.client.delete(key)
