from __future__ import annotations

import asyncio
import contextlib
import hmac
from typing import AsyncIterator, List, Optional, Protocol, Set

from ssoauth.config import Settings
from ssoauth.logging import get_logger
from ssoauth.service.errors import (
    DeadlineExceededError,
    InvalidTokenError,
    InvalidVerificationCodeError,
    MissingFieldError,
    PartialFailureError,
    PendingRegistrationNotFoundError,
    RefreshTokenMismatchError,
    SessionRevokedError,
    StaleTokenError,
    UpstreamError,
    ValidationError,
)
from ssoauth.service.tokens import TokenCodec
from ssoauth.service.validation import generate_code, validate_email, validate_password
from ssoauth.storage.errors import RecordNotFound, StoreError, StoreTimeout, WriteConflict
from ssoauth.storage.models import (
    SESSION_SEPARATOR,
    PendingRegistration,
    SessionKey,
    TokenPair,
    UserProfile,
)

logger = get_logger(__name__)


class UserDirectory(Protocol):
    async def authenticate_by_password(self, email: str, password: str) -> UserProfile: ...

    async def create_user(self, email: str, name: str, password: str) -> str: ...

    async def find_user_by_id(self, user_id: str) -> UserProfile: ...

    async def check_email_registered(self, email: str) -> None: ...


class MailDispatcher(Protocol):
    async def send_verification_code(self, to_email: str, name: str, code: str) -> bool: ...


class SessionStore(Protocol):
    async def save_refresh_token(self, session: str, token: str) -> None: ...

    async def get_refresh_token(self, session: str) -> str: ...

    async def delete_refresh_token(self, session: str) -> None: ...

    async def rotate_refresh_token(self, session: str, expected: str, token: str) -> int: ...

    async def get_version(self, session: str) -> int: ...

    async def increment_version(self, session: str) -> int: ...

    async def delete_version(self, session: str) -> None: ...

    async def add_device(self, user_id: str, device_id: str) -> None: ...

    async def remove_device(self, user_id: str, device_id: str) -> None: ...

    async def list_devices(self, user_id: str) -> List[str]: ...

    async def delete_device_set(self, user_id: str) -> None: ...

    async def save_pending_registration(self, record: PendingRegistration) -> None: ...

    async def get_pending_registration(self, pending_session: str) -> PendingRegistration: ...

    async def delete_pending_registration(self, pending_session: str) -> None: ...


class AuthService:
    """Login, refresh, logout and two-phase registration over a session store.

    Holds no session state of its own: versions, refresh tokens, device sets
    and pending registrations all live in the store, and per-session ordering
    rests on the store's atomic INCR and single-key writes.

    Every flow runs under a deadline (``timeout`` or the configured default).
    An elapsed deadline or a store timeout surfaces as
    ``DeadlineExceededError``; cancellation of the caller propagates as is.
    """

    def __init__(
        self,
        registry: SessionStore,
        codec: TokenCodec,
        users: UserDirectory,
        mailer: MailDispatcher,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.codec = codec
        self.users = users
        self.mailer = mailer
        self.settings = settings
        self.logger = logger
        self._background: Set[asyncio.Task] = set()

    @contextlib.asynccontextmanager
    async def _deadline(self, operation: str, timeout: Optional[float]) -> AsyncIterator[None]:
        seconds = timeout if timeout is not None else self.settings.operation_timeout_seconds
        try:
            async with asyncio.timeout(seconds):
                yield
        except TimeoutError as exc:
            self.logger.warning("auth_deadline_exceeded", operation=operation, timeout=seconds)
            raise DeadlineExceededError(f"{operation} timed out") from exc
        except StoreTimeout as exc:
            self.logger.warning("auth_store_timeout", operation=operation, error=exc.message)
            raise DeadlineExceededError(f"{operation} timed out", detail=exc.detail) from exc

    def _parse_session(self, session: str) -> SessionKey:
        try:
            return SessionKey.parse(session)
        except ValueError:
            raise InvalidTokenError(
                f"invalid session format: {session}", detail={"field": "session"}
            ) from None

    def _issue_pair(self, session: str, profile: UserProfile, version: int) -> TokenPair:
        access = self.codec.issue_access(session, profile.role, profile.email, version)
        refresh = self.codec.issue_refresh(session)
        return TokenPair(access_token=access, refresh_token=refresh)

    async def login(
        self,
        email: str,
        password: str,
        device_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> TokenPair:
        if not email:
            raise MissingFieldError("email")
        if not password:
            raise MissingFieldError("password")
        if not device_id:
            raise MissingFieldError("device_id")
        if SESSION_SEPARATOR in device_id:
            raise ValidationError(
                f"device_id must not contain '{SESSION_SEPARATOR}'", detail={"field": "device_id"}
            )

        async with self._deadline("login", timeout):
            profile = await self.users.authenticate_by_password(email, password)
            if SESSION_SEPARATOR in profile.id:
                self.logger.error("directory_user_id_unusable", user_id=profile.id)
                raise UpstreamError(
                    f"user directory returned an id containing '{SESSION_SEPARATOR}'",
                    detail={"user_id": profile.id},
                )
            session = str(SessionKey(profile.id, device_id))

            try:
                await self.registry.add_device(profile.id, device_id)
            except StoreError as exc:
                # Only logout-all coverage depends on the device set
                self.logger.warning(
                    "device_registration_failed",
                    user_id=profile.id,
                    device_id=device_id,
                    error=exc.message,
                )

            version = await self.registry.increment_version(session)
            pair = self._issue_pair(session, profile, version)
            await self.registry.save_refresh_token(session, pair.refresh_token)

        self.logger.info("user_logged_in", user_id=profile.id, device_id=device_id, version=version)
        return pair

    async def refresh_access(
        self, refresh_token: str, *, timeout: Optional[float] = None
    ) -> TokenPair:
        if not refresh_token:
            raise MissingFieldError("refresh_token")
        claims = self.codec.verify_refresh(refresh_token)
        key = self._parse_session(claims.session)

        async with self._deadline("refresh_access", timeout):
            try:
                stored = await self.registry.get_refresh_token(claims.session)
            except RecordNotFound:
                raise SessionRevokedError() from None
            if not hmac.compare_digest(stored.encode(), refresh_token.encode()):
                self.logger.warning("refresh_token_mismatch", session=claims.session)
                raise RefreshTokenMismatchError()

            profile = await self.users.find_user_by_id(key.user_id)
            rotated = self.codec.issue_refresh(claims.session)
            try:
                version = await self.registry.rotate_refresh_token(
                    claims.session, refresh_token, rotated
                )
            except RecordNotFound:
                raise SessionRevokedError() from None
            except WriteConflict:
                # A concurrent refresh or login replaced the token first
                self.logger.warning("refresh_token_reused", session=claims.session)
                raise RefreshTokenMismatchError() from None
            access = self.codec.issue_access(claims.session, profile.role, profile.email, version)

        self.logger.info("tokens_refreshed", user_id=key.user_id, device_id=key.device_id, version=version)
        return TokenPair(access_token=access, refresh_token=rotated)

    async def logout(self, access_token: str, *, timeout: Optional[float] = None) -> None:
        if not access_token:
            raise MissingFieldError("access_token")
        claims = self.codec.verify_access(access_token)
        key = self._parse_session(claims.session)

        async with self._deadline("logout", timeout):
            current = await self.registry.get_version(claims.session)
            if current != claims.ver:
                self.logger.warning(
                    "stale_token_version", session=claims.session, token_ver=claims.ver, current=current
                )
                raise StaleTokenError()

            try:
                await self.registry.remove_device(key.user_id, key.device_id)
            except StoreError as exc:
                self.logger.warning(
                    "device_removal_failed",
                    user_id=key.user_id,
                    device_id=key.device_id,
                    error=exc.message,
                )

            await self.registry.delete_refresh_token(claims.session)
            await self.registry.delete_version(claims.session)

        self.logger.info("user_logged_out", user_id=key.user_id, device_id=key.device_id)

    async def logout_all(self, access_token: str, *, timeout: Optional[float] = None) -> int:
        """Revoke every session registered for the token's user.

        Any presented access token of the user is enough; its version is not
        checked. Returns the number of devices found. Cleanup continues past
        individual failures and ends with ``PartialFailureError`` listing the
        sessions (or device set) that could not be removed.
        """
        if not access_token:
            raise MissingFieldError("access_token")
        claims = self.codec.verify_access(access_token)
        user_id = self._parse_session(claims.session).user_id

        failed: List[str] = []
        async with self._deadline("logout_all", timeout):
            devices = await self.registry.list_devices(user_id)
            if not devices:
                self.logger.info("no_active_sessions", user_id=user_id)
                return 0

            for device_id in devices:
                session = str(SessionKey(user_id, device_id))
                session_failed = False
                for cleanup in (self.registry.delete_refresh_token, self.registry.delete_version):
                    try:
                        await cleanup(session)
                    except StoreError as exc:
                        session_failed = True
                        self.logger.warning(
                            "session_cleanup_failed",
                            session=session,
                            step=cleanup.__name__,
                            error=exc.message,
                        )
                if session_failed:
                    failed.append(session)

            try:
                await self.registry.delete_device_set(user_id)
            except StoreError as exc:
                failed.append(f"devices:{user_id}")
                self.logger.warning("device_set_cleanup_failed", user_id=user_id, error=exc.message)

        if failed:
            self.logger.warning(
                "logout_all_incomplete", user_id=user_id, sessions=len(devices), failed=len(failed)
            )
            raise PartialFailureError("not all sessions were cleaned up", failed=failed)
        self.logger.info("user_logged_out_everywhere", user_id=user_id, sessions=len(devices))
        return len(devices)

    async def register_new_user(
        self,
        email: str,
        name: str,
        password: str,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Start a registration and return the pending session handle.

        The verification email is sent in the background; its outcome never
        reaches the caller.
        """
        if not email:
            raise MissingFieldError("email")
        if not password:
            raise MissingFieldError("password")
        validate_email(email, self.settings.allowed_email_domains)
        validate_password(password)

        pending_id = PendingRegistration.session_for(email)
        code = generate_code()
        async with self._deadline("register_new_user", timeout):
            await self.users.check_email_registered(email)
            record = PendingRegistration(
                session_id=pending_id,
                code=code,
                name=name or "",
                email=email,
                password=password,
            )
            await self.registry.save_pending_registration(record)

        self._dispatch_verification(email, name or "", code)
        self.logger.info("registration_pending", email=email)
        return pending_id

    async def verify_email(
        self, pending_session: str, code: str, *, timeout: Optional[float] = None
    ) -> str:
        if not pending_session:
            raise MissingFieldError("session")
        if not code:
            raise MissingFieldError("code")

        async with self._deadline("verify_email", timeout):
            try:
                record = await self.registry.get_pending_registration(pending_session)
            except RecordNotFound:
                raise PendingRegistrationNotFoundError() from None
            if not hmac.compare_digest(record.code.encode(), code.encode()):
                self.logger.warning("verification_code_mismatch", email=record.email)
                raise InvalidVerificationCodeError()
            user_id = await self.users.create_user(record.email, record.name, record.password)

        try:
            await self.registry.delete_pending_registration(pending_session)
        except StoreError as exc:
            # The user exists already; the record expires on its own
            self.logger.warning(
                "pending_registration_cleanup_failed", email=record.email, error=exc.message
            )

        self.logger.info("user_registered", user_id=user_id)
        return user_id

    # Background mail

    def _dispatch_verification(self, email: str, name: str, code: str) -> None:
        task = asyncio.create_task(
            self.mailer.send_verification_code(email, name, code),
            name="send-verification-code",
        )
        self._background.add(task)
        task.add_done_callback(self._on_mail_done)

    def _on_mail_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            self.logger.warning("verification_email_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("verification_email_crashed", error=str(exc))
        elif not task.result():
            self.logger.warning("verification_email_not_sent")

    @property
    def pending_mail(self) -> int:
        return len(self._background)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for outstanding mail tasks, cancelling any still running."""
        if not self._background:
            return
        _, pending = await asyncio.wait(set(self._background), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
