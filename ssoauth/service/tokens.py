from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from ssoauth.config import Settings
from ssoauth.logging import get_logger
from ssoauth.service.errors import InvalidTokenError, ServerError, TokenExpiredError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    session: str
    role: str
    email: str
    ver: int
    iat: int
    exp: int
    jti: str


@dataclass(frozen=True)
class RefreshClaims:
    session: str
    iat: int
    exp: int
    lat: int
    jti: str


class TokenCodec(Protocol):
    def issue_access(self, session: str, role: str, email: str, version: int) -> str: ...

    def issue_refresh(self, session: str) -> str: ...

    def verify_access(self, token: str) -> AccessClaims: ...

    def verify_refresh(self, token: str) -> RefreshClaims: ...


def _claim(payload: dict[str, Any], name: str, kind: type) -> Any:
    value = payload.get(name)
    # bool is an int subclass; never accept it for numeric claims
    if value is None or isinstance(value, bool) or not isinstance(value, kind):
        raise InvalidTokenError(f"invalid token: missing {name}", detail={"field": name})
    if kind is str and not value:
        raise InvalidTokenError(f"invalid token: missing {name}", detail={"field": name})
    return value


class HMACTokenCodec:
    """Mints and verifies HS256 JWTs with separate access and refresh keys.

    The codec holds no state beyond its settings, so any number of instances
    built from the same configuration accept each other's tokens.
    """

    ALGORITHM = "HS256"

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], float]] = None
    ) -> None:
        self._access_secret = settings.token_access_secret.encode()
        self._refresh_secret = settings.token_refresh_secret.encode()
        self.access_ttl_seconds = settings.access_token_ttl_seconds
        self.refresh_ttl_seconds = settings.refresh_token_ttl_seconds
        self._clock = clock or time.time

    def issue_access(self, session: str, role: str, email: str, version: int) -> str:
        now = int(self._clock())
        payload = {
            "session": session,
            "role": role,
            "email": email,
            "ver": version,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        return self._encode(payload, self._access_secret)

    def issue_refresh(self, session: str) -> str:
        now = int(self._clock())
        payload = {
            "session": session,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
            # last-access marker, reserved for sliding expiry
            "lat": now,
            "jti": str(uuid.uuid4()),
            "token_type": REFRESH_TOKEN_TYPE,
        }
        return self._encode(payload, self._refresh_secret)

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, self._access_secret, ACCESS_TOKEN_TYPE)
        return AccessClaims(
            session=_claim(payload, "session", str),
            role=_claim(payload, "role", str),
            email=_claim(payload, "email", str),
            ver=_claim(payload, "ver", int),
            iat=_claim(payload, "iat", int),
            exp=_claim(payload, "exp", int),
            jti=_claim(payload, "jti", str),
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self._refresh_secret, REFRESH_TOKEN_TYPE)
        return RefreshClaims(
            session=_claim(payload, "session", str),
            iat=_claim(payload, "iat", int),
            exp=_claim(payload, "exp", int),
            lat=_claim(payload, "lat", int),
            jti=_claim(payload, "jti", str),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any], secret: bytes) -> str:
        try:
            header = {"alg": self.ALGORITHM, "typ": "JWT"}
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
        except (TypeError, ValueError) as exc:
            logger.error("token_signing_failed", error=str(exc))
            raise ServerError("failed to sign token") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode(self, token: str, secret: bytes, token_type: str) -> dict[str, Any]:
        if not token:
            raise InvalidTokenError("token is empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token") from None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError(f"unexpected signing method: {alg}")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("token signature is invalid")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token payload") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")
        if payload.get("token_type") != token_type:
            raise InvalidTokenError(f"expected {token_type} token", detail={"field": "token_type"})

        exp = _claim(payload, "exp", int)
        if exp <= self._clock():
            raise TokenExpiredError(f"{token_type} token expired")
        return payload
