from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header

from ssoauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    TokenResponse,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from ssoauth.service.errors import PartialFailureError, ValidationError
from ssoauth.service.runtime import get_runtime
from ssoauth.storage.models import TokenPair

router = APIRouter(prefix="/v1")


def _extract_bearer(header: Optional[str]) -> str:
    if not header:
        raise ValidationError("missing token", detail={"field": "authorization"})
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        token = header
    token = token.strip()
    if not token:
        raise ValidationError("missing token", detail={"field": "authorization"})
    return token


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password and open a session for ``device_id``."""
    runtime = get_runtime()
    pair = await runtime.auth.login(body.email, body.password, body.device_id)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Start registration; a verification code is mailed to the address."""
    runtime = get_runtime()
    session = await runtime.auth.register_new_user(body.email, body.name, body.password)
    return Envelope(status="ok", data=RegisterResponse(session=session))


@router.post("/auth/verify-email", response_model=Envelope, status_code=201, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user_id = await runtime.auth.verify_email(body.session, body.code)
    return Envelope(status="ok", data=VerifyEmailResponse(user_id=user_id))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh_access(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.logout(_extract_bearer(authorization))
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(authorization: Optional[str] = Header(None)):
    """Revoke every session of the token's user.

    Partial cleanup still answers ``ok``; ``data.complete`` is false and
    ``data.failed`` lists what was left behind.
    """
    runtime = get_runtime()
    try:
        revoked = await runtime.auth.logout_all(_extract_bearer(authorization))
    except PartialFailureError as exc:
        return Envelope(
            status="ok",
            data=LogoutAllResponse(complete=False, failed=exc.failed, message=exc.message),
        )
    return Envelope(status="ok", data=LogoutAllResponse(sessions_revoked=revoked))
