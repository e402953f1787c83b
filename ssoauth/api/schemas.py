from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ssoauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "partial_failure",
    "timeout",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable, enumerable code."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    device_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("device_id")
    @classmethod
    def _reject_separator(cls, value: str) -> str:
        if ":" in value:
            raise ValueError("device_id must not contain ':'")
        return value


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    name: str = Field(default="", max_length=256)
    password: str = Field(..., min_length=1, max_length=1024)


class RegisterResponse(BaseModel):
    session: str


class VerifyEmailRequest(BaseModel):
    session: str = Field(..., min_length=1, max_length=300)
    code: str = Field(..., min_length=1, max_length=16)


class VerifyEmailResponse(BaseModel):
    user_id: str


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"


class LogoutAllResponse(BaseModel):
    sessions_revoked: Optional[int] = None
    complete: bool = True
    failed: List[str] = Field(default_factory=list)
    message: Optional[str] = None
