from __future__ import annotations

from typing import Optional, Sequence


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    All errors carry a stable error code that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - partial_failure (207)
    - timeout (504)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class MissingFieldError(ValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is required", detail={"field": field})


class EmailMissingAtError(ValidationError):
    def __init__(self) -> None:
        super().__init__("your email doesn't contain the '@' symbol", detail={"field": "email"})


class EmailFormatError(ValidationError):
    def __init__(self, message: str = "your email contains not valid characters") -> None:
        super().__init__(message, detail={"field": "email"})


class EmailDomainError(ValidationError):
    def __init__(self, domain: str) -> None:
        super().__init__(
            "your domain isn't allowed", detail={"field": "email", "domain": domain}
        )


class PasswordTooShortError(ValidationError):
    def __init__(self, min_length: int) -> None:
        super().__init__(
            f"the password must contain {min_length} characters or more",
            detail={"field": "password", "min_length": min_length},
        )


class PasswordComplexityError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "the password must contain at least one uppercase character and one number",
            detail={"field": "password"},
        )


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """Token could not be parsed, verified or decoded into claims."""


class TokenExpiredError(InvalidTokenError):
    """Token signature is valid but its expiry has passed."""


class StaleTokenError(InvalidTokenError):
    """Access token version no longer matches the session's current version."""

    def __init__(self, message: str = "invalid token version") -> None:
        super().__init__(message)


class RefreshTokenMismatchError(InvalidTokenError):
    """Refresh token is authentic but was superseded by a later rotation."""

    def __init__(self, message: str = "invalid refresh token") -> None:
        super().__init__(message)


class SessionRevokedError(AuthenticationError):
    def __init__(self, message: str = "token revoked or user logged out") -> None:
        super().__init__(message)


class InvalidVerificationCodeError(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("invalid code")


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    def __init__(self, message: str = "user not found") -> None:
        super().__init__(message)


class PendingRegistrationNotFoundError(NotFoundError):
    """Pending registration is unknown, consumed or expired."""

    def __init__(self) -> None:
        super().__init__("verification timed out, register again")


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UserExistsError(ConflictError):
    def __init__(self, message: str = "user already exists") -> None:
        super().__init__(message)


class PartialFailureError(ServiceError):
    """Best-effort bulk operation finished but left some work undone (207)."""
    status_code = 207
    error_code = "partial_failure"

    def __init__(self, message: str, *, failed: Sequence[str] = ()) -> None:
        super().__init__(message, detail={"failed": list(failed)})
        self.failed = list(failed)


class DeadlineExceededError(ServiceError):
    """Operation or a downstream call ran past its deadline (504)."""
    status_code = 504
    error_code = "timeout"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServerError):
    """A collaborator service answered with an unexpected failure."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingFieldError",
    "EmailMissingAtError",
    "EmailFormatError",
    "EmailDomainError",
    "PasswordTooShortError",
    "PasswordComplexityError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "StaleTokenError",
    "RefreshTokenMismatchError",
    "SessionRevokedError",
    "InvalidVerificationCodeError",
    "ForbiddenError",
    "NotFoundError",
    "UserNotFoundError",
    "PendingRegistrationNotFoundError",
    "ConflictError",
    "UserExistsError",
    "PartialFailureError",
    "DeadlineExceededError",
    "ServerError",
    "UpstreamError",
]
