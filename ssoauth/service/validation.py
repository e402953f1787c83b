from __future__ import annotations

import re
import secrets
from typing import Iterable

from ssoauth.service.errors import (
    EmailDomainError,
    EmailFormatError,
    EmailMissingAtError,
    PasswordComplexityError,
    PasswordTooShortError,
)

MIN_PASSWORD_LENGTH = 8
VERIFICATION_CODE_DIGITS = 4

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")


def validate_email(email: str, allowed_domains: Iterable[str]) -> str:
    """Check syntax and domain of a registration address.

    The local part keeps its case; the domain is compared lowercased.
    """
    if " " in email:
        raise EmailFormatError("email cannot contain spaces")
    if "@" not in email:
        raise EmailMissingAtError()
    if not _EMAIL_PATTERN.match(email):
        raise EmailFormatError()
    domain = email.lower().rsplit("@", 1)[1]
    if domain not in {d.lower() for d in allowed_domains}:
        raise EmailDomainError(domain)
    return email


def validate_password(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise PasswordTooShortError(MIN_PASSWORD_LENGTH)
    has_digit = any(ch.isdigit() for ch in password)
    has_upper = any(ch.isupper() for ch in password)
    if not has_digit or not has_upper:
        raise PasswordComplexityError()
    return password


def generate_code(digits: int = VERIFICATION_CODE_DIGITS) -> str:
    """Uniform random numeric code, zero padded (0000-9999 by default)."""
    return str(secrets.randbelow(10**digits)).zfill(digits)
