"""
Validation Utilities
====================

Checks for the form fields that reach the login and recovery flows.

Usernames are compared case-insensitively by the store and are stripped
here. Passwords are taken exactly as typed: surrounding whitespace is
part of the password.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlsplit

from rollcall.core.errors import ValidationError
from rollcall.security.constants import (
    MAX_PASSWORD_LENGTH,
    MAX_USERNAME_LENGTH,
    MIN_PASSWORD_LENGTH,
)


def validate_string_safe(
    value: Optional[str],
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Check a submitted text field.

    Args:
        value: Raw form value, possibly missing
        min_length: Shortest accepted length
        max_length: Longest accepted length
        allow_empty: Accept "" when True
        field_name: Used in the error message

    Returns:
        The value, unchanged

    Raises:
        ValidationError: If the field is missing, empty, out of bounds
            or contains control characters the store should never see
    """
    if value is None:
        raise ValidationError(f"{field_name} is required")
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be text")

    if value == "":
        if allow_empty:
            return value
        raise ValidationError(f"{field_name} cannot be empty")

    if not min_length <= len(value) <= max_length:
        raise ValidationError(f"{field_name} must be {min_length}-{max_length} characters long")

    # NUL truncates in some drivers
    if "\x00" in value:
        raise ValidationError(f"{field_name} contains invalid characters")

    return value


def validate_username(value: Optional[str]) -> str:
    """Strip and check a submitted username."""
    if isinstance(value, str):
        value = value.strip()
    return validate_string_safe(value, max_length=MAX_USERNAME_LENGTH, field_name="username")


def validate_password(value: Optional[str]) -> str:
    """Check a new plaintext password. Whitespace is kept."""
    return validate_string_safe(
        value,
        min_length=MIN_PASSWORD_LENGTH,
        max_length=MAX_PASSWORD_LENGTH,
        field_name="password",
    )


def validate_local_redirect(value: Optional[str], default: str = "/") -> str:
    """
    Return ``value`` if it is a path on this site, else ``default``.

    Rejects absolute URLs, scheme-relative ``//host`` targets and
    backslash tricks browsers normalise into either.
    """
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return default
    parts = urlsplit(value)
    if parts.scheme or parts.netloc:
        return default
    return value
