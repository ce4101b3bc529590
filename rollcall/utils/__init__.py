"""
Utils module - Input validation helpers.
"""

from rollcall.utils.validators import (
    validate_local_redirect,
    validate_password,
    validate_string_safe,
    validate_username,
)

__all__ = [
    "validate_local_redirect",
    "validate_password",
    "validate_string_safe",
    "validate_username",
]
