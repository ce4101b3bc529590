"""
Security Constants
==================

Defines security-related constants used throughout the application.
These values should not be modified without careful security review.
"""

from typing import Final

# Password Requirements
MIN_PASSWORD_LENGTH: Final[int] = 1
MAX_PASSWORD_LENGTH: Final[int] = 256

# Username Requirements
MAX_USERNAME_LENGTH: Final[int] = 128

# Argon2id parameters (OWASP 2023 recommended minimums)
ARGON2_MEMORY_COST: Final[int] = 65536  # 64 MB in KiB
ARGON2_TIME_COST: Final[int] = 3
ARGON2_PARALLELISM: Final[int] = 4
ARGON2_HASH_LENGTH: Final[int] = 32  # 256 bits
ARGON2_SALT_LENGTH: Final[int] = 16  # 128 bits
HASHING_WORKERS: Final[int] = 4

# Recovery Codes (16-bit unsigned range)
RECOVERY_CODE_MIN: Final[int] = 0
RECOVERY_CODE_MAX: Final[int] = 65535
RECOVERY_MAX_ATTEMPTS: Final[int] = 64
BULK_RESET_INTERVAL_SECONDS: Final[float] = 300.0  # 5 minutes

# Session Security
SESSION_TOKEN_LENGTH: Final[int] = 48  # bytes
SESSION_TIMEOUT_SECONDS: Final[int] = 7 * 24 * 3600
SESSION_COOKIE_NAME: Final[str] = "rollcall_session"

# Bootstrap account
BOOTSTRAP_USERNAME: Final[str] = "admin"
BOOTSTRAP_PASSWORD_LENGTH: Final[int] = 24
BOOTSTRAP_PASSWORD_ALPHABET: Final[str] = (
    "qwertyuiopasdfghjklzxcvbnmQWERTYUIOPASDFGHJKLZXVBNM123456789!$%^&*()-=[];#,._+{}:@<>?"
)

# Bot verification
TURNSTILE_VERIFY_URL: Final[str] = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
TURNSTILE_TIMEOUT_SECONDS: Final[float] = 10.0
LOCAL_CLIENT_ORIGIN: Final[str] = "127.0.0.1"
