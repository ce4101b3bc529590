"""
Argon2id Password Hashing
=========================

Implements password hashing using Argon2id (argon2-cffi).

Security Properties:
- Memory-hard (resistant to GPU/ASIC attacks)
- Salt automatically managed
- Constant-time verification

Hashing is CPU-bound and deliberately slow, so every hash and verify runs
on a small bounded thread pool. A burst of login attempts queues on the
pool instead of occupying every request thread.

References:
- RFC 9106: Argon2 Memory-Hard Function
- OWASP Password Storage Cheat Sheet
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

import argon2
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from rollcall.core.config import HashingConfig
from rollcall.core.errors import HashingError, ValidationError
from rollcall.security.constants import MAX_PASSWORD_LENGTH


T = TypeVar("T")


class Argon2Hasher:
    """
    Argon2id password hasher with a bounded worker pool.

    Usage:
        hasher = Argon2Hasher(config.hashing)

        encoded = hasher.hash("user_password")
        store(encoded)

        is_valid = hasher.verify("user_password", stored_encoded)

    Notes:
        - A mismatch is a normal False, not an error
        - A malformed stored hash raises HashingError
    """

    __slots__ = ("_config", "_hasher", "_pool")

    def __init__(self, config: HashingConfig) -> None:
        self._config = config
        self._hasher = argon2.PasswordHasher(
            time_cost=config.time_cost,
            memory_cost=config.memory_cost,
            parallelism=config.parallelism,
            hash_len=config.hash_length,
            salt_len=config.salt_length,
            type=argon2.Type.ID,
        )
        self._pool = ThreadPoolExecutor(
            max_workers=config.workers,
            thread_name_prefix="rollcall-hash",
        )

    @property
    def parameters(self) -> dict[str, int]:
        """Get current hashing parameters."""
        return {
            "time_cost": self._config.time_cost,
            "memory_cost": self._config.memory_cost,
            "parallelism": self._config.parallelism,
            "hash_length": self._config.hash_length,
            "salt_length": self._config.salt_length,
        }

    def _run(self, fn: Callable[[], T]) -> T:
        return self._pool.submit(fn).result()

    def hash(self, password: str) -> str:
        """
        Hash a password using Argon2id.

        Returns:
            Encoded hash string for storage

        Raises:
            ValidationError: If the password is empty or too long
            HashingError: If argon2 fails internally
        """
        if not password:
            raise ValidationError("Password cannot be empty")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")

        try:
            return self._run(lambda: self._hasher.hash(password))
        except argon2.exceptions.HashingError as e:
            raise HashingError("Unable to hash password") from e

    def verify(self, password: str, encoded: str) -> bool:
        """
        Verify a password against an encoded hash.

        Returns:
            True if password matches, False otherwise

        Raises:
            HashingError: If the stored hash is malformed
        """
        if not encoded:
            raise HashingError("Stored hash is empty")

        def _verify() -> bool:
            try:
                return self._hasher.verify(encoded, password)
            except VerifyMismatchError:
                return False

        try:
            return self._run(_verify)
        except InvalidHashError as e:
            raise HashingError("Stored hash is malformed") from e
        except VerificationError as e:
            raise HashingError("Unable to verify password") from e

    def needs_rehash(self, encoded: str) -> bool:
        """Check if a hash was made with older or weaker parameters."""
        try:
            return self._hasher.check_needs_rehash(encoded)
        except InvalidHashError as e:
            raise HashingError("Stored hash is malformed") from e

    def shutdown(self) -> None:
        """Stop accepting work and wait for in-flight hashes."""
        self._pool.shutdown(wait=True)
