"""
Recovery-Token Manager
======================

Issues and consumes single-use numeric recovery codes.

A code is issued when a login finds no password, or when an administrator
forces a reset. Issuing writes the code and clears the password hash in one
UPDATE inside an immediate transaction, so a concurrent consume never sees
one without the other. Consuming writes the new hash and clears the code in
one conditional UPDATE, so a code can only ever be spent once.

Outstanding codes are unique. The uniqueness scan runs under the write lock
and the column carries a UNIQUE constraint, so two concurrent issues can
never hand out the same code.
"""

from __future__ import annotations

import dataclasses
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set

from rollcall.core.auth.user_manager import CredentialStore, Identity
from rollcall.core.config import RecoveryConfig
from rollcall.core.errors import (
    CodeMismatch,
    InvariantViolation,
    MalformedCode,
    NoCodeOutstanding,
    PasswordAlreadySet,
    PersonNotFound,
    StoreAction,
)
from rollcall.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog


logger = logging.getLogger(__name__)


class ChallengeState(Enum):
    """What the set-password page should show for a person."""
    UNKNOWN_PERSON = "unknown_person"
    NO_RECOVERY = "no_recovery"
    ALREADY_SET = "already_set"
    AWAITING_PASSWORD = "awaiting_password"


@dataclass(frozen=True)
class RecoveryEmail:
    """Everything needed to compose a recovery message."""
    identity_id: int
    username: str
    full_name: str
    code: int

    def __repr__(self) -> str:
        return f"RecoveryEmail(identity_id={self.identity_id!r}, username={self.username!r})"


class RecoveryTokenManager:
    """
    Issue, check and spend recovery codes.

    Usage:
        recovery = RecoveryTokenManager(store, config.recovery, audit)

        email = recovery.issue(person.id)
        mail_worker.enqueue(email)

        code = recovery.parse_code(request.form["password_link_id"])
        person = recovery.consume(person.id, code, "new password")
    """

    __slots__ = ("_store", "_config", "_audit")

    def __init__(
        self,
        store: CredentialStore,
        config: RecoveryConfig,
        audit: Optional[TamperAwareAuditLog] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._audit = audit

    def parse_code(self, raw: Optional[str]) -> int:
        """
        Parse a submitted code.

        Raises:
            MalformedCode: If the value is not an integer in the code range
        """
        if raw is None:
            raise MalformedCode()
        text = str(raw).strip()
        if not text.isdigit():
            raise MalformedCode()
        code = int(text)
        if not self._config.code_min <= code <= self._config.code_max:
            raise MalformedCode()
        return code

    def issue(self, identity_id: int) -> RecoveryEmail:
        """
        Assign a fresh code to a person and clear their password.

        Returns:
            The data needed to mail the code out

        Raises:
            PersonNotFound: If the person does not exist
            InvariantViolation: If no free code could be found
            StoreError: On database failure
        """
        with self._store.transaction(StoreAction.ISSUING_CODE) as conn:
            identity = self._store.fetch_identity(conn, identity_id)
            if identity is None:
                raise PersonNotFound(identity_id)

            taken = {
                row[0]
                for row in conn.execute(
                    "SELECT password_link_id FROM people "
                    "WHERE password_link_id IS NOT NULL AND id != ?",
                    (identity_id,),
                )
            }
            code = self._assign_code(conn, identity_id, taken)

        logger.info("Issued recovery code for person %s", identity_id)
        if self._audit is not None:
            self._audit.log(
                AuditEventType.RECOVERY_ISSUED,
                AuditSeverity.INFO,
                "Recovery code issued",
                user_id=identity_id,
            )

        return RecoveryEmail(
            identity_id=identity.id,
            username=identity.username,
            full_name=identity.full_name,
            code=code,
        )

    def _assign_code(self, conn: sqlite3.Connection, identity_id: int, taken: Set[int]) -> int:
        span = self._config.code_max - self._config.code_min + 1
        if len(taken) >= span:
            logger.error("Recovery code space exhausted while issuing for person %s", identity_id)
            raise InvariantViolation(identity_id, "recovery code space exhausted")

        for _ in range(self._config.max_attempts):
            candidate = self._config.code_min + secrets.randbelow(span)
            if candidate in taken:
                continue
            try:
                conn.execute(
                    """
                    UPDATE people
                    SET password_link_id = ?, hashed_password = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (candidate, datetime.now(timezone.utc).isoformat(), identity_id),
                )
            except sqlite3.IntegrityError:
                taken.add(candidate)
                continue
            return candidate

        logger.error(
            "No free recovery code after %d attempts for person %s",
            self._config.max_attempts, identity_id,
        )
        raise InvariantViolation(identity_id, "no free recovery code found")

    def consume(self, identity_id: int, supplied_code: int, new_plaintext: str) -> Identity:
        """
        Spend a code and set the new password.

        Checks, in order: the person exists, a code is outstanding, no
        password is set, the code matches. Only then is the new password
        hashed and written.

        Returns:
            The person with their new password in place

        Raises:
            PersonNotFound, NoCodeOutstanding, PasswordAlreadySet, CodeMismatch
            HashingError, StoreError: On infrastructure failure
        """
        identity = self._store.find_by_id(identity_id)
        self._check(identity, identity_id, supplied_code)

        new_hash = self._store.hash(new_plaintext)

        current: Optional[Identity] = None
        with self._store.connection(StoreAction.CONSUMING_CODE) as conn:
            result = conn.execute(
                """
                UPDATE people
                SET hashed_password = ?, password_link_id = NULL, updated_at = ?
                WHERE id = ? AND password_link_id = ? AND hashed_password IS NULL
                """,
                (new_hash, datetime.now(timezone.utc).isoformat(), identity_id, supplied_code),
            )
            won = result.rowcount == 1
            if not won:
                current = self._store.fetch_identity(conn, identity_id)

        if not won:
            # Someone else changed the record between our read and write
            self._check(current, identity_id, supplied_code)
            logger.error("Recovery state for person %s changed during consume", identity_id)
            raise InvariantViolation(identity_id, "recovery state changed during consume")

        logger.info("Password set through recovery for person %s", identity_id)
        if self._audit is not None:
            self._audit.log(
                AuditEventType.PASSWORD_SET,
                AuditSeverity.INFO,
                "Password set with recovery code",
                user_id=identity_id,
            )

        return dataclasses.replace(identity, password_hash=new_hash, recovery_code=None)

    @staticmethod
    def _check(identity: Optional[Identity], identity_id: int, supplied_code: int) -> None:
        if identity is None:
            raise PersonNotFound(identity_id)
        if identity.recovery_code is None:
            if identity.password_hash is not None:
                raise PasswordAlreadySet(identity_id)
            raise NoCodeOutstanding(identity_id)
        if identity.password_hash is not None:
            raise PasswordAlreadySet(identity_id)
        if not secrets.compare_digest(str(identity.recovery_code), str(supplied_code)):
            raise CodeMismatch(identity_id)

    def challenge(self, identity_id: int) -> ChallengeState:
        """Route the set-password page from stored state alone."""
        identity = self._store.find_by_id(identity_id)
        if identity is None:
            return ChallengeState.UNKNOWN_PERSON
        if identity.password_hash is not None:
            return ChallengeState.ALREADY_SET
        if identity.recovery_code is None:
            return ChallengeState.NO_RECOVERY
        return ChallengeState.AWAITING_PASSWORD

    def matches(self, identity_id: int, supplied_code: int) -> bool:
        """True when ``supplied_code`` is the person's outstanding code."""
        identity = self._store.find_by_id(identity_id)
        if identity is None or identity.recovery_code is None:
            return False
        return secrets.compare_digest(str(identity.recovery_code), str(supplied_code))
