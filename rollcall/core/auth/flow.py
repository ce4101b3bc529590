"""
Login and Recovery Flows
========================

Orchestrates the gate, the credential store, the recovery manager and the
session context into the login, logout and set-password sequences.

Every call returns a FlowOutcome. Expected failures (bad password, wrong
code, bot check rejected) are outcomes carrying a FailureReason.
Infrastructure failures (store, hashing, Turnstile transport) are raised
unchanged for the web layer to convert.

The controller never touches session storage directly; it only asks the
AuthContext to bind or unbind.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, MutableMapping, Optional, Protocol

from rollcall.core.auth.recovery import ChallengeState, RecoveryEmail, RecoveryTokenManager
from rollcall.core.auth.session_control import IDENTITY_KEY, AuthContext
from rollcall.core.auth.turnstile import TurnstileGate
from rollcall.core.auth.user_manager import CredentialStore, Identity
from rollcall.core.config import RecoveryConfig
from rollcall.core.errors import (
    FailureReason,
    InvariantViolation,
    RecoveryError,
    StoreError,
    ValidationError,
)
from rollcall.security.audit import AuditEventType, AuditSeverity, TamperAwareAuditLog
from rollcall.utils.validators import validate_local_redirect, validate_password, validate_username


logger = logging.getLogger(__name__)

Session = MutableMapping[str, Any]


class FlowState(Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    LOGIN_FAILED = "login_failed"
    RECOVERY_PENDING = "recovery_pending"
    RECOVERY_FAILED = "recovery_failed"


@dataclass(frozen=True)
class FlowOutcome:
    """Where a flow ended up and where the client should go next."""
    state: FlowState
    reason: Optional[FailureReason] = None
    redirect: Optional[str] = None
    identity: Optional[Identity] = None

    @classmethod
    def failed(cls, state: FlowState, reason: FailureReason) -> "FlowOutcome":
        return cls(state=state, reason=reason, redirect=reason.path)

    @property
    def ok(self) -> bool:
        return self.reason is None


class Mailer(Protocol):
    stop_event: threading.Event

    def enqueue(self, email: RecoveryEmail) -> None:
        ...


_CHALLENGE_FAILURES = {
    ChallengeState.UNKNOWN_PERSON: FailureReason.USER_NOT_FOUND,
    ChallengeState.NO_RECOVERY: FailureReason.NO_NUMBERS,
    ChallengeState.ALREADY_SET: FailureReason.PASSWORD_ALREADY_SET,
}


class FlowController:
    """
    Usage:
        flows = FlowController(store, recovery, gate, auth, mail_worker, config.recovery, audit)

        outcome = flows.login(session, "alovelace", "pw", challenge, remote_ip, next_url="/events")
        if outcome.state is FlowState.AUTHENTICATED:
            ...
    """

    def __init__(
        self,
        store: CredentialStore,
        recovery: RecoveryTokenManager,
        gate: TurnstileGate,
        auth: AuthContext,
        mailer: Mailer,
        recovery_config: RecoveryConfig,
        audit: Optional[TamperAwareAuditLog] = None,
    ) -> None:
        self._store = store
        self._recovery = recovery
        self._gate = gate
        self._auth = auth
        self._mailer = mailer
        self._recovery_config = recovery_config
        self._audit = audit

    @property
    def auth(self) -> AuthContext:
        return self._auth

    @property
    def recovery(self) -> RecoveryTokenManager:
        return self._recovery

    def _record(
        self,
        event_type: AuditEventType,
        description: str,
        user_id: Optional[int] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        **details: Any,
    ) -> None:
        if self._audit is not None:
            self._audit.log(event_type, severity, description, user_id=user_id, details=details)

    def login(
        self,
        session: Session,
        username: Optional[str],
        password: Optional[str],
        challenge: Optional[str],
        remote_ip: str,
        next_url: Optional[str] = None,
    ) -> FlowOutcome:
        """
        Handle a login form submission.

        Raises:
            TurnstileTransportError, StoreError, HashingError: Infrastructure failure
        """
        if not self._gate.verify(challenge, remote_ip).success:
            return FlowOutcome.failed(FlowState.LOGIN_FAILED, FailureReason.FAILED_TURNSTILE)

        try:
            username = validate_username(username)
        except ValidationError:
            return FlowOutcome.failed(FlowState.LOGIN_FAILED, FailureReason.MALFORMED_INPUT)

        identity = self._store.find_by_username(username)
        if identity is None:
            logger.info("Login attempt for unknown user %s", username)
            return FlowOutcome.failed(FlowState.LOGIN_FAILED, FailureReason.USER_NOT_FOUND)

        if identity.password_hash is None:
            email = self._recovery.issue(identity.id)
            self._mailer.enqueue(email)
            return FlowOutcome.failed(FlowState.LOGIN_FAILED, FailureReason.PASSWORD_IS_NOT_SET)

        if not self._store.verify(password or "", identity.password_hash):
            logger.warning("Failed login attempt for %s", identity.username)
            self._record(
                AuditEventType.LOGIN_FAILURE,
                "Incorrect password",
                user_id=identity.id,
                severity=AuditSeverity.WARNING,
                username=identity.username,
            )
            return FlowOutcome.failed(FlowState.LOGIN_FAILED, FailureReason.BAD_PASSWORD)

        if self._store.needs_rehash(identity.password_hash):
            identity = self._upgrade_hash(identity, password)

        self._auth.login(session, identity)
        self._record(AuditEventType.LOGIN_SUCCESS, "Logged in", user_id=identity.id)
        logger.info("Person %s logged in", identity.id)

        return FlowOutcome(
            state=FlowState.AUTHENTICATED,
            redirect=validate_local_redirect(next_url),
            identity=identity,
        )

    def _upgrade_hash(self, identity: Identity, password: str) -> Identity:
        """Re-hash with the current cost parameters after a successful verify."""
        new_hash = self._store.hash(password)
        self._store.update_password(identity.id, new_hash)
        logger.info("Upgraded password hash for person %s", identity.id)
        return dataclasses.replace(identity, password_hash=new_hash)

    def show_recovery(self, identity_id: int, code: Optional[int] = None) -> FlowOutcome:
        """Decide whether the set-password form can be shown."""
        state = self._recovery.challenge(identity_id)
        if state in _CHALLENGE_FAILURES:
            return FlowOutcome.failed(FlowState.RECOVERY_FAILED, _CHALLENGE_FAILURES[state])

        if code is not None and not self._recovery.matches(identity_id, code):
            return FlowOutcome.failed(FlowState.RECOVERY_FAILED, FailureReason.FAILED_NUMBERS)

        return FlowOutcome(
            state=FlowState.RECOVERY_PENDING,
            identity=self._store.find_by_id(identity_id),
        )

    def recover(
        self,
        session: Session,
        identity_id: int,
        raw_code: Optional[str],
        new_password: Optional[str],
        challenge: Optional[str],
        remote_ip: str,
    ) -> FlowOutcome:
        """Handle a set-password form submission."""
        if not self._gate.verify(challenge, remote_ip).success:
            return FlowOutcome.failed(FlowState.RECOVERY_FAILED, FailureReason.FAILED_TURNSTILE)

        try:
            code = self._recovery.parse_code(raw_code)
            identity = self._recovery.consume(identity_id, code, new_password or "")
        except RecoveryError as e:
            logger.info("Recovery for person %s failed: %s", identity_id, e.reason.value)
            return FlowOutcome.failed(FlowState.RECOVERY_FAILED, e.reason)
        except ValidationError:
            return FlowOutcome.failed(FlowState.RECOVERY_FAILED, FailureReason.MALFORMED_INPUT)

        self._auth.login(session, identity)
        self._record(AuditEventType.LOGIN_SUCCESS, "Logged in after recovery", user_id=identity.id)

        return FlowOutcome(state=FlowState.AUTHENTICATED, redirect="/", identity=identity)

    def logout(self, session: Session) -> FlowOutcome:
        identity_id = session.get(IDENTITY_KEY)
        self._auth.logout(session)
        if identity_id is not None:
            self._record(AuditEventType.LOGOUT, "Logged out", user_id=int(identity_id))
        return FlowOutcome(state=FlowState.ANONYMOUS, redirect="/")

    def force_reset(self, identity_id: int) -> None:
        """Administrative reset: clear the password and mail a fresh code."""
        email = self._recovery.issue(identity_id)
        self._mailer.enqueue(email)
        self._record(AuditEventType.PASSWORD_RESET_FORCED, "Password reset by administrator",
                     user_id=identity_id)

    def set_own_password(self, session: Session, new_password: Optional[str]) -> FlowOutcome:
        """
        Let a logged-in person replace their password directly.

        Raises:
            ValidationError: If the new password is empty or too long
        """
        identity = self._auth.current_identity(session)
        if identity is None:
            return FlowOutcome(state=FlowState.ANONYMOUS, redirect="/login")

        new_hash = self._store.hash(validate_password(new_password))
        self._store.update_password(identity.id, new_hash)

        updated = dataclasses.replace(identity, password_hash=new_hash, recovery_code=None)
        self._auth.login(session, updated)
        self._record(AuditEventType.PASSWORD_SET, "Password changed by owner", user_id=identity.id)

        return FlowOutcome(state=FlowState.AUTHENTICATED, redirect="/", identity=updated)

    def reset_all_unset(self) -> int:
        """
        Mail a recovery code to everyone without a password, one at a time.

        Messages are spaced by the configured interval and the loop ends
        early once the mail worker is told to stop.

        Returns:
            How many codes were issued
        """
        people = self._store.list_without_password()
        stop = self._mailer.stop_event
        issued = 0

        for person in people:
            if stop.wait(self._recovery_config.bulk_interval_seconds):
                logger.info("Bulk reset cancelled after %d of %d people", issued, len(people))
                break
            try:
                self.force_reset(person.id)
            except (RecoveryError, StoreError, InvariantViolation) as e:
                logger.error("Error resetting password for person %s: %s", person.id, e)
                continue
            issued += 1

        return issued

    def start_bulk_reset(self) -> threading.Thread:
        """Run ``reset_all_unset`` in the background and return its thread."""
        thread = threading.Thread(target=self.reset_all_unset, name="rollcall-bulk-reset", daemon=True)
        thread.start()
        return thread
