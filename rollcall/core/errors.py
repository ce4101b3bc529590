"""
Error Taxonomy
==============

Exception hierarchy shared by every Rollcall component.

Categories:
- Infrastructure (store, session store, hashing, bot verification, mail):
  surfaced as 5xx, logged with full context, never retried here.
- Client input (malformed form fields, malformed recovery codes): 400.
- Authentication failures: carry a FailureReason whose status code is
  the externally visible classification.
- Invariant violations: fatal for the affected request only.

Store failures carry a StoreAction describing what was being attempted
when the failure happened, with the underlying cause chained.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class FailureReason(Enum):
    """Machine-readable tags carried by every failure page."""
    BAD_PASSWORD = "bad_password"
    NO_NUMBERS = "no_numbers"
    USER_NOT_FOUND = "user_not_found"
    FAILED_NUMBERS = "failed_numbers"
    PASSWORD_ALREADY_SET = "password_already_set"
    FAILED_TURNSTILE = "failed_turnstile"
    MALFORMED_INPUT = "malformed_input"
    # Guided redirect rather than a dead end; see ``path``
    PASSWORD_IS_NOT_SET = "password_is_not_set"

    @property
    def status_code(self) -> int:
        """HTTP status used when rendering the failure page."""
        if self in (FailureReason.NO_NUMBERS, FailureReason.PASSWORD_ALREADY_SET,
                    FailureReason.MALFORMED_INPUT):
            return 400
        if self is FailureReason.USER_NOT_FOUND:
            return 404
        return 403

    @property
    def path(self) -> str:
        if self is FailureReason.PASSWORD_IS_NOT_SET:
            return "/add_password"
        return f"/login_failure/{self.value}"


class StoreAction(Enum):
    """What a store operation was doing when it failed."""
    INITIALIZING = "initializing"
    FINDING_PERSON = "finding_person"
    FINDING_PEOPLE = "finding_people"
    ADDING_PERSON = "adding_person"
    UPDATING_PERSON = "updating_person"
    ISSUING_CODE = "issuing_code"
    CONSUMING_CODE = "consuming_code"
    LOADING_SESSION = "loading_session"
    STORING_SESSION = "storing_session"
    DESTROYING_SESSION = "destroying_session"
    CLEARING_SESSIONS = "clearing_sessions"
    PURGING_SESSIONS = "purging_sessions"


class RollcallError(Exception):
    """Base class for all Rollcall errors."""
    pass


class ConfigurationError(RollcallError):
    """Raised when configuration is invalid at startup."""
    pass


class ValidationError(RollcallError, ValueError):
    """Raised when client input fails validation."""
    reason = FailureReason.MALFORMED_INPUT


class StoreError(RollcallError):
    """Raised when the credential store cannot complete an operation."""

    def __init__(self, action: StoreAction, cause: Optional[BaseException] = None) -> None:
        self.action = action
        self.cause = cause
        detail = f": {cause.__class__.__name__}" if cause is not None else ""
        super().__init__(f"Store failure while {action.value}{detail}")


class SessionStoreError(StoreError):
    """Raised when the session store fails. A missing session is not an error."""
    pass


class HashingError(RollcallError):
    """Raised when password hashing or verification fails internally."""
    pass


class TurnstileTransportError(RollcallError):
    """Raised when the verification service cannot be reached or misbehaves."""
    pass


class MissingClientOrigin(RollcallError):
    """Raised when the proxy did not supply the client address in production."""
    pass


class MailError(RollcallError):
    """Raised when a recovery message cannot be built."""
    pass


class InvariantViolation(RollcallError):
    """Raised when stored state breaks a recovery invariant."""

    def __init__(self, identity_id: int, detail: str) -> None:
        self.identity_id = identity_id
        self.detail = detail
        super().__init__(f"Invariant violated for person {identity_id}: {detail}")


class UserExistsError(RollcallError):
    """Raised when trying to create a person whose username is taken."""
    pass


class RecoveryError(RollcallError):
    """Base class for recovery failures. Each maps to one FailureReason."""
    reason: FailureReason = FailureReason.MALFORMED_INPUT

    def __init__(self, identity_id: Optional[int] = None) -> None:
        self.identity_id = identity_id
        super().__init__(f"{self.reason.value} (person {identity_id})")


class PersonNotFound(RecoveryError):
    reason = FailureReason.USER_NOT_FOUND


class NoCodeOutstanding(RecoveryError):
    reason = FailureReason.NO_NUMBERS


class PasswordAlreadySet(RecoveryError):
    reason = FailureReason.PASSWORD_ALREADY_SET


class CodeMismatch(RecoveryError):
    reason = FailureReason.FAILED_NUMBERS


class MalformedCode(RecoveryError):
    reason = FailureReason.MALFORMED_INPUT
