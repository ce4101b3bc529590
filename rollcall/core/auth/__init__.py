"""
Rollcall Authentication Module
==============================

Provides:
- Argon2id password hashing on a bounded worker pool
- A linear role hierarchy with named capabilities
- Cloudflare Turnstile bot verification
- Single-use numeric recovery codes
- Server-side sessions bound to the current password

Security Properties:
- Memory-hard password hashing
- Constant-time verification
- Atomic recovery code issue and consume
"""

from rollcall.core.auth.argon2_auth import Argon2Hasher
from rollcall.core.auth.roles import Capability, Role, at_least, can
from rollcall.core.auth.user_manager import CredentialStore, Identity
from rollcall.core.auth.recovery import ChallengeState, RecoveryEmail, RecoveryTokenManager
from rollcall.core.auth.turnstile import TurnstileGate, TurnstileResult
from rollcall.core.auth.session_control import (
    AuthContext,
    MemorySessionStore,
    PostgresSessionStore,
    SQLiteSessionStore,
    SessionRecord,
    SessionStore,
)
from rollcall.core.auth.flow import FlowController, FlowOutcome, FlowState

__all__ = [
    "Argon2Hasher",
    "Capability",
    "Role",
    "at_least",
    "can",
    "CredentialStore",
    "Identity",
    "ChallengeState",
    "RecoveryEmail",
    "RecoveryTokenManager",
    "TurnstileGate",
    "TurnstileResult",
    "AuthContext",
    "MemorySessionStore",
    "PostgresSessionStore",
    "SQLiteSessionStore",
    "SessionRecord",
    "SessionStore",
    "FlowController",
    "FlowOutcome",
    "FlowState",
]
