"""
Security module - Constants and the tamper-aware audit trail.

Security Considerations:
- Audit entries never carry passwords, recovery codes or session tokens
- Limits and cost parameters live in one place
"""

from rollcall.security.constants import (
    MIN_PASSWORD_LENGTH,
    MAX_PASSWORD_LENGTH,
    RECOVERY_CODE_MIN,
    RECOVERY_CODE_MAX,
)
from rollcall.security.audit import (
    TamperAwareAuditLog,
    AuditEvent,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Constants
    "MIN_PASSWORD_LENGTH",
    "MAX_PASSWORD_LENGTH",
    "RECOVERY_CODE_MIN",
    "RECOVERY_CODE_MAX",
    # Audit
    "TamperAwareAuditLog",
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",
]
