"""
Role Hierarchy
==============

A total order over privilege levels. Every authorization decision in
Rollcall is a rank comparison, ``identity.role >= threshold``; named
capabilities are fixed thresholds on that order.

An absent identity (a visitor) ranks below every role.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional

if TYPE_CHECKING:
    from rollcall.core.auth.user_manager import Identity


class Role(IntEnum):
    """Roles from lowest to highest privilege. Stored by lowercase name."""
    PARTICIPANT = 1
    PREFECT = 2
    ADMIN = 3
    DEV = 4

    @classmethod
    def from_string(cls, value: str) -> "Role":
        """Convert a stored name to a Role."""
        return cls[value.upper()]

    @property
    def db_name(self) -> str:
        return self.name.lower()


class Capability(Enum):
    """Named permission checks and the minimum role each one needs."""
    DEV_ACCESS = Role.DEV
    IMPORT_CSV = Role.ADMIN
    EXPORT_CSV = Role.ADMIN
    RUN_MIGRATIONS = Role.ADMIN
    EDIT_PEOPLE = Role.ADMIN
    ADD_REWARDS = Role.ADMIN
    EDIT_EVENTS = Role.PREFECT
    VIEW_PHOTO_ADDERS = Role.PREFECT
    EDIT_PREFECTS_ON_EVENTS = Role.PREFECT
    EDIT_PARTICIPANTS_ON_EVENTS = Role.PREFECT
    VERIFY_EVENTS = Role.PREFECT
    ADD_RM_SELF_TO_EVENT = Role.PARTICIPANT
    SEE_PHOTOS = Role.PREFECT
    ADD_PHOTOS = Role.PREFECT
    SEE_PEOPLE = Role.PREFECT

    # Thresholds repeat, so members get their own sequential values.
    def __new__(cls, threshold: Role) -> "Capability":
        obj = object.__new__(cls)
        obj._value_ = len(cls.__members__) + 1
        obj.threshold = threshold
        return obj


def at_least(identity: Optional["Identity"], threshold: Role) -> bool:
    """True when an authenticated identity ranks at or above ``threshold``."""
    if identity is None:
        return False
    return identity.role >= threshold


def is_visitor(identity: Optional["Identity"]) -> bool:
    """The one check an unauthenticated request passes."""
    return identity is None


def can(identity: Optional["Identity"], capability: Capability) -> bool:
    return at_least(identity, capability.threshold)


def capabilities_for(role: Role) -> FrozenSet[Capability]:
    """Every capability a role holds."""
    return frozenset(c for c in Capability if role >= c.threshold)


def auth_context(identity: Optional["Identity"]) -> Dict[str, Any]:
    """
    Build the mapping page templates receive.

    Every capability appears under its lowercase name so templates can
    test ``permissions.edit_people`` without knowing the role order.
    """
    if identity is None:
        permissions = {c.name.lower(): False for c in Capability}
        return {"is_logged_in": False, "permissions": permissions}

    allowed = capabilities_for(identity.role)
    permissions = {c.name.lower(): c in allowed for c in Capability}
    return {
        "is_logged_in": True,
        "permissions": permissions,
        "user": identity.public_view(),
    }
