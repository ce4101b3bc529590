"""
Rollcall - Access Control for a Membership Manager
==================================================

Authenticates people, keeps server-side sessions, orders roles for
authorization, and runs the password recovery lifecycle.

Security Notice:
- No secrets are logged
- Passwords are stored as Argon2id hashes only
- Recovery codes are single-use
"""

from rollcall.core.config import RollcallConfig
from rollcall.core.logging import configure_root_logger

__version__ = "0.1.0"
__author__ = "Rollcall Team"

__all__ = ["RollcallConfig", "configure_root_logger", "__version__"]
