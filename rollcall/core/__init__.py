"""
Core module - Contains configuration, logging, errors and mail delivery.
"""

from rollcall.core.config import RollcallConfig
from rollcall.core.logging import configure_root_logger, SecureLogFilter

__all__ = ["RollcallConfig", "configure_root_logger", "SecureLogFilter"]
