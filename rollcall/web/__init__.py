"""
Web module - Flask application factory.
"""

from rollcall.web.app import create_app

__all__ = ["create_app"]
