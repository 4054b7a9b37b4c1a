"""
HTTP and WebSocket adapter for the sandbox dashboard.
"""

from .app import create_app

__all__ = ["create_app"]
