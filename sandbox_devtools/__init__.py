"""
Sandbox DevTools - local cache and log streaming support for the sandbox dashboard.

This package caches deployed-resource metadata, deployment progress events and
live log lines on local disk, and streams new log lines to dashboard clients.
"""

__version__ = "0.1.0"
