"""
Sandbox lifecycle status with change notifications.
"""

import logging
import threading
from typing import Callable, List

from .models import SandboxStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[SandboxStatus], None]


class SandboxStateManager:
    """Holds the current sandbox status and notifies listeners when it changes."""

    def __init__(self, initial_status: SandboxStatus = SandboxStatus.NONEXISTENT):
        self._status = initial_status
        self._listeners: List[StatusListener] = []
        self._lock = threading.Lock()

    def get_status(self) -> SandboxStatus:
        return self._status

    def update_status(self, new_status: SandboxStatus) -> None:
        """Change the status; listeners are only notified on an actual change."""
        with self._lock:
            if new_status == self._status:
                return
            logger.info(f"Sandbox status changed from {self._status.value} to {new_status.value}")
            self._status = new_status
            listeners = list(self._listeners)

        for listener in listeners:
            self._notify(listener, new_status)

    def add_listener(self, listener: StatusListener) -> None:
        """Register a listener and immediately deliver the current status to it."""
        with self._lock:
            self._listeners.append(listener)
            current = self._status
        self._notify(listener, current)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, listener: StatusListener, status: SandboxStatus) -> None:
        try:
            listener(status)
        except Exception:
            logger.exception("Error in sandbox status listener")
