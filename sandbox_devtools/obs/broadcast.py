"""
In-process broadcast channel for dashboard events.

Listeners are plain callables taking ``(event_type, data)``. A transport
adapter attaches one listener per connected client and forwards what it
receives over the wire.
"""

import logging
import threading
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]


class EventTypes:
    RESOURCE_LOGS = "resourceLogs"
    LOG_STREAM_STATUS = "logStreamStatus"
    LOG_STREAM_ERROR = "logStreamError"
    LOG_SETTINGS = "logSettings"
    DEPLOYMENT_IN_PROGRESS = "deploymentInProgress"
    SANDBOX_STATUS = "sandboxStatus"
    FRIENDLY_NAME_UPDATED = "customFriendlyNameUpdated"
    FRIENDLY_NAME_REMOVED = "customFriendlyNameRemoved"
    LOG = "log"


class Broadcaster:
    """Fans events out to registered listeners with per-listener error isolation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Tuple[EventListener, Optional[FrozenSet[str]]]] = []
        self._closed = False

    def add_listener(self, listener: EventListener, resource_ids: Optional[List[str]] = None) -> None:
        """
        Register a listener.

        Args:
            listener: Callable receiving (event_type, data)
            resource_ids: Only deliver resource-scoped events for these ids;
                None receives everything
        """
        scope = frozenset(resource_ids) if resource_ids is not None else None
        with self._lock:
            self._listeners.append((listener, scope))

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners = [entry for entry in self._listeners if entry[0] is not listener]

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event_type: str, data: Dict[str, Any], resource_id: Optional[str] = None) -> int:
        """
        Deliver an event to every interested listener.

        Returns:
            int: Number of listeners that received the event without raising
        """
        with self._lock:
            if self._closed:
                logger.debug(f"Dropping {event_type} event, broadcaster is closed")
                return 0
            targets = list(self._listeners)

        delivered = 0
        for listener, scope in targets:
            if resource_id is not None and scope is not None and resource_id not in scope:
                continue
            try:
                listener(event_type, data)
                delivered += 1
            except Exception:
                logger.exception(f"Listener failed while handling {event_type} event")
        return delivered

    def close(self) -> None:
        """Detach every listener and refuse further events."""
        with self._lock:
            self._closed = True
            self._listeners.clear()
