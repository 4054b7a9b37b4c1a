"""
Orderly shutdown of the devtools core.
"""

import logging
import threading

from ..models import utc_now_iso
from ..obs.broadcast import Broadcaster, EventTypes
from ..storage import LocalStorageManager
from .log_streaming_service import LogStreamingService

logger = logging.getLogger(__name__)


class ShutdownService:
    """Stops live tails, clears the cache and closes the broadcast channel."""

    def __init__(self, streaming: LogStreamingService, storage: LocalStorageManager, broadcaster: Broadcaster):
        self.streaming = streaming
        self.storage = storage
        self.broadcaster = broadcaster
        self._done = False
        self._lock = threading.Lock()

    def shutdown(self, reason: str) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True

        logger.info(f"Stopping the devtools server ({reason})")
        self.streaming.cleanup()
        self.storage.clear_all()

        self.broadcaster.publish(EventTypes.LOG, {
            "timestamp": utc_now_iso(),
            "level": "INFO",
            "message": f"DevTools server is shutting down ({reason})...",
        })
        self.broadcaster.close()
