"""
Live log streaming for deployed resources.

Each subscribed resource gets one worker thread that consumes the live tail,
appends every line to the local cache and broadcasts it to viewers.
"""

import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Set

from ..exceptions import LogStreamError
from ..models import LogEntry, SubscriptionStatus
from ..obs.broadcast import Broadcaster, EventTypes
from ..settings import DEFAULT_WS_PORT
from ..storage import LocalStorageManager

logger = logging.getLogger(__name__)


class LogTailSource(Protocol):
    """A live log source that can be opened and closed per resource."""

    def open(self, resource_id: str, resource_type: str) -> Iterable[LogEntry]:
        ...

    def close(self, resource_id: str, stream: Iterable[LogEntry]) -> None:
        """Stop the stream returned by open(); other streams of the resource stay open."""
        ...


@dataclass
class _Subscription:
    resource_id: str
    resource_type: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    stopped: bool = False
    stream: Optional[Iterable[LogEntry]] = None
    thread: Optional[threading.Thread] = None


class LogStreamingService:
    """Tracks which resources are being tailed and mediates subscribe/unsubscribe/replay."""

    def __init__(
        self,
        storage: LocalStorageManager,
        tail_source: LogTailSource,
        broadcaster: Optional[Broadcaster] = None,
        port: int = DEFAULT_WS_PORT,
    ):
        self.storage = storage
        self.tail_source = tail_source
        self.broadcaster = broadcaster or Broadcaster()
        self.port = port
        # In-memory only: subscriptions never outlive the process.
        self._subscriptions: Dict[str, _Subscription] = {}
        self._lock = threading.Lock()

    # -- queries ------------------------------------------------------------

    def list_active_subscriptions(self) -> Set[str]:
        with self._lock:
            return set(self._subscriptions)

    def is_active(self, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._subscriptions

    def replay(self, resource_id: str) -> List[LogEntry]:
        """Return the cached log lines for a resource without touching the live tail."""
        return self.storage.load_logs(resource_id)

    def get_broadcaster(self) -> Broadcaster:
        return self.broadcaster

    def get_port(self) -> int:
        return self.port

    def get_local_ip_address(self) -> Optional[str]:
        """
        Find a non-loopback IPv4 address for external connections.

        Returns:
            str: Address, or None when no suitable interface exists
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
                # No packet is sent; connecting only selects the outbound interface.
                probe.connect(("10.255.255.255", 1))
                address = probe.getsockname()[0]
        except OSError:
            address = None

        if not address or address.startswith("127."):
            logger.warning(
                "Could not find a suitable network interface for external connections. "
                "Real-time log streaming is only reachable locally."
            )
            return None
        return address

    def get_endpoint(self) -> str:
        host = self.get_local_ip_address() or "localhost"
        return f"ws://{host}:{self.port}"

    # -- subscription lifecycle ---------------------------------------------

    def start_subscription(self, resource_id: str, resource_type: str) -> SubscriptionStatus:
        """
        Start tailing a resource's logs.

        Args:
            resource_id: Resource to tail
            resource_type: Resource type, used by the tail source to locate logs

        Returns:
            SubscriptionStatus: ACTIVE when started, ALREADY_ACTIVE for a duplicate
            start, STOPPED if a stop arrived while the tail was opening

        Raises:
            LogStreamError: If the live tail could not be opened
        """
        with self._lock:
            if resource_id in self._subscriptions:
                logger.debug(f"Log stream for {resource_id} is already active")
                self._publish_status(resource_id, SubscriptionStatus.ALREADY_ACTIVE)
                return SubscriptionStatus.ALREADY_ACTIVE
            subscription = _Subscription(resource_id=resource_id, resource_type=resource_type)
            self._subscriptions[resource_id] = subscription

        self._publish_status(resource_id, SubscriptionStatus.STARTING)

        try:
            stream = self.tail_source.open(resource_id, resource_type)
        except Exception as e:
            with self._lock:
                if self._subscriptions.get(resource_id) is subscription:
                    del self._subscriptions[resource_id]
            error = e if isinstance(e, LogStreamError) else LogStreamError(
                resource_id, f"Failed to start log stream: {e}"
            )
            logger.error(f"Error starting log stream for {resource_id}: {e}")
            self.broadcaster.publish(
                EventTypes.LOG_STREAM_ERROR,
                {"resourceId": resource_id, "error": str(error)},
                resource_id=resource_id,
            )
            if error is e:
                raise
            raise error from e

        with subscription.lock:
            if subscription.stopped:
                logger.info(f"Log stream for {resource_id} was stopped while opening")
                self._close_tail(resource_id, stream)
                return SubscriptionStatus.STOPPED
            subscription.stream = stream
            thread = threading.Thread(
                target=self._consume,
                args=(subscription, stream),
                name=f"log-tail-{resource_id}",
                daemon=True,
            )
            subscription.thread = thread
            self.storage.set_logging_state(resource_id, True)
            thread.start()

        logger.info(f"Started log stream for {resource_id}")
        self._publish_status(resource_id, SubscriptionStatus.ACTIVE)
        return SubscriptionStatus.ACTIVE

    def stop_subscription(self, resource_id: str) -> SubscriptionStatus:
        """Stop tailing a resource. Safe to call when no tail is open."""
        with self._lock:
            subscription = self._subscriptions.pop(resource_id, None)

        stream = None
        if subscription is not None:
            with subscription.lock:
                subscription.stopped = True
                stream = subscription.stream

        # A start still opening closes its own tail once it sees the stop.
        if stream is not None:
            self._close_tail(resource_id, stream)
        self.storage.set_logging_state(resource_id, False)
        logger.info(f"Stopped log stream for {resource_id}")
        self._publish_status(resource_id, SubscriptionStatus.STOPPED)
        return SubscriptionStatus.STOPPED

    def cleanup(self) -> None:
        """Stop every active subscription."""
        active = self.list_active_subscriptions()
        if active:
            logger.info(f"Cleaning up {len(active)} active log streams")
        for resource_id in active:
            self.stop_subscription(resource_id)

    # -- log settings -------------------------------------------------------

    def get_log_settings(self) -> Dict[str, float]:
        return {
            "maxLogSizeMB": self.storage.max_log_size_mb,
            "currentSizeMB": self.storage.size_of_logs_in_mb(),
        }

    def save_log_settings(self, max_log_size_mb: float) -> Dict[str, float]:
        self.storage.set_max_log_size_mb(max_log_size_mb)
        settings = self.get_log_settings()
        self.broadcaster.publish(EventTypes.LOG_SETTINGS, settings)
        logger.info(f"Log settings updated: max size set to {max_log_size_mb} MB")
        return settings

    # -- internals ----------------------------------------------------------

    def _close_tail(self, resource_id: str, stream: Iterable[LogEntry]) -> None:
        try:
            self.tail_source.close(resource_id, stream)
        except Exception as e:
            logger.warning(f"Error closing log tail for {resource_id}: {e}")

    def _publish_status(self, resource_id: str, status: SubscriptionStatus) -> None:
        self.broadcaster.publish(
            EventTypes.LOG_STREAM_STATUS,
            {"resourceId": resource_id, "status": status.value},
        )

    def _append(self, subscription: _Subscription, entry: LogEntry) -> bool:
        with subscription.lock:
            if subscription.stopped:
                return False
            self.storage.append_log(subscription.resource_id, entry)

        self.broadcaster.publish(
            EventTypes.RESOURCE_LOGS,
            {"resourceId": subscription.resource_id, "logs": [entry.to_dict()]},
            resource_id=subscription.resource_id,
        )
        return True

    def _consume(self, subscription: _Subscription, stream: Iterable[LogEntry]) -> None:
        resource_id = subscription.resource_id
        try:
            for entry in stream:
                if not self._append(subscription, entry):
                    break
        except Exception as e:
            logger.error(f"Error fetching logs for {resource_id}: {e}")
            self.broadcaster.publish(
                EventTypes.LOG_STREAM_ERROR,
                {"resourceId": resource_id, "error": f"Error fetching logs: {e}"},
                resource_id=resource_id,
            )

        # The tail ended without a stop request; the resource is no longer live.
        with self._lock:
            ended = self._subscriptions.get(resource_id) is subscription
            if ended:
                del self._subscriptions[resource_id]
        if ended:
            with subscription.lock:
                subscription.stopped = True
            self.storage.set_logging_state(resource_id, False)
            logger.info(f"Log stream for {resource_id} ended")
            self._publish_status(resource_id, SubscriptionStatus.STOPPED)
