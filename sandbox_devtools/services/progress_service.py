"""
Recording of deployment progress output.
"""

import logging
import threading
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Set

from ..models import DeploymentProgressEvent, StackEvent, utc_now_iso
from ..obs.broadcast import Broadcaster, EventTypes
from ..obs.classify import extract_progress_events, is_progress_signal, strip_escape_sequences
from ..storage import LocalStorageManager

logger = logging.getLogger(__name__)


class StackEventSource(Protocol):
    """Reads deployment events of a backend stack."""

    def get_stack_events(self, backend_identifier: str, since: Optional[datetime] = None) -> List[StackEvent]:
        ...


class ProgressService:
    """Turns raw deployment output and stack events into stored and broadcast progress events."""

    def __init__(
        self,
        storage: LocalStorageManager,
        broadcaster: Broadcaster,
        backend_identifier: Optional[str] = None,
        event_source: Optional[StackEventSource] = None,
    ):
        self.storage = storage
        self.broadcaster = broadcaster
        self.backend_identifier = backend_identifier
        self.event_source = event_source
        self._seen_event_ids: Set[str] = set()
        self._last_event_time: Optional[datetime] = None
        self._lock = threading.Lock()

    def record_output(self, text: str) -> List[DeploymentProgressEvent]:
        """
        Record a chunk of deployment output.

        Structured event lines are stored one event per line. Output that only
        mentions deployment activity is stored as a single event. Anything
        else is ignored.

        Args:
            text: Raw printer output, possibly with terminal escape sequences

        Returns:
            List of events that were recorded
        """
        if not is_progress_signal(text):
            return []

        cleaned = strip_escape_sequences(text)
        messages = extract_progress_events(cleaned) or [cleaned.strip()]

        recorded = []
        for message in messages:
            event = DeploymentProgressEvent(timestamp=utc_now_iso(), message=message)
            self.storage.append_progress_event(event)
            self.broadcaster.publish(EventTypes.DEPLOYMENT_IN_PROGRESS, event.to_dict())
            recorded.append(event)

        logger.debug(f"Recorded {len(recorded)} deployment progress events")
        return recorded

    def record_stack_events(self, stack_events: Iterable[StackEvent]) -> List[DeploymentProgressEvent]:
        """
        Record stack events, skipping events already recorded by this or an
        earlier process.

        Each broadcast carries the resource's status under "resourceStatus".
        """
        saved = {(event.timestamp, event.message) for event in self.storage.load_progress()}
        recorded = []
        for stack_event in stack_events:
            event = DeploymentProgressEvent(
                timestamp=stack_event.timestamp.isoformat(),
                message=stack_event.to_progress_message(),
            )
            with self._lock:
                if stack_event.event_id in self._seen_event_ids:
                    continue
                self._seen_event_ids.add(stack_event.event_id)
                if self._last_event_time is None or stack_event.timestamp > self._last_event_time:
                    self._last_event_time = stack_event.timestamp
            if (event.timestamp, event.message) in saved:
                continue

            self.storage.append_progress_event(event)
            self.broadcaster.publish(EventTypes.DEPLOYMENT_IN_PROGRESS, {
                **event.to_dict(),
                "resourceStatus": stack_event.to_resource_status(),
            })
            recorded.append(event)
        return recorded

    def fetch_stack_events(self) -> List[DeploymentProgressEvent]:
        """Pull stack events newer than the last recorded one from the event source."""
        if self.event_source is None or self.backend_identifier is None:
            return []
        with self._lock:
            since = self._last_event_time
        stack_events = self.event_source.get_stack_events(self.backend_identifier, since)
        recorded = self.record_stack_events(stack_events)
        logger.debug(f"Recorded {len(recorded)} of {len(stack_events)} stack events")
        return recorded

    def saved_progress(self) -> List[DeploymentProgressEvent]:
        return self.storage.load_progress()

    def clear(self) -> None:
        self.storage.clear_progress()
