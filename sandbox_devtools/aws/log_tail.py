"""
Live log tails over CloudWatch Logs.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

import boto3

from ..exceptions import LogStreamError, UnsupportedResourceTypeError
from ..models import LogEntry, utc_now_iso
from ..obs.classify import log_group_name
from ..settings import DEFAULT_LOG_POLL_INTERVAL

logger = logging.getLogger(__name__)


class CloudWatchLogTailSource:
    """Tails the latest CloudWatch log stream of a resource by polling."""

    def __init__(self, region: Optional[str] = None, poll_interval: float = DEFAULT_LOG_POLL_INTERVAL, client=None):
        self.region = region
        self.poll_interval = poll_interval
        self.cloudwatch_client = client
        # resource id -> open streams of that resource -> stop event
        self._stop_events: Dict[str, Dict[Iterator[LogEntry], threading.Event]] = {}
        self._lock = threading.Lock()

    def _get_cloudwatch_client(self):
        """Lazy initialization of CloudWatch client."""
        if self.cloudwatch_client is None:
            self.cloudwatch_client = boto3.client("logs", region_name=self.region)
        return self.cloudwatch_client

    def open(self, resource_id: str, resource_type: str) -> Iterator[LogEntry]:
        """
        Open a tail on the resource's most recently written log stream.

        Returns:
            Iterator of log entries; ends once close() is called

        Raises:
            UnsupportedResourceTypeError: If the resource type has no log group
            LogStreamError: If the log group has no streams yet
        """
        if not resource_type:
            raise LogStreamError(resource_id, "Resource type is undefined. Cannot determine log group.")

        group = log_group_name(resource_type, resource_id)
        if group is None:
            raise UnsupportedResourceTypeError(resource_id, resource_type)

        response = self._get_cloudwatch_client().describe_log_streams(
            logGroupName=group,
            orderBy="LastEventTime",
            descending=True,
            limit=1,
        )
        streams = response.get("logStreams", [])
        if not streams:
            raise LogStreamError(resource_id, "No log streams found for this resource")

        stream_name = streams[0].get("logStreamName", "")
        stop_event = threading.Event()
        stream = self._poll(resource_id, group, stream_name, stop_event)
        with self._lock:
            self._stop_events.setdefault(resource_id, {})[stream] = stop_event

        logger.info(f"Tailing {group}/{stream_name} for {resource_id}")
        return stream

    def close(self, resource_id: str, stream: Optional[Iterator[LogEntry]] = None) -> None:
        """
        Stop a tail opened by open().

        Args:
            resource_id: Resource the tail belongs to
            stream: The stream to stop; every open stream of the resource when None
        """
        with self._lock:
            streams = self._stop_events.get(resource_id, {})
            if stream is None:
                stop_events = list(streams.values())
                streams.clear()
            else:
                stop_event = streams.pop(stream, None)
                stop_events = [stop_event] if stop_event is not None else []
            if not streams:
                self._stop_events.pop(resource_id, None)
        for stop_event in stop_events:
            stop_event.set()

    def _poll(
        self, resource_id: str, group: str, stream_name: str, stop_event: threading.Event
    ) -> Iterator[LogEntry]:
        client = self._get_cloudwatch_client()
        next_token = None

        try:
            while not stop_event.is_set():
                request = {"logGroupName": group, "logStreamName": stream_name, "startFromHead": True}
                if next_token:
                    request["nextToken"] = next_token
                response = client.get_log_events(**request)
                next_token = response.get("nextForwardToken", next_token)

                for event in response.get("events", []):
                    if stop_event.is_set():
                        return
                    yield LogEntry(
                        timestamp=_format_timestamp(event.get("timestamp")),
                        message=(event.get("message") or "").rstrip("\n"),
                    )

                stop_event.wait(self.poll_interval)
        finally:
            self._forget(resource_id, stop_event)

    def _forget(self, resource_id: str, stop_event: threading.Event) -> None:
        with self._lock:
            streams = self._stop_events.get(resource_id, {})
            for stream, registered in list(streams.items()):
                if registered is stop_event:
                    del streams[stream]
            if not streams:
                self._stop_events.pop(resource_id, None)


def _format_timestamp(millis: Optional[int]) -> str:
    if millis is None:
        return utc_now_iso()
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()
