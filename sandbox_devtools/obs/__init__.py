"""
Observability helpers: text classification and event broadcasting.
"""

from .classify import (
    friendly_name,
    strip_escape_sequences,
    is_progress_signal,
    extract_progress_events,
    parse_progress_event,
    log_group_name,
)
from .broadcast import Broadcaster, EventTypes

__all__ = [
    "friendly_name",
    "strip_escape_sequences",
    "is_progress_signal",
    "extract_progress_events",
    "parse_progress_event",
    "log_group_name",
    "Broadcaster",
    "EventTypes",
]
