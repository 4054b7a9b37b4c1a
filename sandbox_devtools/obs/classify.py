"""
Text classification helpers for sandbox status and log output.

Everything here is pure: friendly names for resources, escape sequence
stripping, deployment progress detection and progress event extraction.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

logger = logging.getLogger(__name__)


SERVICE_PREFIXES = ("amplify", "Amplify")
CUSTOM_TYPE_PREFIXES = ("Custom::", "CUSTOM::")

# CSI sequences (colors, cursor movement), OSC sequences (titles, links) and
# two-character escapes.
_ESCAPE_SEQUENCE_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
# Style codes whose ESC byte was already dropped by an upstream printer.
_ORPHANED_STYLE_RE = re.compile(r"\[(?:1|2|22|36|39)m")

_STATUS_TOKEN = (
    r"(?:UPDATE_ROLLBACK|IMPORT_ROLLBACK|CREATE|UPDATE|DELETE|ROLLBACK|IMPORT|REVIEW)"
    r"_(?:IN_PROGRESS|COMPLETE_CLEANUP_IN_PROGRESS|COMPLETE|FAILED)"
)
_STATUS_TOKEN_RE = re.compile(r"\b" + _STATUS_TOKEN + r"\b")
_STATUS_FIELD_RE = re.compile(_STATUS_TOKEN)

PROGRESS_PHRASES = (
    "deployment in progress",
    "deployment is in progress",
    "deployment started",
    "deployment completed",
)

# Word fragments: acronym before a capitalised word, capitalised/lower words,
# remaining capital runs, digit runs.
_WORD_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")

LOG_GROUP_PATTERNS: Dict[str, str] = {
    "AWS::Lambda::Function": "/aws/lambda/{resource_id}",
    "AWS::ApiGateway::RestApi": "API-Gateway-Execution-Logs_{resource_id}",
    "AWS::AppSync::GraphQLApi": "/aws/appsync/apis/{resource_id}",
}


@dataclass
class ProgressEventLine:
    """A parsed `<time> | <STATUS> | <type> | <logicalId>` progress line."""
    timestamp: str
    status: str
    resource_type: str
    logical_id: str

    @property
    def key(self) -> str:
        return f"{self.resource_type}:{self.logical_id}"


def friendly_name(logical_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a human-readable name for a resource.

    A construct path in the metadata is authoritative and returned verbatim.
    Otherwise the service prefix is dropped and the id is split into words at
    camel-case boundaries and letter/digit transitions.

    Args:
        logical_id: Logical resource id
        metadata: Optional resource metadata, may carry "constructPath"

    Returns:
        str: Friendly name, or the id unchanged when it is empty
    """
    if not logical_id:
        return logical_id

    if metadata and metadata.get("constructPath"):
        return metadata["constructPath"]

    remainder = logical_id
    for prefix in SERVICE_PREFIXES:
        if remainder.startswith(prefix):
            remainder = remainder[len(prefix):]
            break

    words = [word[0].upper() + word[1:] for word in _WORD_RE.findall(remainder)]
    return " ".join(words) or logical_id


def normalize_resource_type(resource_type: str) -> str:
    """Strip the custom resource prefix from a resource type."""
    for prefix in CUSTOM_TYPE_PREFIXES:
        if resource_type.startswith(prefix):
            return resource_type[len(prefix):]
    return resource_type


def strip_escape_sequences(text: str) -> str:
    """Remove terminal color and style escape sequences from text."""
    while True:
        cleaned = _ORPHANED_STYLE_RE.sub("", _ESCAPE_SEQUENCE_RE.sub("", text))
        # Removing one sequence can join the halves of another.
        if cleaned == text:
            return cleaned
        text = cleaned


def parse_progress_event(line: str) -> Optional[ProgressEventLine]:
    """
    Parse a structured progress line.

    Returns:
        ProgressEventLine or None if the line does not have the 4-field shape
    """
    fields = [part.strip() for part in strip_escape_sequences(line).split("|")]
    if len(fields) != 4 or not all(fields):
        return None

    timestamp, status, resource_type, logical_id = fields
    if not _STATUS_FIELD_RE.fullmatch(status):
        return None

    return ProgressEventLine(
        timestamp=timestamp,
        status=status,
        resource_type=resource_type,
        logical_id=logical_id,
    )


def is_progress_signal(text: str) -> bool:
    """Check whether text reports infrastructure deployment activity."""
    cleaned = strip_escape_sequences(text)

    if _STATUS_TOKEN_RE.search(cleaned):
        return True

    lowered = cleaned.lower()
    if any(phrase in lowered for phrase in PROGRESS_PHRASES):
        return True

    return any(parse_progress_event(line) for line in cleaned.splitlines())


def extract_progress_events(text: str) -> List[str]:
    """Return the lines of text that are structured progress events, in order."""
    return [line for line in text.splitlines() if parse_progress_event(line) is not None]


def log_group_name(resource_type: str, resource_id: str) -> Optional[str]:
    """
    Resolve the CloudWatch log group for a resource.

    Returns:
        str: Log group name, or None for resource types without logs
    """
    pattern = LOG_GROUP_PATTERNS.get(resource_type)
    if pattern is None:
        logger.warning(f"Unsupported resource type for logs: {resource_type}")
        return None
    return pattern.format(resource_id=resource_id)
