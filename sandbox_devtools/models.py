"""
Data models shared by the cache, the resource service and the log streaming service.

Objects are serialized with the camelCase keys the dashboard expects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class SandboxStatus(Enum):
    """Lifecycle states of the sandbox."""
    RUNNING = "running"
    STOPPED = "stopped"
    NONEXISTENT = "nonexistent"
    DEPLOYING = "deploying"
    UNKNOWN = "unknown"


class SubscriptionStatus(Enum):
    """Statuses published while a resource's log tail changes state."""
    STARTING = "starting"
    ACTIVE = "active"
    ALREADY_ACTIVE = "already-active"
    STOPPED = "stopped"


def utc_now_iso() -> str:
    """Current time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ResourceRecord:
    """A single deployed resource."""
    logical_resource_id: str
    physical_resource_id: str
    resource_type: str
    resource_status: str
    friendly_name: str
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "logicalResourceId": self.logical_resource_id,
            "physicalResourceId": self.physical_resource_id,
            "resourceType": self.resource_type,
            "resourceStatus": self.resource_status,
            "friendlyName": self.friendly_name,
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceRecord":
        return cls(
            logical_resource_id=data.get("logicalResourceId", ""),
            physical_resource_id=data.get("physicalResourceId", ""),
            resource_type=data.get("resourceType", ""),
            resource_status=data.get("resourceStatus", ""),
            friendly_name=data.get("friendlyName", ""),
            metadata=data.get("metadata"),
        )


@dataclass
class ResourceSnapshot:
    """Full view of one backend's deployed resources. Replaced as a whole, never merged."""
    name: str
    status: str
    resources: List[ResourceRecord] = field(default_factory=list)
    message: Optional[str] = None
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "resources": [resource.to_dict() for resource in self.resources],
            "region": self.region,
        }
        if self.message is not None:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceSnapshot":
        return cls(
            name=data.get("name", ""),
            status=data.get("status", ""),
            resources=[ResourceRecord.from_dict(item) for item in data.get("resources", [])],
            message=data.get("message"),
            region=data.get("region"),
        )


@dataclass
class LogEntry:
    """One log line. Also used for deployment progress events."""
    timestamp: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"timestamp": self.timestamp, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(timestamp=data.get("timestamp", ""), message=data.get("message", ""))


# Progress events share the log line shape but are scoped to a backend.
DeploymentProgressEvent = LogEntry


@dataclass
class LoggingState:
    """Whether a resource is meant to be streaming, and when that last changed."""
    is_active: bool
    last_updated: str

    def to_dict(self) -> Dict[str, Any]:
        return {"isActive": self.is_active, "lastUpdated": self.last_updated}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingState":
        return cls(is_active=bool(data.get("isActive", False)), last_updated=data.get("lastUpdated", ""))


@dataclass
class StackEvent:
    """A CloudFormation stack event for one resource."""
    event_id: str
    timestamp: datetime
    logical_id: str
    physical_id: str
    resource_type: str
    status: str
    stack_id: str
    stack_name: str
    status_reason: Optional[str] = None

    @property
    def key(self) -> str:
        """Identifies the resource the event belongs to, across events."""
        return f"{self.resource_type}:{self.logical_id}"

    def display_time(self) -> str:
        return self.timestamp.astimezone().strftime("%I:%M:%S %p")

    def to_resource_status(self) -> Dict[str, Any]:
        """Dashboard view of the resource's status as of this event."""
        return {
            "resourceType": self.resource_type,
            "resourceName": self.logical_id,
            "status": self.status,
            "timestamp": self.display_time(),
            "key": self.key,
            "statusReason": self.status_reason,
            "eventId": self.event_id,
        }

    def to_progress_message(self) -> str:
        message = f"{self.display_time()} | {self.status} | {self.resource_type} | {self.logical_id}"
        if self.status_reason:
            message += f" ({self.status_reason})"
        return message
