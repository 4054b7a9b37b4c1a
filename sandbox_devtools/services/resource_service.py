"""
Fetch-or-reuse orchestration for deployed backend resources.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from ..models import ResourceRecord, ResourceSnapshot, SandboxStatus
from ..obs.classify import friendly_name, normalize_resource_type
from ..storage import LocalStorageManager

logger = logging.getLogger(__name__)

DEPLOYING_MESSAGE = "Sandbox deployment is in progress. Resources will update when deployment completes."
NONEXISTENT_MESSAGE = "No sandbox exists. Please create a sandbox first."


class MetadataSource(Protocol):
    """Anything that can describe the resources of a deployed backend."""

    def get_backend_metadata(self, backend_identifier: str) -> Dict[str, Any]:
        ...


class FetchFailure(Enum):
    """Classification of a failed metadata fetch."""
    DEPLOYMENT_IN_PROGRESS = "deployment_in_progress"
    MISSING_BACKEND = "missing_backend"
    UNCLASSIFIED = "unclassified"


def classify_fetch_error(error: BaseException) -> FetchFailure:
    """Classify a metadata fetch failure from its message text."""
    message = str(error)
    if "deployment is in progress" in message:
        return FetchFailure.DEPLOYMENT_IN_PROGRESS
    if "does not exist" in message:
        return FetchFailure.MISSING_BACKEND
    return FetchFailure.UNCLASSIFIED


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class ResourceService:
    """Serves the backend's resource snapshot from cache, fetching it on a miss."""

    def __init__(
        self,
        storage: LocalStorageManager,
        backend_identifier: str,
        get_sandbox_state: Callable[[], Any],
        metadata_source: MetadataSource,
    ):
        self.storage = storage
        self.backend_identifier = backend_identifier
        self.get_sandbox_state = get_sandbox_state
        self.metadata_source = metadata_source

    def get_deployed_backend_resources(self) -> ResourceSnapshot:
        """
        Return the backend's resources.

        A cached snapshot is returned as-is. Otherwise the metadata source is
        called exactly once; a successful result is cached, a deployment in
        progress or a missing backend yields an uncached placeholder snapshot,
        and any other failure is re-raised.

        Returns:
            ResourceSnapshot: Current resources
        """
        cached = self.storage.load_resources()
        if cached is not None:
            logger.debug("Found saved resources, returning them")
            return cached

        try:
            logger.debug(f"Fetching backend metadata for {self.backend_identifier}")
            data = self.metadata_source.get_backend_metadata(self.backend_identifier)
        except Exception as e:
            failure = classify_fetch_error(e)
            if failure == FetchFailure.DEPLOYMENT_IN_PROGRESS:
                logger.info(f"Backend {self.backend_identifier} is still deploying")
                return ResourceSnapshot(
                    name=self.backend_identifier,
                    status=SandboxStatus.DEPLOYING.value,
                    message=DEPLOYING_MESSAGE,
                )
            if failure == FetchFailure.MISSING_BACKEND:
                logger.info(f"Backend {self.backend_identifier} does not exist")
                return ResourceSnapshot(
                    name=self.backend_identifier,
                    status=SandboxStatus.NONEXISTENT.value,
                    message=NONEXISTENT_MESSAGE,
                )
            logger.error(f"Error getting backend resources: {e}")
            raise

        snapshot = ResourceSnapshot(
            name=data.get("name", self.backend_identifier),
            status=_status_value(self.get_sandbox_state()),
            resources=[self._to_record(resource) for resource in data.get("resources", [])],
            region=data.get("region"),
        )
        self.storage.save_resources(snapshot)
        logger.info(f"Cached {len(snapshot.resources)} resources for {self.backend_identifier}")
        return snapshot

    def _to_record(self, resource: Dict[str, Any]) -> ResourceRecord:
        logical_id = resource.get("logicalResourceId") or ""
        metadata = resource.get("metadata")
        construct_metadata = None
        if isinstance(metadata, dict) and metadata.get("constructPath"):
            construct_metadata = {"constructPath": metadata["constructPath"]}

        return ResourceRecord(
            logical_resource_id=logical_id,
            physical_resource_id=resource.get("physicalResourceId") or "",
            resource_type=normalize_resource_type(resource.get("resourceType") or ""),
            resource_status=resource.get("resourceStatus") or "",
            friendly_name=friendly_name(logical_id, construct_metadata),
            metadata=construct_metadata,
        )

    def apply_friendly_name_overrides(
        self, snapshot: ResourceSnapshot, overrides: Optional[Dict[str, str]] = None
    ) -> ResourceSnapshot:
        """
        Return a copy of the snapshot with user-assigned names applied.

        Overrides are keyed by physical or logical resource id. The snapshot
        passed in (and the cached one) is left untouched.
        """
        if overrides is None:
            overrides = self.storage.load_friendly_names()

        copy = ResourceSnapshot.from_dict(snapshot.to_dict())
        for record in copy.resources:
            override = overrides.get(record.physical_resource_id) or overrides.get(record.logical_resource_id)
            if override:
                record.friendly_name = override
        return copy
