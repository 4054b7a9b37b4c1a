"""
Wiring of the devtools core for one sandbox backend.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .models import SandboxStatus
from .obs.broadcast import Broadcaster, EventTypes
from .sandbox_state import SandboxStateManager
from .services.deployment_service import DeploymentService, SandboxStatusSource
from .services.log_streaming_service import LogStreamingService, LogTailSource
from .services.progress_service import ProgressService, StackEventSource
from .services.resource_service import MetadataSource, ResourceService
from .services.shutdown_service import ShutdownService
from .settings import DevToolsSettings
from .storage import LocalStorageManager

logger = logging.getLogger(__name__)


@dataclass
class DevTools:
    """Every service of the core, sharing one store and one broadcast channel."""
    backend_identifier: str
    settings: DevToolsSettings
    storage: LocalStorageManager
    broadcaster: Broadcaster
    sandbox_state: SandboxStateManager
    resources: ResourceService
    streaming: LogStreamingService
    progress: ProgressService
    deployment: DeploymentService
    shutdown: ShutdownService


def create_devtools(
    backend_identifier: str,
    settings: Optional[DevToolsSettings] = None,
    metadata_source: Optional[MetadataSource] = None,
    tail_source: Optional[LogTailSource] = None,
    sandbox_state: Optional[SandboxStateManager] = None,
    status_source: Optional[SandboxStatusSource] = None,
    event_source: Optional[StackEventSource] = None,
) -> DevTools:
    """
    Build the devtools core for a backend.

    AWS collaborators are created on demand when none are supplied. The
    default metadata source also answers sandbox status lookups.

    Args:
        backend_identifier: Name of the sandbox backend
        settings: Settings, read from the environment by default
        metadata_source: Source of backend resource metadata
        tail_source: Source of live resource logs
        sandbox_state: Sandbox status holder
        status_source: Source of the live sandbox status
        event_source: Source of deployment stack events

    Returns:
        DevTools: Wired services
    """
    settings = settings or DevToolsSettings.from_env()

    if metadata_source is None:
        from .aws import CloudFormationEventSource, CloudFormationMetadataSource
        metadata_source = CloudFormationMetadataSource()
        status_source = status_source or metadata_source
        event_source = event_source or CloudFormationEventSource()
    if tail_source is None:
        from .aws import CloudWatchLogTailSource
        tail_source = CloudWatchLogTailSource(poll_interval=settings.log_poll_interval)

    storage = LocalStorageManager.for_backend(backend_identifier, settings)
    broadcaster = Broadcaster()
    sandbox_state = sandbox_state or SandboxStateManager(SandboxStatus.UNKNOWN)

    def publish_status(status: SandboxStatus) -> None:
        broadcaster.publish(EventTypes.SANDBOX_STATUS, {
            "status": status.value,
            "identifier": backend_identifier,
        })

    sandbox_state.add_listener(publish_status)

    streaming = LogStreamingService(storage, tail_source, broadcaster, port=settings.ws_port)
    devtools = DevTools(
        backend_identifier=backend_identifier,
        settings=settings,
        storage=storage,
        broadcaster=broadcaster,
        sandbox_state=sandbox_state,
        resources=ResourceService(storage, backend_identifier, sandbox_state.get_status, metadata_source),
        streaming=streaming,
        progress=ProgressService(storage, broadcaster, backend_identifier, event_source),
        deployment=DeploymentService(storage, sandbox_state, broadcaster, backend_identifier, status_source),
        shutdown=ShutdownService(streaming, storage, broadcaster),
    )
    logger.info(f"DevTools ready for backend {backend_identifier}")
    return devtools
