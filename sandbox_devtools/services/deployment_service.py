"""
Sandbox deployment lifecycle: status reports and cache invalidation.
"""

import logging
from typing import Optional, Protocol

from ..models import SandboxStatus, utc_now_iso
from ..obs.broadcast import Broadcaster, EventTypes
from ..sandbox_state import SandboxStateManager
from ..storage import LocalStorageManager

logger = logging.getLogger(__name__)

DEPLOYMENT_COMPLETED_MESSAGE = "Deployment completed successfully"


class SandboxStatusSource(Protocol):
    """Looks up the live status of a sandbox backend."""

    def get_sandbox_status(self, backend_identifier: str) -> SandboxStatus:
        ...


class DeploymentService:
    """Applies sandbox status reports and deployment outcomes to the core."""

    def __init__(
        self,
        storage: LocalStorageManager,
        sandbox_state: SandboxStateManager,
        broadcaster: Broadcaster,
        backend_identifier: str,
        status_source: Optional[SandboxStatusSource] = None,
    ):
        self.storage = storage
        self.sandbox_state = sandbox_state
        self.broadcaster = broadcaster
        self.backend_identifier = backend_identifier
        self.status_source = status_source

    def report_status(self, status: SandboxStatus) -> SandboxStatus:
        """
        Record a new sandbox status.

        A deploying sandbox that becomes running has new resources, so the
        saved resource snapshot is dropped.
        """
        previous = self.sandbox_state.get_status()
        self.sandbox_state.update_status(status)
        if previous == SandboxStatus.DEPLOYING and status == SandboxStatus.RUNNING:
            self.storage.clear_resources()
        return status

    def refresh_status(self) -> SandboxStatus:
        """Ask the status source for the live status. Keeps the current status when it cannot answer."""
        if self.status_source is None:
            return self.sandbox_state.get_status()
        try:
            status = self.status_source.get_sandbox_status(self.backend_identifier)
        except Exception as e:
            logger.warning(f"Could not determine status of {self.backend_identifier}: {e}")
            return self.sandbox_state.get_status()
        return self.report_status(status)

    def deployment_started(self) -> None:
        self.report_status(SandboxStatus.DEPLOYING)

    def deployment_completed(self) -> None:
        self.storage.clear_resources()
        self.report_status(SandboxStatus.RUNNING)
        logger.info(f"Deployment of {self.backend_identifier} completed")
        self._publish_outcome(DEPLOYMENT_COMPLETED_MESSAGE)

    def deployment_failed(self, error: str) -> None:
        """Report a failed deployment. The saved resources still describe the last good deployment."""
        self.sandbox_state.update_status(SandboxStatus.RUNNING)
        logger.error(f"Deployment of {self.backend_identifier} failed: {error}")
        self._publish_outcome(f"Deployment failed: {error}", error=True)

    def _publish_outcome(self, message: str, error: bool = False) -> None:
        data = {
            "status": self.sandbox_state.get_status().value,
            "identifier": self.backend_identifier,
            "message": message,
            "timestamp": utc_now_iso(),
        }
        if error:
            data["error"] = True
        self.broadcaster.publish(EventTypes.SANDBOX_STATUS, data)
