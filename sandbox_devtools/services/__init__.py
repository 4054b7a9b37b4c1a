"""
Services built on top of the local cache.
"""

from .resource_service import ResourceService, FetchFailure, classify_fetch_error
from .log_streaming_service import LogStreamingService, LogTailSource
from .progress_service import ProgressService, StackEventSource
from .deployment_service import DeploymentService, SandboxStatusSource
from .shutdown_service import ShutdownService

__all__ = [
    "ResourceService",
    "FetchFailure",
    "classify_fetch_error",
    "LogStreamingService",
    "LogTailSource",
    "ProgressService",
    "StackEventSource",
    "DeploymentService",
    "SandboxStatusSource",
    "ShutdownService",
]
