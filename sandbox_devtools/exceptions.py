"""
Exception types raised by the devtools core.
"""


class DevToolsError(Exception):
    """Base class for devtools errors."""


class StorageError(DevToolsError):
    """Reading or writing the local cache failed."""


class LogStreamError(DevToolsError):
    """A live log tail could not be opened for a resource."""

    def __init__(self, resource_id: str, message: str):
        super().__init__(message)
        self.resource_id = resource_id


class UnsupportedResourceTypeError(LogStreamError):
    """The resource type has no known CloudWatch log group."""

    def __init__(self, resource_id: str, resource_type: str):
        super().__init__(resource_id, f"Unsupported resource type for logs: {resource_type}")
        self.resource_type = resource_type


class BackendMetadataError(DevToolsError):
    """The backend's metadata could not be described."""
