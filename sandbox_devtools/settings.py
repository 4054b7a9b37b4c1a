"""
Configuration for the devtools core, read from environment variables.
"""

import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_MAX_LOG_SIZE_MB = 50.0
DEFAULT_WS_PORT = 3334
DEFAULT_HTTP_PORT = 3333
DEFAULT_LOG_POLL_INTERVAL = 5.0


class LogSizePolicy(Enum):
    """Scope of the log size bound."""
    PER_RESOURCE = "per-resource"
    GLOBAL = "global"


def get_devtools_home(environ: Optional[Mapping[str, str]] = None) -> Path:
    """
    Get the base directory for cached devtools data.

    Args:
        environ: Environment mapping, defaults to os.environ

    Returns:
        Path: Devtools home directory
    """
    environ = os.environ if environ is None else environ
    home = environ.get("DEVTOOLS_HOME")
    if home:
        return Path(home).resolve()
    return Path(tempfile.gettempdir()) / "amplify-devtools"


def _read_number(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass
class DevToolsSettings:
    """Settings shared by the store, the services and the adapters."""
    home: Path
    max_log_size_mb: float = DEFAULT_MAX_LOG_SIZE_MB
    log_size_policy: LogSizePolicy = LogSizePolicy.PER_RESOURCE
    ws_port: int = DEFAULT_WS_PORT
    http_port: int = DEFAULT_HTTP_PORT
    log_poll_interval: float = DEFAULT_LOG_POLL_INTERVAL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DevToolsSettings":
        environ = os.environ if environ is None else environ

        policy_raw = environ.get("DEVTOOLS_LOG_SIZE_POLICY", LogSizePolicy.PER_RESOURCE.value)
        try:
            policy = LogSizePolicy(policy_raw)
        except ValueError:
            raise ValueError(f"DEVTOOLS_LOG_SIZE_POLICY must be 'per-resource' or 'global', got {policy_raw!r}")

        return cls(
            home=get_devtools_home(environ),
            max_log_size_mb=_read_number(environ, "DEVTOOLS_MAX_LOG_SIZE_MB", DEFAULT_MAX_LOG_SIZE_MB),
            log_size_policy=policy,
            ws_port=int(_read_number(environ, "DEVTOOLS_WS_PORT", DEFAULT_WS_PORT)),
            http_port=int(_read_number(environ, "DEVTOOLS_HTTP_PORT", DEFAULT_HTTP_PORT)),
            log_poll_interval=_read_number(environ, "DEVTOOLS_LOG_POLL_INTERVAL", DEFAULT_LOG_POLL_INTERVAL),
        )

    def storage_dir(self, backend_identifier: Optional[str] = None) -> Path:
        """Directory holding the cache for one backend."""
        if not backend_identifier:
            return self.home
        return self.home.with_name(f"{self.home.name}-{backend_identifier}")
