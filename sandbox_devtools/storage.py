"""
Disk-backed local cache for sandbox devtools data.

Every namespace (resource snapshot, per-resource log buffers, deployment
progress, logging states, friendly names, console logs) lives in its own JSON
file. Writes go to a temporary file that is renamed over the target, so a
reader sees either the old or the new content, never a partial file.
Mutations of one namespace are serialized by that namespace's lock; log
buffers get one lock per resource.
"""

import json
import logging
import os
import tempfile
import threading
import urllib.parse
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .exceptions import StorageError
from .models import DeploymentProgressEvent, LogEntry, LoggingState, ResourceSnapshot, utc_now_iso
from .settings import DEFAULT_MAX_LOG_SIZE_MB, DevToolsSettings, LogSizePolicy

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

RESOURCES_FILE = "resources.json"
DEPLOYMENT_PROGRESS_FILE = "deployment-progress.json"
LOGGING_STATES_FILE = "resource-logging-states.json"
FRIENDLY_NAMES_FILE = "custom-friendly-names.json"
CONSOLE_LOGS_DIR = "logs"
RESOURCE_LOGS_DIR = "cloudwatch-logs"


def _encode_log_entries(entries: List[Dict[str, Any]]) -> str:
    return json.dumps(entries, separators=(",", ":"))


def _log_entry_size(entry: Dict[str, Any]) -> int:
    return len(json.dumps(entry, separators=(",", ":")))


def _trim_to_size(entries: List[Dict[str, Any]], limit_bytes: float) -> List[Dict[str, Any]]:
    """Drop the oldest entries until the compact encoding fits in limit_bytes."""
    sizes = [_log_entry_size(entry) for entry in entries]
    # "[" + "]" plus one comma between each pair of entries
    total = 2 + sum(sizes) + max(len(entries) - 1, 0)
    start = 0
    while start < len(entries) and total > limit_bytes:
        total -= sizes[start] + (1 if len(entries) - start > 1 else 0)
        start += 1
    return entries[start:]


class LocalStorageManager:
    """Namespaced, size-bounded local cache for one sandbox backend."""

    def __init__(
        self,
        base_dir: Path,
        max_log_size_mb: float = DEFAULT_MAX_LOG_SIZE_MB,
        log_size_policy: LogSizePolicy = LogSizePolicy.PER_RESOURCE,
    ):
        self.base_dir = Path(base_dir)
        self.console_logs_dir = self.base_dir / CONSOLE_LOGS_DIR
        self.resource_logs_dir = self.base_dir / RESOURCE_LOGS_DIR
        self.resources_file = self.base_dir / RESOURCES_FILE
        self.deployment_progress_file = self.base_dir / DEPLOYMENT_PROGRESS_FILE
        self.logging_states_file = self.base_dir / LOGGING_STATES_FILE
        self.friendly_names_file = self.base_dir / FRIENDLY_NAMES_FILE

        self.log_size_policy = log_size_policy
        self._max_log_size_mb = DEFAULT_MAX_LOG_SIZE_MB
        self.set_max_log_size_mb(max_log_size_mb)

        self._resources_lock = threading.RLock()
        self._progress_lock = threading.RLock()
        self._states_lock = threading.RLock()
        self._names_lock = threading.RLock()
        self._console_lock = threading.RLock()
        self._log_locks: Dict[str, threading.RLock] = {}
        self._log_locks_guard = threading.Lock()

        self._ensure_directories()
        logger.info(f"Using local cache directory {self.base_dir}")

    @classmethod
    def for_backend(cls, backend_identifier: Optional[str], settings: DevToolsSettings) -> "LocalStorageManager":
        """Create the store for a backend using configured limits."""
        return cls(
            settings.storage_dir(backend_identifier),
            max_log_size_mb=settings.max_log_size_mb,
            log_size_policy=settings.log_size_policy,
        )

    # -- file helpers -------------------------------------------------------

    def _ensure_directories(self) -> None:
        try:
            for directory in (self.base_dir, self.console_logs_dir, self.resource_logs_dir):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create cache directory {self.base_dir}: {e}") from e

    def _read_json(self, path: Path, default: Any) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return default
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def _write_text(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        self._write_text(path, json.dumps(data, indent=2))

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Cannot remove {path}: {e}") from e

    def _resource_log_file(self, resource_id: str) -> Path:
        if not resource_id:
            raise ValueError("Resource id must not be empty")
        return self.resource_logs_dir / f"{urllib.parse.quote(resource_id, safe='')}.json"

    def _log_lock(self, resource_id: str) -> threading.RLock:
        with self._log_locks_guard:
            lock = self._log_locks.get(resource_id)
            if lock is None:
                lock = threading.RLock()
                self._log_locks[resource_id] = lock
            return lock

    # -- resources ----------------------------------------------------------

    def save_resources(self, snapshot: ResourceSnapshot) -> None:
        with self._resources_lock:
            self._write_json(self.resources_file, snapshot.to_dict())
        logger.debug(f"Saved snapshot with {len(snapshot.resources)} resources")

    def load_resources(self) -> Optional[ResourceSnapshot]:
        data = self._read_json(self.resources_file, None)
        if data is None:
            return None
        return ResourceSnapshot.from_dict(data)

    def clear_resources(self) -> None:
        with self._resources_lock:
            self._remove(self.resources_file)

    # -- per-resource logs --------------------------------------------------

    def save_logs(self, resource_id: str, entries: List[LogEntry]) -> None:
        with self._log_lock(resource_id):
            self._write_text(
                self._resource_log_file(resource_id),
                _encode_log_entries([entry.to_dict() for entry in entries]),
            )

    def load_logs(self, resource_id: str) -> List[LogEntry]:
        data = self._read_json(self._resource_log_file(resource_id), [])
        return [LogEntry.from_dict(item) for item in data]

    def append_log(self, resource_id: str, entry: LogEntry) -> None:
        """
        Append a log line to a resource's buffer, evicting the oldest lines
        when the buffer grows past the size bound.

        Args:
            resource_id: Resource the line belongs to
            entry: Log line to append
        """
        path = self._resource_log_file(resource_id)
        with self._log_lock(resource_id):
            entries = self._read_json(path, [])
            entries.append(entry.to_dict())

            limit = self._max_log_size_mb * BYTES_PER_MB
            if self.log_size_policy == LogSizePolicy.GLOBAL:
                own_size = path.stat().st_size if path.exists() else 0
                limit = max(0.0, limit - (self._logs_size_bytes() - own_size))

            kept = _trim_to_size(entries, limit)
            if len(kept) < len(entries):
                logger.info(
                    f"Log buffer for {resource_id} exceeded {self._max_log_size_mb} MB, "
                    f"evicted {len(entries) - len(kept)} oldest entries"
                )
            self._write_text(path, _encode_log_entries(kept))

    def clear_logs(self, resource_id: str) -> None:
        with self._log_lock(resource_id):
            self._remove(self._resource_log_file(resource_id))

    def list_resources_with_logs(self) -> Set[str]:
        try:
            return {
                urllib.parse.unquote(path.stem)
                for path in self.resource_logs_dir.glob("*.json")
            }
        except OSError as e:
            raise StorageError(f"Cannot list {self.resource_logs_dir}: {e}") from e

    # -- log size -----------------------------------------------------------

    def _logs_size_bytes(self) -> int:
        total = 0
        for path in self.resource_logs_dir.glob("*.json"):
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    def size_of_logs_in_mb(self) -> float:
        return self._logs_size_bytes() / BYTES_PER_MB

    def logs_exceed_limit(self) -> bool:
        return self.size_of_logs_in_mb() > self._max_log_size_mb

    @property
    def max_log_size_mb(self) -> float:
        return self._max_log_size_mb

    def set_max_log_size_mb(self, size_mb: float) -> None:
        if size_mb <= 0:
            raise ValueError(f"Maximum log size must be positive, got {size_mb}")
        self._max_log_size_mb = float(size_mb)

    # -- deployment progress ------------------------------------------------

    def save_progress(self, events: List[DeploymentProgressEvent]) -> None:
        with self._progress_lock:
            self._write_json(self.deployment_progress_file, [event.to_dict() for event in events])

    def load_progress(self) -> List[DeploymentProgressEvent]:
        data = self._read_json(self.deployment_progress_file, [])
        return [DeploymentProgressEvent.from_dict(item) for item in data]

    def append_progress_event(self, event: DeploymentProgressEvent) -> None:
        with self._progress_lock:
            events = self.load_progress()
            events.append(event)
            self.save_progress(events)

    def clear_progress(self) -> None:
        self.save_progress([])

    # -- logging states -----------------------------------------------------

    def set_logging_state(self, resource_id: str, is_active: bool) -> LoggingState:
        """Record whether a resource should be streaming, stamped with the current time."""
        with self._states_lock:
            raw = self._read_json(self.logging_states_file, None) or {}
            state = LoggingState(is_active=is_active, last_updated=utc_now_iso())
            raw[resource_id] = state.to_dict()
            self._write_json(self.logging_states_file, raw)
        return state

    def load_all_logging_states(self) -> Optional[Dict[str, LoggingState]]:
        raw = self._read_json(self.logging_states_file, None)
        if raw is None:
            return None
        return {resource_id: LoggingState.from_dict(state) for resource_id, state in raw.items()}

    def get_logging_state(self, resource_id: str) -> Optional[LoggingState]:
        states = self.load_all_logging_states()
        if not states:
            return None
        return states.get(resource_id)

    def list_actively_logged_resources(self) -> Set[str]:
        states = self.load_all_logging_states() or {}
        return {resource_id for resource_id, state in states.items() if state.is_active}

    # -- friendly names -----------------------------------------------------

    def save_friendly_names(self, names: Dict[str, str]) -> None:
        with self._names_lock:
            self._write_json(self.friendly_names_file, dict(names))

    def load_friendly_names(self) -> Dict[str, str]:
        return self._read_json(self.friendly_names_file, {})

    def set_friendly_name(self, resource_id: str, name: str) -> None:
        with self._names_lock:
            names = self.load_friendly_names()
            names[resource_id] = name
            self.save_friendly_names(names)

    def remove_friendly_name(self, resource_id: str) -> None:
        with self._names_lock:
            names = self.load_friendly_names()
            if names.pop(resource_id, None) is not None:
                self.save_friendly_names(names)

    # -- console logs -------------------------------------------------------

    def save_console_logs(self, entries: List[LogEntry], name: str = "console-logs") -> None:
        with self._console_lock:
            self._write_json(self.console_logs_dir / f"{name}.json", [entry.to_dict() for entry in entries])

    def load_console_logs(self, name: str = "console-logs") -> List[LogEntry]:
        data = self._read_json(self.console_logs_dir / f"{name}.json", [])
        return [LogEntry.from_dict(item) for item in data]

    # -- reset --------------------------------------------------------------

    def clear_all(self) -> None:
        """Remove every cached file in every namespace."""
        with ExitStack() as stack:
            for lock in (self._resources_lock, self._progress_lock, self._states_lock,
                         self._names_lock, self._console_lock):
                stack.enter_context(lock)
            with self._log_locks_guard:
                log_locks = list(self._log_locks.values())
            for lock in log_locks:
                stack.enter_context(lock)

            for directory in (self.base_dir, self.console_logs_dir, self.resource_logs_dir):
                if not directory.exists():
                    continue
                for path in directory.iterdir():
                    if path.is_file():
                        self._remove(path)
        logger.info(f"Cleared local cache in {self.base_dir}")
