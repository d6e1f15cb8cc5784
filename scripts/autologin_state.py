#!/usr/bin/python3
"""Auth status snapshot, its persistence and change broadcasting."""

from __future__ import annotations

import enum
import fcntl
import json
import logging
import os
import queue
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Set

from portal_errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TIMEOUT = 1200

# AuthState attribute -> persisted key
DURABLE_FIELDS = {
    "last_login_at": "lastLoginAt",
    "next_renew_at": "nextRenewAt",
    "session_timeout": "sessionTimeout",
}

# Full AuthState published for other processes while the daemon runs
SNAPSHOT_KEY = "authState"


class AuthStatus(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    CONNECTED = "connected"
    NEEDS_LOGIN = "needs_login"
    ERROR = "error"
    NETWORK_DOWN = "network_down"


@dataclass(frozen=True)
class AuthState:
    status: AuthStatus = AuthStatus.IDLE
    last_error: Optional[str] = None
    last_login_at: Optional[int] = None
    next_renew_at: Optional[int] = None
    is_connected: bool = False
    retry_count: int = 0
    session_timeout: int = DEFAULT_SESSION_TIMEOUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "lastError": self.last_error,
            "lastLoginAt": self.last_login_at,
            "nextRenewAt": self.next_renew_at,
            "isConnected": self.is_connected,
            "retryCount": self.retry_count,
            "sessionTimeout": self.session_timeout,
        }


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, items: Mapping[str, Any]) -> None: ...

    def remove(self, *keys: str) -> None: ...


class JsonFileStore:
    """Key-value entries kept in a single JSON document on disk.

    Several processes (the background loop and one-shot CLI commands) share the
    file. Every write holds an exclusive lock on a sidecar ``.lock`` file while
    it re-reads the document and replaces it atomically; keys changed by
    someone else are reported by ``refresh()``.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {}
        self._external_changes: Set[str] = set()
        self._reload()
        self._external_changes.clear()

    def _read_disk(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{self.path} does not contain a JSON object")
        return data

    def _reload(self) -> None:
        data = self._read_disk()
        for key in set(data) | set(self._data):
            if data.get(key) != self._data.get(key):
                self._external_changes.add(key)
        self._data = data

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_WRONLY, 0o600)
        except OSError as exc:
            raise StorageError(f"Cannot open lock file {self.lock_path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _write(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, indent=2, sort_keys=True)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}") from exc

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, items: Mapping[str, Any]) -> None:
        with self._lock, self._file_lock():
            self._reload()
            self._data.update(items)
            self._write()

    def remove(self, *keys: str) -> None:
        with self._lock, self._file_lock():
            self._reload()
            for key in keys:
                self._data.pop(key, None)
            self._write()

    def clear(self) -> None:
        with self._lock, self._file_lock():
            self._data = {}
            self._write()

    def refresh(self) -> Set[str]:
        """Re-read the file and return the keys another process changed since the last call."""
        with self._lock:
            self._reload()
            changed = set(self._external_changes)
            self._external_changes.clear()
            return changed


class StateStore:
    """Owns the current AuthState; persists its durable part and broadcasts every change."""

    def __init__(self, store: KeyValueStore, publish_snapshot: bool = False) -> None:
        self.store = store
        self.publish_snapshot = publish_snapshot
        self._state = AuthState()
        self._lock = threading.Lock()
        self._subscribers: List["queue.Queue[Dict[str, Any]]"] = []

    @property
    def state(self) -> AuthState:
        return self._state

    def load(self) -> AuthState:
        restored = {}
        for attr, key in DURABLE_FIELDS.items():
            value = self.store.get(key)
            if value:
                restored[attr] = value
        with self._lock:
            self._state = replace(self._state, **restored)
        logger.info("State loaded", extra={"data": {"lastLogin": self._state.last_login_at}})
        if self.publish_snapshot:
            self._persist(self._state)
        return self._state

    def subscribe(self) -> "queue.Queue[Dict[str, Any]]":
        subscriber: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: "queue.Queue[Dict[str, Any]]") -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def update(self, **changes: Any) -> AuthState:
        known = {f.name for f in fields(AuthState)}
        unknown = set(changes) - known
        if unknown:
            raise TypeError(f"Unknown AuthState fields: {', '.join(sorted(unknown))}")

        with self._lock:
            previous = self._state
            self._state = replace(previous, **changes)
            current = self._state
            subscribers = list(self._subscribers)

        logger.debug(
            "State updated",
            extra={
                "data": {
                    "from": previous.status.value,
                    "to": current.status.value,
                    "error": current.last_error,
                    "retryCount": current.retry_count,
                }
            },
        )

        if self.publish_snapshot or any(attr in changes for attr in DURABLE_FIELDS):
            self._persist(current)

        message = {"type": "state-update", "state": current.to_dict()}
        for subscriber in subscribers:
            subscriber.put(message)
        return current

    def _persist(self, state: AuthState) -> None:
        try:
            items: Dict[str, Any] = {key: getattr(state, attr) for attr, key in DURABLE_FIELDS.items()}
            if self.publish_snapshot:
                items[SNAPSHOT_KEY] = state.to_dict()
            self.store.set(items)
        except StorageError as exc:
            logger.error("Failed to persist state: %s", exc)

    def clear_snapshot(self) -> None:
        try:
            self.store.remove(SNAPSHOT_KEY)
        except StorageError as exc:
            logger.error("Failed to clear state snapshot: %s", exc)
