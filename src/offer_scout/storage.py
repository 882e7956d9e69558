"""
Durable key-value storage for workflow state.

Values are JSON-compatible objects stored under string keys. ``SafeStore``
keeps an in-memory copy so a failing backend never loses the current state,
and ``WriteCoalescer`` batches rapid updates to the active order.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .notifications import Notifier

log = logging.getLogger(__name__)

ACTIVE_ORDER_KEY = "active_order"
SURVEY_QUEUE_KEY = "survey_queue"
SESSION_KEY = "session"
SESSION_ORDERS_KEY = "session_orders"
REMINDERS_KEY = "pending_reminders"
WEIGHT_SET_KEY = "weight_set"
ALL_ORDERS_KEY = "all_orders"
ALL_SESSIONS_KEY = "all_sessions"


class StorageError(Exception):
    """Raised when a backend cannot read or write a key."""


class KeyValueStore:
    """
    Minimal interface shared by all stores.
    """

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, critical: bool = False) -> None:
        """``critical`` marks data whose loss the driver must hear about; plain backends ignore it."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """
    Process-local store. Values are kept as JSON text so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else default

    def set(self, key: str, value: Any, critical: bool = False) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileStore(KeyValueStore):
    """
    One ``<key>.json`` file per key under ``directory``; writes are atomic.
    """

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    def set(self, key: str, value: Any, critical: bool = False) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(value, fh)
            os.replace(tmp_name, self._path(key))
        except (OSError, TypeError, ValueError) as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Failed to write {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))


class SafeStore(KeyValueStore):
    """
    Wraps a backend and falls back to memory when it fails.

    Every successful write is mirrored in memory; a failed write is kept in
    memory only and reported through the notifier. Reads prefer the memory
    copy, which is never older than the backend, and otherwise go to the
    backend for state written by an earlier process.
    """

    def __init__(self, backend: KeyValueStore, notifier: Optional[Notifier] = None) -> None:
        self.backend = backend
        self.notifier = notifier or Notifier()
        self._memory = MemoryStore()

    def get(self, key: str, default: Any = None) -> Any:
        value = self._memory.get(key)
        if value is not None:
            return value
        try:
            value = self.backend.get(key)
        except StorageError as exc:
            log.warning("Could not read %s: %s", key, exc)
            return default
        return default if value is None else value

    def set(self, key: str, value: Any, critical: bool = False) -> None:
        self._memory.set(key, value)
        try:
            self.backend.set(key, value)
        except StorageError as exc:
            log.error("Storage write failed for %s: %s", key, exc)
            post = self.notifier.error if critical else self.notifier.warning
            post(
                "Storage Warning",
                "Your device storage is unavailable. Data will be stored temporarily.",
            )

    def delete(self, key: str) -> None:
        self._memory.delete(key)
        try:
            self.backend.delete(key)
        except StorageError as exc:
            log.error("Storage delete failed for %s: %s", key, exc)

    def keys(self) -> List[str]:
        try:
            return sorted(set(self.backend.keys()) | set(self._memory.keys()))
        except StorageError:
            return self._memory.keys()


_DELETED = object()


class WriteCoalescer:
    """
    Debounced writes in front of a store.

    ``put`` records the latest value per key; pending values reach the store
    once ``delay`` seconds pass without another change (checked by ``poll``)
    or when ``flush`` runs. Last write wins. Reads see pending values.
    Use it as a context manager to guarantee a flush on every exit path.
    """

    def __init__(
        self,
        store: KeyValueStore,
        delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.delay = delay
        self.clock = clock
        self._pending: Dict[str, Any] = {}
        self._last_change: Optional[float] = None

    @property
    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def put(self, key: str, value: Any) -> None:
        self._pending[key] = value
        self._last_change = self.clock()

    def remove(self, key: str) -> None:
        self._pending[key] = _DELETED
        self._last_change = self.clock()

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._pending:
            value = self._pending[key]
            return default if value is _DELETED else value
        return self.store.get(key, default)

    def poll(self) -> bool:
        """Flush if the debounce window has elapsed. Returns True if it wrote."""
        if not self._pending or self._last_change is None:
            return False
        if self.clock() - self._last_change < self.delay:
            return False
        self.flush()
        return True

    def flush(self) -> None:
        pending, self._pending = self._pending, {}
        self._last_change = None
        for key, value in pending.items():
            if value is _DELETED:
                self.store.delete(key)
            else:
                self.store.set(key, value)

    def __enter__(self) -> WriteCoalescer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.flush()


@contextmanager
def coalesced_writes(
    store: KeyValueStore, delay: float = 0.5
) -> Iterator[WriteCoalescer]:
    """Scope a :class:`WriteCoalescer` over ``store``; flushed on exit."""
    writer = WriteCoalescer(store, delay=delay)
    try:
        yield writer
    finally:
        writer.flush()


def open_store(storage_dir: Optional[str], notifier: Optional[Notifier] = None) -> SafeStore:
    """Build the store described by settings: file-backed when a directory is set."""
    backend: KeyValueStore = JsonFileStore(storage_dir) if storage_dir else MemoryStore()
    return SafeStore(backend, notifier)


RecordSink = Callable[[str, Dict[str, Any]], None]
"""Remote store hook: called with a record kind ("order"/"session") and payload."""


def publish_record(
    sink: Optional[RecordSink],
    kind: str,
    record: Dict[str, Any],
    notifier: Notifier,
) -> bool:
    """
    Hand a record to the remote store. Local state is already saved and is
    never rolled back; a failure only produces a notification.
    """
    if sink is None:
        return False
    try:
        sink(kind, record)
    except Exception as exc:  # collaborator failures of any kind are reported, not raised
        log.warning("Remote save of %s %s failed: %s", kind, record.get("id"), exc)
        notifier.error("Sync Failed", f"Could not save {kind} to the server. It is kept on this device.")
        return False
    return True
