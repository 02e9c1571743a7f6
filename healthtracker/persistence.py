"""Small durable key/value persistence used for client-side state.

Values are JSON documents.  Writers never patch part of a value: ``update``
reads the whole value, hands it to a function and stores the complete result,
all under one lock, so interleaved enqueue/drain calls cannot leave a half
written collection behind.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

# One lock per resolved file path, shared by every JsonFileStore in the process.
_FILE_LOCKS: Dict[Path, RLock] = {}
_FILE_LOCKS_GUARD = Lock()


def _file_lock(path: Path) -> RLock:
    with _FILE_LOCKS_GUARD:
        return _FILE_LOCKS.setdefault(path, RLock())


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def update(self, key: str, func: Callable[[Any], Any], default: Any = None) -> Any: ...


class MemoryStore:
    """Process-local store; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return copy.deepcopy(default)
            return copy.deepcopy(self._data[key])

    def update(self, key: str, func: Callable[[Any], Any], default: Any = None) -> Any:
        with self._lock:
            current = copy.deepcopy(self._data.get(key, default))
            new_value = func(current)
            self._data[key] = copy.deepcopy(new_value)
            return new_value


class JsonFileStore:
    """Store all keys in one JSON file replaced atomically on every write.

    Instances opened on the same file share a lock, so read-modify-write
    cycles from several queues in one process do not lose entries.  The lock
    does not reach other processes: run one writer process per file.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = _file_lock(self._path.resolve())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            # A torn write is impossible with os.replace, so this is a file
            # edited by hand.  Keep it for inspection instead of clobbering it.
            corrupt = self._path.with_suffix(self._path.suffix + ".corrupt")
            os.replace(self._path, corrupt)
            logger.error("kv_store_corrupt_file_moved", path=str(self._path), moved_to=str(corrupt))
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            data = self._load()
        if key not in data:
            return copy.deepcopy(default)
        return data[key]

    def update(self, key: str, func: Callable[[Any], Any], default: Any = None) -> Any:
        with self._lock:
            data = self._load()
            current = data.get(key, copy.deepcopy(default))
            new_value = func(current)
            data[key] = new_value
            self._write(data)
            return new_value


def open_store(path: Optional[str | os.PathLike[str]]) -> KeyValueStore:
    """Return a :class:`JsonFileStore` for *path*, or a :class:`MemoryStore` when ``None``."""

    if path is None:
        return MemoryStore()
    return JsonFileStore(path)


__all__ = ["KeyValueStore", "MemoryStore", "JsonFileStore", "open_store"]
