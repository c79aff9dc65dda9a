from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable


logger = logging.getLogger(__name__)


@runtime_checkable
class DurableBackend(Protocol):
    """
    Flat string-keyed, string-valued persistent store.

    Calls are synchronous; the persistence manager moves them off the event
    loop. `get` returns None for missing keys and `remove` of a missing key is
    a no-op.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


class MemoryBackend:
    """Process-local backend; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("MemoryBackend stores strings only")
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._data)


class JsonFileBackend:
    """
    Backend stored as one JSON object file: { key: value, ... }.

    - Loaded lazily on first access; a missing or corrupt file starts empty.
    - Every mutation rewrites the file through a temp file + atomic replace.
    """

    def __init__(self, path: os.PathLike[str] | str) -> None:
        self._path = Path(path)
        self._data: Dict[str, str] = {}
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as ex:
            logger.warning("Ignoring unreadable state file %s: %s", self._path, ex)
            return
        if isinstance(raw, dict):
            # keep string entries only
            self._data = {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        tmp.replace(self._path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._ensure_loaded()
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("JsonFileBackend stores strings only")
        with self._lock:
            self._ensure_loaded()
            self._data[key] = value
            self._save()

    def remove(self, key: str) -> None:
        with self._lock:
            self._ensure_loaded()
            if self._data.pop(key, None) is not None:
                self._save()

    def keys(self) -> List[str]:
        with self._lock:
            self._ensure_loaded()
            return list(self._data.keys())


__all__ = ["DurableBackend", "MemoryBackend", "JsonFileBackend"]
