"""
Key/value storage backends for the local cache.

JsonFileStorage survives restarts (one JSON document, atomic replace on write);
MemoryStorage lives for the process only.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional


class StorageError(Exception):
    """Raised when a storage backend cannot read or write (quota, disabled, corrupt)."""


class IStorage(ABC):
    """Abstract string key -> string value storage."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        """Return the raw stored string or None."""
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store a raw string, overwriting."""
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove a key if present."""
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """All stored keys."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove everything."""
        pass


class MemoryStorage(IStorage):
    """Process-lifetime storage, optionally bounded by total stored characters."""

    def __init__(self, quota_chars: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self.quota_chars = quota_chars

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota_chars is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(value) > self.quota_chars:
                raise StorageError(f"Storage quota exceeded writing {key}")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def clear(self) -> None:
        self._data.clear()


class JsonFileStorage(IStorage):
    """Persistent storage kept in a single JSON file."""

    def __init__(self, path):
        self.path = Path(path)
        os.makedirs(self.path.parent, exist_ok=True)
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            # A corrupt file starts the cache empty; the next write replaces it
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _flush(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False)
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(f"Failed to persist cache file {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove_item(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def clear(self) -> None:
        with self._lock:
            self._data = {}
            self._flush()
