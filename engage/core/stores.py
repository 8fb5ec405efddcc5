"""
Interfaces to the two external stores this layer sits between.

- Durable store: the system of record (users, activities, submissions).
- Read-through cache store: a key-path tree of precomputed aggregates with
  point subscriptions, populated by a background aggregation job.

InMemoryReadThroughStore emulates the second one for local runs and tests.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..util.logging import logger


class StoreError(Exception):
    """An authoritative store rejected or failed an operation."""

    code = "unknown"


class PermissionDeniedError(StoreError):
    code = "permission-denied"


class DocumentNotFoundError(StoreError):
    code = "not-found"


class IDurableStore(ABC):
    """Document store holding the canonical entities."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document (with its `id`) or None."""
        pass

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert a document with a generated id and return the id."""
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        """Shallow-merge fields into an existing document; DocumentNotFoundError if missing."""
        pass

    @abstractmethod
    async def query(self, collection: str, **equals) -> List[Dict[str, Any]]:
        """Documents whose fields equal every given value."""
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        pass


class IReadThroughStore(ABC):
    """Low-latency path tree with push-on-change subscriptions."""

    @abstractmethod
    async def get(self, path: str) -> Any:
        """One-shot read; None when the path does not exist."""
        pass

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at path; None deletes."""
        pass

    @abstractmethod
    async def update(self, updates: Dict[str, Any]) -> None:
        """Apply several path -> value writes at once."""
        pass

    @abstractmethod
    def subscribe(self, path: str, on_value: Callable[[Any], None],
                  on_error: Callable[[Exception], None] = None) -> Callable[[], None]:
        """Attach a listener. It fires immediately with the current value and on every change.
        Returns a callable that detaches the listener."""
        pass


def _split(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


def _is_related(a: List[str], b: List[str]) -> bool:
    """True when one path is an ancestor of (or equal to) the other."""
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class InMemoryReadThroughStore(IReadThroughStore):
    """Nested-dict emulation of the read-through cache store."""

    def __init__(self):
        self._root: Dict[str, Any] = {}
        self._listeners: Dict[int, Dict[str, Any]] = {}
        self._next_listener = 0
        self.available = True
        self.read_count = 0

    def _check_available(self):
        if not self.available:
            raise StoreError("Read-through cache store unavailable")

    def _lookup(self, parts: List[str]) -> Any:
        node = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _write(self, parts: List[str], value: Any) -> None:
        if not parts:
            self._root = copy.deepcopy(value) if isinstance(value, dict) else {}
            return
        node = self._root
        trail = []
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[part] = child
            trail.append((node, part))
            node = child
        if value is None:
            node.pop(parts[-1], None)
            # Prune empty parents like the hosted store does
            for parent, part in reversed(trail):
                if parent[part]:
                    break
                del parent[part]
        else:
            node[parts[-1]] = copy.deepcopy(value)

    async def get(self, path: str) -> Any:
        self._check_available()
        self.read_count += 1
        return copy.deepcopy(self._lookup(_split(path)))

    def peek(self, path: str) -> Any:
        """Synchronous read for tests and seeding tools."""
        return copy.deepcopy(self._lookup(_split(path)))

    async def set(self, path: str, value: Any) -> None:
        self._check_available()
        parts = _split(path)
        self._write(parts, value)
        self._notify([parts])

    async def update(self, updates: Dict[str, Any]) -> None:
        self._check_available()
        changed = []
        for path, value in updates.items():
            parts = _split(path)
            self._write(parts, value)
            changed.append(parts)
        self._notify(changed)

    def subscribe(self, path: str, on_value: Callable[[Any], None],
                  on_error: Callable[[Exception], None] = None) -> Callable[[], None]:
        listener_id = self._next_listener
        self._next_listener += 1
        parts = _split(path)
        self._listeners[listener_id] = {"parts": parts, "on_value": on_value, "on_error": on_error}

        if not self.available:
            self._fail(listener_id, StoreError(f"Subscription to {path} refused"))
        else:
            on_value(copy.deepcopy(self._lookup(parts)))

        def unsubscribe():
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def listener_count(self, path: str = None) -> int:
        if path is None:
            return len(self._listeners)
        parts = _split(path)
        return sum(1 for listener in self._listeners.values() if listener["parts"] == parts)

    def emit_error(self, path: str, error: Exception) -> None:
        """Deliver an error to every listener on path; errored listeners are detached."""
        parts = _split(path)
        for listener_id, listener in list(self._listeners.items()):
            if listener["parts"] == parts:
                self._fail(listener_id, error)

    def _fail(self, listener_id: int, error: Exception) -> None:
        listener = self._listeners.pop(listener_id, None)
        if listener and listener["on_error"]:
            listener["on_error"](error)

    def _notify(self, changed: List[List[str]]) -> None:
        for listener in list(self._listeners.values()):
            if any(_is_related(listener["parts"], parts) for parts in changed):
                try:
                    listener["on_value"](copy.deepcopy(self._lookup(listener["parts"])))
                except Exception as e:
                    logger.error(f"Read-through listener failed for {'/'.join(listener['parts'])}: {e}")
