"""
Real-time reconciliation of a loaded view with pushes from the read-through store.

For each watched path:
1. A one-shot read seeds the last-known child count, then a continuous
   subscription is attached.
2. Pushes that leave the count unchanged are dropped.
3. Changes are debounced per path. A debounced change is ignored while a load
   is in flight, during the quiet window after the view's own load, or while
   the view is busy with its own writes.
4. An accepted change reloads the view.

A subscription error freezes the path: it is logged and no longer watched.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import RECONCILE_DEBOUNCE_MS, RECONCILE_QUIET_WINDOW_MS
from .debounce import Debouncer
from .keys import full_path
from .stores import IReadThroughStore
from .types import now_ms
from ..util.logging import logger


def child_count(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, dict):
        return len(value)
    if isinstance(value, list):
        return sum(1 for item in value if item is not None)
    return 1


class RealtimeReconciler:
    """Watches read-through paths and reloads a view when their contents really change."""

    def __init__(self, read_through: IReadThroughStore, reload: Callable[[str], Awaitable[Any]],
                 clock: Callable[[], int] = now_ms, debounce_ms: int = RECONCILE_DEBOUNCE_MS,
                 quiet_ms: int = RECONCILE_QUIET_WINDOW_MS, is_busy: Callable[[], bool] = None):
        self.read_through = read_through
        self.reload = reload
        self.clock = clock
        self.quiet_ms = quiet_ms
        self.is_busy = is_busy or (lambda: False)
        self.debouncer = Debouncer(debounce_ms)
        self.loading = False
        self.last_load_at: Optional[int] = None
        self.reload_count = 0
        self._counts: Dict[str, int] = {}
        self._unsubscribes: Dict[str, Callable[[], None]] = {}
        self._frozen: Set[str] = set()

    def mark_loaded(self) -> None:
        """Record that the view just loaded itself; pushes caused by that load are ignored."""
        self.last_load_at = self.clock()

    def last_count(self, path: str) -> Optional[int]:
        return self._counts.get(path)

    def set_count(self, path: str, count: int) -> None:
        self._counts[path] = count

    def watched(self) -> List[str]:
        return sorted(self._unsubscribes)

    def is_frozen(self, path: str) -> bool:
        return path in self._frozen

    async def watch(self, path: str) -> None:
        if path in self._unsubscribes:
            return
        self._frozen.discard(path)
        try:
            initial = await self.read_through.get(full_path(path))
        except Exception as e:
            self._on_error(path, e)
            return
        self._counts[path] = child_count(initial)

        unsubscribe = self.read_through.subscribe(
            full_path(path),
            lambda value: self._on_push(path, value),
            lambda error: self._on_error(path, error),
        )
        if path in self._frozen:
            # Refused while subscribing
            unsubscribe()
            return
        self._unsubscribes[path] = unsubscribe
        logger.log_reconcile_event("watch", path, {"count": self._counts.get(path)})

    def unwatch(self, path: str) -> None:
        unsubscribe = self._unsubscribes.pop(path, None)
        if unsubscribe:
            unsubscribe()
        self.debouncer.cancel(path)

    def unwatch_all(self) -> None:
        for path in list(self._unsubscribes):
            self.unwatch(path)
        self.debouncer.cancel_all()

    def _on_push(self, path: str, value: Any) -> None:
        if self.loading:
            return
        count = child_count(value)
        if count == self._counts.get(path, 0):
            logger.log_reconcile_event("push", path, {"count": count, "result": "unchanged"})
            return
        self._counts[path] = count
        logger.log_reconcile_event("push", path, {"count": count, "result": "debounced"})
        self.debouncer.call(path, lambda: self._settle(path))

    def _blocked_by(self) -> Optional[str]:
        if self.loading:
            return "loading"
        if self.last_load_at is not None and self.clock() - self.last_load_at <= self.quiet_ms:
            return "quiet_window"
        if self.is_busy():
            return "busy"
        return None

    async def _settle(self, path: str) -> None:
        reason = self._blocked_by()
        if reason:
            logger.log_reconcile_event("reload", path, {"result": "suppressed", "reason": reason})
            return
        self.reload_count += 1
        logger.log_reconcile_event("reload", path, {"result": "accepted"})
        await self.reload(path)

    def _on_error(self, path: str, error: Exception) -> None:
        # The view keeps what it has; it just stops updating
        unsubscribe = self._unsubscribes.pop(path, None)
        if unsubscribe:
            unsubscribe()
        self.debouncer.cancel(path)
        self._frozen.add(path)
        logger.log_operation("reconcile_subscription", "failure", {"path": path, "error": str(error)}, level=logging.ERROR)
