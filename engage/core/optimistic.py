"""
Optimistic mutation tracking.

Local lists are changed and re-rendered before the authoritative write
resolves. Every change is recorded with enough state to undo it. Operations
are resolved by confirm()/rollback(), or by run() which does both around the
write; the fixed window only drops operations nobody resolved.
"""

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .config import EXIT_TRANSITION_MS, OPTIMISTIC_WINDOW_SEC
from .types import OptimisticOperation, now_ms
from ..util.logging import logger

Render = Optional[Callable[[], None]]


class ListView:
    """Hooks into whatever renders the list. The base class does nothing."""

    def mark_exit(self, item_type: str, item_id: Any) -> None:
        """Start the exit transition of a rendered element."""

    def cancel_exit(self, item_type: str, item_id: Any) -> None:
        """Undo mark_exit for an element whose removal was rolled back."""

    def discard(self, item_type: str, item_id: Any) -> None:
        """Drop a rendered element immediately."""


def recency_key(item: Dict[str, Any]):
    return item.get("updatedAt") or item.get("createdAt") or item.get("submittedAt") or 0


def _sort_by_recency(items: List[Dict[str, Any]]) -> None:
    items.sort(key=recency_key, reverse=True)


def _index_of(items: Optional[List[Dict[str, Any]]], item_id: Any) -> int:
    if items is None:
        return -1
    for index, item in enumerate(items):
        if item.get("id") == item_id:
            return index
    return -1


class OptimisticTracker:
    """Tracks add/remove/update operations on caller-owned lists."""

    def __init__(self, clock: Callable[[], int] = now_ms, window_sec: int = OPTIMISTIC_WINDOW_SEC,
                 exit_transition_ms: int = EXIT_TRANSITION_MS, view: ListView = None):
        self.clock = clock
        self.window_ms = window_sec * 1000
        self.exit_transition_ms = exit_transition_ms
        self.view = view or ListView()
        self._operations: Dict[str, OptimisticOperation] = {}
        self._sequence = itertools.count(1)

    def _new_id(self, item_type: str, item_id: Any) -> str:
        return f"{item_type}_{item_id}_{self.clock()}_{next(self._sequence)}"

    def _expire(self) -> None:
        """Drop operations older than the window; nothing resolved them."""
        cutoff = self.clock() - self.window_ms
        for operation_id, operation in list(self._operations.items()):
            if operation.created_at <= cutoff:
                del self._operations[operation_id]
                logger.log_optimistic_operation("expire", operation_id, operation.item_type,
                                                operation.item_id, "expired")

    def _track(self, operation: OptimisticOperation) -> str:
        self._operations[operation.operation_id] = operation
        logger.log_optimistic_operation(operation.kind, operation.operation_id,
                                        operation.item_type, operation.item_id, "pending")
        return operation.operation_id

    @staticmethod
    def _render(render: Render) -> None:
        if render:
            render()

    def add_item(self, item_type: str, item: Dict[str, Any], render: Render = None,
                 target: List[Dict[str, Any]] = None) -> Optional[str]:
        """Insert item (de-duplicated by id, newest first) and render. Returns the operation id."""
        if not item or not item.get("id"):
            logger.error(f"Optimistic add of {item_type} rejected: item must have an id")
            return None
        self._expire()

        operation = OptimisticOperation(
            operation_id=self._new_id(item_type, item["id"]),
            kind="add",
            item_type=item_type,
            item_id=item["id"],
            target_list=target,
            created_at=self.clock(),
            prior_snapshot=list(target) if target is not None else None,
        )
        if target is not None and _index_of(target, item["id"]) == -1:
            target.append(item)
            _sort_by_recency(target)
            operation.inserted = True

        self._render(render)
        return self._track(operation)

    def remove_item(self, item_type: str, item_id: Any, render: Render = None,
                    target: List[Dict[str, Any]] = None) -> Optional[str]:
        """Mark the element for exit now; splice the item out after the exit transition."""
        if not item_id:
            logger.error(f"Optimistic remove of {item_type} rejected: item id is required")
            return None
        self._expire()

        index = _index_of(target, item_id)
        operation = OptimisticOperation(
            operation_id=self._new_id(item_type, item_id),
            kind="remove",
            item_type=item_type,
            item_id=item_id,
            target_list=target,
            created_at=self.clock(),
            prior_snapshot=list(target) if target is not None else None,
            removed_item=target[index] if index != -1 else None,
            removed_index=index if index != -1 else None,
        )
        self.view.mark_exit(item_type, item_id)
        self._track(operation)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None or self.exit_transition_ms <= 0:
            self._splice(operation, render)
        else:
            operation.splice_handle = loop.call_later(
                self.exit_transition_ms / 1000, self._splice, operation, render
            )
        return operation.operation_id

    def _splice(self, operation: OptimisticOperation, render: Render) -> None:
        operation.splice_handle = None
        operation.spliced = True
        index = _index_of(operation.target_list, operation.item_id)
        if index != -1:
            operation.target_list.pop(index)
        self._render(render)

    def update_item(self, item_type: str, item_id: Any, patch: Dict[str, Any], render: Render = None,
                    target: List[Dict[str, Any]] = None) -> Optional[str]:
        """Shallow-merge patch into the matching item and render."""
        if not item_id or not patch:
            logger.error(f"Optimistic update of {item_type} rejected: item id and patch are required")
            return None
        self._expire()

        index = _index_of(target, item_id)
        snapshot = None
        if index != -1:
            snapshot = dict(target[index])
            target[index].update(patch)

        operation = OptimisticOperation(
            operation_id=self._new_id(item_type, item_id),
            kind="update",
            item_type=item_type,
            item_id=item_id,
            target_list=target,
            created_at=self.clock(),
            prior_snapshot=snapshot,
        )
        self._render(render)
        return self._track(operation)

    def rollback(self, operation_id: str, render: Render = None) -> bool:
        """Undo a tracked operation. False when it is unknown or already resolved."""
        self._expire()
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            logger.warning(f"Optimistic rollback skipped: operation {operation_id} not found")
            return False

        target = operation.target_list
        if operation.kind == "add":
            # A de-duplicated add inserted nothing; the listed item predates it
            if operation.inserted:
                index = _index_of(target, operation.item_id)
                if index != -1:
                    target.pop(index)
                self._restore_order(target, operation.prior_snapshot)
                self.view.discard(operation.item_type, operation.item_id)

        elif operation.kind == "remove":
            if operation.splice_handle is not None:
                # Exit transition still running: the item never left the list
                operation.splice_handle.cancel()
                operation.splice_handle = None
                self.view.cancel_exit(operation.item_type, operation.item_id)
            elif target is not None and operation.removed_item is not None \
                    and _index_of(target, operation.item_id) == -1:
                target.append(operation.removed_item)
                _sort_by_recency(target)

        elif operation.kind == "update":
            index = _index_of(target, operation.item_id)
            if index != -1 and operation.prior_snapshot is not None:
                target[index].clear()
                target[index].update(operation.prior_snapshot)

        logger.log_optimistic_operation("rollback", operation_id, operation.item_type,
                                        operation.item_id, "rolled_back")
        self._render(render)
        return True

    @staticmethod
    def _restore_order(target: Optional[List[Dict[str, Any]]], snapshot: Optional[List[Dict[str, Any]]]) -> None:
        """Put back the snapshot order when the list again holds exactly the snapshot's items."""
        if target is None or snapshot is None or len(target) != len(snapshot):
            return
        if {id(item) for item in target} == {id(item) for item in snapshot}:
            target[:] = snapshot

    def rollback_item(self, item_type: str, item_id: Any, render: Render = None) -> int:
        """Roll back every tracked operation on one item, newest first."""
        matching = [
            operation_id for operation_id, operation in self._operations.items()
            if operation.item_type == item_type and operation.item_id == item_id
        ]
        return sum(1 for operation_id in reversed(matching) if self.rollback(operation_id, render))

    def confirm(self, operation_id: str) -> bool:
        """Mark an operation as durably applied; it can no longer be rolled back."""
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return False
        logger.log_optimistic_operation("confirm", operation_id, operation.item_type,
                                        operation.item_id, "confirmed")
        return True

    async def run(self, operation_id: Optional[str],
                  write: Union[Callable[[], Awaitable[Any]], Awaitable[Any]], render: Render = None) -> Any:
        """Await the authoritative write; confirm on success, roll back and re-raise on failure."""
        try:
            result = await (write() if callable(write) else write)
        except Exception:
            if operation_id:
                self.rollback(operation_id, render)
            raise
        if operation_id:
            self.confirm(operation_id)
        return result

    def is_pending(self, operation_id: str) -> bool:
        self._expire()
        return operation_id in self._operations

    def pending_count(self) -> int:
        self._expire()
        return len(self._operations)

    def clear_pending(self) -> None:
        self._operations.clear()
