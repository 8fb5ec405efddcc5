"""
Keyed debouncing on the running asyncio loop.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict

from ..util.logging import logger


class Debouncer:
    """Runs the last callable registered for a key once the key has been quiet for window_ms."""

    def __init__(self, window_ms: int):
        self.window_ms = window_ms
        self._handles: Dict[Any, asyncio.TimerHandle] = {}
        self._tasks: Dict[Any, asyncio.Future] = {}

    def call(self, key: Any, fn: Callable[[], Any]) -> None:
        """(Re)start the window for key. fn may be a plain or an async callable."""
        self.cancel(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to wait on: nothing can arrive in the window, run now
            self._run(key, fn)
            return
        self._handles[key] = loop.call_later(self.window_ms / 1000, self._run, key, fn)

    def _run(self, key: Any, fn: Callable[[], Any]) -> None:
        self._handles.pop(key, None)
        result = fn()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks[key] = task
            task.add_done_callback(lambda done: self._finished(key, done))

    def _finished(self, key: Any, task: asyncio.Future) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Debounced call for {key} failed: {task.exception()}")

    def pending(self, key: Any) -> bool:
        return key in self._handles

    def cancel(self, key: Any) -> None:
        handle = self._handles.pop(key, None)
        if handle:
            handle.cancel()

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    async def drain(self) -> None:
        """Wait for callables already started by expired windows."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
