from __future__ import annotations

import asyncio
from typing import Callable, Coroutine, Optional


class CaptureSupervisor:
    """Holds at most one capture-loop task.

    ``start`` replaces any task already held and ``stop`` cancels it. Neither
    waits for the cancelled task: whatever it had in flight is abandoned.
    """

    def __init__(self, loop_factory: Callable[[], Coroutine], log):
        self._loop_factory = loop_factory
        self._logger = log
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        async with self._lock:
            if self._task is not None:
                self._logger.info("Aborting previous capture loop before restart")
                self._task.cancel()
            self._task = asyncio.create_task(self._loop_factory(), name="capture-loop")
            self._task.add_done_callback(self._on_done)
            self._logger.info("Capture loop task spawned")

    async def stop(self) -> None:
        async with self._lock:
            if self._task is None:
                return
            self._task.cancel()
            self._task = None
            self._logger.info("Capture loop task aborted")

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Capture loop crashed: %r", exc)
