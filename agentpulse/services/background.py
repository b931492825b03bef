"""Bounded background job queue for fire-and-forget side effects.

Jobs run one at a time on a single asyncio task. Blocking callables are
pushed to a worker thread. A failing job is logged and counted; it never
reaches the code that submitted it.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("agentpulse.background")

DEFAULT_QUEUE_SIZE = 1000


class BackgroundWorker:
    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.completed = 0
        self.failures = 0
        self.dropped = 0
        self.last_error = ""

    async def start(self) -> None:
        if self._running:
            logger.warning("Background worker already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Background worker started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Background worker stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> bool:
        """Enqueue a job without waiting. Returns False if the queue is full."""
        try:
            self._queue.put_nowait((name, func, args))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Background queue full; dropping job %s", name)
            return False
        return True

    async def drain(self) -> None:
        """Run every queued job inline. Used at shutdown and in tests."""
        while not self._queue.empty():
            await self._execute(*self._queue.get_nowait())
            self._queue.task_done()

    async def _run(self) -> None:
        try:
            while self._running:
                job = await self._queue.get()
                try:
                    await self._execute(*job)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("Background worker task cancelled")
        finally:
            self._running = False

    async def _execute(self, name: str, func: Callable[..., Any], args: tuple) -> None:
        try:
            if inspect.iscoroutinefunction(func):
                await func(*args)
            else:
                await asyncio.to_thread(func, *args)
            self.completed += 1
        except Exception as exc:  # noqa: BLE001
            self.failures += 1
            self.last_error = f"{name}: {exc}"
            logger.warning("Background job %s failed: %s", name, exc)
