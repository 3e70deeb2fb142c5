"""
command_queue.py - Single-consumer FIFO queue for runner commands.

Handlers may suspend while the presentation layer opens or closes surfaces.
Running every command through one consumer task keeps them from
interleaving: a command starts only after the previous one has finished.

The worker is bound to the running event loop and is recreated if the queue
is used from a new loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CommandQueue(Generic[T]):
    """Serializes calls to an async handler.

    Args:
        handler: Coroutine function invoked once per submitted item, in order.
        name: Used in log messages and the worker task name.
    """

    def __init__(self, handler: Callable[[T], Awaitable[None]], name: str = "commands"):
        self._handler = handler
        self._name = name
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_worker(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._worker is None or self._worker.done():
            if self._loop is not loop:
                self._queue = asyncio.Queue()
            self._loop = loop
            self._worker = loop.create_task(self._run(), name=f"guideflow-{self._name}")
        return self._queue

    def submit(self, item: T) -> "asyncio.Future[None]":
        """Enqueue item; the returned future resolves when its handler finishes.

        Must be called from a running event loop.
        """
        queue = self._ensure_worker()
        future: asyncio.Future = self._loop.create_future()
        queue.put_nowait((item, future))
        return future

    async def join(self) -> None:
        """Wait until every submitted item has been handled."""
        if self._queue is not None and self.is_running:
            await self._queue.join()

    async def aclose(self) -> None:
        """Stop the worker; items still queued are cancelled."""
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                if not future.done():
                    future.cancel()
                self._queue.task_done()

    async def _run(self) -> None:
        queue = self._queue
        while True:
            entry: Tuple[T, asyncio.Future] = await queue.get()
            item, future = entry
            try:
                if not future.cancelled():
                    await self._handler(item)
                    if not future.done():
                        future.set_result(None)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.exception("Command handler failed on %s queue", self._name)
                if not future.done():
                    future.set_exception(e)
            finally:
                queue.task_done()


__all__ = ["CommandQueue"]
