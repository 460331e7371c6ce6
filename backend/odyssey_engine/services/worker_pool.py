"""
Bounded worker pool: a fixed number of asyncio tasks draining one queue.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Iterable, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BoundedWorkerPool(Generic[T]):
    """Process items with at most ``size`` handlers in flight.

    Items are dispatched in queue order and each item is handed to exactly
    one worker. A handler that raises is logged and the worker moves on;
    ``run`` returns once the queue is drained.
    """

    def __init__(self, size: int, handler: Callable[[T], Awaitable[None]]) -> None:
        if size < 1:
            raise ValueError(f"worker pool size must be >= 1, got {size}")
        self.size = size
        self._handler = handler

    async def run(self, items: Iterable[T]) -> None:
        queue: asyncio.Queue[T] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)
        if queue.empty():
            return

        worker_count = min(self.size, queue.qsize())
        workers: List[asyncio.Task] = [
            asyncio.create_task(self._worker(queue, index), name=f"pool-worker-{index}")
            for index in range(worker_count)
        ]
        await asyncio.gather(*workers)

    async def _worker(self, queue: "asyncio.Queue[T]", index: int) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._handler(item)
            except Exception:
                logger.exception("worker %d failed on item %r", index, item)
            finally:
                queue.task_done()
