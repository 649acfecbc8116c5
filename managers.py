"""
Bounded worker pool for external invocations and the periodic token sweeper.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class WorkerPool:
    """
    FIFO queue drained by a fixed number of worker coroutines.

    Submissions beyond the pool size wait in the queue; nothing is rejected.
    Must be created inside a running event loop.
    """

    def __init__(self, size: int):
        self.size = max(1, size)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.processing = 0
        self._workers: List[asyncio.Task] = [
            asyncio.create_task(self._worker_loop(idx)) for idx in range(self.size)
        ]

    async def submit(self, job: Job, label: str = "job") -> int:
        """Queue ``job`` and return its 1-based position among waiting jobs."""
        await self.queue.put((label, job))
        return self.queue.qsize()

    async def _worker_loop(self, worker_id: int) -> None:
        """Consume queue entries until sentinel is received."""
        while True:
            item: Optional[Tuple[str, Job]] = await self.queue.get()
            if item is None:
                self.queue.task_done()
                break

            label, job = item
            self.processing += 1
            try:
                await job()
            except Exception:
                logger.exception("Unexpected worker error (worker=%s job=%s)", worker_id, label)
            finally:
                self.processing -= 1
                self.queue.task_done()

    def get_queue_size(self) -> int:
        return self.queue.qsize()

    def get_active_count(self) -> int:
        return self.processing

    async def join(self) -> None:
        """Wait until every submitted job, including ones they submit, has finished."""
        await self.queue.join()

    async def stop(self) -> None:
        """Stop worker tasks gracefully."""
        for _ in self._workers:
            await self.queue.put(None)

        for worker in self._workers:
            try:
                await worker
            except Exception:
                logger.exception("Worker stop failed")


class TokenSweeper:
    """Calls ``sweep(now)`` every ``interval`` seconds until stopped."""

    def __init__(self, sweep: Callable[[float], Awaitable[object]], interval: float):
        self.sweep = sweep
        self.interval = interval
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.sweep(time.time())
            except Exception:
                logger.exception("Token sweep failed")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            await self._task
