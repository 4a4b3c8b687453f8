"""
Index worker. N consumer tasks pulling jobs off the index queue and running
the pipeline to a terminal state. Runs inside the API process
(FF_RUN_INDEX_WORKER) or standalone via worker.py.
"""

import asyncio
import logging
from typing import Optional

from ..core.config import get_settings
from ..core.database import get_session_factory
from .pipeline import recover_jobs, run_pipeline
from .queue import IndexQueue, get_queue

logger = logging.getLogger(__name__)


class IndexWorker:
    def __init__(self, queue: Optional[IndexQueue] = None, concurrency: Optional[int] = None):
        self.queue = queue or get_queue()
        self.concurrency = concurrency or get_settings().index_worker_concurrency
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def recover(self) -> tuple[int, int]:
        """Requeue PENDING documents and fail interrupted ones. Call before start()."""
        async with get_session_factory()() as db:
            return await recover_jobs(db)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"index-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Index worker started (%d consumers)", self.concurrency)

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Index worker stopped")

    async def _consume(self, n: int) -> None:
        while not self._stopping.is_set():
            job = await self.queue.dequeue(timeout=1.0)
            if job is None:
                continue
            await self.process(job)

    async def process(self, job: dict) -> Optional[str]:
        """Run one job. Faults are logged; the loop keeps going."""
        try:
            return await run_pipeline(job)
        except Exception:
            logger.exception("Index job crashed: %s", job)
            return None

    async def drain(self) -> int:
        """Run every queued job in the calling task. Returns the number processed."""
        processed = 0
        while True:
            job = await self.queue.dequeue(timeout=0.01)
            if job is None:
                return processed
            await self.process(job)
            processed += 1


_worker: Optional[IndexWorker] = None


def get_worker() -> IndexWorker:
    global _worker
    if _worker is None:
        _worker = IndexWorker()
    return _worker


async def stop_worker() -> None:
    global _worker
    if _worker is not None:
        await _worker.stop()
        _worker = None
