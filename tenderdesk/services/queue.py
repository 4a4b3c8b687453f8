"""
Index job queue. Redis list OR in-process asyncio.Queue. Controlled by FF_USE_REDIS.

A job is a small dict: {document_id, org_id, tender_id, doc_hash}.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..core.config import get_settings
from ..core.flags import get_flags
from ..core.redis import get_redis

logger = logging.getLogger(__name__)


class IndexQueue(ABC):
    @abstractmethod
    async def enqueue(self, job: dict) -> None:
        ...

    @abstractmethod
    async def dequeue(self, timeout: float = 5.0) -> Optional[dict]:
        """Next job, or None if nothing arrived within timeout."""
        ...

    async def size(self) -> int:
        return 0


class LocalQueue(IndexQueue):
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    async def enqueue(self, job: dict) -> None:
        await self._queue.put(job)

    async def dequeue(self, timeout: float = 5.0) -> Optional[dict]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def size(self) -> int:
        return self._queue.qsize()


class RedisQueue(IndexQueue):
    def __init__(self, name: str):
        self.name = name

    async def enqueue(self, job: dict) -> None:
        client = await get_redis()
        await client.lpush(self.name, json.dumps(job))

    async def dequeue(self, timeout: float = 5.0) -> Optional[dict]:
        client = await get_redis()
        item = await client.brpop(self.name, timeout=max(1, int(timeout)))
        if item is None:
            return None
        _, payload = item
        return json.loads(payload)

    async def size(self) -> int:
        client = await get_redis()
        return await client.llen(self.name)


_queue: Optional[IndexQueue] = None


def get_queue() -> IndexQueue:
    global _queue
    if _queue is None:
        if get_flags().use_redis:
            _queue = RedisQueue(get_settings().index_queue_name)
        else:
            _queue = LocalQueue()
        logger.info("Index queue: %s", type(_queue).__name__)
    return _queue


def reset_queue() -> None:
    """Drop the cached queue (flag changes, tests)."""
    global _queue
    _queue = None
