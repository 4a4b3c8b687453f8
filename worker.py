"""
Standalone index worker. Consumes the Redis index queue.
Run with: python worker.py   (API side: FF_RUN_INDEX_WORKER=false)
"""

import asyncio
import logging
import signal

from tenderdesk.core.config import get_settings
from tenderdesk.core.database import init_db, close_db
from tenderdesk.core.flags import get_flags
from tenderdesk.core.redis import close_redis
from tenderdesk.factory import configure_logging
from tenderdesk.services.llm import close_client
from tenderdesk.services.worker import IndexWorker

logger = logging.getLogger("tenderdesk.worker")


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    if not get_flags().use_redis:
        logger.warning("FF_USE_REDIS is off: a standalone worker only sees its own in-process queue")

    await init_db()
    worker = IndexWorker()
    await worker.recover()
    worker.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await stop.wait()
    await worker.stop()
    await close_client()
    await close_db()
    await close_redis()


if __name__ == "__main__":
    asyncio.run(main())
