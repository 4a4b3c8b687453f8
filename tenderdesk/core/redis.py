"""
Shared Redis connection: pub/sub fan-out of pipeline events and the
index job list. With FF_USE_REDIS off, events are dropped.
"""

import json
import logging
from typing import Any

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

_client = None


async def get_redis():
    global _client
    if _client is None:
        import redis.asyncio as aioredis

        _client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _client


def org_channel(org_id: str) -> str:
    return f"org:{org_id}"


def tender_channel(org_id: str, tender_id: str) -> str:
    return f"tender:{org_id}:{tender_id}"


async def publish(channel: str, event_type: str, data: Any = None) -> None:
    """Fire-and-forget: a broken Redis never fails the caller."""
    if not get_flags().use_redis:
        return

    message = json.dumps({"type": event_type, "data": data})
    try:
        await (await get_redis()).publish(channel, message)
    except Exception as e:
        logger.warning("Dropped %s event on %s: %s", event_type, channel, e)


async def notify_org(org_id: str, event_type: str, data: Any = None) -> None:
    await publish(org_channel(org_id), event_type, data)


async def notify_tender(org_id: str, tender_id: str, event_type: str, data: Any = None) -> None:
    await publish(tender_channel(org_id, tender_id), event_type, data)


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        logger.info("Redis connection closed")
    _client = None
