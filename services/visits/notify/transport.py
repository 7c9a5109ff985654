"""
Redis transport for visit notifications.

The host application's SSE endpoint subscribes to user-visits-{user_id}
and relays each message to connected clients; this side only PUBLISHes.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import redis.asyncio as aioredis

from services.visits.config import settings

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    async def broadcast(self, channel: str, payload: str) -> int:
        ...


class RedisBroadcaster:
    """PUBLISH-based broadcaster. Returns the number of subscribers reached."""

    def __init__(self, redis: Any) -> None:
        self._redis = redis

    async def broadcast(self, channel: str, payload: str) -> int:
        receivers = await self._redis.publish(channel, payload)
        logger.debug("broadcast: channel=%s receivers=%s", channel, receivers)
        return int(receivers or 0)


async def create_redis_client(url: str | None = None) -> Any | None:
    """
    Connect and ping. Returns None when Redis is unreachable or unconfigured,
    in which case notifications degrade to no-ops.
    """
    url = settings.redis_url if url is None else url
    if not url:
        return None
    try:
        client = aioredis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        await client.ping()
    except Exception:
        logger.warning("redis unavailable at startup, visit notifications disabled", exc_info=True)
        return None
    return client
