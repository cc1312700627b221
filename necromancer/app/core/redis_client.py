"""
Shared Redis connection.

Notifications to drivers and requesters, and outbound dispatch events,
are published on this client.
"""

import logging

import redis.asyncio as redis
from necromancer.app.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def ping_redis() -> bool:
    """Reachability check for the health endpoint; never raises."""
    try:
        return bool(await redis_client.ping())
    except redis.RedisError as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False


async def close_redis() -> None:
    await redis_client.aclose()
