"""
Redis client used by the realtime bridge (Pub/Sub fan-out of row changes).

One client per process, created lazily on first use. Subscribers hold
connections open for a long time, so the pool runs periodic health checks.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from courier_hub.core.config import settings
from courier_hub.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379/0 -> redis://:****@host:6379/0"""
    try:
        password = urlparse(url).password
    except ValueError:
        return "redis://****"
    return url.replace(f":{password}@", ":****@") if password else url


def _create_client() -> aioredis.Redis:
    return aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL_SECONDS,
    )


async def get_redis() -> aioredis.Redis:
    """Process-wide client; the first caller connects and pings"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is None:
            client = _create_client()
            await client.ping()
            _redis_client = client
            logger.info("Redis client initialized", extra_data={
                "url": mask_redis_url(settings.REDIS_URL),
            })
    return _redis_client


async def ping_redis() -> None:
    """Round-trip to Redis; raises when the server is unreachable"""
    client = await get_redis()
    await client.ping()


async def close_redis() -> None:
    """Drop the process-wide client (application shutdown)"""
    global _redis_client
    client, _redis_client = _redis_client, None
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")
