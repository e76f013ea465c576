"""
Readiness checks for the services the API depends on.

Liveness (``/health``) only proves the process answers. Readiness probes the
database, the realtime Redis and the Celery broker that carries push
notifications.
"""
from typing import Any

import redis.asyncio as aioredis

from courier_hub.core import redis_client
from courier_hub.core.config import settings
from courier_hub.core.logging import get_logger
from courier_hub.db import database

logger = get_logger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"

CHECK_OK = "ok"

# infrastructure details stay in the logs
ERROR_DB = "error: db_unavailable"
ERROR_REDIS = "error: redis_unavailable"
ERROR_BROKER = "error: broker_unavailable"


async def _check_db() -> str:
    try:
        await database.ping_database()
        return CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return ERROR_DB


async def _check_redis() -> str:
    try:
        await redis_client.ping_redis()
        return CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return ERROR_REDIS


async def _check_broker() -> str:
    """Ping the Celery broker; a dead broker means no push notifications"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Broker health check failed", extra_data={"error": str(e)})
        return ERROR_BROKER


async def check_readiness() -> dict[str, Any]:
    """Overall status plus one entry per dependency ("ok" or "error: ...")"""
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "broker": await _check_broker(),
    }

    all_ok = all(value == CHECK_OK for value in checks.values())
    if not all_ok:
        logger.warning("Readiness degraded", extra_data=checks)

    return {"status": STATUS_HEALTHY if all_ok else STATUS_DEGRADED, **checks}
