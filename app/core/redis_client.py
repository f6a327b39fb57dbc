"""
Redis Client - async singleton.

Used for the per-user event channels and for the scheduler's job locks.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis - נקרא ב-shutdown של האפליקציה וב-worker."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
