"""
שירות בדיקת בריאות - בדיקות תלויות (DB, Redis, Celery broker, ספק מרחקים).

- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של התלויות החיצוניות
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import get_distance_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות - ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """ping ל-broker; ה-worker עצמו לא נבדק"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _distance_provider_state() -> str:
    """מידע בלבד - מעגל פתוח לא מוריד את המוכנות, יש fallback לקו אווירי"""
    if not settings.MAPBOX_ACCESS_TOKEN:
        return "straight_line"
    return get_distance_circuit_breaker().state.value


async def check_readiness() -> dict[str, Any]:
    """
    מחזיר status=healthy כשה-DB, Redis וה-broker זמינים, אחרת degraded,
    יחד עם פירוט לכל תלות.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }
    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks, "distance_provider": _distance_provider_state()}
