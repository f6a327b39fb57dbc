"""
Service wiring for route handlers

Event publisher, distance provider and the new-order dispatch hook are
resolved here so tests can swap them through ``app.dependency_overrides``.
"""
from typing import Any, Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.distance_service import DistanceProvider, get_distance_provider
from app.domain.services.event_publisher import EventPublisher, get_event_publisher
from app.domain.services.order_service import OrderService
from app.domain.services.payout_scheduler import JobLock, RedisJobLock

logger = get_logger(__name__)

# מקבל order_id ומפיץ את ההזמנה לרוכבים - רץ אחרי שהתשובה נשלחה
OrderDispatch = Callable[[int], Any]


def get_publisher() -> EventPublisher:
    return get_event_publisher()


def get_distance() -> DistanceProvider:
    return get_distance_provider()


def get_order_service(
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
    distance_provider: DistanceProvider = Depends(get_distance),
) -> OrderService:
    return OrderService(db, publisher=publisher, distance_provider=distance_provider)


def get_job_lock() -> JobLock:
    return RedisJobLock()


def enqueue_order_dispatch(order_id: int) -> None:
    """Queue the rider fan-out for a committed order on the Celery worker"""
    from app.workers.tasks import dispatch_new_order

    try:
        dispatch_new_order.delay(order_id)
    except Exception as e:
        # ההזמנה כבר נשמרה - רוכבים עדיין יראו אותה ברשימת ההזמנות הזמינות
        logger.error(
            "Failed to queue order dispatch",
            extra_data={"order_id": order_id, "error": str(e)},
            exc_info=True,
        )


def get_order_dispatch() -> OrderDispatch:
    return enqueue_order_dispatch
