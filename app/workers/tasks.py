"""
Celery Tasks - new-order dispatch and the weekly payout cycle

``dispatch_new_order`` is queued by the create-order endpoint once the order
is committed; it offers the order to matching riders outside the request.

Beat triggers ``run_scheduled_task`` with a task name (see
``app.domain.services.payout_scheduler.SCHEDULE``). The task opens its own
database session bound to a fresh event loop and delegates to the
``PayoutScheduler``.
"""
import asyncio
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.event_publisher import get_event_publisher
from app.domain.services.order_service import OrderService
from app.domain.services.payout_scheduler import PayoutScheduler, TASK_NAMES
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # ה-Redis singleton קשור ל-loop הנוכחי - סוגרים לפני סגירת ה-loop
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _run_scheduled(name: str, now: Optional[datetime] = None) -> dict[str, Any]:
    async with get_task_session() as db:
        scheduler = PayoutScheduler(db, publisher=get_event_publisher())
        return await scheduler.run(name, now)


@celery_app.task(name="app.workers.tasks.run_scheduled_task")
def run_scheduled_task(name: str, now: Optional[str] = None) -> dict[str, Any]:
    """
    Run one payout-cycle task.

    Args:
        name: scheduled task name
        now: optional ISO timestamp (UTC, naive) for manual re-runs of a past slot
    """
    if name not in TASK_NAMES:
        logger.error("Unknown scheduled task", extra_data={"task": name})
        return {"task": name, "error": "unknown_task"}

    moment = datetime.fromisoformat(now) if now else None
    try:
        return run_async(_run_scheduled(name, moment))
    except Exception as e:
        logger.error(
            "Scheduled task failed",
            extra_data={"task": name, "error": str(e)},
            exc_info=True,
        )
        raise


async def _dispatch_order(order_id: int) -> dict[str, Any]:
    async with get_task_session() as db:
        service = OrderService(db, publisher=get_event_publisher())
        result = await service.dispatch_new_order(order_id)
        return {"order_id": order_id, "notified": result.delivered, "failed": result.failed}


@celery_app.task(name="app.workers.tasks.dispatch_new_order")
def dispatch_new_order(order_id: int) -> dict[str, Any]:
    """Offer a new order to nearby riders (best-effort fan-out)"""
    try:
        return run_async(_dispatch_order(order_id))
    except Exception as e:
        logger.error(
            "Order dispatch failed",
            extra_data={"order_id": order_id, "error": str(e)},
            exc_info=True,
        )
        raise
