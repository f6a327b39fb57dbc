"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings
from app.domain.services.payout_scheduler import SCHEDULE

celery_app = Celery(
    "dispatch_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# מחזור העמלות השבועי - כל משימה נרשמת לפי לוח הזמנים של ה-scheduler
celery_app.conf.beat_schedule = {
    f"{task.name.replace('_', '-')}-weekly": {
        "task": "app.workers.tasks.run_scheduled_task",
        "schedule": crontab(day_of_week=task.day_of_week, hour=task.hour, minute=task.minute),
        "args": (task.name,),
    }
    for task in SCHEDULE
}