"""
Payout Scheduler - the weekly commission cycle

    Sun 00:05  generate_weekly_payouts   statements for the week that just ended
    Fri 09:00  payment_reminder          commission for the current week is due tomorrow
    Sat 09:00  payment_due_reminder      due today (23:59:59)
    Mon 09:00  grace_period_reminder     last day of grace for last week
    Tue 00:05  block_overdue_riders      grace is over

All times UTC. Celery beat triggers the tasks; every run goes through
``PayoutScheduler.run`` which holds a lock so two beat instances (or a manual
trigger during a scheduled run) never execute the same task at once. The two
batch tasks that write payouts and rider flags share one lock, so generation
and blocking never overlap either.
Each task is idempotent, so a skipped or repeated run is harmless.
"""
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import bind_log_context, get_logger
from app.core.redis_client import get_redis
from app.db.models.rider_payout import RiderPayout
from app.domain.services.blocking_service import BlockingService
from app.domain.services.event_publisher import EventPublisher, EventType, fan_out
from app.domain.services.payout_service import PayoutService, week_start_for

logger = get_logger(__name__)

_LOCK_PREFIX = "scheduler:lock"

# שחרור רק אם המפתח עדיין שלנו - לא מוחקים נעילה שפגה ונלקחה ע"י ריצה אחרת
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class ScheduledTask:
    name: str
    day_of_week: str
    hour: int
    minute: int
    description: str


SCHEDULE: tuple[ScheduledTask, ...] = (
    ScheduledTask("generate_weekly_payouts", "sun", 0, 5, "Create last week's payout statements"),
    ScheduledTask("payment_reminder", "fri", 9, 0, "Commission due tomorrow"),
    ScheduledTask("payment_due_reminder", "sat", 9, 0, "Commission due today"),
    ScheduledTask("grace_period_reminder", "mon", 9, 0, "Last day of the grace period"),
    ScheduledTask("block_overdue_riders", "tue", 0, 5, "Block riders past the grace deadline"),
)

TASK_NAMES = frozenset(task.name for task in SCHEDULE)

# generation ו-blocking כותבים לאותם דוחות ודגלי רוכב - נעילה משותפת
BATCH_LOCK = "payout_batch"
_LOCK_KEYS = {
    "generate_weekly_payouts": BATCH_LOCK,
    "block_overdue_riders": BATCH_LOCK,
}


def lock_key_for(name: str) -> str:
    return _LOCK_KEYS.get(name, name)


class JobLock(ABC):
    """Non-blocking mutual exclusion per lock key"""

    @abstractmethod
    async def acquire(self, name: str) -> Optional[str]:
        """Token when acquired, None when another run holds the lock"""

    @abstractmethod
    async def release(self, name: str, token: str) -> None:
        ...


class RedisJobLock(JobLock):
    """``SET NX EX`` lock; the TTL frees it if a worker dies mid-run"""

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or settings.SCHEDULER_LOCK_TTL_SECONDS

    async def acquire(self, name: str) -> Optional[str]:
        redis = await get_redis()
        token = secrets.token_hex(8)
        acquired = await redis.set(f"{_LOCK_PREFIX}:{name}", token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None

    async def release(self, name: str, token: str) -> None:
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, f"{_LOCK_PREFIX}:{name}", token)


class InProcessJobLock(JobLock):
    """Single-process lock for tests and local runs"""

    def __init__(self):
        self._held: dict[str, str] = {}

    async def acquire(self, name: str) -> Optional[str]:
        if name in self._held:
            return None
        token = secrets.token_hex(8)
        self._held[name] = token
        return token

    async def release(self, name: str, token: str) -> None:
        if self._held.get(name) == token:
            del self._held[name]

    def is_held(self, name: str) -> bool:
        return name in self._held


class PayoutScheduler:
    def __init__(
        self,
        db: AsyncSession,
        publisher: Optional[EventPublisher] = None,
        lock: Optional[JobLock] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.lock = lock or RedisJobLock()
        self._handlers: dict[str, Callable[[datetime], Awaitable[dict[str, Any]]]] = {
            "generate_weekly_payouts": self.generate_weekly_payouts,
            "payment_reminder": self.payment_reminder,
            "payment_due_reminder": self.payment_due_reminder,
            "grace_period_reminder": self.grace_period_reminder,
            "block_overdue_riders": self.block_overdue_riders,
        }

    async def run(self, name: str, now: Optional[datetime] = None) -> dict[str, Any]:
        if name not in self._handlers:
            raise ValueError(f"unknown scheduled task: {name}")
        now = now or utcnow()

        lock_key = lock_key_for(name)
        token = await self.lock.acquire(lock_key)
        if token is None:
            logger.warning(
                "Scheduled task already running - skipped",
                extra_data={"task": name, "lock": lock_key},
            )
            return {"task": name, "skipped": True}

        # כל שורת לוג של המשימה (כולל שירותים פנימיים) מסומנת בשם המשימה
        with bind_log_context(task=name, slot=now.isoformat()):
            try:
                logger.info("Scheduled task started")
                result = await self._handlers[name](now)
            finally:
                await self.lock.release(lock_key, token)

            logger.info("Scheduled task finished", extra_data=result)
        return {**result, "task": name, "skipped": False}

    # ---- tasks ----

    async def generate_weekly_payouts(self, now: datetime) -> dict[str, Any]:
        summary = await PayoutService(self.db, self.publisher).generate_weekly_payouts(now)
        return summary.as_dict()

    async def payment_reminder(self, now: datetime) -> dict[str, Any]:
        return await self._remind(week_start_for(now), "due_tomorrow")

    async def payment_due_reminder(self, now: datetime) -> dict[str, Any]:
        return await self._remind(week_start_for(now), "due_today")

    async def grace_period_reminder(self, now: datetime) -> dict[str, Any]:
        return await self._remind(week_start_for(now) - timedelta(days=7), "grace_period")

    async def block_overdue_riders(self, now: datetime) -> dict[str, Any]:
        summary = await BlockingService(self.db, self.publisher).block_overdue_riders(now)
        return summary.as_dict()

    async def _remind(self, week_start: datetime, stage: str) -> dict[str, Any]:
        payouts = await PayoutService(self.db).pending_payouts_for_week(week_start)
        by_rider: dict[int, RiderPayout] = {p.rider_id: p for p in payouts}

        def payload(rider_id: int) -> dict[str, Any]:
            payout = by_rider[rider_id]
            return {
                "stage": stage,
                "payout_id": payout.id,
                "amount_due": payout.total_commission - (payout.rewards_applied or 0),
                "reference": payout.payment_reference_code,
                "payment_due_at": payout.payment_due_at.isoformat(),
                "grace_deadline_at": payout.grace_deadline_at.isoformat(),
            }

        if self.publisher is None or not by_rider:
            return {"week_start": week_start.isoformat(), "reminded": 0, "failed": 0}

        result = await fan_out(self.publisher, by_rider.keys(), EventType.PAYOUT_REMINDER, payload)
        return {
            "week_start": week_start.isoformat(),
            "reminded": result.delivered,
            "failed": result.failed,
        }
