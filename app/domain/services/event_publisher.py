"""
Event Publisher - per-user realtime events over Redis Pub/Sub

The domain services receive an ``EventPublisher`` instead of importing a
transport. Production wires ``RedisEventPublisher``; tests use
``InMemoryEventPublisher``.

Publishing is always best-effort and happens after the domain transaction has
committed: ``publish_safely`` logs the failure and returns a ``PublishResult``
instead of raising.
"""
import asyncio
import enum
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from app.core.config import settings
from app.core.logging import get_logger, get_correlation_id
from app.core.redis_client import get_redis

logger = get_logger(__name__)

# היסטוריית אירועים אחרונים לכל משתמש - לריענון לקוח שהתחבר מחדש
_HISTORY_PREFIX = "events:history"
_MAX_HISTORY_SIZE = 100


class EventType(str, enum.Enum):
    ORDER_CREATED = "order_created"
    NEW_ORDER_AVAILABLE = "new_order_available"
    ORDER_ASSIGNED = "order_assigned"
    ORDER_STATUS_UPDATED = "order_status_updated"
    ORDER_CANCELLED = "order_cancelled"
    PRICE_CHANGE_REQUESTED = "price_change_requested"
    PRICE_CHANGE_ACCEPTED = "price_change_accepted"
    PRICE_CHANGE_REJECTED = "price_change_rejected"
    DELIVERY_OTP = "delivery_otp"
    DELIVERY_VERIFIED = "delivery_verified"
    DELIVERY_PROOF_UPDATED = "delivery_proof_updated"
    PAYOUT_GENERATED = "payout_generated"
    PAYOUT_PAID = "payout_paid"
    PAYOUT_REMINDER = "payout_reminder"
    ACCOUNT_BLOCKED = "account_blocked"
    ACCOUNT_UNBLOCKED = "account_unblocked"


@dataclass(frozen=True)
class Event:
    user_id: int
    type: EventType
    data: dict[str, Any]


@dataclass
class PublishResult:
    """Outcome of a best-effort publish; failures are recorded, never raised"""

    delivered: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def merge(self, other: "PublishResult") -> "PublishResult":
        return PublishResult(
            delivered=self.delivered + other.delivered,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )


def channel_name(user_id: int) -> str:
    """שם ערוץ Pub/Sub למשתמש"""
    return f"{settings.EVENT_CHANNEL_PREFIX}:{user_id}"


def _history_key(user_id: int) -> str:
    return f"{_HISTORY_PREFIX}:{user_id}"


class EventPublisher(ABC):
    """Transport-agnostic sink for domain events"""

    @abstractmethod
    async def publish(self, event: Event) -> None:
        """Deliver one event. May raise; callers go through ``publish_safely``."""

    async def recent_events(self, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
        return []


class RedisEventPublisher(EventPublisher):
    """Publishes to ``events:user:{id}`` and keeps a bounded history list"""

    async def publish(self, event: Event) -> None:
        payload = {
            "type": event.type.value,
            "data": event.data,
            "user_id": event.user_id,
            "correlation_id": get_correlation_id(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        message = json.dumps(payload, ensure_ascii=False, default=str)

        redis = await get_redis()
        await redis.publish(channel_name(event.user_id), message)
        history_key = _history_key(event.user_id)
        await redis.lpush(history_key, message)
        await redis.ltrim(history_key, 0, _MAX_HISTORY_SIZE - 1)

    async def recent_events(self, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
        redis = await get_redis()
        raw = await redis.lrange(_history_key(user_id), 0, limit - 1)
        return [json.loads(item) for item in raw]


class InMemoryEventPublisher(EventPublisher):
    """Collects events in a list. ``fail_for`` simulates a broken channel per user."""

    def __init__(self, fail_for: Optional[Iterable[int]] = None):
        self.events: list[Event] = []
        self.fail_for = set(fail_for or ())

    async def publish(self, event: Event) -> None:
        if event.user_id in self.fail_for:
            raise ConnectionError(f"channel for user {event.user_id} unavailable")
        self.events.append(event)

    async def recent_events(self, user_id: int, limit: int = 50) -> list[dict[str, Any]]:
        mine = [e for e in reversed(self.events) if e.user_id == user_id]
        return [{"type": e.type.value, "data": e.data, "user_id": e.user_id} for e in mine[:limit]]

    def of_type(self, event_type: EventType) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    def for_user(self, user_id: int) -> list[Event]:
        return [e for e in self.events if e.user_id == user_id]


async def publish_safely(
    publisher: EventPublisher,
    user_id: Optional[int],
    event_type: EventType,
    data: dict[str, Any],
) -> PublishResult:
    """Publish one event; a failure is logged and reported, never propagated"""
    if user_id is None:
        return PublishResult()
    try:
        await publisher.publish(Event(user_id=user_id, type=event_type, data=data))
    except Exception as e:
        # כשלון בפרסום לא מבטל את הפעולה העסקית שכבר נשמרה
        logger.error(
            "כשלון בפרסום אירוע",
            extra_data={
                "user_id": user_id,
                "event_type": event_type.value,
                "error": str(e),
            },
            exc_info=True,
        )
        return PublishResult(failed=1, errors=[str(e)])

    logger.debug(
        "אירוע פורסם",
        extra_data={"user_id": user_id, "event_type": event_type.value},
    )
    return PublishResult(delivered=1)


async def fan_out(
    publisher: EventPublisher,
    user_ids: Iterable[int],
    event_type: EventType,
    data_for: Any,
) -> PublishResult:
    """
    Concurrent best-effort publish to many users.

    Args:
        user_ids: recipients
        data_for: either a payload dict shared by all recipients or a
            callable ``user_id -> dict`` for per-recipient payloads
    """
    ids = list(user_ids)
    if not ids:
        return PublishResult()

    def payload(uid: int) -> dict[str, Any]:
        return data_for(uid) if callable(data_for) else data_for

    results = await asyncio.gather(
        *(publish_safely(publisher, uid, event_type, payload(uid)) for uid in ids)
    )
    total = PublishResult()
    for result in results:
        total = total.merge(result)
    return total


_default_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """FastAPI dependency / worker accessor for the process-wide publisher"""
    global _default_publisher
    if _default_publisher is None:
        _default_publisher = RedisEventPublisher()
    return _default_publisher
