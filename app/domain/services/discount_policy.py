"""
Discount Policy - pluggable adjustment of the platform commission

A policy receives the undiscounted commission and returns the commission to
charge. The ledger clamps whatever comes back into ``[0, commission]``, so a
policy can lower the commission but never raise it or make it negative.
"""
from datetime import datetime
from typing import Protocol

from app.core.logging import get_logger
from app.core.money import percent_of
from app.db.models.order import Order, ServiceType
from app.db.models.user import User

logger = get_logger(__name__)


class DiscountPolicy(Protocol):
    async def __call__(
        self, commission: int, *, rider: User, order: Order, now: datetime
    ) -> int: ...


class NoDiscount:
    async def __call__(self, commission: int, *, rider: User, order: Order, now: datetime) -> int:
        return commission


class GoldStatusDiscount:
    """
    Rider merit discount: ride orders only, while gold status is active and
    not expired. The rider's own percent wins over the platform default.
    """

    def __init__(self, default_percent: float):
        self.default_percent = default_percent

    async def __call__(self, commission: int, *, rider: User, order: Order, now: datetime) -> int:
        if order.service_type != ServiceType.RIDE:
            return commission
        if not rider.has_active_gold_status(now):
            return commission

        percent = rider.gold_discount_percent or self.default_percent
        discount = percent_of(commission, percent)
        logger.info(
            "Gold status discount applied",
            extra_data={
                "rider_id": rider.id,
                "order_id": order.id,
                "percent": percent,
                "discount": discount,
            },
        )
        return commission - discount


def clamp_commission(original: int, discounted: int) -> int:
    return max(0, min(original, int(discounted)))
