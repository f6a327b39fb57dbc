"""
Ledger Service - one-time settlement of a delivered order

Settlement runs inside the transaction that moves the order to
``delivered``:

1. commission = round(gross x rate%), passed through the discount policy and
   clamped to [0, commission]
2. rider net = gross - commission
3. the breakdown is written onto the order (immutable afterwards)
4. three audit transactions: customer payment (completed), commission
   (completed), rider payout accrual (pending)
5. the order is appended to the rider's payout for that week

The caller commits.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import SettlementAlreadyPostedError
from app.core.logging import get_logger
from app.core.money import percent_of
from app.db.models.order import FinancialBreakdown, Order, OrderStatus
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.db.models.user import User
from app.domain.services.discount_policy import DiscountPolicy, clamp_commission
from app.domain.services.fare_config_service import FareConfig
from app.domain.services.payout_service import PayoutService

logger = get_logger(__name__)


def compute_split(gross: int, rate_pct: float) -> tuple[int, int]:
    """(commission, rider_net) before any discount, both >= 0"""
    gross = max(int(gross), 0)
    commission = min(max(percent_of(gross, rate_pct), 0), gross)
    return commission, gross - commission


class LedgerService:
    def __init__(
        self,
        db: AsyncSession,
        config: FareConfig,
        discount_policy: DiscountPolicy,
    ):
        self.db = db
        self.config = config
        self.discount_policy = discount_policy

    async def settle_order(self, order: Order, now: datetime) -> FinancialBreakdown:
        """
        Raises:
            SettlementAlreadyPostedError: the order already carries a settlement
        """
        if order.financial is not None:
            raise SettlementAlreadyPostedError(order.id)
        if order.status != OrderStatus.DELIVERED or order.rider_id is None:
            raise ValueError(f"order {order.id} is not in a settleable state")

        gross = order.price
        rate = float(self.config.commission_rate)
        commission, _ = compute_split(gross, rate)

        rider: Optional[User] = await self.db.get(User, order.rider_id)
        if rider is not None and commission > 0:
            discounted = await self.discount_policy(commission, rider=rider, order=order, now=now)
            commission = clamp_commission(commission, discounted)

        breakdown = FinancialBreakdown(
            gross_amount=gross,
            commission_rate_pct=rate,
            commission_amount=commission,
            rider_net_amount=gross - commission,
        )
        order.apply_financial(breakdown, now)

        currency = settings.CURRENCY
        common = {"order_id": order.id, "customer_id": order.customer_id, "rider_id": order.rider_id, "currency": currency}
        self.db.add_all([
            Transaction(
                reference=f"settlement:{order.id}:order_payment",
                type=TransactionType.ORDER_PAYMENT,
                status=TransactionStatus.COMPLETED,
                amount=gross,
                description=f"Payment for order {order.order_code}",
                processed_at=now,
                **common,
            ),
            Transaction(
                reference=f"settlement:{order.id}:commission",
                type=TransactionType.COMMISSION,
                status=TransactionStatus.COMPLETED,
                amount=commission,
                commission_rate=rate,
                description=f"Platform commission for order {order.order_code}",
                processed_at=now,
                **common,
            ),
            Transaction(
                reference=f"settlement:{order.id}:rider_payout",
                type=TransactionType.RIDER_PAYOUT,
                status=TransactionStatus.PENDING,
                amount=breakdown.rider_net_amount,
                description=f"Rider earnings for order {order.order_code}",
                **common,
            ),
        ])
        await self.db.flush()

        payout, appended = await PayoutService(self.db).append_order(order)

        logger.info(
            "Order settled",
            extra_data={
                "order_id": order.id,
                "rider_id": order.rider_id,
                "gross": gross,
                "commission": commission,
                "rider_net": breakdown.rider_net_amount,
                "payout_id": payout.id,
                "appended": appended,
            },
        )
        return breakdown
