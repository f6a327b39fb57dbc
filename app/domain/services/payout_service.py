"""
Payout Service - weekly rider commission statements

Weeks run Sunday 00:00 to the next Sunday 00:00 (UTC, end exclusive). The
commission for a week is due Saturday 23:59:59 and the grace period ends
PAYOUT_GRACE_DAYS later (Monday 23:59:59 by default).

A payout's totals are always recomputed from its ``payout_orders`` rows.
"""
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    PaymentConfirmationError,
    PayoutNotFoundError,
    PermissionDeniedError,
)
from app.core.logging import get_logger, log_async_operation
from app.db.models.order import Order, OrderStatus
from app.db.models.rider_payout import RiderPayout, PayoutOrder, PayoutStatus, PaidBy
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.db.models.user import User, UserRole
from app.db.models.wallet import WalletTransactionType
from app.domain.services.blocking_service import clear_payment_block
from app.domain.services.event_publisher import (
    EventPublisher,
    EventType,
    fan_out,
    publish_safely,
)
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)


# ---- calendar ----

def week_start_for(moment: datetime) -> datetime:
    """Sunday 00:00 of the week containing ``moment``"""
    days_since_sunday = (moment.weekday() + 1) % 7
    day = moment - timedelta(days=days_since_sunday)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


def week_range(moment: datetime) -> tuple[datetime, datetime]:
    start = week_start_for(moment)
    return start, start + timedelta(days=7)


def previous_week_range(moment: datetime) -> tuple[datetime, datetime]:
    start, _ = week_range(moment)
    return start - timedelta(days=7), start


def payment_due_at(week_end: datetime) -> datetime:
    """Saturday 23:59:59 of the payout's week"""
    return week_end - timedelta(seconds=1)


def grace_deadline_at(week_end: datetime) -> datetime:
    return payment_due_at(week_end) + timedelta(days=settings.PAYOUT_GRACE_DAYS)


def generate_reference_code(rider_id: int, now: datetime) -> str:
    """9W + rider id + 6 digits of the timestamp + 2 random digits"""
    stamp = int(now.timestamp()) % 1_000_000
    return f"9W{rider_id:04d}{stamp:06d}{secrets.randbelow(100):02d}"


@dataclass
class GenerationSummary:
    week_start: datetime
    week_end: datetime
    payouts_created: int = 0
    orders_appended: int = 0
    riders: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "week_start": self.week_start.isoformat(),
            "week_end": self.week_end.isoformat(),
            "payouts_created": self.payouts_created,
            "orders_appended": self.orders_appended,
        }


class PayoutService:
    """Payout creation, order appends, mark-paid and listings"""

    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher

    async def get_payout(self, payout_id: int) -> RiderPayout:
        result = await self.db.execute(select(RiderPayout).where(RiderPayout.id == payout_id))
        payout = result.scalar_one_or_none()
        if not payout:
            raise PayoutNotFoundError(payout_id)
        return payout

    async def get_payout_orders(self, payout_id: int) -> list[PayoutOrder]:
        result = await self.db.execute(
            select(PayoutOrder)
            .where(PayoutOrder.payout_id == payout_id)
            .order_by(PayoutOrder.delivered_at, PayoutOrder.id)
        )
        return list(result.scalars().all())

    async def list_rider_payouts(self, rider_id: int, limit: int = 12) -> list[RiderPayout]:
        result = await self.db.execute(
            select(RiderPayout)
            .where(RiderPayout.rider_id == rider_id)
            .order_by(RiderPayout.week_start.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_payouts(
        self,
        week_start: Optional[datetime] = None,
        status: Optional[PayoutStatus] = None,
        limit: int = 100,
    ) -> list[RiderPayout]:
        query = select(RiderPayout)
        if week_start is not None:
            query = query.where(RiderPayout.week_start == week_start)
        if status is not None:
            query = query.where(RiderPayout.status == status)
        result = await self.db.execute(
            query.order_by(RiderPayout.week_start.desc(), RiderPayout.id).limit(limit)
        )
        return list(result.scalars().all())

    async def _find_payout(self, rider_id: int, week_start: datetime) -> Optional[RiderPayout]:
        result = await self.db.execute(
            select(RiderPayout).where(
                RiderPayout.rider_id == rider_id,
                RiderPayout.week_start == week_start,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create_payout(
        self, rider_id: int, week_start: datetime, now: Optional[datetime] = None
    ) -> tuple[RiderPayout, bool]:
        """Returns (payout, created). Flushes; the caller commits."""
        payout = await self._find_payout(rider_id, week_start)
        if payout:
            return payout, False

        week_end = week_start + timedelta(days=7)
        payout = RiderPayout(
            rider_id=rider_id,
            week_start=week_start,
            week_end=week_end,
            payment_due_at=payment_due_at(week_end),
            grace_deadline_at=grace_deadline_at(week_end),
            status=PayoutStatus.PENDING,
            payment_reference_code=generate_reference_code(rider_id, now or utcnow()),
        )
        self.db.add(payout)
        await self.db.flush()
        return payout, True

    async def recompute_totals(self, payout: RiderPayout) -> None:
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(PayoutOrder.gross_amount), 0),
                func.coalesce(func.sum(PayoutOrder.commission_amount), 0),
                func.coalesce(func.sum(PayoutOrder.rider_net_amount), 0),
                func.count(PayoutOrder.id),
            ).where(PayoutOrder.payout_id == payout.id)
        )
        gross, commission, net, count = result.one()
        payout.total_gross = int(gross)
        payout.total_commission = int(commission)
        payout.total_rider_net = int(net)
        payout.order_count = int(count)

    async def append_order(self, order: Order) -> tuple[RiderPayout, bool]:
        """
        Add a settled order to its rider's payout for the week it was
        delivered in. Idempotent by order id. Returns (payout, appended).
        """
        if order.rider_id is None or order.financial is None or order.delivered_at is None:
            raise ValueError(f"order {order.id} is not settled")

        payout, _ = await self.get_or_create_payout(order.rider_id, week_start_for(order.delivered_at))

        existing = await self.db.execute(
            select(PayoutOrder.id).where(PayoutOrder.order_id == order.id)
        )
        if existing.scalar_one_or_none() is not None:
            return payout, False

        self.db.add(PayoutOrder(
            payout_id=payout.id,
            order_id=order.id,
            delivered_at=order.delivered_at,
            service_type=order.service_type.value,
            gross_amount=order.gross_amount,
            commission_amount=order.commission_amount,
            rider_net_amount=order.rider_net_amount,
        ))
        await self.db.flush()
        await self.recompute_totals(payout)
        return payout, True

    @log_async_operation("weekly_payout_generation")
    async def generate_weekly_payouts(
        self,
        now: Optional[datetime] = None,
        week_start: Optional[datetime] = None,
    ) -> GenerationSummary:
        """
        Upsert payouts for a week (default: the week before ``now``).

        Delivered orders are grouped by rider; every verified, active rider
        without orders still gets an empty pending payout. Re-running for the
        same week changes nothing.
        """
        now = now or utcnow()
        if week_start is None:
            start, end = previous_week_range(now)
        else:
            start = week_start_for(week_start)
            end = start + timedelta(days=7)
        summary = GenerationSummary(week_start=start, week_end=end)
        created_for: set[int] = set()

        orders = await self.db.execute(
            select(Order).where(
                Order.status == OrderStatus.DELIVERED,
                Order.rider_id.is_not(None),
                Order.gross_amount.is_not(None),
                Order.delivered_at >= start,
                Order.delivered_at < end,
            ).order_by(Order.delivered_at)
        )
        for order in orders.scalars().all():
            existed = await self._find_payout(order.rider_id, start)
            _, appended = await self.append_order(order)
            if existed is None:
                created_for.add(order.rider_id)
            if appended:
                summary.orders_appended += 1

        riders = await self.db.execute(
            select(User.id).where(
                User.role == UserRole.RIDER,
                User.is_verified.is_(True),
                User.is_active.is_(True),
                User.account_deactivated.is_(False),
            )
        )
        for rider_id in riders.scalars().all():
            _, created = await self.get_or_create_payout(rider_id, start, now)
            if created:
                created_for.add(rider_id)

        await self.db.commit()
        summary.payouts_created = len(created_for)
        summary.riders = sorted(created_for)

        logger.info("Weekly payouts generated", extra_data=summary.as_dict())

        if self.publisher and created_for:
            await fan_out(
                self.publisher,
                summary.riders,
                EventType.PAYOUT_GENERATED,
                {"week_start": start.isoformat(), "week_end": end.isoformat()},
            )
        return summary

    async def mark_paid(
        self,
        payout_id: int,
        paid_by: PaidBy,
        actor_user_id: Optional[int] = None,
        use_rewards: bool = False,
        now: Optional[datetime] = None,
    ) -> RiderPayout:
        """
        Mark a payout paid and lift the rider's payment block.

        Re-marking a paid payout is a successful no-op. ``use_rewards`` pays
        part of the commission from the rider's wallet.
        """
        now = now or utcnow()
        payout = await self.get_payout(payout_id)

        if paid_by == PaidBy.RIDER and payout.rider_id != actor_user_id:
            raise PermissionDeniedError("Riders can only mark their own payouts as paid")

        if payout.is_paid:
            logger.info(
                "Payout already paid - no-op",
                extra_data={"payout_id": payout_id, "paid_by": paid_by.value},
            )
            return payout

        try:
            result = await self.db.execute(
                update(RiderPayout)
                .where(RiderPayout.id == payout_id, RiderPayout.status == PayoutStatus.PENDING)
                .values(
                    status=PayoutStatus.PAID,
                    paid_at=now,
                    marked_paid_by=paid_by,
                    marked_paid_by_user_id=actor_user_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # מקביל כבר סימן כשולם
                await self.db.rollback()
                await self.db.refresh(payout)
                return payout

            if use_rewards and payout.total_commission > 0:
                wallet = WalletService(self.db)
                rewards = min(await wallet.get_balance(payout.rider_id), payout.total_commission)
                if rewards > 0:
                    await wallet.apply_debit(
                        payout.rider_id,
                        rewards,
                        WalletTransactionType.COMMISSION_PAYMENT,
                        payout_id=payout.id,
                        description=f"Commission payment {payout.payment_reference_code}",
                    )
                    await self.db.execute(
                        update(RiderPayout)
                        .where(RiderPayout.id == payout.id)
                        .values(rewards_applied=rewards)
                        .execution_options(synchronize_session=False)
                    )

            order_ids = select(PayoutOrder.order_id).where(PayoutOrder.payout_id == payout.id)
            await self.db.execute(
                update(Transaction)
                .where(
                    Transaction.type == TransactionType.RIDER_PAYOUT,
                    Transaction.status == TransactionStatus.PENDING,
                    Transaction.order_id.in_(order_ids),
                )
                .values(status=TransactionStatus.COMPLETED, processed_at=now, payout_id=payout.id)
                .execution_options(synchronize_session=False)
            )

            rider = await self.db.get(User, payout.rider_id)
            was_blocked = rider.is_blocked if rider else False
            if rider:
                await clear_payment_block(self.db, rider)
            # השבתה של מנהל לא מוסרת בתשלום
            unblocked = was_blocked and not rider.is_blocked

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(payout)
        logger.info(
            "Payout marked paid",
            extra_data={
                "payout_id": payout.id,
                "rider_id": payout.rider_id,
                "paid_by": paid_by.value,
                "rewards_applied": payout.rewards_applied,
                "was_blocked": was_blocked,
                "unblocked": unblocked,
            },
        )

        if self.publisher:
            await publish_safely(
                self.publisher,
                payout.rider_id,
                EventType.PAYOUT_PAID,
                {
                    "payout_id": payout.id,
                    "reference": payout.payment_reference_code,
                    "paid_by": paid_by.value,
                },
            )
            if unblocked:
                await publish_safely(
                    self.publisher, payout.rider_id, EventType.ACCOUNT_UNBLOCKED,
                    {"payout_id": payout.id},
                )
        return payout

    async def confirm_external_payment(self, reference_code: str, amount: Optional[int] = None) -> RiderPayout:
        """Payment gateway confirmation - the only path for ``paid_by=paystack``"""
        result = await self.db.execute(
            select(RiderPayout).where(RiderPayout.payment_reference_code == reference_code)
        )
        payout = result.scalar_one_or_none()
        if payout is None:
            raise PaymentConfirmationError(f"Unknown payment reference: {reference_code}")
        if amount is not None and amount < payout.total_commission - payout.rewards_applied:
            raise PaymentConfirmationError("Confirmed amount is below the commission owed")
        return await self.mark_paid(payout.id, PaidBy.PAYSTACK)

    async def pending_payouts_for_week(self, week_start: datetime) -> list[RiderPayout]:
        """Unpaid payouts that actually owe commission"""
        result = await self.db.execute(
            select(RiderPayout).where(
                RiderPayout.week_start == week_start,
                RiderPayout.status == PayoutStatus.PENDING,
                RiderPayout.total_commission > 0,
            )
        )
        return list(result.scalars().all())
