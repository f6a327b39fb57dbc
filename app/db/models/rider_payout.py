"""
Rider Payout Models - weekly commission statement per rider
"""
import enum
from sqlalchemy import (
    Column, Integer, DateTime, ForeignKey, String, Enum as SQLEnum, UniqueConstraint,
)

from app.core.clock import utcnow
from app.db.database import Base, enum_values


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class PaidBy(str, enum.Enum):
    RIDER = "rider"
    ADMIN = "admin"
    PAYSTACK = "paystack"


class RiderPayout(Base):
    """
    One row per (rider, week). Totals are always recomputed from
    ``payout_orders``; never adjusted incrementally.
    """

    __tablename__ = "rider_payouts"

    id = Column(Integer, primary_key=True, index=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    week_start = Column(DateTime, nullable=False, index=True)
    week_end = Column(DateTime, nullable=False)
    payment_due_at = Column(DateTime, nullable=False)
    grace_deadline_at = Column(DateTime, nullable=False)

    total_gross = Column(Integer, default=0, nullable=False)
    total_commission = Column(Integer, default=0, nullable=False)
    total_rider_net = Column(Integer, default=0, nullable=False)
    order_count = Column(Integer, default=0, nullable=False)

    status = Column(
        SQLEnum(PayoutStatus, name="payout_status", values_callable=enum_values),
        default=PayoutStatus.PENDING,
        nullable=False,
        index=True,
    )
    paid_at = Column(DateTime, nullable=True)
    marked_paid_by = Column(
        SQLEnum(PaidBy, name="payout_paid_by", values_callable=enum_values),
        nullable=True,
    )
    marked_paid_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    payment_reference_code = Column(String(40), unique=True, nullable=False)
    rewards_applied = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("rider_id", "week_start", name="uq_rider_payout_week"),
    )

    @property
    def is_paid(self) -> bool:
        return self.status == PayoutStatus.PAID


class PayoutOrder(Base):
    """Append-only line of a payout; an order appears in at most one payout"""

    __tablename__ = "payout_orders"

    id = Column(Integer, primary_key=True, index=True)
    payout_id = Column(Integer, ForeignKey("rider_payouts.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    delivered_at = Column(DateTime, nullable=False)
    service_type = Column(String(20), nullable=False)
    gross_amount = Column(Integer, nullable=False)
    commission_amount = Column(Integer, nullable=False)
    rider_net_amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
