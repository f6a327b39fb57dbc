"""
Transaction Model - admin-facing money movement audit ledger
"""
import enum
from sqlalchemy import Column, Integer, Float, DateTime, ForeignKey, String, Enum as SQLEnum

from app.core.clock import utcnow
from app.db.database import Base, enum_values


class TransactionType(str, enum.Enum):
    ORDER_PAYMENT = "order_payment"
    COMMISSION = "commission"
    RIDER_PAYOUT = "rider_payout"
    REFUND = "refund"
    STREAK_BONUS = "streak_bonus"
    REFERRAL_REWARD = "referral_reward"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Transaction(Base):
    """
    One row per money movement, independent of wallet state.

    ``reference`` is a unique idempotency key (e.g. ``settlement:42:commission``)
    so a replayed settlement or wallet operation cannot post twice.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(100), unique=True, nullable=False)
    type = Column(
        SQLEnum(TransactionType, name="transaction_type", values_callable=enum_values),
        nullable=False,
        index=True,
    )
    status = Column(
        SQLEnum(TransactionStatus, name="transaction_status", values_callable=enum_values),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    payout_id = Column(Integer, ForeignKey("rider_payouts.id"), nullable=True)
    commission_rate = Column(Float, nullable=True)
    description = Column(String(500), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
