"""
Wallet Models - per-user balance and its append-only movements
"""
import enum
from sqlalchemy import (
    Column, Integer, DateTime, ForeignKey, String, Enum as SQLEnum,
    UniqueConstraint, CheckConstraint,
)

from app.core.clock import utcnow
from app.db.database import Base, enum_values


class WalletTransactionType(str, enum.Enum):
    REFERRAL_REWARD = "referral_reward"
    STREAK_BONUS = "streak_bonus"
    ORDER_PAYMENT = "order_payment"
    COMMISSION_PAYMENT = "commission_payment"
    REFUND = "refund"


class Wallet(Base):
    """Balance is never negative and always equals the sum of its transactions"""

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    balance = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )


class WalletTransaction(Base):
    """Signed movement: positive credits, negative debits"""

    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(
        SQLEnum(WalletTransactionType, name="wallet_transaction_type", values_callable=enum_values),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    payout_id = Column(Integer, ForeignKey("rider_payouts.id"), nullable=True)
    description = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # תשלום/החזר אחד לכל הזמנה - מונע חיוב כפול
    __table_args__ = (
        UniqueConstraint("user_id", "order_id", "type", name="uq_wallet_tx_user_order_type"),
    )
