"""
Wallet Service - user wallet credits and debits

Every movement writes three things in the caller's database transaction: the
balance change, a ``WalletTransaction`` line and an audit ``Transaction``.
``apply_credit`` / ``apply_debit`` only flush; the caller commits so the
movement shares a transaction with the order or payout change that caused it.
``credit`` / ``debit`` are the standalone variants that commit themselves.
"""
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import InsufficientBalanceError, InvalidAmountError
from app.core.logging import get_logger
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.db.models.wallet import Wallet, WalletTransaction, WalletTransactionType

logger = get_logger(__name__)

_AUDIT_TYPE: dict[WalletTransactionType, TransactionType] = {
    WalletTransactionType.ORDER_PAYMENT: TransactionType.ORDER_PAYMENT,
    WalletTransactionType.REFUND: TransactionType.REFUND,
    WalletTransactionType.STREAK_BONUS: TransactionType.STREAK_BONUS,
    WalletTransactionType.REFERRAL_REWARD: TransactionType.REFERRAL_REWARD,
    WalletTransactionType.COMMISSION_PAYMENT: TransactionType.COMMISSION,
}


def _validate_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmountError(amount)


class WalletService:
    """Service for managing user wallets"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create_wallet(self, user_id: int) -> Wallet:
        """Get existing wallet or create an empty one (flushed, not committed)"""
        result = await self.db.execute(select(Wallet).where(Wallet.user_id == user_id))
        wallet = result.scalar_one_or_none()
        if not wallet:
            wallet = Wallet(user_id=user_id, balance=0)
            self.db.add(wallet)
            await self.db.flush()
        return wallet

    async def get_balance(self, user_id: int) -> int:
        result = await self.db.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
        balance = result.scalar_one_or_none()
        return balance or 0

    async def transactions_total(self, user_id: int) -> int:
        """Sum of all movements; always equal to the balance"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0))
            .where(WalletTransaction.user_id == user_id)
        )
        return int(result.scalar_one())

    async def list_transactions(self, user_id: int, limit: int = 20) -> list[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _record(
        self,
        wallet: Wallet,
        signed_amount: int,
        balance_after: int,
        tx_type: WalletTransactionType,
        order_id: Optional[int],
        payout_id: Optional[int],
        description: Optional[str],
    ) -> WalletTransaction:
        line = WalletTransaction(
            wallet_id=wallet.id,
            user_id=wallet.user_id,
            type=tx_type,
            amount=signed_amount,
            balance_after=balance_after,
            order_id=order_id,
            payout_id=payout_id,
            description=description,
        )
        self.db.add(line)
        await self.db.flush()

        is_debit = signed_amount < 0
        self.db.add(Transaction(
            reference=f"wallet:{line.id}",
            type=_AUDIT_TYPE[tx_type],
            status=TransactionStatus.COMPLETED,
            amount=abs(signed_amount),
            currency=settings.CURRENCY,
            order_id=order_id,
            customer_id=wallet.user_id if tx_type in (
                WalletTransactionType.ORDER_PAYMENT, WalletTransactionType.REFUND
            ) else None,
            rider_id=wallet.user_id if tx_type in (
                WalletTransactionType.COMMISSION_PAYMENT, WalletTransactionType.STREAK_BONUS
            ) else None,
            payout_id=payout_id,
            description=description or f"wallet {'debit' if is_debit else 'credit'}",
            processed_at=utcnow(),
        ))
        return line

    async def apply_credit(
        self,
        user_id: int,
        amount: int,
        tx_type: WalletTransactionType,
        *,
        order_id: Optional[int] = None,
        payout_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        _validate_amount(amount)
        wallet = await self.get_or_create_wallet(user_id)
        await self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(balance=Wallet.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        balance_after = await self._current_balance(wallet.id)
        return await self._record(
            wallet, amount, balance_after, tx_type, order_id, payout_id, description
        )

    async def apply_debit(
        self,
        user_id: int,
        amount: int,
        tx_type: WalletTransactionType,
        *,
        order_id: Optional[int] = None,
        payout_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> WalletTransaction:
        """
        Conditional decrement: succeeds only while ``balance >= amount``.

        Raises:
            InsufficientBalanceError: nothing was changed
        """
        _validate_amount(amount)
        wallet = await self.get_or_create_wallet(user_id)
        result = await self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            balance = await self._current_balance(wallet.id)
            logger.warning(
                "Wallet debit rejected - insufficient balance",
                extra_data={"user_id": user_id, "balance": balance, "amount": amount},
            )
            raise InsufficientBalanceError(user_id, balance, amount)

        balance_after = await self._current_balance(wallet.id)
        return await self._record(
            wallet, -amount, balance_after, tx_type, order_id, payout_id, description
        )

    async def _current_balance(self, wallet_id: int) -> int:
        result = await self.db.execute(select(Wallet.balance).where(Wallet.id == wallet_id))
        return int(result.scalar_one())

    async def credit(self, user_id: int, amount: int, tx_type: WalletTransactionType, **refs) -> WalletTransaction:
        """Standalone credit - commits or rolls back as one unit"""
        try:
            line = await self.apply_credit(user_id, amount, tx_type, **refs)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error(
                "Wallet credit failed",
                extra_data={"user_id": user_id, "amount": amount, "type": tx_type.value},
                exc_info=True,
            )
            raise
        logger.info(
            "Wallet credited",
            extra_data={"user_id": user_id, "amount": amount, "type": tx_type.value},
        )
        return line

    async def debit(self, user_id: int, amount: int, tx_type: WalletTransactionType, **refs) -> WalletTransaction:
        """Standalone debit - commits or rolls back as one unit"""
        try:
            line = await self.apply_debit(user_id, amount, tx_type, **refs)
            await self.db.commit()
        except (SQLAlchemyError, InsufficientBalanceError):
            await self.db.rollback()
            raise
        logger.info(
            "Wallet debited",
            extra_data={"user_id": user_id, "amount": amount, "type": tx_type.value},
        )
        return line
