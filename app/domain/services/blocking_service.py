"""
Blocking Service - overdue-commission blocking and admin rider actions

A rider reaches the blocked state only through ``block_overdue_riders``
(run by the scheduler after the grace deadline) or an explicit admin
deactivation. Leaving it takes a payment (mark-paid) or an admin unblock.

Blocking a rider, in one database transaction:
1. payment_blocked + account_deactivated with reason and timestamp
2. rider location forced offline
3. email / phone / national id copied into the credential deny-list
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import UserNotFoundError, ValidationException
from app.core.logging import get_logger, log_async_operation
from app.db.models.blocked_credential import BlockedCredential
from app.db.models.rider_payout import RiderPayout, PayoutStatus
from app.db.models.user import User, UserRole
from app.domain.services.event_publisher import EventPublisher, EventType, publish_safely
from app.domain.services.rider_directory import RiderDirectory

logger = get_logger(__name__)

OVERDUE_REASON = "Unpaid commission for week {start} - {end}"


async def clear_payment_block(db: AsyncSession, rider: User, include_deactivation: bool = False) -> None:
    """
    Lift the payment block and release the rider's deny-list entries. Caller commits.

    The deactivation flag goes with it only when the overdue block set it;
    an admin deactivation stays until an admin lifts it (``include_deactivation``).
    """
    set_by_block = rider.payment_blocked and (
        rider.account_deactivated_reason == rider.payment_blocked_reason
    )
    if include_deactivation or set_by_block:
        rider.account_deactivated = False
        rider.account_deactivated_at = None
        rider.account_deactivated_reason = None
    rider.payment_blocked = False
    rider.payment_blocked_at = None
    rider.payment_blocked_reason = None
    await db.execute(
        delete(BlockedCredential).where(BlockedCredential.original_user_id == rider.id)
    )


async def is_credential_blocked(
    db: AsyncSession,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    national_id: Optional[str] = None,
) -> bool:
    conditions = []
    if email:
        conditions.append(BlockedCredential.email == email.strip().lower())
    if phone_number:
        conditions.append(BlockedCredential.phone_number == phone_number.strip())
    if national_id:
        conditions.append(BlockedCredential.national_id == national_id.strip())
    if not conditions:
        return False
    result = await db.execute(select(BlockedCredential.id).where(or_(*conditions)).limit(1))
    return result.scalar_one_or_none() is not None


@dataclass
class BlockingSummary:
    scanned: int = 0
    blocked: list[int] = field(default_factory=list)
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "blocked": len(self.blocked),
            "riders_skipped": self.skipped,
            "errors": self.errors,
        }


class BlockingService:
    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher
        self.directory = RiderDirectory(db)

    async def _get_rider(self, rider_id: int) -> User:
        rider = await self.db.get(User, rider_id)
        if not rider or rider.role != UserRole.RIDER:
            raise UserNotFoundError(rider_id)
        return rider

    async def _record_credentials(self, rider: User, reason: str, details: dict) -> None:
        self.db.add(BlockedCredential(
            original_user_id=rider.id,
            email=rider.email.lower() if rider.email else None,
            phone_number=rider.phone_number,
            national_id=rider.national_id,
            reason=reason,
            details=details,
        ))

    @log_async_operation("overdue_blocking_pass")
    async def block_overdue_riders(self, now: Optional[datetime] = None) -> BlockingSummary:
        """
        Block every rider with a pending, commission-owing payout whose grace
        deadline has passed. Riders already blocked are left alone, so a
        re-run does nothing.
        """
        now = now or utcnow()
        summary = BlockingSummary()

        result = await self.db.execute(
            select(RiderPayout).where(
                RiderPayout.status == PayoutStatus.PENDING,
                RiderPayout.total_commission > 0,
                RiderPayout.grace_deadline_at < now,
            ).order_by(RiderPayout.rider_id, RiderPayout.week_start)
        )
        # צילום ערכים - rollback של רוכב אחד מפקיע את האובייקטים שנטענו
        overdue = [
            (p.id, p.rider_id, p.total_commission, p.week_start, p.week_end)
            for p in result.scalars().all()
        ]
        summary.scanned = len(overdue)

        for payout_id, rider_id, commission, week_start, week_end in overdue:
            try:
                rider = await self.db.get(User, rider_id)
                if rider is None or rider.payment_blocked or rider.id in summary.blocked:
                    summary.skipped += 1
                    continue

                reason = OVERDUE_REASON.format(
                    start=week_start.date().isoformat(),
                    end=week_end.date().isoformat(),
                )
                rider.payment_blocked = True
                rider.payment_blocked_at = now
                rider.payment_blocked_reason = reason
                if not rider.account_deactivated:
                    # השבתה קיימת של מנהל נשארת עם הסיבה שלה
                    rider.account_deactivated = True
                    rider.account_deactivated_at = now
                    rider.account_deactivated_reason = reason
                await self.directory.set_offline(rider.id)
                await self._record_credentials(rider, reason, {
                    "name": rider.name,
                    "role": rider.role.value,
                    "commission_amount": commission,
                    "payout_id": payout_id,
                    "week_start": week_start.isoformat(),
                    "week_end": week_end.isoformat(),
                })
                await self.db.commit()
                summary.blocked.append(rider.id)
            except Exception as e:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Failed to block overdue rider",
                    extra_data={"payout_id": payout_id, "rider_id": rider_id, "error": str(e)},
                    exc_info=True,
                )
                continue

            logger.warning(
                "Rider blocked for unpaid commission",
                extra_data={
                    "rider_id": rider_id,
                    "payout_id": payout_id,
                    "commission": commission,
                },
            )
            if self.publisher:
                await publish_safely(
                    self.publisher, rider_id, EventType.ACCOUNT_BLOCKED,
                    {"payout_id": payout_id, "reason": reason, "amount_due": commission},
                )

        logger.info("Overdue blocking pass finished", extra_data=summary.as_dict())
        return summary

    async def list_blocked_riders(self) -> list[User]:
        result = await self.db.execute(
            select(User).where(
                User.role == UserRole.RIDER,
                or_(User.payment_blocked.is_(True), User.account_deactivated.is_(True)),
            ).order_by(User.payment_blocked_at.desc(), User.id)
        )
        return list(result.scalars().all())

    async def unblock_rider(
        self,
        rider_id: int,
        admin_id: int,
        payout_id: Optional[int] = None,
    ) -> User:
        """Admin unblock; with ``payout_id`` the payout is also marked paid by admin"""
        rider = await self._get_rider(rider_id)

        if payout_id is not None:
            # נמנע מ-import מעגלי: payout_service מייבא את המודול הזה
            from app.domain.services.payout_service import PayoutService
            from app.db.models.rider_payout import PaidBy

            payout = await PayoutService(self.db).get_payout(payout_id)
            if payout.rider_id != rider_id:
                raise ValidationException("Payout does not belong to this rider", field="payout_id")
            await PayoutService(self.db, self.publisher).mark_paid(
                payout_id, PaidBy.ADMIN, actor_user_id=admin_id
            )
            await self.db.refresh(rider)

        await clear_payment_block(self.db, rider, include_deactivation=True)
        # נשאר offline עד שהרוכב מתחבר מחדש בעצמו
        await self.directory.set_offline(rider.id)
        await self.db.commit()

        logger.info(
            "Rider unblocked by admin",
            extra_data={"rider_id": rider_id, "admin_id": admin_id, "payout_id": payout_id},
        )
        if self.publisher:
            await publish_safely(
                self.publisher, rider_id, EventType.ACCOUNT_UNBLOCKED, {"by": "admin"}
            )
        return rider

    async def deactivate_rider(self, rider_id: int, admin_id: int, reason: str) -> User:
        rider = await self._get_rider(rider_id)
        now = utcnow()
        rider.account_deactivated = True
        rider.account_deactivated_at = now
        rider.account_deactivated_reason = reason
        await self.directory.set_offline(rider.id)
        await self.db.commit()

        logger.warning(
            "Rider deactivated by admin",
            extra_data={"rider_id": rider_id, "admin_id": admin_id, "reason": reason},
        )
        if self.publisher:
            await publish_safely(
                self.publisher, rider_id, EventType.ACCOUNT_BLOCKED, {"reason": reason, "by": "admin"}
            )
        return rider

    async def reactivate_rider(self, rider_id: int, admin_id: int, unblock_payment: bool = False) -> User:
        rider = await self._get_rider(rider_id)
        rider.account_deactivated = False
        rider.account_deactivated_at = None
        rider.account_deactivated_reason = None
        if unblock_payment:
            await clear_payment_block(self.db, rider)
        await self.db.commit()

        logger.info(
            "Rider reactivated by admin",
            extra_data={"rider_id": rider_id, "admin_id": admin_id, "unblock_payment": unblock_payment},
        )
        if self.publisher and not rider.is_blocked:
            await publish_safely(
                self.publisher, rider_id, EventType.ACCOUNT_UNBLOCKED, {"by": "admin"}
            )
        return rider
