"""
בדיקות לדוחות עמלה שבועיים - app/domain/services/payout_service.py
"""
import re
from datetime import datetime, timedelta

import pytest
from sqlalchemy import delete, select

from app.core.clock import utcnow
from app.core.exceptions import (
    PaymentConfirmationError,
    PayoutNotFoundError,
    PermissionDeniedError,
)
from app.db.models.rider_payout import PaidBy, PayoutOrder, PayoutStatus, RiderPayout
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.db.models.user import UserRole
from app.db.models.wallet import WalletTransactionType
from app.domain.services.event_publisher import EventType
from app.domain.services.payout_service import (
    PayoutService,
    generate_reference_code,
    previous_week_range,
    week_start_for,
)
from app.domain.services.wallet_service import WalletService


@pytest.fixture
def payout_service(db_session, publisher) -> PayoutService:
    return PayoutService(db_session, publisher)


@pytest.fixture
def delivered_payout(order_factory, deliver_order, customer, rider, payout_service):
    """רוכב שמסר הזמנה אחת ב-1300 - חייב עמלה של 130"""
    async def _make(price: int = 1300) -> RiderPayout:
        await deliver_order(await order_factory(customer, price=price), rider)
        [payout] = await payout_service.list_rider_payouts(rider.id)
        return payout

    return _make


class TestCalendar:

    @pytest.mark.unit
    def test_week_of_wednesday(self, fixed_now):
        # 2024-06-12 יום רביעי -> השבוע התחיל ב-2024-06-09
        assert week_start_for(fixed_now) == datetime(2024, 6, 9)

    @pytest.mark.unit
    def test_sunday_midnight_starts_new_week(self):
        assert week_start_for(datetime(2024, 6, 16, 0, 0, 0)) == datetime(2024, 6, 16)
        assert week_start_for(datetime(2024, 6, 15, 23, 59, 59)) == datetime(2024, 6, 9)

    @pytest.mark.unit
    def test_previous_week(self, fixed_now):
        assert previous_week_range(fixed_now) == (datetime(2024, 6, 2), datetime(2024, 6, 9))

    @pytest.mark.unit
    def test_reference_code_format(self, fixed_now):
        code = generate_reference_code(42, fixed_now)
        assert re.fullmatch(r"9W0042\d{6}\d{2}", code)


class TestGenerateWeeklyPayouts:

    @pytest.mark.unit
    async def test_empty_week_creates_statements_for_verified_riders(
        self, payout_service, rider, second_rider, user_factory, fixed_now, publisher
    ):
        unverified = await user_factory(role=UserRole.RIDER, is_verified=False)
        await user_factory(role=UserRole.CUSTOMER)

        summary = await payout_service.generate_weekly_payouts(week_start=fixed_now)

        assert summary.week_start == datetime(2024, 6, 9)
        assert summary.week_end == datetime(2024, 6, 16)
        assert summary.payouts_created == 2
        assert summary.orders_appended == 0
        assert summary.riders == sorted([rider.id, second_rider.id])
        assert unverified.id not in summary.riders

        payout = (await payout_service.list_rider_payouts(rider.id))[0]
        assert payout.status == PayoutStatus.PENDING
        assert payout.total_commission == 0
        assert payout.payment_due_at == datetime(2024, 6, 15, 23, 59, 59)
        assert payout.grace_deadline_at == datetime(2024, 6, 17, 23, 59, 59)
        assert payout.payment_reference_code.startswith("9W")

        notified = {e.user_id for e in publisher.of_type(EventType.PAYOUT_GENERATED)}
        assert notified == {rider.id, second_rider.id}

    @pytest.mark.unit
    async def test_generation_is_idempotent(self, payout_service, rider, fixed_now):
        await payout_service.generate_weekly_payouts(week_start=fixed_now)

        again = await payout_service.generate_weekly_payouts(week_start=fixed_now)

        assert again.payouts_created == 0
        assert len(await payout_service.list_payouts(week_start=datetime(2024, 6, 9))) == 1

    @pytest.mark.unit
    async def test_deactivated_rider_skipped(self, payout_service, rider, db_session, fixed_now):
        rider.account_deactivated = True
        await db_session.commit()

        summary = await payout_service.generate_weekly_payouts(week_start=fixed_now)

        assert rider.id not in summary.riders

    @pytest.mark.unit
    async def test_defaults_to_previous_week(
        self, payout_service, delivered_payout, rider, second_rider
    ):
        """השבוע שהסתיים - ההזמנות כבר צורפו בעת ההתחשבנות"""
        payout = await delivered_payout()

        summary = await payout_service.generate_weekly_payouts(now=utcnow() + timedelta(days=7))

        assert summary.week_start == payout.week_start
        assert summary.riders == [second_rider.id]
        assert summary.orders_appended == 0
        [same] = await payout_service.list_rider_payouts(rider.id)
        assert same.id == payout.id
        assert same.total_commission == 130

    @pytest.mark.unit
    async def test_rebuilds_missing_statement_from_orders(
        self, payout_service, delivered_payout, rider, db_session
    ):
        payout = await delivered_payout()
        rider_id, week_start = rider.id, payout.week_start
        await db_session.execute(delete(PayoutOrder))
        await db_session.execute(delete(RiderPayout))
        await db_session.commit()
        db_session.expunge_all()

        summary = await payout_service.generate_weekly_payouts(week_start=week_start)

        assert rider_id in summary.riders
        assert summary.orders_appended == 1
        [rebuilt] = await payout_service.list_rider_payouts(rider_id)
        assert (rebuilt.total_gross, rebuilt.total_commission, rebuilt.order_count) == (1300, 130, 1)


class TestMarkPaid:

    @pytest.mark.unit
    async def test_rider_marks_own_payout(self, payout_service, delivered_payout, rider, db_session, publisher):
        payout = await delivered_payout()

        paid = await payout_service.mark_paid(payout.id, PaidBy.RIDER, actor_user_id=rider.id)

        assert paid.status == PayoutStatus.PAID
        assert paid.marked_paid_by == PaidBy.RIDER
        assert paid.marked_paid_by_user_id == rider.id
        assert paid.paid_at is not None

        rider_payouts = (await db_session.execute(
            select(Transaction)
            .where(Transaction.type == TransactionType.RIDER_PAYOUT)
            .execution_options(populate_existing=True)
        )).scalars().all()
        assert [(t.status, t.payout_id) for t in rider_payouts] == [(TransactionStatus.COMPLETED, payout.id)]

        [event] = publisher.of_type(EventType.PAYOUT_PAID)
        assert event.user_id == rider.id
        assert event.data["reference"] == payout.payment_reference_code
        assert publisher.of_type(EventType.ACCOUNT_UNBLOCKED) == []

    @pytest.mark.unit
    async def test_rider_cannot_mark_someone_elses(self, payout_service, delivered_payout, second_rider):
        payout = await delivered_payout()
        with pytest.raises(PermissionDeniedError):
            await payout_service.mark_paid(payout.id, PaidBy.RIDER, actor_user_id=second_rider.id)

    @pytest.mark.unit
    async def test_marking_twice_is_noop(self, payout_service, delivered_payout, admin, publisher):
        payout = await delivered_payout()
        first = await payout_service.mark_paid(payout.id, PaidBy.ADMIN, actor_user_id=admin.id)
        paid_at = first.paid_at

        second = await payout_service.mark_paid(payout.id, PaidBy.ADMIN, actor_user_id=admin.id)

        assert second.paid_at == paid_at
        assert len(publisher.of_type(EventType.PAYOUT_PAID)) == 1

    @pytest.mark.unit
    async def test_rewards_pay_part_of_commission(self, payout_service, delivered_payout, rider, db_session):
        payout = await delivered_payout()
        wallets = WalletService(db_session)
        await wallets.credit(rider.id, 100, WalletTransactionType.STREAK_BONUS)

        paid = await payout_service.mark_paid(payout.id, PaidBy.RIDER, actor_user_id=rider.id, use_rewards=True)

        assert paid.rewards_applied == 100
        assert await wallets.get_balance(rider.id) == 0
        [line] = [entry for entry in await wallets.list_transactions(rider.id) if entry.amount < 0]
        assert line.type == WalletTransactionType.COMMISSION_PAYMENT
        assert line.payout_id == payout.id

    @pytest.mark.unit
    async def test_rewards_capped_at_commission(self, payout_service, delivered_payout, rider, db_session):
        payout = await delivered_payout()
        wallets = WalletService(db_session)
        await wallets.credit(rider.id, 1000, WalletTransactionType.STREAK_BONUS)

        paid = await payout_service.mark_paid(payout.id, PaidBy.RIDER, actor_user_id=rider.id, use_rewards=True)

        assert paid.rewards_applied == 130
        assert await wallets.get_balance(rider.id) == 870

    @pytest.mark.unit
    async def test_unknown_payout(self, payout_service):
        with pytest.raises(PayoutNotFoundError):
            await payout_service.mark_paid(9999, PaidBy.ADMIN)


class TestExternalConfirmation:

    @pytest.mark.unit
    async def test_confirm_by_reference(self, payout_service, delivered_payout):
        payout = await delivered_payout()

        paid = await payout_service.confirm_external_payment(payout.payment_reference_code, 130)

        assert paid.status == PayoutStatus.PAID
        assert paid.marked_paid_by == PaidBy.PAYSTACK
        assert paid.marked_paid_by_user_id is None

    @pytest.mark.unit
    async def test_unknown_reference(self, payout_service):
        with pytest.raises(PaymentConfirmationError):
            await payout_service.confirm_external_payment("9W000000000000", 130)

    @pytest.mark.unit
    async def test_underpayment_rejected(self, payout_service, delivered_payout):
        payout = await delivered_payout()

        with pytest.raises(PaymentConfirmationError):
            await payout_service.confirm_external_payment(payout.payment_reference_code, 129)
        assert payout.status == PayoutStatus.PENDING


class TestListings:

    @pytest.mark.unit
    async def test_pending_payouts_owe_commission(
        self, payout_service, delivered_payout, rider, second_rider
    ):
        payout = await delivered_payout()
        await payout_service.generate_weekly_payouts(week_start=payout.week_start)

        pending = await payout_service.pending_payouts_for_week(payout.week_start)

        assert [p.rider_id for p in pending] == [rider.id]

    @pytest.mark.unit
    async def test_payout_orders_listed(self, payout_service, delivered_payout, order_factory, deliver_order, customer, rider):
        payout = await delivered_payout()
        await deliver_order(await order_factory(customer, price=2000), rider)

        lines = await payout_service.get_payout_orders(payout.id)

        assert [line.gross_amount for line in lines] == [1300, 2000]
        assert all(line.service_type == "courier" for line in lines)

    @pytest.mark.unit
    async def test_list_payouts_by_status(self, payout_service, delivered_payout, admin):
        payout = await delivered_payout()
        await payout_service.mark_paid(payout.id, PaidBy.ADMIN, actor_user_id=admin.id)

        assert [p.id for p in await payout_service.list_payouts(status=PayoutStatus.PAID)] == [payout.id]
        assert await payout_service.list_payouts(status=PayoutStatus.PENDING) == []
