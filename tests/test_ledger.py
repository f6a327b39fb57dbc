"""
בדיקות להתחשבנות הזמנה שנמסרה - app/domain/services/ledger_service.py

ברוטו = עמלה + נטו לרוכב, שלוש תנועות ביקורת, רישום חד-פעמי.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.clock import utcnow
from app.core.exceptions import SettlementAlreadyPostedError
from app.db.models.order import OrderStatus, ServiceType
from app.db.models.rider_payout import PayoutOrder, RiderPayout
from app.db.models.transaction import Transaction, TransactionStatus, TransactionType
from app.domain.services.discount_policy import GoldStatusDiscount, NoDiscount
from app.domain.services.fare_config_service import FareConfig, FareConfigService
from app.domain.services.ledger_service import LedgerService, compute_split
from app.domain.services.order_service import OrderService
from app.domain.services.user_service import UserService


class TestComputeSplit:

    @pytest.mark.unit
    @pytest.mark.parametrize("gross,rate,expected", [
        (1300, 10, (130, 1170)),
        (1005, 10, (101, 904)),     # 100.5 -> 101
        (1300, 0, (0, 1300)),
        (1300, 100, (1300, 0)),
        (0, 10, (0, 0)),
    ])
    def test_split(self, gross, rate, expected):
        assert compute_split(gross, rate) == expected


class TestSettlement:

    @pytest.mark.unit
    async def test_delivery_writes_breakdown(self, order_factory, deliver_order, customer, rider):
        order = await deliver_order(await order_factory(customer, price=1300), rider)

        financial = order.financial
        assert financial.gross_amount == 1300
        assert financial.commission_rate_pct == 10.0
        assert financial.commission_amount == 130
        assert financial.rider_net_amount == 1170
        assert order.settled_at is not None

    @pytest.mark.unit
    async def test_three_audit_transactions(self, order_factory, deliver_order, customer, rider, db_session):
        order = await deliver_order(await order_factory(customer, price=1300), rider)

        result = await db_session.execute(
            select(Transaction).where(Transaction.order_id == order.id).order_by(Transaction.id)
        )
        rows = {t.reference: t for t in result.scalars().all()}

        assert set(rows) == {
            f"settlement:{order.id}:order_payment",
            f"settlement:{order.id}:commission",
            f"settlement:{order.id}:rider_payout",
        }
        payment = rows[f"settlement:{order.id}:order_payment"]
        commission = rows[f"settlement:{order.id}:commission"]
        payout = rows[f"settlement:{order.id}:rider_payout"]
        assert (payment.type, payment.status, payment.amount) == (
            TransactionType.ORDER_PAYMENT, TransactionStatus.COMPLETED, 1300
        )
        assert (commission.type, commission.status, commission.amount) == (
            TransactionType.COMMISSION, TransactionStatus.COMPLETED, 130
        )
        assert (payout.type, payout.status, payout.amount) == (
            TransactionType.RIDER_PAYOUT, TransactionStatus.PENDING, 1170
        )
        assert commission.commission_rate == 10.0
        assert all(t.currency == "NGN" for t in rows.values())
        assert all(t.rider_id == rider.id and t.customer_id == customer.id for t in rows.values())

    @pytest.mark.unit
    async def test_order_appended_to_weekly_payout(self, order_factory, deliver_order, customer, rider, db_session):
        order = await deliver_order(await order_factory(customer, price=1300), rider)

        line = (await db_session.execute(
            select(PayoutOrder).where(PayoutOrder.order_id == order.id)
        )).scalar_one()
        payout = await db_session.get(RiderPayout, line.payout_id)

        assert payout.rider_id == rider.id
        assert payout.week_start <= order.delivered_at < payout.week_end
        assert (payout.total_gross, payout.total_commission, payout.total_rider_net) == (1300, 130, 1170)
        assert payout.order_count == 1

    @pytest.mark.unit
    async def test_payout_totals_accumulate(self, order_factory, deliver_order, customer, rider, db_session):
        await deliver_order(await order_factory(customer, price=1300), rider)
        await deliver_order(await order_factory(customer, price=2000), rider)

        [payout] = (await db_session.execute(
            select(RiderPayout).where(RiderPayout.rider_id == rider.id)
        )).scalars().all()
        assert (payout.total_gross, payout.total_commission, payout.total_rider_net) == (3300, 330, 2970)
        assert payout.order_count == 2

    @pytest.mark.unit
    async def test_second_settlement_rejected(self, order_factory, deliver_order, customer, rider, db_session):
        """התחשבנות נרשמת פעם אחת בלבד"""
        order = await deliver_order(await order_factory(customer), rider)
        ledger = LedgerService(db_session, FareConfig.defaults(), NoDiscount())

        with pytest.raises(SettlementAlreadyPostedError):
            await ledger.settle_order(order, utcnow())

        count = (await db_session.execute(
            select(Transaction).where(Transaction.order_id == order.id)
        )).scalars().all()
        assert len(count) == 3

    @pytest.mark.unit
    async def test_undelivered_order_not_settleable(self, order_factory, order_service, customer, rider, db_session):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)
        ledger = LedgerService(db_session, FareConfig.defaults(), NoDiscount())

        with pytest.raises(ValueError):
            await ledger.settle_order(order, utcnow())
        assert order.status == OrderStatus.ASSIGNED

    @pytest.mark.unit
    async def test_commission_rate_from_settings(self, order_factory, deliver_order, customer, rider, admin, db_session):
        await FareConfigService(db_session).update_config(admin.id, {"commission_rate": 0})

        order = await deliver_order(await order_factory(customer, price=1300), rider)

        assert order.commission_amount == 0
        assert order.rider_net_amount == 1300


class TestGoldStatusDiscount:
    """הנחת עמלה לרוכב זהב - רק על נסיעות ורק כשהסטטוס בתוקף"""

    @pytest.mark.unit
    async def test_ride_commission_discounted(self, order_factory, deliver_order, customer, rider, db_session):
        await UserService(db_session).set_gold_status(rider.id, active=True)
        order = await order_factory(customer, service_type=ServiceType.RIDE, price=1300)

        order = await deliver_order(order, rider)

        # 130 * 5% = 6.5 -> 7
        assert order.commission_amount == 123
        assert order.rider_net_amount == 1177
        assert order.gross_amount == 1300

    @pytest.mark.unit
    async def test_courier_not_discounted(self, order_factory, deliver_order, customer, rider, db_session):
        await UserService(db_session).set_gold_status(rider.id, active=True)

        order = await deliver_order(await order_factory(customer, price=1300), rider)

        assert order.commission_amount == 130

    @pytest.mark.unit
    async def test_expired_gold_not_discounted(self, order_factory, deliver_order, customer, rider, db_session):
        await UserService(db_session).set_gold_status(
            rider.id, active=True, expires_at=utcnow() - timedelta(days=1)
        )
        order = await order_factory(customer, service_type=ServiceType.RIDE, price=1300)

        order = await deliver_order(order, rider)

        assert order.commission_amount == 130

    @pytest.mark.unit
    async def test_rider_percent_overrides_default(self, order_factory, deliver_order, customer, rider, db_session):
        await UserService(db_session).set_gold_status(rider.id, active=True, discount_percent=20)
        order = await order_factory(customer, service_type=ServiceType.RIDE, price=1300)

        order = await deliver_order(order, rider)

        assert order.commission_amount == 104

    @pytest.mark.unit
    async def test_policy_called_directly(self, order_factory, customer, rider):
        policy = GoldStatusDiscount(default_percent=5)
        order = await order_factory(customer, service_type=ServiceType.RIDE)
        now = utcnow()

        assert await policy(130, rider=rider, order=order, now=now) == 130
        rider.gold_status_active = True
        assert await policy(130, rider=rider, order=order, now=now) == 123


class TestDiscountClamping:

    @staticmethod
    def _service(db_session, publisher, distance_provider, policy):
        return OrderService(
            db_session, publisher=publisher, distance_provider=distance_provider, discount_policy=policy
        )

    @pytest.mark.unit
    @pytest.mark.parametrize("returned,expected", [
        (500, 130),    # לעולם לא מגדילה עמלה
        (-40, 0),      # לעולם לא שלילית
        (100, 100),
    ])
    async def test_policy_result_clamped(
        self, db_session, publisher, distance_provider, order_factory, customer, rider, returned, expected
    ):
        async def policy(commission, *, rider, order, now):
            return returned

        service = self._service(db_session, publisher, distance_provider, policy)
        order = await order_factory(customer, price=1300)
        await service.accept_order(rider, order.id)
        for action in ("pickup", "start", "deliver"):
            order = await service.update_status(rider, order.id, action)

        assert order.commission_amount == expected
        assert order.commission_amount + order.rider_net_amount == 1300
