"""
בדיקות למכונת המצבים של הזמנות - app/domain/services/order_service.py

pending -> assigned -> picked_up -> delivering -> delivered
pending | assigned -> cancelled
"""
import pytest
from sqlalchemy import select

from app.core.exceptions import (
    AccountBlockedError,
    ErrorCode,
    InvalidStateTransitionError,
    OrderAlreadyAssignedError,
    OrderNotFoundError,
    OutsideServiceAreaError,
    PermissionDeniedError,
    ValidationException,
)
from app.db.models.order import (
    Location,
    NegotiationStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    ServiceType,
)
from app.db.models.user import UserRole, VehicleType
from app.db.models.wallet import WalletTransactionType
from app.domain.services.event_publisher import EventType
from app.domain.services.fare_config_service import FareConfig
from app.domain.services.order_service import OrderDraft
from app.domain.services.pricing_service import calculate_price
from app.domain.services.wallet_service import WalletService
from tests.conftest import ABUJA, IKEJA, IKEJA_MID, IKEJA_NEARBY, VICTORIA_ISLAND, YABA


# ============================================================================
# create
# ============================================================================


class TestCreateOrder:

    @pytest.mark.unit
    async def test_create_pending_order(self, order_service, customer, publisher):
        order = await order_service.create_order(customer, OrderDraft(
            pickup=IKEJA, dropoff=YABA, price=1500, package_description="Documents",
        ))

        assert order.status == OrderStatus.PENDING
        assert order.rider_id is None
        assert order.price == order.original_price == 1500
        assert order.order_code.startswith("9W") and len(order.order_code) == 8
        assert order.negotiation_status == NegotiationStatus.NONE
        assert order.payment_method == PaymentMethod.CASH
        assert order.distance_km > 0

        created = publisher.of_type(EventType.ORDER_CREATED)
        assert [e.user_id for e in created] == [customer.id]
        assert created[0].data["order_code"] == order.order_code

    @pytest.mark.unit
    async def test_price_computed_when_not_given(self, order_service, customer):
        order = await order_service.create_order(customer, OrderDraft(pickup=IKEJA, dropoff=YABA))

        expected = calculate_price(order.distance_km, VehicleType.MOTORBIKE.value, FareConfig.defaults())
        assert order.price == expected

    @pytest.mark.unit
    async def test_price_uses_preferred_vehicle(self, order_service, customer):
        order = await order_service.create_order(customer, OrderDraft(
            pickup=IKEJA, dropoff=YABA, service_type=ServiceType.RIDE,
            preferred_vehicle_type=VehicleType.VAN.value,
        ))

        expected = calculate_price(order.distance_km, VehicleType.VAN.value, FareConfig.defaults())
        assert order.price == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("pickup,dropoff,field", [
        (ABUJA, YABA, "pickup"),
        (IKEJA, ABUJA, "dropoff"),
    ])
    async def test_outside_service_area_rejected(self, order_service, customer, db_session, pickup, dropoff, field):
        with pytest.raises(OutsideServiceAreaError) as exc_info:
            await order_service.create_order(customer, OrderDraft(pickup=pickup, dropoff=dropoff))

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == ErrorCode.ORDER_OUTSIDE_SERVICE_AREA
        assert exc_info.value.details["field"] == field
        assert (await db_session.execute(select(Order))).scalars().all() == []

    @pytest.mark.unit
    async def test_only_customers_create_orders(self, order_service, rider):
        with pytest.raises(PermissionDeniedError):
            await order_service.create_order(rider, OrderDraft(pickup=IKEJA, dropoff=YABA))

    @pytest.mark.unit
    @pytest.mark.parametrize("draft_kwargs", [
        {"preferred_vehicle_type": "hovercraft"},
        {"price": 0},
        {"price": -100},
    ])
    async def test_invalid_draft_rejected(self, order_service, customer, draft_kwargs):
        with pytest.raises(ValidationException):
            await order_service.create_order(
                customer, OrderDraft(pickup=IKEJA, dropoff=YABA, **draft_kwargs)
            )

    @pytest.mark.unit
    async def test_timeline_records_creation(self, order_service, order_factory, customer):
        order = await order_factory(customer)

        timeline = await order_service.get_timeline(order.id)

        assert [(t.status, t.note) for t in timeline] == [(OrderStatus.PENDING, "Order created")]
        assert timeline[0].actor_id == customer.id


class TestWalletPayment:
    """תשלום מהארנק בעת יצירה - מלא או מפוצל"""

    @pytest.mark.unit
    async def test_partial_wallet_payment_is_split(self, order_factory, customer, db_session):
        wallets = WalletService(db_session)
        await wallets.credit(customer.id, 500, WalletTransactionType.REFERRAL_REWARD)

        order = await order_factory(customer, price=1300, use_wallet=True)

        assert order.wallet_amount == 500
        assert order.payment_method == PaymentMethod.SPLIT
        assert await wallets.get_balance(customer.id) == 0

    @pytest.mark.unit
    async def test_full_wallet_payment(self, order_factory, customer, db_session):
        wallets = WalletService(db_session)
        await wallets.credit(customer.id, 2000, WalletTransactionType.REFERRAL_REWARD)

        order = await order_factory(customer, price=1300, use_wallet=True)

        assert order.wallet_amount == 1300
        assert order.payment_method == PaymentMethod.WALLET
        assert await wallets.get_balance(customer.id) == 700

    @pytest.mark.unit
    async def test_empty_wallet_stays_cash(self, order_factory, customer):
        order = await order_factory(customer, use_wallet=True)

        assert order.wallet_amount == 0
        assert order.payment_method == PaymentMethod.CASH


# ============================================================================
# reads
# ============================================================================


class TestGetOrder:

    @pytest.mark.unit
    async def test_visibility_rules(self, order_service, order_factory, customer, rider, admin, user_factory):
        order = await order_factory(customer)
        stranger = await user_factory(role=UserRole.CUSTOMER)

        assert (await order_service.get_order(customer, order.id)).id == order.id
        assert (await order_service.get_order(admin, order.id)).id == order.id
        # רוכב רואה הזמנה פתוחה
        assert (await order_service.get_order(rider, order.id)).id == order.id
        with pytest.raises(PermissionDeniedError):
            await order_service.get_order(stranger, order.id)

    @pytest.mark.unit
    async def test_rider_cannot_view_someone_elses_assignment(
        self, order_service, order_factory, customer, rider, second_rider
    ):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        with pytest.raises(PermissionDeniedError):
            await order_service.get_order(second_rider, order.id)

    @pytest.mark.unit
    async def test_unknown_order(self, order_service, admin):
        with pytest.raises(OrderNotFoundError) as exc_info:
            await order_service.get_order(admin, 424242)
        assert exc_info.value.error_code == ErrorCode.ORDER_NOT_FOUND

    @pytest.mark.unit
    async def test_list_orders_scoped_to_actor(
        self, order_service, order_factory, customer, rider, admin, user_factory
    ):
        other = await user_factory(role=UserRole.CUSTOMER)
        mine = await order_factory(customer)
        theirs = await order_factory(other)
        await order_service.accept_order(rider, theirs.id)

        assert [o.id for o in await order_service.list_orders_for(customer)] == [mine.id]
        assert [o.id for o in await order_service.list_orders_for(rider)] == [theirs.id]
        assert [o.id for o in await order_service.list_orders_for(admin)] == [theirs.id, mine.id]
        pending = await order_service.list_orders_for(admin, status=OrderStatus.PENDING)
        assert [o.id for o in pending] == [mine.id]


# ============================================================================
# accept
# ============================================================================


class TestAcceptOrder:

    @pytest.mark.unit
    async def test_accept_assigns_rider(self, order_service, order_factory, customer, rider, publisher):
        order = await order_factory(customer)

        accepted = await order_service.accept_order(rider, order.id)

        assert accepted.status == OrderStatus.ASSIGNED
        assert accepted.rider_id == rider.id
        assert rider.current_streak == 1
        assigned = publisher.of_type(EventType.ORDER_ASSIGNED)
        assert {e.user_id for e in assigned} == {customer.id, rider.id}

    @pytest.mark.unit
    async def test_second_accept_loses(self, order_service, order_factory, customer, rider, second_rider, db_session):
        """שני רוכבים על אותה הזמנה - רק אחד זוכה"""
        order = await order_factory(customer)
        order_id, rider_id, second_id = order.id, rider.id, second_rider.id
        await order_service.accept_order(rider, order_id)

        with pytest.raises(OrderAlreadyAssignedError) as exc_info:
            await order_service.accept_order(second_rider, order_id)

        assert exc_info.value.status_code == 409
        assert exc_info.value.error_code == ErrorCode.ORDER_ALREADY_ASSIGNED
        await db_session.refresh(order)
        assert order.rider_id == rider_id
        assert order.rider_id != second_id
        assert order.status == OrderStatus.ASSIGNED

    @pytest.mark.unit
    async def test_blocked_rider_cannot_accept(self, order_service, order_factory, customer, rider, db_session):
        order = await order_factory(customer)
        rider.payment_blocked = True
        await db_session.commit()

        with pytest.raises(AccountBlockedError):
            await order_service.accept_order(rider, order.id)

    @pytest.mark.unit
    async def test_customer_cannot_accept(self, order_service, order_factory, customer):
        order = await order_factory(customer)
        with pytest.raises(PermissionDeniedError):
            await order_service.accept_order(customer, order.id)

    @pytest.mark.unit
    async def test_unsupported_service_rejected(self, order_service, order_factory, customer, user_factory):
        ride_only = await user_factory(role=UserRole.RIDER, supported_services=["ride"])
        order = await order_factory(customer, service_type=ServiceType.COURIER)

        with pytest.raises(ValidationException) as exc_info:
            await order_service.accept_order(ride_only, order.id)
        assert exc_info.value.details["field"] == "service_type"

    @pytest.mark.unit
    async def test_car_tier_must_match(self, order_service, order_factory, customer, user_factory):
        comfort = await user_factory(role=UserRole.RIDER, vehicle_type=VehicleType.CAR_COMFORT)
        motorbike = await user_factory(role=UserRole.RIDER, vehicle_type=VehicleType.MOTORBIKE)
        order = await order_factory(
            customer, service_type=ServiceType.RIDE,
            preferred_vehicle_type=VehicleType.CAR_COMFORT.value,
        )

        with pytest.raises(ValidationException):
            await order_service.accept_order(motorbike, order.id)
        accepted = await order_service.accept_order(comfort, order.id)
        assert accepted.rider_id == comfort.id


# ============================================================================
# status progression
# ============================================================================


class TestUpdateStatus:

    @pytest.mark.unit
    async def test_full_progression(self, order_service, order_factory, customer, rider, publisher):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        for action, expected in (
            ("pickup", OrderStatus.PICKED_UP),
            ("start", OrderStatus.DELIVERING),
            ("deliver", OrderStatus.DELIVERED),
        ):
            order = await order_service.update_status(rider, order.id, action)
            assert order.status == expected

        assert order.delivered_at is not None
        assert order.financial is not None
        assert order.financial.gross_amount == 1300
        updates = [e for e in publisher.for_user(customer.id) if e.type == EventType.ORDER_STATUS_UPDATED]
        assert [e.data["status"] for e in updates] == ["picked_up", "delivering", "delivered"]

        timeline = await order_service.get_timeline(order.id)
        assert [t.status for t in timeline] == [
            OrderStatus.PENDING,
            OrderStatus.ASSIGNED,
            OrderStatus.PICKED_UP,
            OrderStatus.DELIVERING,
            OrderStatus.DELIVERED,
        ]

    @pytest.mark.unit
    async def test_skipping_a_step_rejected(self, order_service, order_factory, customer, rider):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await order_service.update_status(rider, order.id, "start")

        assert exc_info.value.details["current_status"] == "assigned"
        assert exc_info.value.details["target_status"] == "delivering"

    @pytest.mark.unit
    async def test_double_delivery_rejected(self, order_factory, deliver_order, order_service, customer, rider):
        """מסירה שנייה נדחית ואינה יוצרת התחשבנות נוספת"""
        order = await deliver_order(await order_factory(customer), rider)

        with pytest.raises(InvalidStateTransitionError):
            await order_service.update_status(rider, order.id, "deliver")

    @pytest.mark.unit
    async def test_only_assigned_rider_progresses(self, order_service, order_factory, customer, rider, second_rider):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        with pytest.raises(PermissionDeniedError):
            await order_service.update_status(second_rider, order.id, "pickup")
        with pytest.raises(PermissionDeniedError):
            await order_service.update_status(customer, order.id, "pickup")

    @pytest.mark.unit
    async def test_admin_may_progress(self, order_service, order_factory, customer, rider, admin, publisher):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        order = await order_service.update_status(admin, order.id, "pickup")

        assert order.status == OrderStatus.PICKED_UP
        rider_updates = [e for e in publisher.for_user(rider.id) if e.type == EventType.ORDER_STATUS_UPDATED]
        assert len(rider_updates) == 1

    @pytest.mark.unit
    async def test_unknown_action(self, order_service, order_factory, customer, rider):
        order = await order_factory(customer)
        with pytest.raises(ValidationException) as exc_info:
            await order_service.update_status(rider, order.id, "teleport")
        assert exc_info.value.details["allowed"] == ["deliver", "pickup", "start"]


# ============================================================================
# cancel
# ============================================================================


class TestCancelOrder:

    @pytest.mark.unit
    async def test_customer_cancels_pending(self, order_service, order_factory, customer, publisher):
        order = await order_factory(customer)

        cancelled = await order_service.cancel_order(customer, order.id, "Changed my mind")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_by == customer.id
        assert cancelled.cancellation_reason == "Changed my mind"
        assert publisher.of_type(EventType.ORDER_CANCELLED)[0].user_id == customer.id

    @pytest.mark.unit
    async def test_assigned_rider_cancels(self, order_service, order_factory, customer, rider, publisher):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        cancelled = await order_service.cancel_order(rider, order.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.rider_id is None
        assert rider.current_streak == 0
        # הרוכב שביטל לא מקבל הודעה על הביטול של עצמו
        assert [e.user_id for e in publisher.of_type(EventType.ORDER_CANCELLED)] == [customer.id]

    @pytest.mark.unit
    async def test_customer_cancel_notifies_assigned_rider(
        self, order_service, order_factory, customer, rider, publisher
    ):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        await order_service.cancel_order(customer, order.id)

        assert {e.user_id for e in publisher.of_type(EventType.ORDER_CANCELLED)} == {customer.id, rider.id}

    @pytest.mark.unit
    async def test_cannot_cancel_after_pickup(self, order_service, order_factory, customer, rider):
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)
        await order_service.update_status(rider, order.id, "pickup")

        with pytest.raises(InvalidStateTransitionError):
            await order_service.cancel_order(customer, order.id)

    @pytest.mark.unit
    async def test_strangers_cannot_cancel(
        self, order_service, order_factory, customer, second_rider, user_factory
    ):
        order = await order_factory(customer)
        stranger = await user_factory(role=UserRole.CUSTOMER)

        with pytest.raises(PermissionDeniedError):
            await order_service.cancel_order(stranger, order.id)
        with pytest.raises(PermissionDeniedError):
            await order_service.cancel_order(second_rider, order.id)

    @pytest.mark.unit
    async def test_cancel_refunds_wallet(self, order_service, order_factory, customer, db_session, publisher):
        wallets = WalletService(db_session)
        await wallets.credit(customer.id, 1000, WalletTransactionType.REFERRAL_REWARD)
        order = await order_factory(customer, price=1300, use_wallet=True)
        assert await wallets.get_balance(customer.id) == 0

        cancelled = await order_service.cancel_order(customer, order.id)

        assert await wallets.get_balance(customer.id) == 1000
        assert cancelled.wallet_refunded_at is not None
        assert publisher.of_type(EventType.ORDER_CANCELLED)[0].data["refunded"] == 1000
        lines = await wallets.list_transactions(customer.id)
        assert lines[0].type == WalletTransactionType.REFUND
        assert lines[0].amount == 1000

    @pytest.mark.unit
    async def test_admin_cancel_default_reason(self, order_service, order_factory, customer, admin):
        order = await order_factory(customer)

        cancelled = await order_service.admin_cancel_order(admin, order.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "Cancelled by admin"

    @pytest.mark.unit
    async def test_admin_cancel_requires_admin(self, order_service, order_factory, customer):
        order = await order_factory(customer)
        with pytest.raises(PermissionDeniedError):
            await order_service.admin_cancel_order(customer, order.id)


# ============================================================================
# available orders for a rider
# ============================================================================


class TestAvailableOrders:

    @pytest.mark.unit
    async def test_nearest_first_within_radius(self, order_service, order_factory, customer, rider, go_online):
        await go_online(rider, *IKEJA_NEARBY)
        near = await order_factory(customer, pickup=IKEJA)
        mid = await order_factory(customer, pickup=Location("Agidingbi Road", *IKEJA_MID))
        await order_factory(customer, pickup=VICTORIA_ISLAND)

        available = await order_service.get_available_orders(rider)

        assert [a.order.id for a in available] == [near.id, mid.id]
        assert available[0].distance_km == pytest.approx(1.1, abs=0.1)

    @pytest.mark.unit
    async def test_explicit_location_overrides_presence(self, order_service, order_factory, customer, rider):
        order = await order_factory(customer, pickup=VICTORIA_ISLAND)

        available = await order_service.get_available_orders(
            rider, lat=VICTORIA_ISLAND.lat, lng=VICTORIA_ISLAND.lng
        )

        assert [a.order.id for a in available] == [order.id]

    @pytest.mark.unit
    async def test_personal_radius_respected(self, order_service, order_factory, customer, user_factory, go_online):
        short_range = await user_factory(role=UserRole.RIDER, search_radius_km=3.0)
        await go_online(short_range, *IKEJA_MID)
        await order_factory(customer, pickup=IKEJA)

        assert await order_service.get_available_orders(short_range) == []

    @pytest.mark.unit
    async def test_assigned_orders_hidden(self, order_service, order_factory, customer, rider, second_rider, go_online):
        await go_online(second_rider, *IKEJA_NEARBY)
        order = await order_factory(customer)
        await order_service.accept_order(rider, order.id)

        assert await order_service.get_available_orders(second_rider) == []

    @pytest.mark.unit
    async def test_open_negotiation_hides_order_from_others(
        self, order_service, order_factory, customer, rider, second_rider, go_online
    ):
        await go_online(rider, *IKEJA_NEARBY)
        await go_online(second_rider, *IKEJA_NEARBY)
        order = await order_factory(customer)
        await order_service.request_price_change(second_rider, order.id, 1600)

        assert await order_service.get_available_orders(rider) == []
        mine = await order_service.get_available_orders(second_rider)
        assert [a.order.id for a in mine] == [order.id]

    @pytest.mark.unit
    async def test_car_tier_filter(self, order_service, order_factory, customer, rider, user_factory, go_online):
        premium = await user_factory(role=UserRole.RIDER, vehicle_type=VehicleType.CAR_PREMIUM)
        await go_online(rider, *IKEJA_NEARBY)
        await go_online(premium, *IKEJA_NEARBY)
        order = await order_factory(
            customer, service_type=ServiceType.RIDE,
            preferred_vehicle_type=VehicleType.CAR_PREMIUM.value,
        )

        assert await order_service.get_available_orders(rider) == []
        assert [a.order.id for a in await order_service.get_available_orders(premium)] == [order.id]

    @pytest.mark.unit
    async def test_unknown_location_rejected(self, order_service, rider):
        with pytest.raises(ValidationException) as exc_info:
            await order_service.get_available_orders(rider)
        assert exc_info.value.details["field"] == "location"

    @pytest.mark.unit
    async def test_blocked_rider_sees_nothing(self, order_service, rider, db_session):
        rider.account_deactivated = True
        await db_session.commit()

        with pytest.raises(AccountBlockedError):
            await order_service.get_available_orders(rider, lat=IKEJA.lat, lng=IKEJA.lng)
