"""
Order Service - the order lifecycle state machine

    pending -> assigned -> picked_up -> delivering -> delivered
    pending | assigned -> cancelled

Write paths:
- accept (and accepting a price request) is a single conditional UPDATE on
  ``status = pending AND rider_id IS NULL``; zero rows means another rider won.
- every other write goes through the ORM, where ``Order.version`` turns a
  concurrent modification into StaleDataError, reported as a conflict.

Events are published only after the commit, and publishing never fails the
operation.
"""
import hmac
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    AccountBlockedError,
    InvalidStateTransitionError,
    NegotiationConflictError,
    OrderAlreadyAssignedError,
    OrderNotFoundError,
    OtpAlreadyIssuedError,
    OtpExpiredError,
    OtpMismatchError,
    OutsideServiceAreaError,
    PermissionDeniedError,
    StaleOrderStateError,
    ValidationException,
)
from app.core.geo import haversine_km
from app.core.logging import get_logger
from app.core.money import round_km
from app.db.models.order import (
    Location,
    NegotiationStatus,
    Order,
    OrderStatus,
    OrderTimelineEntry,
    PaymentMethod,
    ServiceType,
)
from app.db.models.user import User, UserRole, VehicleType
from app.db.models.wallet import WalletTransactionType
from app.domain.services.discount_policy import DiscountPolicy, GoldStatusDiscount
from app.domain.services.dispatch_service import DispatchService, vehicle_compatible
from app.domain.services.distance_service import (
    DistanceProvider,
    estimate_distance,
    get_distance_provider,
)
from app.domain.services.event_publisher import (
    EventPublisher,
    EventType,
    InMemoryEventPublisher,
    PublishResult,
    publish_safely,
)
from app.domain.services.fare_config_service import FareConfig, FareConfigService
from app.domain.services.ledger_service import LedgerService
from app.domain.services.pricing_service import PriceQuote, build_quote
from app.domain.services.rider_directory import RiderDirectory
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

# action -> (required current status, target status)
STATUS_ACTIONS: dict[str, tuple[OrderStatus, OrderStatus]] = {
    "pickup": (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP),
    "start": (OrderStatus.PICKED_UP, OrderStatus.DELIVERING),
    "deliver": (OrderStatus.DELIVERING, OrderStatus.DELIVERED),
}

CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.ASSIGNED)
TERMINAL_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

# ברירת מחדל לתמחור כשהלקוח לא בחר רכב
DEFAULT_PRICING_VEHICLE = VehicleType.MOTORBIKE.value


@dataclass(frozen=True)
class OrderDraft:
    pickup: Location
    dropoff: Location
    service_type: ServiceType = ServiceType.COURIER
    preferred_vehicle_type: Optional[str] = None
    price: Optional[int] = None
    package_description: Optional[str] = None
    use_wallet: bool = False


@dataclass(frozen=True)
class AvailableOrder:
    order: Order
    distance_km: float


@dataclass(frozen=True)
class IssuedOtp:
    order: Order
    code: str
    expires_at: datetime


def in_service_area(lat: float, lng: float) -> bool:
    return (
        settings.GEOFENCE_MIN_LAT <= lat <= settings.GEOFENCE_MAX_LAT
        and settings.GEOFENCE_MIN_LNG <= lng <= settings.GEOFENCE_MAX_LNG
    )


def _validate_price(price) -> int:
    if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
        raise ValidationException("Price must be a positive whole amount", field="price")
    return price


def _generate_otp() -> str:
    length = settings.DELIVERY_OTP_LENGTH
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


class OrderService:
    def __init__(
        self,
        db: AsyncSession,
        publisher: Optional[EventPublisher] = None,
        distance_provider: Optional[DistanceProvider] = None,
        discount_policy: Optional[DiscountPolicy] = None,
    ):
        self.db = db
        self.publisher = publisher or InMemoryEventPublisher()
        self.distance_provider = distance_provider or get_distance_provider()
        self._discount_policy = discount_policy
        self.wallets = WalletService(db)
        self.directory = RiderDirectory(db)

    # ---- helpers ----

    async def _config(self) -> FareConfig:
        return await FareConfigService(self.db).get_config()

    def _ledger(self, config: FareConfig) -> LedgerService:
        policy = self._discount_policy or GoldStatusDiscount(config.gold_discount_percent)
        return LedgerService(self.db, config, policy)

    async def _get_order(self, order_id: int) -> Order:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    def _timeline(self, order: Order, note: str, actor_id: Optional[int], now: datetime) -> None:
        self.db.add(OrderTimelineEntry(
            order_id=order.id,
            status=order.status,
            note=note,
            actor_id=actor_id,
            created_at=now,
        ))

    @asynccontextmanager
    async def _write(self, order_id: int):
        """Commit on success; a lost optimistic-version race becomes a conflict"""
        try:
            yield
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            logger.warning(
                "Order changed concurrently - write rejected",
                extra_data={"order_id": order_id},
            )
            raise StaleOrderStateError(order_id) from e
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(
                "Order write violated a constraint",
                extra_data={"order_id": order_id, "error": str(e.orig)},
            )
            raise StaleOrderStateError(order_id) from e
        except Exception:
            await self.db.rollback()
            raise

    async def _generate_order_code(self) -> str:
        while True:
            code = f"9W{secrets.randbelow(1_000_000):06d}"
            exists = await self.db.execute(select(Order.id).where(Order.order_code == code))
            if exists.scalar_one_or_none() is None:
                return code

    @staticmethod
    def _require_role(actor: User, *roles: UserRole) -> None:
        if actor.role not in roles:
            raise PermissionDeniedError(
                f"Action requires role {' or '.join(r.value for r in roles)}",
                details={"role": actor.role.value},
            )

    @staticmethod
    def _require_active_rider(rider: User) -> None:
        if rider.role != UserRole.RIDER:
            raise PermissionDeniedError("Only riders can perform this action")
        if rider.is_blocked or not rider.is_active:
            raise AccountBlockedError(rider.id, rider.blocked_reason)

    @staticmethod
    def _require_assigned_rider(order: Order, actor: User) -> None:
        if actor.role == UserRole.ADMIN:
            return
        if actor.role != UserRole.RIDER or order.rider_id != actor.id:
            raise PermissionDeniedError("Only the assigned rider can perform this action")

    async def _notify(self, user_id: Optional[int], event_type: EventType, data: dict) -> None:
        await publish_safely(self.publisher, user_id, event_type, data)

    # ---- quotes ----

    async def estimate_price(
        self,
        pickup_lat: float,
        pickup_lng: float,
        dropoff_lat: float,
        dropoff_lng: float,
        vehicle_type: Optional[str] = None,
    ) -> PriceQuote:
        config = await self._config()
        distance = await estimate_distance(
            self.distance_provider, pickup_lat, pickup_lng, dropoff_lat, dropoff_lng
        )
        return build_quote(
            distance.km, vehicle_type or DEFAULT_PRICING_VEHICLE, config, distance.is_fallback
        )

    # ---- create ----

    async def create_order(self, customer: User, draft: OrderDraft) -> Order:
        self._require_role(customer, UserRole.CUSTOMER)
        for name, point in (("pickup", draft.pickup), ("dropoff", draft.dropoff)):
            if not in_service_area(point.lat, point.lng):
                raise OutsideServiceAreaError(name, point.lat, point.lng)
        if draft.preferred_vehicle_type and draft.preferred_vehicle_type not in {v.value for v in VehicleType}:
            raise ValidationException("Unknown vehicle type", field="preferred_vehicle_type")
        if draft.price is not None:
            _validate_price(draft.price)

        config = await self._config()
        distance = await estimate_distance(
            self.distance_provider,
            draft.pickup.lat, draft.pickup.lng, draft.dropoff.lat, draft.dropoff.lng,
        )
        if draft.price is not None:
            price = draft.price
        else:
            quote = build_quote(
                distance.km, draft.preferred_vehicle_type or DEFAULT_PRICING_VEHICLE, config
            )
            price = quote.price

        now = utcnow()
        order = Order(
            order_code=await self._generate_order_code(),
            customer_id=customer.id,
            pickup_address=draft.pickup.address,
            pickup_lat=draft.pickup.lat,
            pickup_lng=draft.pickup.lng,
            dropoff_address=draft.dropoff.address,
            dropoff_lat=draft.dropoff.lat,
            dropoff_lng=draft.dropoff.lng,
            price=price,
            original_price=price,
            service_type=draft.service_type,
            preferred_vehicle_type=draft.preferred_vehicle_type,
            distance_km=round_km(distance.km) if distance.km else None,
            package_description=draft.package_description,
            status=OrderStatus.PENDING,
            negotiation_status=NegotiationStatus.NONE,
            payment_method=PaymentMethod.CASH,
            wallet_amount=0,
            created_at=now,
        )

        async with self._write(0):
            self.db.add(order)
            await self.db.flush()
            self._timeline(order, "Order created", customer.id, now)

            if draft.use_wallet:
                balance = await self.wallets.get_balance(customer.id)
                wallet_amount = min(balance, price)
                if wallet_amount > 0:
                    await self.wallets.apply_debit(
                        customer.id,
                        wallet_amount,
                        WalletTransactionType.ORDER_PAYMENT,
                        order_id=order.id,
                        description=f"Wallet payment for order {order.order_code}",
                    )
                    order.wallet_amount = wallet_amount
                    order.payment_method = (
                        PaymentMethod.WALLET if wallet_amount == price else PaymentMethod.SPLIT
                    )

        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "customer_id": customer.id,
                "price": order.price,
                "distance_km": order.distance_km,
                "distance_fallback": distance.is_fallback,
                "service_type": order.service_type.value,
                "wallet_amount": order.wallet_amount,
            },
        )

        await self._notify(customer.id, EventType.ORDER_CREATED, {
            "order_id": order.id,
            "order_code": order.order_code,
            "price": order.price,
            "status": order.status.value,
        })
        return order

    async def dispatch_new_order(self, order_id: int) -> PublishResult:
        """
        Offer a freshly created order to matching riders.

        Runs after the create request has returned (Celery task in production),
        so road-distance lookups per candidate never hold up the customer.
        """
        order = await self._get_order(order_id)
        if order.status != OrderStatus.PENDING or order.rider_id is not None:
            logger.info(
                "Order no longer pending - dispatch skipped",
                extra_data={"order_id": order.id, "status": order.status.value},
            )
            return PublishResult()
        config = await self._config()
        dispatcher = DispatchService(self.db, self.distance_provider, config, self.publisher)
        return await dispatcher.notify_new_order(order)

    # ---- reads ----

    async def get_order(self, actor: User, order_id: int) -> Order:
        order = await self._get_order(order_id)
        if actor.role == UserRole.ADMIN:
            return order
        if actor.role == UserRole.CUSTOMER and order.customer_id == actor.id:
            return order
        if actor.role == UserRole.RIDER and (
            order.rider_id == actor.id
            or order.negotiation_rider_id == actor.id
            or order.status == OrderStatus.PENDING
        ):
            return order
        raise PermissionDeniedError("Not allowed to view this order")

    async def get_timeline(self, order_id: int) -> list[OrderTimelineEntry]:
        result = await self.db.execute(
            select(OrderTimelineEntry)
            .where(OrderTimelineEntry.order_id == order_id)
            .order_by(OrderTimelineEntry.id)
        )
        return list(result.scalars().all())

    async def list_orders_for(self, actor: User, status: Optional[OrderStatus] = None, limit: int = 50) -> list[Order]:
        query = select(Order)
        if actor.role == UserRole.CUSTOMER:
            query = query.where(Order.customer_id == actor.id)
        elif actor.role == UserRole.RIDER:
            query = query.where(Order.rider_id == actor.id)
        if status is not None:
            query = query.where(Order.status == status)
        result = await self.db.execute(query.order_by(Order.id.desc()).limit(limit))
        return list(result.scalars().all())

    async def get_available_orders(
        self,
        rider: User,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> list[AvailableOrder]:
        """Pending orders the rider could accept, nearest first"""
        self._require_active_rider(rider)
        if lat is None or lng is None:
            location = await self.directory.get_location(rider.id)
            if location is None:
                raise ValidationException("Rider location is unknown", field="location")
            lat, lng = location.lat, location.lng

        config = await self._config()
        vehicle = rider.vehicle_type.value if rider.vehicle_type else None
        radius = config.effective_radius_km(rider.search_radius_km, vehicle)
        services = [ServiceType(s) for s in rider.services if s in {t.value for t in ServiceType}]

        result = await self.db.execute(
            select(Order).where(
                Order.status == OrderStatus.PENDING,
                Order.rider_id.is_(None),
                Order.service_type.in_(services),
                # בקשת מחיר פתוחה של רוכב אחר מסתירה את ההזמנה
                or_(
                    Order.negotiation_status != NegotiationStatus.REQUESTED,
                    Order.negotiation_rider_id == rider.id,
                ),
            ).order_by(Order.created_at.desc())
        )

        available = []
        for order in result.scalars().all():
            if not vehicle_compatible(order.service_type, order.preferred_vehicle_type, vehicle):
                continue
            km = haversine_km(lat, lng, order.pickup_lat, order.pickup_lng)
            if km <= radius:
                available.append(AvailableOrder(order=order, distance_km=round_km(km)))
        available.sort(key=lambda a: a.distance_km)
        return available

    # ---- accept (compare-and-swap) ----

    async def _claim(self, order_id: int, rider_id: int, services: list[ServiceType], extra_values: dict) -> bool:
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING,
                Order.rider_id.is_(None),
                Order.service_type.in_(services),
            )
            .values(
                rider_id=rider_id,
                status=OrderStatus.ASSIGNED,
                version=Order.version + 1,
                updated_at=utcnow(),
                **extra_values,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def accept_order(self, rider: User, order_id: int) -> Order:
        self._require_active_rider(rider)
        order = await self._get_order(order_id)

        if order.service_type.value not in rider.services:
            raise ValidationException(
                "Rider does not offer this service", field="service_type",
                details={"service_type": order.service_type.value},
            )
        vehicle = rider.vehicle_type.value if rider.vehicle_type else None
        if not vehicle_compatible(order.service_type, order.preferred_vehicle_type, vehicle):
            raise ValidationException("Vehicle does not match the requested tier", field="vehicle_type")

        rider_id = rider.id
        services = [ServiceType(s) for s in rider.services if s in {t.value for t in ServiceType}]
        now = utcnow()
        expired_requester: Optional[int] = None

        async with self._write(order_id):
            if not await self._claim(order_id, rider_id, services, {}):
                await self.db.rollback()
                await self.db.refresh(order)
                logger.warning(
                    "Accept lost the race",
                    extra_data={"order_id": order_id, "rider_id": rider_id, "current_rider_id": order.rider_id},
                )
                raise OrderAlreadyAssignedError(order_id)

            await self.db.refresh(order)
            if order.negotiation.is_outstanding:
                if order.negotiation_rider_id != rider.id:
                    expired_requester = order.negotiation_rider_id
                order.clear_negotiation(NegotiationStatus.EXPIRED, now)
            self._timeline(order, "Order accepted by rider", rider.id, now)
            rider.current_streak = (rider.current_streak or 0) + 1

        logger.info("Order accepted", extra_data={"order_id": order_id, "rider_id": rider.id})

        data = {"order_id": order.id, "rider_id": rider.id, "status": order.status.value, "price": order.price}
        await self._notify(order.customer_id, EventType.ORDER_ASSIGNED, data)
        await self._notify(rider.id, EventType.ORDER_ASSIGNED, data)
        if expired_requester:
            await self._notify(expired_requester, EventType.PRICE_CHANGE_REJECTED, {
                "order_id": order.id, "reason": "order_assigned_to_another_rider",
            })
        return order

    # ---- negotiation ----

    async def request_price_change(
        self,
        rider: User,
        order_id: int,
        requested_price: int,
        reason: Optional[str] = None,
    ) -> Order:
        self._require_active_rider(rider)
        _validate_price(requested_price)
        order = await self._get_order(order_id)

        if order.status != OrderStatus.PENDING or order.rider_id is not None:
            raise InvalidStateTransitionError(order_id, order.status.value, "price_change_requested")
        if order.service_type.value not in rider.services:
            raise ValidationException("Rider does not offer this service", field="service_type")
        if order.negotiation.is_outstanding:
            raise NegotiationConflictError(order_id)

        now = utcnow()
        async with self._write(order_id):
            order.negotiation_status = NegotiationStatus.REQUESTED
            order.negotiation_requested_price = requested_price
            order.negotiation_rider_id = rider.id
            order.negotiation_reason = reason
            order.negotiation_requested_at = now
            order.negotiation_responded_at = None
            self._timeline(order, f"Price change requested: {requested_price}", rider.id, now)

        logger.info(
            "Price change requested",
            extra_data={"order_id": order_id, "rider_id": rider.id, "requested_price": requested_price},
        )
        await self._notify(order.customer_id, EventType.PRICE_CHANGE_REQUESTED, {
            "order_id": order.id,
            "rider_id": rider.id,
            "current_price": order.price,
            "requested_price": requested_price,
            "reason": reason,
        })
        return order

    async def _expire_negotiation(self, order: Order, now: datetime) -> None:
        """Late response: record the negotiation as expired, then report the conflict"""
        requester = order.negotiation_rider_id
        async with self._write(order.id):
            order.clear_negotiation(NegotiationStatus.EXPIRED, now)
        await self._notify(requester, EventType.PRICE_CHANGE_REJECTED, {
            "order_id": order.id, "reason": "expired",
        })

    async def respond_to_price_request(self, customer: User, order_id: int, accept: bool) -> Order:
        self._require_role(customer, UserRole.CUSTOMER)
        order = await self._get_order(order_id)
        if order.customer_id != customer.id:
            raise PermissionDeniedError("Only the order's customer can respond")
        if not order.negotiation.is_outstanding:
            raise NegotiationConflictError(order_id, "There is no outstanding price change request")

        now = utcnow()
        if order.status != OrderStatus.PENDING or order.rider_id is not None:
            current = order.status.value
            await self._expire_negotiation(order, now)
            raise StaleOrderStateError(order_id, current)

        requester_id = order.negotiation_rider_id
        requested_price = order.negotiation_requested_price

        if not accept:
            async with self._write(order_id):
                order.clear_negotiation(NegotiationStatus.REJECTED, now)
                self._timeline(order, "Price change rejected by customer", customer.id, now)
            logger.info("Price change rejected", extra_data={"order_id": order_id, "rider_id": requester_id})
            await self._notify(requester_id, EventType.PRICE_CHANGE_REJECTED, {
                "order_id": order.id, "reason": "rejected_by_customer",
            })
            return order

        requester = await self.db.get(User, requester_id)
        if requester is None or requester.is_blocked:
            await self._expire_negotiation(order, now)
            raise ValidationException("The requesting rider is no longer available", field="rider_id")

        services = [ServiceType(s) for s in requester.services if s in {t.value for t in ServiceType}]
        async with self._write(order_id):
            claimed = await self._claim(order_id, requester_id, services, {
                "price": requested_price,
                "negotiation_status": NegotiationStatus.ACCEPTED,
                "negotiation_responded_at": now,
            })
            if not claimed:
                await self.db.rollback()
                await self.db.refresh(order)
                current = order.status.value
                if order.negotiation.is_outstanding:
                    await self._expire_negotiation(order, now)
                raise StaleOrderStateError(order_id, current)
            await self.db.refresh(order)
            self._timeline(order, f"Price change accepted: {requested_price}", customer.id, now)
            requester.current_streak = (requester.current_streak or 0) + 1

        logger.info(
            "Price change accepted",
            extra_data={"order_id": order_id, "rider_id": requester_id, "price": requested_price},
        )
        data = {"order_id": order.id, "rider_id": requester_id, "price": order.price, "status": order.status.value}
        await self._notify(requester_id, EventType.PRICE_CHANGE_ACCEPTED, data)
        await self._notify(customer.id, EventType.ORDER_ASSIGNED, data)
        await self._notify(requester_id, EventType.ORDER_ASSIGNED, data)
        return order

    # ---- progress ----

    async def _settle_if_needed(self, order: Order, now: datetime) -> None:
        if order.financial is None:
            config = await self._config()
            await self._ledger(config).settle_order(order, now)

    async def update_status(self, actor: User, order_id: int, action: str) -> Order:
        if action not in STATUS_ACTIONS:
            raise ValidationException(
                f"Unknown status action '{action}'", field="action",
                details={"allowed": sorted(STATUS_ACTIONS)},
            )
        order = await self._get_order(order_id)
        self._require_assigned_rider(order, actor)
        required, target = STATUS_ACTIONS[action]
        if order.status != required:
            raise InvalidStateTransitionError(order_id, order.status.value, target.value)

        now = utcnow()
        async with self._write(order_id):
            order.status = target
            if target == OrderStatus.DELIVERED:
                order.delivered_at = now
                await self._settle_if_needed(order, now)
            self._timeline(order, f"Status updated: {action}", actor.id, now)

        logger.info(
            "Order status updated",
            extra_data={"order_id": order_id, "status": target.value, "actor_id": actor.id},
        )
        data = {"order_id": order.id, "status": order.status.value}
        await self._notify(order.customer_id, EventType.ORDER_STATUS_UPDATED, data)
        if actor.id != order.rider_id:
            await self._notify(order.rider_id, EventType.ORDER_STATUS_UPDATED, data)
        return order

    async def generate_delivery_otp(
        self,
        rider: User,
        order_id: int,
        regenerate: bool = False,
        now: Optional[datetime] = None,
    ) -> IssuedOtp:
        order = await self._get_order(order_id)
        self._require_assigned_rider(order, rider)
        if order.status != OrderStatus.DELIVERING:
            raise InvalidStateTransitionError(order_id, order.status.value, "delivery_otp")

        now = now or utcnow()
        if order.otp_code and order.otp_expires_at and order.otp_expires_at > now and not regenerate:
            raise OtpAlreadyIssuedError(order_id)

        code = _generate_otp()
        expires_at = now + timedelta(minutes=settings.DELIVERY_OTP_TTL_MINUTES)
        async with self._write(order_id):
            order.otp_code = code
            order.otp_expires_at = expires_at
            order.otp_verified_at = None
            self._timeline(order, "Delivery code issued", rider.id, now)

        logger.info(
            "Delivery OTP issued",
            extra_data={"order_id": order_id, "expires_at": expires_at.isoformat()},
        )
        await self._notify(order.customer_id, EventType.DELIVERY_OTP, {
            "order_id": order.id,
            "code": code,
            "expires_at": expires_at.isoformat(),
        })
        return IssuedOtp(order=order, code=code, expires_at=expires_at)

    async def verify_delivery_otp(
        self,
        rider: User,
        order_id: int,
        code: str,
        recipient_name: Optional[str] = None,
        recipient_phone: Optional[str] = None,
        proof_photo_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        code = (code or "").strip()
        if not code.isdigit() or len(code) != settings.DELIVERY_OTP_LENGTH:
            raise ValidationException(
                f"Delivery code must be {settings.DELIVERY_OTP_LENGTH} digits", field="code"
            )

        order = await self._get_order(order_id)
        self._require_assigned_rider(order, rider)
        if order.status != OrderStatus.DELIVERING:
            raise InvalidStateTransitionError(order_id, order.status.value, OrderStatus.DELIVERED.value)
        if not order.otp_code or not order.otp_expires_at:
            raise ValidationException("No delivery code has been issued", field="code")

        now = now or utcnow()
        if now > order.otp_expires_at:
            logger.warning("Expired delivery OTP rejected", extra_data={"order_id": order_id})
            raise OtpExpiredError(order_id)
        if not hmac.compare_digest(order.otp_code, code):
            logger.warning("Wrong delivery OTP", extra_data={"order_id": order_id})
            raise OtpMismatchError(order_id)

        async with self._write(order_id):
            order.otp_verified_at = now
            order.otp_code = None
            order.delivered_at = now
            order.status = OrderStatus.DELIVERED
            if recipient_name:
                order.recipient_name = recipient_name
            if recipient_phone:
                order.recipient_phone = recipient_phone
            if proof_photo_url:
                order.proof_photo_url = proof_photo_url
            await self._settle_if_needed(order, now)
            self._timeline(order, "Delivery verified with code", rider.id, now)

        logger.info(
            "Delivery verified",
            extra_data={"order_id": order_id, "rider_id": order.rider_id},
        )
        data = {"order_id": order.id, "status": order.status.value, "delivered_at": now.isoformat()}
        await self._notify(order.customer_id, EventType.DELIVERY_VERIFIED, data)
        await self._notify(order.rider_id, EventType.DELIVERY_VERIFIED, data)
        return order

    async def update_delivery_proof(self, rider: User, order_id: int, proof_photo_url: str) -> Order:
        order = await self._get_order(order_id)
        self._require_assigned_rider(order, rider)
        if order.status not in (OrderStatus.DELIVERING, OrderStatus.DELIVERED):
            raise InvalidStateTransitionError(order_id, order.status.value, "delivery_proof")
        if not proof_photo_url:
            raise ValidationException("Proof URL is required", field="proof_photo_url")

        async with self._write(order_id):
            order.proof_photo_url = proof_photo_url

        await self._notify(order.customer_id, EventType.DELIVERY_PROOF_UPDATED, {
            "order_id": order.id, "proof_photo_url": proof_photo_url,
        })
        return order

    # ---- cancel / admin ----

    async def cancel_order(self, actor: User, order_id: int, reason: Optional[str] = None) -> Order:
        order = await self._get_order(order_id)
        is_admin = actor.role == UserRole.ADMIN
        is_owner = actor.role == UserRole.CUSTOMER and order.customer_id == actor.id
        is_assigned_rider = actor.role == UserRole.RIDER and order.rider_id == actor.id
        if not (is_admin or is_owner or is_assigned_rider):
            raise PermissionDeniedError("Not allowed to cancel this order")
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidStateTransitionError(order_id, order.status.value, OrderStatus.CANCELLED.value)

        now = utcnow()
        prior_rider_id = order.rider_id
        negotiating_rider_id = order.negotiation_rider_id if order.negotiation.is_outstanding else None
        refunded = 0

        async with self._write(order_id):
            if negotiating_rider_id is not None:
                order.clear_negotiation(NegotiationStatus.EXPIRED, now)
            order.status = OrderStatus.CANCELLED
            order.rider_id = None
            order.cancelled_at = now
            order.cancelled_by = actor.id
            order.cancellation_reason = reason

            if is_assigned_rider:
                actor.current_streak = 0

            if order.wallet_amount and order.wallet_refunded_at is None:
                await self.wallets.apply_credit(
                    order.customer_id,
                    order.wallet_amount,
                    WalletTransactionType.REFUND,
                    order_id=order.id,
                    description=f"Refund for cancelled order {order.order_code}",
                )
                order.wallet_refunded_at = now
                refunded = order.wallet_amount

            self._timeline(order, f"Cancelled: {reason}" if reason else "Cancelled", actor.id, now)

        logger.info(
            "Order cancelled",
            extra_data={
                "order_id": order_id,
                "actor_id": actor.id,
                "actor_role": actor.role.value,
                "prior_rider_id": prior_rider_id,
                "refunded": refunded,
            },
        )
        data = {"order_id": order.id, "status": order.status.value, "reason": reason, "refunded": refunded}
        await self._notify(order.customer_id, EventType.ORDER_CANCELLED, data)
        if prior_rider_id and prior_rider_id != actor.id:
            await self._notify(prior_rider_id, EventType.ORDER_CANCELLED, data)
        if negotiating_rider_id:
            await self._notify(negotiating_rider_id, EventType.PRICE_CHANGE_REJECTED, {
                "order_id": order.id, "reason": "order_cancelled",
            })
        return order

    async def admin_cancel_order(self, admin: User, order_id: int, reason: Optional[str] = None) -> Order:
        self._require_role(admin, UserRole.ADMIN)
        return await self.cancel_order(admin, order_id, reason or "Cancelled by admin")

    async def admin_update_order_price(self, admin: User, order_id: int, price: int) -> Order:
        """Authoritative price override; supersedes any negotiation"""
        self._require_role(admin, UserRole.ADMIN)
        _validate_price(price)
        order = await self._get_order(order_id)
        if order.status in TERMINAL_STATUSES:
            raise InvalidStateTransitionError(order_id, order.status.value, "price_update")

        now = utcnow()
        superseded_rider = order.negotiation_rider_id if order.negotiation.is_outstanding else None
        old_price = order.price
        async with self._write(order_id):
            order.price = price
            order.clear_negotiation(NegotiationStatus.ADMIN_UPDATED, now)
            self._timeline(order, f"Price updated by admin: {old_price} -> {price}", admin.id, now)

        logger.info(
            "Order price updated by admin",
            extra_data={"order_id": order_id, "admin_id": admin.id, "old_price": old_price, "price": price},
        )
        data = {"order_id": order.id, "status": order.status.value, "price": price}
        await self._notify(order.customer_id, EventType.ORDER_STATUS_UPDATED, data)
        await self._notify(order.rider_id, EventType.ORDER_STATUS_UPDATED, data)
        if superseded_rider:
            await self._notify(superseded_rider, EventType.PRICE_CHANGE_REJECTED, {
                "order_id": order.id, "reason": "admin_updated",
            })
        return order
