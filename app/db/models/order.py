"""
Order Model - delivery / ride requests and their immutable timeline
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, Text,
    Enum as SQLEnum, CheckConstraint, Index,
)

from app.core.clock import utcnow
from app.db.database import Base, enum_values


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ServiceType(str, enum.Enum):
    COURIER = "courier"
    RIDE = "ride"


class NegotiationStatus(str, enum.Enum):
    NONE = "none"
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ADMIN_UPDATED = "admin_updated"
    # תשובה מאוחרת / ביטול בזמן בקשה פתוחה
    EXPIRED = "expired"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    WALLET = "wallet"
    SPLIT = "split"


@dataclass(frozen=True)
class Location:
    address: str
    lat: float
    lng: float


@dataclass(frozen=True)
class Negotiation:
    status: NegotiationStatus
    requested_price: Optional[int] = None
    requesting_rider_id: Optional[int] = None
    reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    @property
    def is_outstanding(self) -> bool:
        return self.status == NegotiationStatus.REQUESTED


@dataclass(frozen=True)
class FinancialBreakdown:
    """Settlement result; gross is always commission + rider net"""

    gross_amount: int
    commission_rate_pct: float
    commission_amount: int
    rider_net_amount: int

    def __post_init__(self) -> None:
        if self.commission_amount < 0 or self.rider_net_amount < 0:
            raise ValueError("settlement amounts must not be negative")
        if self.gross_amount != self.commission_amount + self.rider_net_amount:
            raise ValueError("gross must equal commission + rider net")


_status_type = SQLEnum(OrderStatus, name="order_status", values_callable=enum_values)


class Order(Base):
    """
    One delivery or ride request.

    ``version`` is SQLAlchemy's optimistic concurrency token: every ORM flush
    is conditional on the version it loaded, so a concurrent writer surfaces
    as a StaleDataError instead of a lost update.
    """

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_code = Column(String(12), unique=True, nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    pickup_address = Column(Text, nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_address = Column(Text, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)

    price = Column(Integer, nullable=False)
    original_price = Column(Integer, nullable=False)
    service_type = Column(
        SQLEnum(ServiceType, name="service_type", values_callable=enum_values),
        default=ServiceType.COURIER,
        nullable=False,
    )
    preferred_vehicle_type = Column(String(20), nullable=True)
    distance_km = Column(Float, nullable=True)
    package_description = Column(Text, nullable=True)

    status = Column(_status_type, default=OrderStatus.PENDING, nullable=False, index=True)

    # Negotiation
    negotiation_status = Column(
        SQLEnum(NegotiationStatus, name="negotiation_status", values_callable=enum_values),
        default=NegotiationStatus.NONE,
        nullable=False,
    )
    negotiation_requested_price = Column(Integer, nullable=True)
    negotiation_rider_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    negotiation_reason = Column(String(500), nullable=True)
    negotiation_requested_at = Column(DateTime, nullable=True)
    negotiation_responded_at = Column(DateTime, nullable=True)

    # Delivery confirmation
    otp_code = Column(String(8), nullable=True)
    otp_expires_at = Column(DateTime, nullable=True)
    otp_verified_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    proof_photo_url = Column(Text, nullable=True)
    recipient_name = Column(String(150), nullable=True)
    recipient_phone = Column(String(20), nullable=True)

    # Payment at creation
    payment_method = Column(
        SQLEnum(PaymentMethod, name="payment_method", values_callable=enum_values),
        default=PaymentMethod.CASH,
        nullable=False,
    )
    wallet_amount = Column(Integer, default=0, nullable=False)
    wallet_refunded_at = Column(DateTime, nullable=True)

    # Settlement - נכתב פעם אחת במעבר ל-delivered
    gross_amount = Column(Integer, nullable=True)
    commission_rate_pct = Column(Float, nullable=True)
    commission_amount = Column(Integer, nullable=True)
    rider_net_amount = Column(Integer, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "gross_amount IS NULL OR status = 'delivered'",
            name="ck_orders_financial_only_when_delivered",
        ),
        CheckConstraint(
            "gross_amount IS NULL OR gross_amount = commission_amount + rider_net_amount",
            name="ck_orders_money_conserved",
        ),
        CheckConstraint(
            "(status IN ('pending', 'cancelled') AND rider_id IS NULL) "
            "OR (status NOT IN ('pending', 'cancelled') AND rider_id IS NOT NULL)",
            name="ck_orders_rider_matches_status",
        ),
        CheckConstraint("price > 0", name="ck_orders_price_positive"),
        Index("ix_orders_status_service_type", "status", "service_type"),
    )

    @property
    def pickup(self) -> Location:
        return Location(self.pickup_address, self.pickup_lat, self.pickup_lng)

    @property
    def dropoff(self) -> Location:
        return Location(self.dropoff_address, self.dropoff_lat, self.dropoff_lng)

    @property
    def negotiation(self) -> Negotiation:
        return Negotiation(
            status=self.negotiation_status or NegotiationStatus.NONE,
            requested_price=self.negotiation_requested_price,
            requesting_rider_id=self.negotiation_rider_id,
            reason=self.negotiation_reason,
            requested_at=self.negotiation_requested_at,
            responded_at=self.negotiation_responded_at,
        )

    @property
    def financial(self) -> Optional[FinancialBreakdown]:
        if self.gross_amount is None:
            return None
        return FinancialBreakdown(
            gross_amount=self.gross_amount,
            commission_rate_pct=self.commission_rate_pct,
            commission_amount=self.commission_amount,
            rider_net_amount=self.rider_net_amount,
        )

    def apply_financial(self, breakdown: FinancialBreakdown, settled_at: datetime) -> None:
        """Write the settlement once. A second write is a programming error."""
        if self.gross_amount is not None:
            raise ValueError(f"order {self.id} already carries a settlement")
        if self.status != OrderStatus.DELIVERED:
            raise ValueError("settlement requires a delivered order")
        self.gross_amount = breakdown.gross_amount
        self.commission_rate_pct = breakdown.commission_rate_pct
        self.commission_amount = breakdown.commission_amount
        self.rider_net_amount = breakdown.rider_net_amount
        self.settled_at = settled_at

    def clear_negotiation(self, status: NegotiationStatus, now: datetime) -> None:
        self.negotiation_status = status
        self.negotiation_requested_price = None
        self.negotiation_rider_id = None
        self.negotiation_reason = None
        self.negotiation_responded_at = now


class OrderTimelineEntry(Base):
    """Append-only audit trail; rows are never updated"""

    __tablename__ = "order_timeline"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(_status_type, nullable=False)
    note = Column(String(500), nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
