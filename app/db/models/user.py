"""
User Model - Customers, Riders and Admins
"""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean, Float, JSON

from app.core.clock import utcnow
from app.db.database import Base, enum_values


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    RIDER = "rider"
    ADMIN = "admin"


class VehicleType(str, enum.Enum):
    BICYCLE = "bicycle"
    MOTORBIKE = "motorbike"
    TRICYCLE = "tricycle"
    CAR = "car"
    CAR_STANDARD = "car_standard"
    CAR_COMFORT = "car_comfort"
    CAR_PREMIUM = "car_premium"
    VAN = "van"

    @property
    def is_car_tier(self) -> bool:
        return self.value.startswith("car")


DEFAULT_SUPPORTED_SERVICES = ["courier", "ride"]


class User(Base):
    """Marketplace user. Rider-only columns stay NULL for customers and admins."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    phone_number = Column(String(20), unique=True, index=True, nullable=True)
    national_id = Column(String(32), index=True, nullable=True)
    role = Column(
        SQLEnum(UserRole, name="user_role", values_callable=enum_values),
        default=UserRole.CUSTOMER,
        nullable=False,
    )
    is_active = Column(Boolean, default=True, nullable=False)

    # Rider profile
    vehicle_type = Column(
        SQLEnum(VehicleType, name="vehicle_type", values_callable=enum_values),
        nullable=True,
    )
    supported_services = Column(JSON, nullable=True)
    search_radius_km = Column(Float, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)

    # Gold status - הנחה על עמלה לרוכבים מצטיינים, מוגבלת בזמן
    gold_status_active = Column(Boolean, default=False, nullable=False)
    gold_status_expires_at = Column(DateTime, nullable=True)
    gold_discount_percent = Column(Float, nullable=True)

    # חסימת תשלום - נקבעת רק ע"י job החסימה השבועי
    payment_blocked = Column(Boolean, default=False, nullable=False)
    payment_blocked_at = Column(DateTime, nullable=True)
    payment_blocked_reason = Column(String(500), nullable=True)
    account_deactivated = Column(Boolean, default=False, nullable=False)
    account_deactivated_at = Column(DateTime, nullable=True)
    account_deactivated_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_rider(self) -> bool:
        return self.role == UserRole.RIDER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_blocked(self) -> bool:
        """Blocked riders can neither see nor take orders"""
        return bool(self.payment_blocked or self.account_deactivated)

    @property
    def blocked_reason(self) -> Optional[str]:
        if self.account_deactivated:
            return self.account_deactivated_reason or "Account deactivated"
        if self.payment_blocked:
            return self.payment_blocked_reason or "Account blocked for unpaid commission"
        return None

    @property
    def services(self) -> list[str]:
        return list(self.supported_services or DEFAULT_SUPPORTED_SERVICES)

    def has_active_gold_status(self, now: datetime) -> bool:
        if not self.gold_status_active:
            return False
        return self.gold_status_expires_at is None or self.gold_status_expires_at > now
