"""
User Service - registration and rider profile management
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ConflictException,
    CredentialsBlockedError,
    ErrorCode,
    UserNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.order import ServiceType
from app.db.models.user import User, UserRole, VehicleType
from app.domain.services.blocking_service import is_credential_blocked
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id)
        if not user:
            raise UserNotFoundError(user_id)
        return user

    async def register_user(
        self,
        role: UserRole,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        national_id: Optional[str] = None,
        vehicle_type: Optional[VehicleType] = None,
        supported_services: Optional[list[str]] = None,
        search_radius_km: Optional[float] = None,
    ) -> User:
        """
        Create a customer or rider account.

        Credentials on the deny-list (copied there when a rider was blocked)
        cannot be used to register again.

        Raises:
            CredentialsBlockedError: email, phone or national id is deny-listed
            ConflictException: email or phone already registered
        """
        if not email and not phone_number:
            raise ValidationException("Email or phone number is required", field="email")
        email = email.strip().lower() if email else None

        if await is_credential_blocked(self.db, email, phone_number, national_id):
            logger.warning(
                "Registration with deny-listed credentials rejected",
                extra_data={
                    "role": role.value,
                    "phone": PhoneNumberValidator.mask(phone_number) if phone_number else None,
                },
            )
            raise CredentialsBlockedError()

        conditions = []
        if email:
            conditions.append(User.email == email)
        if phone_number:
            conditions.append(User.phone_number == phone_number)
        existing = await self.db.execute(select(User.id).where(or_(*conditions)).limit(1))
        if existing.scalar_one_or_none() is not None:
            raise ConflictException("User already exists", error_code=ErrorCode.USER_ALREADY_EXISTS)

        if role == UserRole.RIDER:
            if vehicle_type is None:
                raise ValidationException("Riders must declare a vehicle type", field="vehicle_type")
            services = supported_services or [s.value for s in ServiceType]
            unknown = set(services) - {s.value for s in ServiceType}
            if unknown:
                raise ValidationException(
                    "Unknown service type", field="supported_services",
                    details={"unknown": sorted(unknown)},
                )
            if search_radius_km is not None and search_radius_km <= 0:
                raise ValidationException("Search radius must be positive", field="search_radius_km")
        else:
            vehicle_type, services, search_radius_km = None, None, None

        user = User(
            role=role,
            name=name,
            email=email,
            phone_number=phone_number,
            national_id=national_id,
            vehicle_type=vehicle_type,
            supported_services=services,
            search_radius_km=search_radius_km,
        )
        self.db.add(user)
        try:
            await self.db.flush()
            await WalletService(self.db).get_or_create_wallet(user.id)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictException(
                "User already exists", error_code=ErrorCode.USER_ALREADY_EXISTS
            ) from e

        logger.info("User registered", extra_data={"user_id": user.id, "role": role.value})
        return user

    async def update_rider_profile(
        self,
        rider: User,
        vehicle_type: Optional[VehicleType] = None,
        supported_services: Optional[list[str]] = None,
        search_radius_km: Optional[float] = None,
    ) -> User:
        if rider.role != UserRole.RIDER:
            raise ValidationException("Only riders have a rider profile", field="role")
        if supported_services is not None:
            unknown = set(supported_services) - {s.value for s in ServiceType}
            if unknown or not supported_services:
                raise ValidationException("Invalid supported services", field="supported_services")
            rider.supported_services = list(supported_services)
        if search_radius_km is not None:
            if search_radius_km <= 0:
                raise ValidationException("Search radius must be positive", field="search_radius_km")
            rider.search_radius_km = search_radius_km
        if vehicle_type is not None:
            rider.vehicle_type = vehicle_type
        await self.db.commit()
        return rider

    async def set_verified(self, rider_id: int, verified: bool = True) -> User:
        rider = await self.get_user(rider_id)
        if rider.role != UserRole.RIDER:
            raise ValidationException("Only riders can be verified", field="role")
        rider.is_verified = verified
        await self.db.commit()
        logger.info("Rider verification updated", extra_data={"rider_id": rider_id, "verified": verified})
        return rider

    async def set_gold_status(
        self,
        rider_id: int,
        active: bool,
        expires_at: Optional[datetime] = None,
        discount_percent: Optional[float] = None,
    ) -> User:
        rider = await self.get_user(rider_id)
        if rider.role != UserRole.RIDER:
            raise ValidationException("Gold status applies to riders only", field="role")
        if discount_percent is not None and not 0 <= discount_percent <= 100:
            raise ValidationException("Discount must be between 0 and 100", field="discount_percent")
        rider.gold_status_active = active
        rider.gold_status_expires_at = expires_at if active else None
        rider.gold_discount_percent = discount_percent if active else None
        await self.db.commit()
        logger.info(
            "Gold status updated",
            extra_data={"rider_id": rider_id, "active": active, "discount_percent": discount_percent},
        )
        return rider
