"""
User API Routes - registration, profile and the event history feed
"""
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.api.dependencies.services import get_publisher
from app.core.auth import create_access_token
from app.core.logging import get_logger
from app.core.validation import name_validator, phone_validator
from app.db.database import get_db
from app.db.models.user import User, UserRole, VehicleType
from app.domain.services.event_publisher import EventPublisher
from app.domain.services.user_service import UserService

logger = get_logger(__name__)

router = APIRouter()


class UserCreate(BaseModel):
    """Self-service registration; admins are provisioned out of band"""
    role: UserRole = UserRole.CUSTOMER
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    national_id: Optional[str] = None
    vehicle_type: Optional[VehicleType] = None
    supported_services: Optional[List[str]] = None
    search_radius_km: Optional[float] = None

    @field_validator("role", mode="before")
    @classmethod
    def validate_role(cls, v: str | UserRole) -> UserRole:
        """תמיכה בערכי Enum גם בפורמט 'RIDER' וגם 'rider'"""
        if isinstance(v, UserRole):
            role = v
        elif isinstance(v, str):
            try:
                role = UserRole(v.strip().lower())
            except ValueError as e:
                raise ValueError("Invalid role value") from e
        else:
            raise ValueError("Invalid role value")
        if role == UserRole.ADMIN:
            raise ValueError("Admin accounts cannot self-register")
        return role

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return name_validator(v)


class UserResponse(BaseModel):
    id: int
    name: Optional[str]
    email: Optional[str]
    phone_number: Optional[str]
    role: UserRole
    is_active: bool
    vehicle_type: Optional[VehicleType] = None
    payment_blocked: bool = False
    account_deactivated: bool = False

    class Config:
        from_attributes = True

    @field_serializer("role")
    def serialize_role(self, v: UserRole) -> str:
        return v.value


class RegisterResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=201,
    summary="הרשמה",
    description="יוצר לקוח או רוכב. פרטים שנחסמו בעבר לא יכולים להירשם מחדש.",
)
async def register(data: UserCreate, db: AsyncSession = Depends(get_db)):
    user = await UserService(db).register_user(
        role=data.role,
        name=data.name,
        email=data.email,
        phone_number=data.phone_number,
        national_id=data.national_id,
        vehicle_type=data.vehicle_type,
        supported_services=data.supported_services,
        search_radius_km=data.search_radius_km,
    )
    token = create_access_token(user.id, user.role.value)
    return RegisterResponse(user=UserResponse.model_validate(user), access_token=token)


@router.get("/me", response_model=UserResponse, summary="המשתמש המחובר")
async def get_me(user: User = Depends(get_current_user)):
    return user


@router.get(
    "/me/events",
    summary="אירועים אחרונים",
    description="היסטוריית האירועים האחרונים של המשתמש, לריענון לקוח שהתחבר מחדש.",
)
async def recent_events(
    limit: int = Query(50, ge=1, le=100),
    user: User = Depends(get_current_user),
    publisher: EventPublisher = Depends(get_publisher),
) -> List[dict[str, Any]]:
    return await publisher.recent_events(user.id, limit)
