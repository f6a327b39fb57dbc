"""
Rider API Routes - presence, available orders and weekly payouts
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_rider
from app.api.dependencies.services import get_order_service, get_publisher
from app.api.routes.orders import OrderResponse
from app.core.exceptions import PermissionDeniedError
from app.db.database import get_db
from app.db.models.rider_payout import PaidBy, PayoutOrder, RiderPayout
from app.db.models.user import User, VehicleType
from app.domain.services.event_publisher import EventPublisher
from app.domain.services.order_service import OrderService
from app.domain.services.payout_service import PayoutService
from app.domain.services.rider_directory import RiderDirectory
from app.domain.services.user_service import UserService

router = APIRouter()


class PresenceIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    online: bool = True


class PresenceResponse(BaseModel):
    rider_id: int
    lat: float
    lng: float
    online: bool
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class RiderProfileIn(BaseModel):
    vehicle_type: Optional[VehicleType] = None
    supported_services: Optional[List[str]] = None
    search_radius_km: Optional[float] = Field(None, gt=0)


class RiderProfileResponse(BaseModel):
    id: int
    name: Optional[str]
    vehicle_type: Optional[VehicleType]
    supported_services: List[str]
    search_radius_km: Optional[float]
    is_verified: bool
    current_streak: int
    payment_blocked: bool
    account_deactivated: bool
    blocked_reason: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "RiderProfileResponse":
        return cls(
            id=user.id,
            name=user.name,
            vehicle_type=user.vehicle_type,
            supported_services=user.services,
            search_radius_km=user.search_radius_km,
            is_verified=user.is_verified,
            current_streak=user.current_streak or 0,
            payment_blocked=user.payment_blocked,
            account_deactivated=user.account_deactivated,
            blocked_reason=user.blocked_reason,
        )


class AvailableOrderResponse(BaseModel):
    distance_km: float
    order: OrderResponse


class PayoutResponse(BaseModel):
    id: int
    rider_id: int
    week_start: datetime
    week_end: datetime
    payment_due_at: datetime
    grace_deadline_at: datetime
    total_gross: int
    total_commission: int
    total_rider_net: int
    order_count: int
    status: str
    paid_at: Optional[datetime]
    marked_paid_by: Optional[str]
    payment_reference_code: str
    rewards_applied: int

    @classmethod
    def from_payout(cls, payout: RiderPayout) -> "PayoutResponse":
        return cls(
            id=payout.id,
            rider_id=payout.rider_id,
            week_start=payout.week_start,
            week_end=payout.week_end,
            payment_due_at=payout.payment_due_at,
            grace_deadline_at=payout.grace_deadline_at,
            total_gross=payout.total_gross or 0,
            total_commission=payout.total_commission or 0,
            total_rider_net=payout.total_rider_net or 0,
            order_count=payout.order_count or 0,
            status=payout.status.value,
            paid_at=payout.paid_at,
            marked_paid_by=payout.marked_paid_by.value if payout.marked_paid_by else None,
            payment_reference_code=payout.payment_reference_code,
            rewards_applied=payout.rewards_applied or 0,
        )


class PayoutOrderResponse(BaseModel):
    order_id: int
    delivered_at: datetime
    service_type: str
    gross_amount: int
    commission_amount: int
    rider_net_amount: int

    class Config:
        from_attributes = True


class PayoutDetailResponse(PayoutResponse):
    orders: List[PayoutOrderResponse] = []


class MarkPaidIn(BaseModel):
    use_rewards: bool = False


def payout_detail(payout: RiderPayout, orders: list[PayoutOrder]) -> PayoutDetailResponse:
    base = PayoutResponse.from_payout(payout)
    return PayoutDetailResponse(
        **base.model_dump(),
        orders=[PayoutOrderResponse.model_validate(o) for o in orders],
    )


@router.get("/me", response_model=RiderProfileResponse, summary="פרופיל הרוכב")
async def get_profile(rider: User = Depends(require_rider)):
    return RiderProfileResponse.from_user(rider)


@router.patch("/me", response_model=RiderProfileResponse, summary="עדכון פרופיל רוכב")
async def update_profile(
    data: RiderProfileIn,
    rider: User = Depends(require_rider),
    db: AsyncSession = Depends(get_db),
):
    updated = await UserService(db).update_rider_profile(
        rider,
        vehicle_type=data.vehicle_type,
        supported_services=data.supported_services,
        search_radius_km=data.search_radius_km,
    )
    return RiderProfileResponse.from_user(updated)


@router.put(
    "/me/presence",
    response_model=PresenceResponse,
    summary="עדכון מיקום וזמינות",
    description="רוכב חסום לא יכול לעבור למצב online.",
)
async def update_presence(
    data: PresenceIn,
    rider: User = Depends(require_rider),
    db: AsyncSession = Depends(get_db),
):
    return await RiderDirectory(db).update_presence(rider, data.lat, data.lng, data.online)


@router.get(
    "/me/available-orders",
    response_model=List[AvailableOrderResponse],
    summary="הזמנות פתוחות בטווח הרוכב",
)
async def available_orders(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    rider: User = Depends(require_rider),
    service: OrderService = Depends(get_order_service),
):
    available = await service.get_available_orders(rider, lat, lng)
    return [
        AvailableOrderResponse(distance_km=a.distance_km, order=OrderResponse.from_order(a.order))
        for a in available
    ]


@router.get("/me/payouts", response_model=List[PayoutResponse], summary="דוחות עמלה שבועיים")
async def list_payouts(
    limit: int = Query(12, ge=1, le=52),
    rider: User = Depends(require_rider),
    db: AsyncSession = Depends(get_db),
):
    payouts = await PayoutService(db).list_rider_payouts(rider.id, limit)
    return [PayoutResponse.from_payout(p) for p in payouts]


@router.get("/me/payouts/{payout_id}", response_model=PayoutDetailResponse, summary="פירוט דוח שבועי")
async def get_payout(
    payout_id: int,
    rider: User = Depends(require_rider),
    db: AsyncSession = Depends(get_db),
):
    service = PayoutService(db)
    payout = await service.get_payout(payout_id)
    if payout.rider_id != rider.id:
        raise PermissionDeniedError("Not your payout")
    return payout_detail(payout, await service.get_payout_orders(payout_id))


@router.post(
    "/me/payouts/{payout_id}/mark-paid",
    response_model=PayoutResponse,
    summary="סימון עמלה כשולמה",
    description="מסיר חסימה אם קיימת. use_rewards מקזז מיתרת הארנק.",
)
async def mark_paid(
    payout_id: int,
    data: MarkPaidIn,
    rider: User = Depends(require_rider),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    payout = await PayoutService(db, publisher).mark_paid(
        payout_id, PaidBy.RIDER, actor_user_id=rider.id, use_rewards=data.use_rewards
    )
    return PayoutResponse.from_payout(payout)
