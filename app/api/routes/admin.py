"""
Admin API Routes

Platform settings, rider moderation, order overrides, payouts and manual
scheduler runs. Every endpoint requires an admin token.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_admin
from app.api.dependencies.services import get_job_lock, get_order_service, get_publisher
from app.api.routes.orders import OrderResponse
from app.api.routes.riders import PayoutDetailResponse, PayoutResponse, RiderProfileResponse, payout_detail
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.rider_payout import PaidBy, PayoutStatus
from app.db.models.user import User
from app.db.models.wallet import WalletTransactionType
from app.domain.services.blocking_service import BlockingService
from app.domain.services.event_publisher import EventPublisher
from app.domain.services.fare_config_service import FareConfigService
from app.domain.services.order_service import OrderService
from app.domain.services.payout_scheduler import JobLock, PayoutScheduler, TASK_NAMES
from app.domain.services.payout_service import PayoutService, week_start_for
from app.domain.services.user_service import UserService
from app.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

router = APIRouter()

# סוגי זיכוי שמנהל רשאי לבצע ידנית
_ADMIN_CREDIT_TYPES = {WalletTransactionType.REFERRAL_REWARD, WalletTransactionType.STREAK_BONUS}


class SettingsUpdate(BaseModel):
    use_database_rates: Optional[bool] = None
    min_fare: Optional[int] = Field(None, ge=0)
    per_km_short: Optional[int] = Field(None, ge=0)
    per_km_medium: Optional[int] = Field(None, ge=0)
    per_km_long: Optional[int] = Field(None, ge=0)
    short_distance_max: Optional[float] = Field(None, gt=0)
    medium_distance_max: Optional[float] = Field(None, gt=0)
    vehicle_multipliers: Optional[Dict[str, float]] = None
    commission_rate: Optional[float] = Field(None, ge=0, le=100)
    gold_discount_percent: Optional[float] = Field(None, ge=0, le=100)
    default_search_radius_km: Optional[float] = Field(None, gt=0)
    max_allowed_radius_km: Optional[float] = Field(None, gt=0)
    vehicle_max_radius_km: Optional[Dict[str, float]] = None


class SettingsResponse(BaseModel):
    min_fare: int
    per_km_short: int
    per_km_medium: int
    per_km_long: int
    short_distance_max: float
    medium_distance_max: float
    vehicle_multipliers: Dict[str, float]
    commission_rate: float
    gold_discount_percent: float
    default_search_radius_km: float
    max_allowed_radius_km: float
    vehicle_max_radius_km: Dict[str, float]

    class Config:
        from_attributes = True


class UnblockIn(BaseModel):
    payout_id: Optional[int] = None


class DeactivateIn(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500)


class ReactivateIn(BaseModel):
    unblock_payment: bool = False


class VerifyIn(BaseModel):
    verified: bool = True


class GoldStatusIn(BaseModel):
    active: bool
    expires_at: Optional[datetime] = None
    discount_percent: Optional[float] = Field(None, ge=0, le=100)


class PriceUpdateIn(BaseModel):
    price: int = Field(..., gt=0)


class AdminCancelIn(BaseModel):
    reason: Optional[str] = None


class AdminMarkPaidIn(BaseModel):
    use_rewards: bool = False


class WalletCreditIn(BaseModel):
    amount: int = Field(..., gt=0)
    type: WalletTransactionType = WalletTransactionType.REFERRAL_REWARD
    description: Optional[str] = None


class SchedulerRunIn(BaseModel):
    now: Optional[datetime] = None


# ---- settings ----

@router.get("/settings", response_model=SettingsResponse, summary="הגדרות תמחור ועמלה")
async def get_settings(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await FareConfigService(db).get_config()


@router.put(
    "/settings",
    response_model=SettingsResponse,
    summary="עדכון הגדרות",
    description="שדות שלא נשלחו נשארים כפי שהם. use_database_rates=false חוזר לערכי ברירת המחדל.",
)
async def update_settings(
    data: SettingsUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    changes = data.model_dump(exclude_unset=True)
    return await FareConfigService(db).update_config(admin.id, changes)


# ---- riders ----

@router.get("/riders/blocked", response_model=List[RiderProfileResponse], summary="רוכבים חסומים")
async def list_blocked_riders(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    riders = await BlockingService(db).list_blocked_riders()
    return [RiderProfileResponse.from_user(r) for r in riders]


@router.post(
    "/riders/{rider_id}/unblock",
    response_model=RiderProfileResponse,
    summary="הסרת חסימה",
    description="עם payout_id - הדוח מסומן כשולם ע\"י מנהל. הרוכב נשאר offline עד שיתחבר.",
)
async def unblock_rider(
    rider_id: int,
    data: UnblockIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    rider = await BlockingService(db, publisher).unblock_rider(rider_id, admin.id, data.payout_id)
    return RiderProfileResponse.from_user(rider)


@router.post("/riders/{rider_id}/deactivate", response_model=RiderProfileResponse, summary="השבתת רוכב")
async def deactivate_rider(
    rider_id: int,
    data: DeactivateIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    rider = await BlockingService(db, publisher).deactivate_rider(rider_id, admin.id, data.reason)
    return RiderProfileResponse.from_user(rider)


@router.post("/riders/{rider_id}/reactivate", response_model=RiderProfileResponse, summary="הפעלה מחדש")
async def reactivate_rider(
    rider_id: int,
    data: ReactivateIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    rider = await BlockingService(db, publisher).reactivate_rider(
        rider_id, admin.id, unblock_payment=data.unblock_payment
    )
    return RiderProfileResponse.from_user(rider)


@router.post("/riders/{rider_id}/verify", response_model=RiderProfileResponse, summary="אימות רוכב")
async def verify_rider(
    rider_id: int,
    data: VerifyIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rider = await UserService(db).set_verified(rider_id, data.verified)
    return RiderProfileResponse.from_user(rider)


@router.put("/riders/{rider_id}/gold", response_model=RiderProfileResponse, summary="סטטוס זהב")
async def set_gold_status(
    rider_id: int,
    data: GoldStatusIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rider = await UserService(db).set_gold_status(
        rider_id, data.active, data.expires_at, data.discount_percent
    )
    return RiderProfileResponse.from_user(rider)


# ---- orders ----

@router.put("/orders/{order_id}/price", response_model=OrderResponse, summary="עדכון מחיר ע\"י מנהל")
async def update_order_price(
    order_id: int,
    data: PriceUpdateIn,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.from_order(await service.admin_update_order_price(admin, order_id, data.price))


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse, summary="ביטול ע\"י מנהל")
async def cancel_order(
    order_id: int,
    data: AdminCancelIn,
    admin: User = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.from_order(await service.admin_cancel_order(admin, order_id, data.reason))


# ---- payouts ----

@router.get("/payouts", response_model=List[PayoutResponse], summary="דוחות שבועיים")
async def list_payouts(
    week_of: Optional[datetime] = Query(None, description="כל רגע בתוך השבוע המבוקש"),
    status: Optional[PayoutStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    week_start = week_start_for(week_of) if week_of else None
    payouts = await PayoutService(db).list_payouts(week_start, status, limit)
    return [PayoutResponse.from_payout(p) for p in payouts]


@router.get("/payouts/{payout_id}", response_model=PayoutDetailResponse, summary="פירוט דוח")
async def get_payout(
    payout_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    service = PayoutService(db)
    payout = await service.get_payout(payout_id)
    return payout_detail(payout, await service.get_payout_orders(payout_id))


@router.post("/payouts/{payout_id}/mark-paid", response_model=PayoutResponse, summary="סימון כשולם ע\"י מנהל")
async def mark_paid(
    payout_id: int,
    data: AdminMarkPaidIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    payout = await PayoutService(db, publisher).mark_paid(
        payout_id, PaidBy.ADMIN, actor_user_id=admin.id, use_rewards=data.use_rewards
    )
    return PayoutResponse.from_payout(payout)


# ---- wallets ----

@router.post("/wallets/{user_id}/credit", summary="זיכוי ארנק (בונוס / הפניה)")
async def credit_wallet(
    user_id: int,
    data: WalletCreditIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    if data.type not in _ADMIN_CREDIT_TYPES:
        raise ValidationException("Only reward credits can be issued manually", field="type")
    await UserService(db).get_user(user_id)
    line = await WalletService(db).credit(
        user_id, data.amount, data.type, description=data.description or f"Credit by admin {admin.id}"
    )
    return {"user_id": user_id, "amount": line.amount, "balance": line.balance_after}


# ---- scheduler ----

@router.post(
    "/scheduler/{task_name}",
    summary="הרצה ידנית של משימה מתוזמנת",
    description="now אופציונלי - להרצה חוזרת של חלון עבר. המשימות אידמפוטנטיות.",
)
async def run_scheduled_task(
    task_name: str,
    data: SchedulerRunIn,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
    lock: JobLock = Depends(get_job_lock),
) -> Dict[str, Any]:
    if task_name not in TASK_NAMES:
        raise ValidationException(
            f"Unknown task '{task_name}'", field="task_name", details={"allowed": sorted(TASK_NAMES)}
        )
    now = data.now
    if now is not None and now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    logger.info("Manual scheduler run", extra_data={"task": task_name, "admin_id": admin.id})
    return await PayoutScheduler(db, publisher, lock).run(task_name, now)
