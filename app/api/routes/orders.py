"""
Order API Routes
"""
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user, require_customer, require_rider
from app.api.dependencies.services import (
    OrderDispatch,
    get_distance,
    get_order_dispatch,
    get_order_service,
)
from app.core.validation import address_validator, phone_validator, sanitized_text_validator
from app.db.database import get_db
from app.db.models.order import Location, Order, OrderStatus, ServiceType
from app.db.models.user import User
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.distance_service import DistanceProvider
from app.domain.services.fare_config_service import FareConfigService
from app.domain.services.order_service import OrderDraft, OrderService

router = APIRouter()


# ---- schemas ----

class PointIn(BaseModel):
    address: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return address_validator(v)


class OrderCreate(BaseModel):
    pickup: PointIn
    dropoff: PointIn
    service_type: ServiceType = ServiceType.COURIER
    preferred_vehicle_type: Optional[str] = None
    price: Optional[int] = Field(None, gt=0)
    package_description: Optional[str] = None
    use_wallet: bool = False

    @field_validator("package_description")
    @classmethod
    def validate_description(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=500)


class EstimateRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    vehicle_type: Optional[str] = None


class EstimateResponse(BaseModel):
    distance_km: Optional[float]
    distance_is_estimate: bool
    vehicle_type: Optional[str]
    multiplier: float
    price: int
    minimum_fare: int

    class Config:
        from_attributes = True


class PriceRequestIn(BaseModel):
    price: int = Field(..., gt=0)
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str | None) -> str | None:
        return sanitized_text_validator(v, max_length=500)


class PriceResponseIn(BaseModel):
    accept: bool


class StatusUpdateIn(BaseModel):
    action: Literal["pickup", "start", "deliver"]


class OtpRequestIn(BaseModel):
    regenerate: bool = False


class OtpIssuedResponse(BaseModel):
    order_id: int
    expires_at: datetime


class OtpVerifyIn(BaseModel):
    code: str
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    proof_photo_url: Optional[str] = None

    @field_validator("recipient_phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)


class ProofIn(BaseModel):
    proof_photo_url: str = Field(..., min_length=1, max_length=1000)


class CancelIn(BaseModel):
    reason: Optional[str] = None


class NegotiationOut(BaseModel):
    status: str
    requested_price: Optional[int] = None
    rider_id: Optional[int] = None
    reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None


class FinancialOut(BaseModel):
    gross_amount: int
    commission_rate_pct: float
    commission_amount: int
    rider_net_amount: int


class OrderResponse(BaseModel):
    id: int
    order_code: str
    customer_id: int
    rider_id: Optional[int]
    status: OrderStatus
    service_type: ServiceType
    preferred_vehicle_type: Optional[str]
    price: int
    original_price: int
    distance_km: Optional[float]
    pickup: Location
    dropoff: Location
    package_description: Optional[str]
    payment_method: str
    wallet_amount: int
    negotiation: NegotiationOut
    financial: Optional[FinancialOut]
    delivered_at: Optional[datetime]
    proof_photo_url: Optional[str]
    recipient_name: Optional[str]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        negotiation = order.negotiation
        financial = order.financial
        return cls(
            id=order.id,
            order_code=order.order_code,
            customer_id=order.customer_id,
            rider_id=order.rider_id,
            status=order.status,
            service_type=order.service_type,
            preferred_vehicle_type=order.preferred_vehicle_type,
            price=order.price,
            original_price=order.original_price,
            distance_km=order.distance_km,
            pickup=order.pickup,
            dropoff=order.dropoff,
            package_description=order.package_description,
            payment_method=order.payment_method.value,
            wallet_amount=order.wallet_amount or 0,
            negotiation=NegotiationOut(
                status=negotiation.status.value,
                requested_price=negotiation.requested_price,
                rider_id=negotiation.requesting_rider_id,
                reason=negotiation.reason,
                requested_at=negotiation.requested_at,
                responded_at=negotiation.responded_at,
            ),
            financial=FinancialOut(
                gross_amount=financial.gross_amount,
                commission_rate_pct=financial.commission_rate_pct,
                commission_amount=financial.commission_amount,
                rider_net_amount=financial.rider_net_amount,
            ) if financial else None,
            delivered_at=order.delivered_at,
            proof_photo_url=order.proof_photo_url,
            recipient_name=order.recipient_name,
            cancelled_at=order.cancelled_at,
            cancellation_reason=order.cancellation_reason,
            created_at=order.created_at,
        )


class TimelineEntryResponse(BaseModel):
    status: str
    note: Optional[str]
    actor_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class NearbyRiderResponse(BaseModel):
    rider_id: int
    name: Optional[str]
    vehicle_type: Optional[str]
    distance_km: float


# ---- endpoints ----

@router.post(
    "/estimate",
    response_model=EstimateResponse,
    summary="הערכת מחיר",
    description="מחשב מחיר לפי מרחק הנסיעה, מדרגות התעריף ומכפיל סוג הרכב.",
)
async def estimate_price(
    data: EstimateRequest,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return await service.estimate_price(
        data.pickup_lat, data.pickup_lng, data.dropoff_lat, data.dropoff_lng, data.vehicle_type
    )


@router.get(
    "/nearby-riders",
    response_model=List[NearbyRiderResponse],
    summary="רוכבים זמינים בקרבת נקודת איסוף",
)
async def nearby_riders(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    service_type: ServiceType = ServiceType.COURIER,
    vehicle_type: Optional[str] = None,
    customer: User = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
    distance_provider: DistanceProvider = Depends(get_distance),
):
    config = await FareConfigService(db).get_config()
    matches = await DispatchService(db, distance_provider, config).preview_nearby_riders(
        lat, lng, service_type, vehicle_type
    )
    return [
        NearbyRiderResponse(
            rider_id=m.rider_id, name=m.name, vehicle_type=m.vehicle_type, distance_km=m.distance_km
        )
        for m in matches
    ]


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="יצירת הזמנה",
    description="יוצר הזמנה חדשה במצב pending ומודיע לרוכבים מתאימים בסביבה.",
)
async def create_order(
    data: OrderCreate,
    background_tasks: BackgroundTasks,
    customer: User = Depends(require_customer),
    service: OrderService = Depends(get_order_service),
    dispatch: OrderDispatch = Depends(get_order_dispatch),
):
    draft = OrderDraft(
        pickup=Location(address=data.pickup.address, lat=data.pickup.lat, lng=data.pickup.lng),
        dropoff=Location(address=data.dropoff.address, lat=data.dropoff.lat, lng=data.dropoff.lng),
        service_type=data.service_type,
        preferred_vehicle_type=data.preferred_vehicle_type,
        price=data.price,
        package_description=data.package_description,
        use_wallet=data.use_wallet,
    )
    order = await service.create_order(customer, draft)
    # ההפצה לרוכבים (מרחק כביש לכל מועמד) לא מעכבת את התשובה ללקוח
    background_tasks.add_task(dispatch, order.id)
    return OrderResponse.from_order(order)


@router.get("", response_model=List[OrderResponse], summary="ההזמנות שלי")
async def list_orders(
    status: Optional[OrderStatus] = None,
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_orders_for(user, status, limit)
    return [OrderResponse.from_order(o) for o in orders]


@router.get("/{order_id}", response_model=OrderResponse, summary="פרטי הזמנה")
async def get_order(
    order_id: int,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.from_order(await service.get_order(user, order_id))


@router.get("/{order_id}/timeline", response_model=List[TimelineEntryResponse], summary="היסטוריית מצבים")
async def get_timeline(
    order_id: int,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    await service.get_order(user, order_id)
    entries = await service.get_timeline(order_id)
    return [
        TimelineEntryResponse(
            status=e.status.value, note=e.note, actor_id=e.actor_id, created_at=e.created_at
        )
        for e in entries
    ]


@router.post(
    "/{order_id}/accept",
    response_model=OrderResponse,
    summary="קבלת הזמנה ע\"י רוכב",
    description="שיבוץ אטומי - רק רוכב אחד מצליח, השאר מקבלים 409.",
)
async def accept_order(
    order_id: int,
    rider: User = Depends(require_rider),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.from_order(await service.accept_order(rider, order_id))


@router.post("/{order_id}/price-request", response_model=OrderResponse, summary="בקשת שינוי מחיר")
async def request_price_change(
    order_id: int,
    data: PriceRequestIn,
    rider: User = Depends(require_rider),
    service: OrderService = Depends(get_order_service),
):
    order = await service.request_price_change(rider, order_id, data.price, data.reason)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/price-request/respond", response_model=OrderResponse, summary="תשובת הלקוח לבקשת מחיר")
async def respond_to_price_request(
    order_id: int,
    data: PriceResponseIn,
    customer: User = Depends(require_customer),
    service: OrderService = Depends(get_order_service),
):
    order = await service.respond_to_price_request(customer, order_id, data.accept)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/status", response_model=OrderResponse, summary="עדכון מצב משלוח")
async def update_status(
    order_id: int,
    data: StatusUpdateIn,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.from_order(await service.update_status(user, order_id, data.action))


@router.post(
    "/{order_id}/otp",
    response_model=OtpIssuedResponse,
    summary="הנפקת קוד מסירה",
    description="הקוד נשלח ללקוח בלבד; הרוכב מקבל רק את זמן התפוגה.",
)
async def generate_delivery_otp(
    order_id: int,
    data: OtpRequestIn,
    rider: User = Depends(require_rider),
    service: OrderService = Depends(get_order_service),
):
    issued = await service.generate_delivery_otp(rider, order_id, regenerate=data.regenerate)
    return OtpIssuedResponse(order_id=issued.order.id, expires_at=issued.expires_at)


@router.post("/{order_id}/otp/verify", response_model=OrderResponse, summary="אימות קוד מסירה")
async def verify_delivery_otp(
    order_id: int,
    data: OtpVerifyIn,
    rider: User = Depends(require_rider),
    service: OrderService = Depends(get_order_service),
):
    order = await service.verify_delivery_otp(
        rider,
        order_id,
        data.code,
        recipient_name=data.recipient_name,
        recipient_phone=data.recipient_phone,
        proof_photo_url=data.proof_photo_url,
    )
    return OrderResponse.from_order(order)


@router.put("/{order_id}/proof", response_model=OrderResponse, summary="עדכון הוכחת מסירה")
async def update_delivery_proof(
    order_id: int,
    data: ProofIn,
    rider: User = Depends(require_rider),
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_delivery_proof(rider, order_id, data.proof_photo_url)
    return OrderResponse.from_order(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="ביטול הזמנה")
async def cancel_order(
    order_id: int,
    data: CancelIn,
    user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.from_order(await service.cancel_order(user, order_id, data.reason))
