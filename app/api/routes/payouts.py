"""
Payment confirmation webhook

The gateway posts ``charge.success`` with the payout's reference code once a
rider pays their weekly commission. Amounts arrive in kobo.
"""
import json

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_publisher
from app.api.dependencies.webhook_auth import verify_payment_signature
from app.core.exceptions import PaymentConfirmationError
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.event_publisher import EventPublisher
from app.domain.services.payout_service import PayoutService

logger = get_logger(__name__)

router = APIRouter()

_HANDLED_EVENT = "charge.success"


@router.post(
    "/webhooks/paystack",
    summary="אישור תשלום עמלה משער התשלומים",
    description="חתימת HMAC-SHA512 בכותרת X-Paystack-Signature. אירועים אחרים מאושרים ומתעלמים מהם.",
)
async def paystack_webhook(
    body: bytes = Depends(verify_payment_signature),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    try:
        payload = json.loads(body or b"{}")
    except ValueError as e:
        raise PaymentConfirmationError("Malformed webhook payload") from e

    event = payload.get("event")
    if event != _HANDLED_EVENT:
        logger.info("Payment webhook event ignored", extra_data={"event": event})
        return {"status": "ignored"}

    data = payload.get("data") or {}
    reference = data.get("reference")
    if not reference:
        raise PaymentConfirmationError("Payment reference is missing")

    amount_kobo = data.get("amount")
    amount = int(amount_kobo) // 100 if amount_kobo is not None else None

    payout = await PayoutService(db, publisher).confirm_external_payment(reference, amount)
    logger.info(
        "Commission payment confirmed by gateway",
        extra_data={"payout_id": payout.id, "rider_id": payout.rider_id, "reference": reference},
    )
    return {"status": "ok", "payout_id": payout.id}
