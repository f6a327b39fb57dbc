"""
אימות חתימת webhook של שער התשלומים.

Paystack שולח ``X-Paystack-Signature``: HMAC-SHA512 של גוף הבקשה הגולמי
עם המפתח הסודי. ה-dependency מחזיר את הגוף הגולמי אחרי אימות.

שימוש:
    @router.post("/webhooks/paystack")
    async def paystack_webhook(body: bytes = Depends(verify_payment_signature)):
        ...
"""
import hashlib
import hmac

from fastapi import Header, HTTPException, Request, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


async def verify_payment_signature(
    request: Request,
    x_paystack_signature: str | None = Header(None),
) -> bytes:
    """
    - אם ``PAYMENT_WEBHOOK_SECRET`` לא מוגדר - 503, לא מאשרים תשלומים בלי אימות.
    - חתימה חסרה או שגויה - 403.
    """
    secret = settings.PAYMENT_WEBHOOK_SECRET
    if not secret:
        logger.error("Payment webhook received but PAYMENT_WEBHOOK_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment confirmation is not configured",
        )

    body = await request.body()
    if not x_paystack_signature:
        logger.warning("Payment webhook without signature header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing webhook signature",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(x_paystack_signature, sign_payload(body, secret)):
        logger.warning("Payment webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook signature",
        )
    return body
