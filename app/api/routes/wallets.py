"""
Wallet API Routes
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.db.database import get_db
from app.db.models.user import User
from app.db.models.wallet import WalletTransactionType
from app.domain.services.wallet_service import WalletService

router = APIRouter()


class WalletResponse(BaseModel):
    user_id: int
    balance: int

    class Config:
        from_attributes = True


class WalletTransactionResponse(BaseModel):
    id: int
    type: WalletTransactionType
    amount: int
    balance_after: int
    order_id: Optional[int]
    payout_id: Optional[int]
    description: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


@router.get(
    "/me",
    response_model=WalletResponse,
    summary="הארנק שלי",
    description="מחזיר את הארנק של המשתמש, או יוצר חדש אם לא קיים.",
)
async def get_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = WalletService(db)
    wallet = await service.get_or_create_wallet(user.id)
    await db.commit()
    return wallet


@router.get(
    "/me/transactions",
    response_model=List[WalletTransactionResponse],
    summary="היסטוריית תנועות בארנק",
    description="תנועות בסדר יורד, עם הגבלת כמות.",
)
async def get_transactions(
    limit: int = Query(20, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await WalletService(db).list_transactions(user.id, limit)
