"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- מנוע SQLite על קובץ עם session נפרד לכל "תהליך" - לתרחישי מרוץ
- פונקציות אימות DB (סטטוס הזמנה, יתרת ארנק, דוח שבועי) עם שליפה טרייה
"""
from typing import AsyncGenerator, Callable

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.db.database import Base
from app.db.models.order import Order, OrderStatus
from app.db.models.rider_payout import RiderPayout
from app.db.models.wallet import Wallet


# ============================================================================
# Fixtures - כמה sessions על אותו DB
# ============================================================================

@pytest.fixture
async def session_maker(tmp_path) -> AsyncGenerator[Callable[[], AsyncSession], None]:
    """
    מנוע על קובץ (לא :memory:) כדי שכל session יקבל חיבור משלו -
    כמו שני workers של ה-API מול אותו DB.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scenario.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ============================================================================
# פונקציות אימות DB
# ============================================================================

async def assert_order_status(
    db_session: AsyncSession,
    order_id: int,
    expected_status: OrderStatus,
) -> Order:
    """אימות סטטוס הזמנה - שליפה טרייה מ-DB, מחזיר את ההזמנה"""
    result = await db_session.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one()
    assert order.status == expected_status, (
        f"צפי: {expected_status}, בפועל: {order.status}"
    )
    return order


async def assert_wallet_balance(
    db_session: AsyncSession,
    user_id: int,
    expected_balance: int,
) -> Wallet:
    """אימות יתרת ארנק - שליפה טרייה מ-DB"""
    result = await db_session.execute(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    )
    wallet = result.scalar_one()
    assert wallet.balance == expected_balance, (
        f"צפי: {expected_balance}, בפועל: {wallet.balance}"
    )
    return wallet


async def fetch_payout(db_session: AsyncSession, rider_id: int) -> RiderPayout:
    """הדוח השבועי (היחיד) של רוכב - שליפה טרייה"""
    result = await db_session.execute(
        select(RiderPayout)
        .where(RiderPayout.rider_id == rider_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()
