"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.orders import router as orders_router
from app.api.routes.payouts import router as payouts_router
from app.api.routes.riders import router as riders_router
from app.api.routes.users import router as users_router
from app.api.routes.wallets import router as wallets_router

router = APIRouter()

router.include_router(orders_router, prefix="/orders", tags=["Orders"])
router.include_router(riders_router, prefix="/riders", tags=["Riders"])
router.include_router(payouts_router, prefix="/payouts", tags=["Payouts"])
router.include_router(wallets_router, prefix="/wallets", tags=["Wallets"])
router.include_router(users_router, prefix="/users", tags=["Users"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
