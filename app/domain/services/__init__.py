"""
Domain Services
"""
from app.domain.services.order_service import OrderService
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.ledger_service import LedgerService
from app.domain.services.wallet_service import WalletService
from app.domain.services.payout_service import PayoutService
from app.domain.services.blocking_service import BlockingService
from app.domain.services.payout_scheduler import PayoutScheduler
from app.domain.services.user_service import UserService

__all__ = [
    "OrderService",
    "DispatchService",
    "LedgerService",
    "WalletService",
    "PayoutService",
    "BlockingService",
    "PayoutScheduler",
    "UserService",
]
