"""
Database Models
"""
from app.db.models.user import User
from app.db.models.rider_location import RiderLocation
from app.db.models.order import Order, OrderTimelineEntry
from app.db.models.wallet import Wallet, WalletTransaction
from app.db.models.transaction import Transaction
from app.db.models.rider_payout import RiderPayout, PayoutOrder
from app.db.models.blocked_credential import BlockedCredential
from app.db.models.platform_settings import PlatformSettings

__all__ = [
    "User",
    "RiderLocation",
    "Order",
    "OrderTimelineEntry",
    "Wallet",
    "WalletTransaction",
    "Transaction",
    "RiderPayout",
    "PayoutOrder",
    "BlockedCredential",
    "PlatformSettings",
]
