"""Database models."""
from app.models.user import Profile, SellerSettings
from app.models.listing import Listing
from app.models.cart import CartItem
from app.models.order import Order, OrderItem
from app.models.payment import PaymentTransaction, GatewayTransactionLog
from app.models.critical_error import CriticalPaymentError
from app.models.payout import SellerPayout
from app.models.setting import Setting, JobExecutionLog

__all__ = [
    "Profile",
    "SellerSettings",
    "Listing",
    "CartItem",
    "Order",
    "OrderItem",
    "PaymentTransaction",
    "GatewayTransactionLog",
    "CriticalPaymentError",
    "SellerPayout",
    "Setting",
    "JobExecutionLog",
]
