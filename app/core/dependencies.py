"""Service dependencies for FastAPI routes."""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings
from app.database import AsyncSessionLocal, get_db
from app.services.earnings_service import EarningsService
from app.services.gateway_client import GatewayClient
from app.services.notification_service import NotificationService
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService
from app.services.payout_service import PayoutService
from app.services.recovery_service import PaymentRecoveryService


def get_settings() -> Settings:
    """Application settings."""
    return settings


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for sessions independent of the request session."""
    return AsyncSessionLocal


def get_gateway_client(config: Settings = Depends(get_settings)) -> GatewayClient:
    """Payment gateway client."""
    return GatewayClient.from_settings(config)


def get_notifier(config: Settings = Depends(get_settings)) -> NotificationService:
    """Email sender."""
    return NotificationService(config)


def get_recovery_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: GatewayClient = Depends(get_gateway_client),
    notifier: NotificationService = Depends(get_notifier),
    config: Settings = Depends(get_settings),
) -> PaymentRecoveryService:
    """Recovery service for charges without an order."""
    return PaymentRecoveryService(session_factory, gateway, notifier, config)


def get_order_service(
    db: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    recovery: PaymentRecoveryService = Depends(get_recovery_service),
    notifier: NotificationService = Depends(get_notifier),
    config: Settings = Depends(get_settings),
) -> OrderService:
    """Order reconciliation engine."""
    return OrderService(db, gateway, recovery, notifier, config)


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    order_service: OrderService = Depends(get_order_service),
) -> PaymentService:
    """Webhook processor."""
    return PaymentService(db, order_service)


def get_earnings_service(db: AsyncSession = Depends(get_db)) -> EarningsService:
    """Seller earnings calculator."""
    return EarningsService(db)


def get_payout_service(
    db: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    notifier: NotificationService = Depends(get_notifier),
    config: Settings = Depends(get_settings),
) -> PayoutService:
    """Payout orchestrator."""
    return PayoutService(db, gateway, notifier, config)
