"""Payments API: gateway webhook and seller earnings, payouts and settings."""
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from app.api.v1.errors import http_error
from app.api.v1.payouts import PayoutResponse, payout_response
from app.core.auth import get_current_seller
from app.core.dependencies import (
    get_earnings_service,
    get_gateway_client,
    get_payment_service,
    get_payout_service,
)
from app.core.exceptions import MarketplaceError
from app.models.user import Profile
from app.services.earnings_service import EarningsService
from app.services.gateway_client import GatewayClient
from app.services.payment_service import PaymentService
from app.services.payout_service import PayoutService

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Webhook-Signature"


class OrderEarningsResponse(BaseModel):
    """Seller share of one order."""

    order_id: str
    order_date: str
    delivered_date: str | None
    subtotal: float
    platform_fee: float
    seller_earnings: float
    item_count: int


class SellerEarningsResponse(BaseModel):
    """Pending earnings of the calling seller."""

    total_earnings: float
    total_orders: int
    total_items: int
    platform_commission: float
    gross_subtotal: float
    commission_rate: float
    order_details: List[OrderEarningsResponse]


class SellerPayoutsResponse(BaseModel):
    """Paginated payout history."""

    payouts: List[PayoutResponse]
    page: int
    limit: int
    total: int
    total_pages: int


class BankDetails(BaseModel):
    """Bank account for transfers."""

    accountNumber: str | None = None
    routingNumber: str | None = None
    bankName: str | None = None
    accountHolder: str | None = None
    accountType: str | None = None


class SellerSettingsRequest(BaseModel):
    """Payout settings change. Omitted fields are left as they are."""

    payout_method: str | None = None
    payout_threshold: Decimal | None = None
    auto_payout: bool | None = None
    bank_details: BankDetails | None = None
    paypal_email: str | None = None


@router.post("/webhook")
async def gateway_webhook(
    request: Request,
    gateway: GatewayClient = Depends(get_gateway_client),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Webhook for gateway events.

    Answers 401 on a bad signature. Once verified, every delivery is
    acknowledged with 200 so the gateway stops resending it; unreadable bodies
    and processing errors are logged.
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not gateway.verify_webhook_signature(body, signature):
        logger.error("Invalid webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )

    try:
        event = json.loads(body)
    except ValueError as e:
        logger.error(f"Failed to parse webhook JSON: {e}")
        return {"received": True, "processed": False}
    if not isinstance(event, dict):
        logger.error(f"Webhook body is not an event object: {type(event).__name__}")
        return {"received": True, "processed": False}

    logger.info(f"Webhook received: {event.get('eventType')}")
    try:
        processed = await service.handle_webhook_event(event)
    except Exception as e:
        logger.error(f"Error processing webhook {event.get('eventType')}: {e}", exc_info=True)
        processed = False

    return {"received": True, "processed": processed}


@router.get("/seller-earnings", response_model=SellerEarningsResponse)
async def get_seller_earnings(
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    seller: Profile = Depends(get_current_seller),
    service: EarningsService = Depends(get_earnings_service),
):
    """Pending earnings of the calling seller."""
    earnings = await service.calculate_earnings(seller.id, period_start, period_end)
    return SellerEarningsResponse(
        total_earnings=float(earnings.total_earnings),
        total_orders=earnings.total_orders,
        total_items=earnings.total_items,
        platform_commission=float(earnings.platform_commission),
        gross_subtotal=float(earnings.gross_subtotal),
        commission_rate=float(earnings.commission_rate),
        order_details=[
            OrderEarningsResponse(
                order_id=str(detail.order_id),
                order_date=detail.order_date.isoformat(),
                delivered_date=detail.delivered_date.isoformat() if detail.delivered_date else None,
                subtotal=float(detail.subtotal),
                platform_fee=float(detail.platform_fee),
                seller_earnings=float(detail.seller_earnings),
                item_count=detail.item_count,
            )
            for detail in earnings.order_details
        ],
    )


@router.get("/seller-payouts", response_model=SellerPayoutsResponse)
async def get_seller_payouts(
    page: int = 1,
    limit: int = 20,
    seller: Profile = Depends(get_current_seller),
    service: PayoutService = Depends(get_payout_service),
):
    """Payout history of the calling seller, newest first."""
    history = await service.get_seller_payout_history(seller.id, page, limit)
    pagination = history["pagination"]
    return SellerPayoutsResponse(
        payouts=[payout_response(payout) for payout in history["payouts"]],
        page=pagination["page"],
        limit=pagination["limit"],
        total=pagination["total"],
        total_pages=pagination["total_pages"],
    )


@router.post("/request-payout", response_model=PayoutResponse)
async def request_payout(
    seller: Profile = Depends(get_current_seller),
    service: PayoutService = Depends(get_payout_service),
):
    """Request a payout of all pending earnings."""
    try:
        payout = await service.request_payout(seller.id)
    except MarketplaceError as e:
        raise http_error(e)

    return payout_response(payout)


@router.get("/seller-settings")
async def get_seller_settings(
    seller: Profile = Depends(get_current_seller),
    service: PayoutService = Depends(get_payout_service),
):
    """Payout settings of the calling seller, bank details masked."""
    seller_settings = await service.get_seller_settings(seller.id)
    if seller_settings is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payout settings not configured",
        )
    return seller_settings


@router.patch("/seller-settings")
async def update_seller_settings(
    request: SellerSettingsRequest,
    seller: Profile = Depends(get_current_seller),
    service: PayoutService = Depends(get_payout_service),
):
    """Create or update payout settings of the calling seller."""
    changes = request.model_dump(exclude_unset=True)
    if "bank_details" in changes and changes["bank_details"] is not None:
        changes["bank_details"] = request.bank_details.model_dump(exclude_none=True)

    try:
        return await service.update_seller_settings(seller.id, **changes)
    except MarketplaceError as e:
        raise http_error(e)
