"""Orders API."""
import logging
import uuid
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.api.v1.errors import http_error
from app.core.auth import get_current_user
from app.core.dependencies import get_order_service
from app.core.exceptions import (
    CriticalInconsistency,
    GatewayDecline,
    MarketplaceError,
    PaymentOutcomeUnknown,
)
from app.models.order import Order
from app.models.user import Profile
from app.services.order_service import CRITICAL_SUPPORT_MESSAGE, CheckoutItem, OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


class OrderItemRequest(BaseModel):
    """Item of an order request."""

    listing_id: uuid.UUID
    quantity: int


class CheckoutRequest(BaseModel):
    """Charge-first checkout request."""

    items: List[OrderItemRequest]
    card_details: dict  # card token or card fields, passed to the gateway as-is
    shipping_address: dict | None = None
    billing_address: dict | None = None
    shipping_cost: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal | None = None  # checked against the server total
    currency: str | None = None


class CreateOrderRequest(BaseModel):
    """Order-first request: the order is created before any payment."""

    items: List[OrderItemRequest]
    shipping_address: dict | None = None
    billing_address: dict | None = None
    subtotal: Decimal | None = None
    shipping_cost: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal | None = None
    currency: str | None = None


class UpdateStatusRequest(BaseModel):
    """Order status change."""

    status: str
    tracking_number: str | None = None


class RefundRequest(BaseModel):
    """Refund request. Without an amount the full total is refunded."""

    amount: Decimal | None = None
    reason: str


class OrderItemResponse(BaseModel):
    """Order item in a response."""

    id: uuid.UUID
    listing_id: uuid.UUID
    seller_id: uuid.UUID
    card_name: str | None
    quantity: int
    price: float
    total_price: float


class OrderResponse(BaseModel):
    """Order in a response."""

    id: uuid.UUID
    buyer_id: uuid.UUID
    status: str
    payment_status: str
    subtotal: float
    shipping_cost: float
    tax_amount: float
    total_amount: float
    currency: str
    shipping_address: dict | None
    tracking_number: str | None
    gateway_transaction_id: str | None
    refund_amount: float | None
    requires_manual_review: bool
    created_at: str
    paid_at: str | None
    items: List[OrderItemResponse]


class TransactionResponse(BaseModel):
    """Gateway transaction of a checkout."""

    id: str | None
    status: str
    approval_code: str | None = None
    card_last4: str | None = None


class CheckoutResponse(BaseModel):
    """Successful charge-first checkout."""

    success: bool = True
    order: OrderResponse
    transaction: TransactionResponse
    warnings: List[str] = []


class PaymentIntentResponse(BaseModel):
    """Intent the client uses to collect card details."""

    intent_id: str
    client_token: str | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def order_response(order: Order) -> OrderResponse:
    """Build the response model for an order loaded with its items."""
    return OrderResponse(
        id=order.id,
        buyer_id=order.buyer_id,
        status=order.status,
        payment_status=order.payment_status,
        subtotal=float(order.subtotal),
        shipping_cost=float(order.shipping_cost or 0),
        tax_amount=float(order.tax_amount or 0),
        total_amount=float(order.total_amount),
        currency=order.currency,
        shipping_address=order.shipping_address,
        tracking_number=order.tracking_number,
        gateway_transaction_id=order.gateway_transaction_id,
        refund_amount=float(order.refund_amount) if order.refund_amount is not None else None,
        requires_manual_review=bool(order.requires_manual_review),
        created_at=order.created_at.isoformat(),
        paid_at=_iso(order.paid_at),
        items=[
            OrderItemResponse(
                id=item.id,
                listing_id=item.listing_id,
                seller_id=item.seller_id,
                card_name=item.card_name_snapshot,
                quantity=item.quantity,
                price=float(item.price),
                total_price=float(item.price * item.quantity),
            )
            for item in order.items
        ],
    )


def _checkout_items(items: List[OrderItemRequest]) -> list[CheckoutItem]:
    return [CheckoutItem(listing_id=item.listing_id, quantity=item.quantity) for item in items]


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    request: CheckoutRequest,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """
    Charge the buyer and create the order.

    A decline answers 402 with the gateway's reason. A timeout answers 504:
    the payment may have gone through and must not be retried. If the charge
    succeeded but the order could not be stored, the answer is 500 with the
    transaction reference; the payment is never silently lost.
    """
    try:
        result = await service.checkout(
            buyer_id=user.id,
            items=_checkout_items(request.items),
            card_details=request.card_details,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address,
            shipping_cost=request.shipping_cost,
            tax_amount=request.tax_amount,
            expected_total=request.total_amount,
            currency=request.currency,
        )
    except GatewayDecline as e:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"success": False, "error": e.reason, "paymentStatus": "declined"},
        )
    except PaymentOutcomeUnknown as e:
        return JSONResponse(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            content={
                "success": False,
                "error": e.message,
                "paymentStatus": "unknown",
                "reference": e.reference,
            },
        )
    except CriticalInconsistency as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Order creation failed after successful payment",
                "transactionId": e.transaction_id,
                "critical": True,
                "supportMessage": CRITICAL_SUPPORT_MESSAGE,
            },
        )
    except MarketplaceError as e:
        raise http_error(e)

    charge = result.charge
    return CheckoutResponse(
        order=order_response(result.order),
        transaction=TransactionResponse(
            id=charge.transaction_id,
            status=charge.status,
            approval_code=charge.approval_code,
            card_last4=charge.card_last4,
        ),
        warnings=result.warnings,
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """
    Create a pending order.

    Prices come from the listings; client totals are only checked.
    """
    try:
        order = await service.create_pending_order(
            buyer_id=user.id,
            items=_checkout_items(request.items),
            shipping_address=request.shipping_address,
            billing_address=request.billing_address,
            subtotal=request.subtotal,
            shipping_cost=request.shipping_cost,
            tax_amount=request.tax_amount,
            total_amount=request.total_amount,
            currency=request.currency,
        )
    except MarketplaceError as e:
        raise http_error(e)

    return order_response(order)


@router.post("/{order_id}/payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    order_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Create a gateway intent for a pending order."""
    try:
        intent = await service.create_payment_intent(order_id, user)
    except MarketplaceError as e:
        raise http_error(e)

    return PaymentIntentResponse(intent_id=intent.intent_id, client_token=intent.client_token)


@router.post("/{order_id}/confirm-payment", response_model=OrderResponse)
async def confirm_payment(
    order_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Capture the payment of a pending order. Repeating it is harmless."""
    try:
        order = await service.confirm_order_payment(order_id, user)
    except MarketplaceError as e:
        raise http_error(e)

    return order_response(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Get an order visible to the caller."""
    try:
        order = await service.get_for_actor(order_id, user)
    except MarketplaceError as e:
        raise http_error(e)

    return order_response(order)


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateStatusRequest,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Move an order along its lifecycle."""
    try:
        order = await service.update_status(order_id, request.status, user, request.tracking_number)
    except MarketplaceError as e:
        raise http_error(e)

    return order_response(order)


@router.post("/{order_id}/refund", response_model=OrderResponse)
async def refund_order(
    order_id: uuid.UUID,
    request: RefundRequest,
    user: Profile = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Refund a paid order through the gateway."""
    try:
        order = await service.refund_order(order_id, request.amount, request.reason, user)
    except MarketplaceError as e:
        raise http_error(e)

    logger.info(f"Refund requested for order {order_id} by {user.id}")
    return order_response(order)
