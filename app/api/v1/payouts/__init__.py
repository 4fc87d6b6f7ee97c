"""Payouts API (admin)."""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.v1.errors import http_error
from app.core.auth import get_current_admin
from app.core.dependencies import get_payout_service
from app.core.exceptions import MarketplaceError
from app.models.payout import SellerPayout
from app.models.user import Profile
from app.services.payout_service import PAYOUT_STATUSES, PayoutService

logger = logging.getLogger(__name__)

router = APIRouter()


class PayoutResponse(BaseModel):
    """Payout in a response."""

    id: uuid.UUID
    seller_id: uuid.UUID
    amount: float
    net_amount: float
    currency: str
    payout_method: str
    status: str
    order_ids: List[str]
    external_payout_id: str | None
    external_reference: str | None
    estimated_arrival: str | None
    retry_count: int
    failure_reason: str | None
    created_at: str
    processed_at: str | None
    failed_at: str | None


class EligibleSellerResponse(BaseModel):
    """Seller waiting for a payout."""

    seller_id: uuid.UUID
    display_name: str | None
    email: str | None
    pending_earnings: float
    order_count: int
    threshold: float
    can_auto_process: bool


class ProcessSingleRequest(BaseModel):
    """Manual payout of one seller."""

    seller_id: uuid.UUID
    amount: Decimal | None = None
    method: str | None = None


class CancelPayoutRequest(BaseModel):
    """Payout cancellation."""

    reason: str = ""


class AutomaticPayoutResult(BaseModel):
    """Result for one seller of an automatic payout run."""

    seller_id: uuid.UUID
    seller_name: str | None
    success: bool
    amount: float | None = None
    payout_id: uuid.UUID | None = None
    status: str | None = None
    error: str | None = None


class AutomaticPayoutsResponse(BaseModel):
    """Automatic payout run summary."""

    successful: int
    failed: int
    results: List[AutomaticPayoutResult]


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def payout_response(payout: SellerPayout) -> PayoutResponse:
    """Build the response model for a payout."""
    return PayoutResponse(
        id=payout.id,
        seller_id=payout.seller_id,
        amount=float(payout.amount),
        net_amount=float(payout.net_amount),
        currency=payout.currency,
        payout_method=payout.payout_method,
        status=payout.status,
        order_ids=list(payout.order_ids or []),
        external_payout_id=payout.external_payout_id,
        external_reference=payout.external_reference,
        estimated_arrival=payout.estimated_arrival,
        retry_count=payout.retry_count or 0,
        failure_reason=payout.failure_reason,
        created_at=payout.created_at.isoformat(),
        processed_at=_iso(payout.processed_at),
        failed_at=_iso(payout.failed_at),
    )


def _money(value: Decimal) -> str:
    return str(value)


@router.get("/eligible-sellers", response_model=List[EligibleSellerResponse])
async def get_eligible_sellers(
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Sellers whose pending earnings reach their payout threshold."""
    eligible = await service.get_eligible_sellers()
    return [
        EligibleSellerResponse(
            seller_id=entry.seller.id,
            display_name=entry.seller.display_name,
            email=entry.seller.email,
            pending_earnings=float(entry.pending_earnings),
            order_count=entry.order_count,
            threshold=float(entry.threshold),
            can_auto_process=entry.can_auto_process,
        )
        for entry in eligible
    ]


@router.post("/process", response_model=AutomaticPayoutsResponse)
async def process_automatic_payouts(
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Run automatic payouts now."""
    logger.info(f"Automatic payouts triggered by admin {admin.id}")
    results = await service.process_automatic_payouts()
    successful = sum(1 for r in results if r["success"])
    return AutomaticPayoutsResponse(
        successful=successful,
        failed=len(results) - successful,
        results=[
            AutomaticPayoutResult(
                seller_id=r["seller_id"],
                seller_name=r["seller_name"],
                success=r["success"],
                amount=float(r["amount"]) if r.get("amount") is not None else None,
                payout_id=r.get("payout_id"),
                status=r.get("status"),
                error=r.get("error"),
            )
            for r in results
        ],
    )


@router.post("/process-single", response_model=PayoutResponse)
async def process_single_payout(
    request: ProcessSingleRequest,
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Pay one seller now."""
    try:
        payout = await service.process_single_payout(request.seller_id, request.amount, request.method)
    except MarketplaceError as e:
        raise http_error(e)

    logger.info(f"Payout {payout.id} for seller {request.seller_id} processed by admin {admin.id}: {payout.status}")
    return payout_response(payout)


@router.get("/report")
async def get_payout_report(
    start: datetime | None = None,
    end: datetime | None = None,
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Payout totals by status and by method. Defaults to the last 30 days."""
    end = end or datetime.utcnow()
    start = start or end - timedelta(days=30)
    report = await service.generate_payout_report(start, end)

    summary = report["summary"]

    def buckets(data: dict) -> dict:
        return {key: {"count": value["count"], "amount": _money(value["amount"])} for key, value in data.items()}

    by_status = buckets(summary["by_status"])
    return {
        "summary": {
            "total_payouts": summary["total_payouts"],
            "total_amount": _money(summary["total_amount"]),
            "successful_payouts": summary["successful_payouts"],
            "pending_payouts": summary["pending_payouts"],
            "failed_payouts": summary["failed_payouts"],
            "cancelled_payouts": summary["cancelled_payouts"],
            "by_status": {s: by_status.get(s, {"count": 0, "amount": "0"}) for s in PAYOUT_STATUSES},
            "by_method": buckets(summary["by_method"]),
        },
        "payouts": [payout_response(payout) for payout in report["payouts"]],
        "date_range": {"start": start.isoformat(), "end": end.isoformat()},
    }


@router.get("/{payout_id}")
async def get_payout(
    payout_id: uuid.UUID,
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Payout with its seller, orders and gateway status."""
    try:
        details = await service.get_payout_details(payout_id)
    except MarketplaceError as e:
        raise http_error(e)

    seller = details["seller"]
    return {
        "payout": payout_response(details["payout"]),
        "seller": {"id": seller.id, "display_name": seller.display_name, "email": seller.email},
        "orders": [
            {
                "id": order.id,
                "status": order.status,
                "total_amount": float(order.total_amount),
                "delivered_at": _iso(order.delivered_at),
            }
            for order in details["orders"]
        ],
        "external_status": details["external_status"],
    }


@router.post("/{payout_id}/cancel", response_model=PayoutResponse)
async def cancel_payout(
    payout_id: uuid.UUID,
    request: CancelPayoutRequest,
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Cancel a pending payout and release its orders."""
    try:
        payout = await service.cancel_payout(payout_id, request.reason)
    except MarketplaceError as e:
        raise http_error(e)

    return payout_response(payout)


@router.post("/{payout_id}/retry", response_model=PayoutResponse)
async def retry_payout(
    payout_id: uuid.UUID,
    admin: Profile = Depends(get_current_admin),
    service: PayoutService = Depends(get_payout_service),
):
    """Disburse a failed payout again."""
    try:
        payout = await service.retry_payout(payout_id)
    except MarketplaceError as e:
        raise http_error(e)

    return payout_response(payout)
