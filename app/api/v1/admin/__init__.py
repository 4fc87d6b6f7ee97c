"""Admin API: critical payment errors and consistency checks."""
import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from app.api.v1.errors import http_error
from app.core.auth import get_current_admin
from app.core.dependencies import get_recovery_service
from app.core.exceptions import MarketplaceError
from app.models.critical_error import CriticalPaymentError
from app.models.user import Profile
from app.services.recovery_service import PaymentRecoveryService

logger = logging.getLogger(__name__)

router = APIRouter()


class CriticalErrorResponse(BaseModel):
    """Charge that has no order."""

    id: uuid.UUID
    type: str
    transaction_id: str
    user_id: uuid.UUID
    amount: float
    currency: str
    payment_intent_id: str | None
    error_details: dict | None
    status: str
    refund_id: str | None
    resolution_method: str | None
    resolution_notes: str | None
    resolved_by: uuid.UUID | None
    resolved_at: str | None
    created_at: str


class ResolveRequest(BaseModel):
    """Manual resolution of a critical error."""

    method: str  # e.g. order_created / refunded / other
    notes: str | None = None


def critical_error_response(incident: CriticalPaymentError) -> CriticalErrorResponse:
    return CriticalErrorResponse(
        id=incident.id,
        type=incident.type,
        transaction_id=incident.transaction_id,
        user_id=incident.user_id,
        amount=float(incident.amount),
        currency=incident.currency,
        payment_intent_id=incident.payment_intent_id,
        error_details=incident.error_details,
        status=incident.status,
        refund_id=incident.refund_id,
        resolution_method=incident.resolution_method,
        resolution_notes=incident.resolution_notes,
        resolved_by=incident.resolved_by,
        resolved_at=incident.resolved_at.isoformat() if incident.resolved_at else None,
        created_at=incident.created_at.isoformat(),
    )


@router.get("/critical-errors", response_model=List[CriticalErrorResponse])
async def list_critical_errors(
    status_filter: str = Query("needs_manual_review", alias="status"),
    admin: Profile = Depends(get_current_admin),
    recovery: PaymentRecoveryService = Depends(get_recovery_service),
):
    """Critical payment errors with the given status, newest first."""
    try:
        incidents = await recovery.list_incidents(status_filter)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    return [critical_error_response(incident) for incident in incidents]


@router.post("/critical-errors/{transaction_id}/resolve", response_model=CriticalErrorResponse)
async def resolve_critical_error(
    transaction_id: str,
    request: ResolveRequest,
    admin: Profile = Depends(get_current_admin),
    recovery: PaymentRecoveryService = Depends(get_recovery_service),
):
    """Mark a critical payment error resolved."""
    try:
        incident = await recovery.resolve_incident(transaction_id, request.method, request.notes, admin.id)
    except MarketplaceError as e:
        raise http_error(e)

    return critical_error_response(incident)


@router.get("/consistency/{transaction_id}")
async def check_consistency(
    transaction_id: str,
    admin: Profile = Depends(get_current_admin),
    recovery: PaymentRecoveryService = Depends(get_recovery_service),
):
    """Compare the stored order with the gateway view of a transaction."""
    return await recovery.validate_payment_order_consistency(transaction_id)
