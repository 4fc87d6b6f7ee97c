"""Translation of marketplace errors to HTTP errors."""
import logging

from fastapi import HTTPException, status

from app.core.exceptions import (
    CriticalInconsistency,
    Forbidden,
    GatewayDecline,
    GatewayError,
    GatewayTimeout,
    InsufficientQuantity,
    InvalidTransition,
    MarketplaceError,
    NotFound,
    PaymentOutcomeUnknown,
    PayoutError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Subclasses before their bases
STATUS_CODES = [
    (InsufficientQuantity, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (GatewayDecline, status.HTTP_402_PAYMENT_REQUIRED),
    (PaymentOutcomeUnknown, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (PayoutError, status.HTTP_400_BAD_REQUEST),
    (CriticalInconsistency, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_code_for(error: MarketplaceError) -> int:
    for error_class, status_code in STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def http_error(error: MarketplaceError) -> HTTPException:
    """Build the HTTPException for a marketplace error."""
    status_code = status_code_for(error)
    if status_code >= 500 and not isinstance(error, (GatewayError, PaymentOutcomeUnknown)):
        # Store failures are logged, not shown
        logger.error(f"{type(error).__name__}: {error.message}")
        return HTTPException(status_code=status_code, detail="Internal error, please try again later")

    detail = error.message
    if isinstance(error, GatewayError):
        detail = f"Payment gateway error: {error.message}"
    return HTTPException(status_code=status_code, detail=detail)
