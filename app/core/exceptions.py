"""Error taxonomy of the payment and payout flows."""


class MarketplaceError(Exception):
    """Base class for expected marketplace errors."""

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(MarketplaceError):
    """Bad input. Never retried."""


class InsufficientQuantity(ValidationError):
    """Listing does not have enough remaining quantity."""


class NotFound(MarketplaceError):
    """Requested record does not exist."""


class Forbidden(MarketplaceError):
    """Caller is not allowed to act on the record."""


class InvalidTransition(MarketplaceError):
    """State machine does not allow the requested change."""


class GatewayError(MarketplaceError):
    """Transport or protocol failure talking to the payment gateway."""


class GatewayUnavailable(GatewayError):
    """Gateway could not be reached or answered with a server error.

    ``request_sent`` is False only when the request provably never reached
    the gateway (connection refused, connect timeout).
    """

    def __init__(self, message: str, request_sent: bool = False):
        super().__init__(message, request_sent=request_sent)
        self.request_sent = request_sent


class GatewayTimeout(GatewayUnavailable):
    """Gateway call timed out after sending. The outcome of the call is unknown."""

    def __init__(self, message: str):
        super().__init__(message, request_sent=True)


class GatewayRejected(GatewayError):
    """Gateway refused the request (auth, validation, unsupported operation)."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason, status_code=status_code)
        self.reason = reason
        self.status_code = status_code


class GatewayDecline(MarketplaceError):
    """Business-level payment refusal, shown to the buyer verbatim."""

    def __init__(self, reason: str, transaction_id: str | None = None):
        super().__init__(reason, transaction_id=transaction_id)
        self.reason = reason
        self.transaction_id = transaction_id


class PaymentOutcomeUnknown(MarketplaceError):
    """Charge may or may not have gone through. Must not be retried automatically."""

    def __init__(self, reference: str):
        super().__init__(
            "Payment status unknown. Do not retry the payment; "
            f"contact support with reference {reference}.",
            reference=reference,
        )
        self.reference = reference


class PersistenceError(MarketplaceError):
    """A store write failed."""


class CriticalInconsistency(PersistenceError):
    """Charge succeeded but the order could not be recorded."""

    def __init__(self, transaction_id: str, message: str = "Order creation failed after successful payment"):
        super().__init__(message, transaction_id=transaction_id)
        self.transaction_id = transaction_id


class PayoutError(MarketplaceError):
    """Payout precondition failure. Reported to admins, never retried automatically."""


class BelowThreshold(PayoutError):
    """Payout amount is under the minimum payout threshold."""


class NoPayoutMethod(PayoutError):
    """Seller has no usable payout method."""
