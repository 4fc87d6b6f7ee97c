"""Client for the external card-processing gateway."""
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import Settings
from app.core.exceptions import GatewayRejected, GatewayTimeout, GatewayUnavailable

logger = logging.getLogger(__name__)

# Statuses the gateway uses for an accepted card transaction
APPROVED_STATUSES = {"APPROVED", "CAPTURED", "COMPLETED"}
# HTTP codes the gateway uses for a business-level decline
DECLINE_STATUS_CODES = {402, 422}


@dataclass
class ChargeIntent:
    """Charge intent created before card details are submitted."""

    intent_id: str
    client_token: str | None = None


@dataclass
class ChargeResult:
    """Outcome of a charge or capture. A decline is a result, not an exception."""

    success: bool
    status: str
    transaction_id: str | None = None
    reason: str | None = None
    approval_code: str | None = None
    card_last4: str | None = None


@dataclass
class RefundResult:
    """Outcome of a refund."""

    refund_id: str
    status: str
    amount_cents: int | None = None


@dataclass
class PayoutResult:
    """Outcome of a payout disbursement."""

    payout_id: str
    status: str
    estimated_arrival: str | None = None


class GatewayClient:
    """Thin async wrapper around the gateway REST API.

    All amounts are integer minor units (cents). Transport problems raise
    ``GatewayUnavailable``; a timeout after the request was sent raises
    ``GatewayTimeout`` because the gateway may have acted on it.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str,
        webhook_secret: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._transport = transport
        if not self.api_token:
            logger.warning("Gateway API token not configured")

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayClient":
        """Build a client from application settings."""
        return cls(
            api_token=settings.gateway_api_token,
            base_url=settings.gateway_base_url,
            webhook_secret=settings.gateway_webhook_secret,
            timeout=settings.gateway_timeout_seconds,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        """Send a request and map transport failures onto gateway errors."""
        headers = {
            "accept": "application/json",
            "api-token": self.api_token,
        }
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except (httpx.ConnectTimeout, httpx.PoolTimeout, httpx.ConnectError) as e:
            # Request never left this process
            raise GatewayUnavailable(f"Gateway connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"Gateway call {method} {path} timed out") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"Gateway transport error: {e}", request_sent=True) from e

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Gateway server error {response.status_code}: {response.text}",
                request_sent=True,
            )
        if response.status_code in (401, 403):
            raise GatewayRejected("Gateway authentication failed", status_code=response.status_code)

        return response

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        """Extract a human readable error from a gateway response."""
        try:
            data = response.json()
        except ValueError:
            return response.text or default
        if isinstance(data, dict):
            errors = data.get("errors")
            if isinstance(errors, list) and errors:
                return "; ".join(str(e) for e in errors)
            if isinstance(errors, dict) and errors:
                return "; ".join(f"{k}: {v}" for k, v in errors.items())
            return data.get("message") or data.get("error") or default
        return default

    def _charge_result(self, response: httpx.Response) -> ChargeResult:
        """Interpret a purchase/capture response."""
        if response.status_code in DECLINE_STATUS_CODES:
            return ChargeResult(
                success=False,
                status="DECLINED",
                reason=self._error_message(response, "Payment declined"),
            )
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Gateway rejected the request"),
                status_code=response.status_code,
            )

        data = response.json()
        status = str(data.get("status", "")).upper()
        card_number = data.get("cardNumber") or ""
        if status in APPROVED_STATUSES:
            return ChargeResult(
                success=True,
                status=status,
                transaction_id=str(data.get("transactionId")),
                approval_code=data.get("approvalCode"),
                card_last4=card_number[-4:] if card_number else None,
            )
        return ChargeResult(
            success=False,
            status=status or "DECLINED",
            transaction_id=str(data["transactionId"]) if data.get("transactionId") else None,
            reason=data.get("declineReason") or data.get("message") or "Payment declined",
        )

    async def create_charge_intent(
        self,
        amount_cents: int,
        currency: str,
        billing_info: dict | None,
        order_ref: str,
    ) -> ChargeIntent:
        """Create a charge intent for a checkout."""
        payload = {
            "amount": amount_cents,
            "currency": currency.upper(),
            "orderNumber": order_ref,
            "billingAddress": billing_info or {},
        }
        response = await self._request("POST", "/payment-intents", json=payload, idempotency_key=order_ref)
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Failed to create charge intent"),
                status_code=response.status_code,
            )

        data = response.json()
        logger.info(f"Charge intent created: {data.get('intentId')} for {order_ref} ({amount_cents} {currency})")
        return ChargeIntent(intent_id=str(data["intentId"]), client_token=data.get("clientToken"))

    async def process_charge(self, card_details: dict, amount_cents: int, intent_id: str) -> ChargeResult:
        """
        Charge a card against an intent.

        Returns a ChargeResult with success=False for declines. Raises
        GatewayTimeout when the outcome is unknown.
        """
        payload = {
            "intentId": intent_id,
            "amount": amount_cents,
            "cardData": {
                "cardNumber": card_details.get("card_number"),
                "cardExpiry": card_details.get("card_expiry"),
                "cardCVV": card_details.get("card_cvv"),
            },
        }
        # The intent id doubles as idempotency key so a resent request cannot charge twice
        response = await self._request("POST", "/payment/purchase", json=payload, idempotency_key=intent_id)
        result = self._charge_result(response)
        logger.info(f"Charge for intent {intent_id}: success={result.success}, status={result.status}")
        return result

    async def capture_payment(self, intent_id: str, amount_cents: int) -> ChargeResult:
        """Capture a previously authorized intent."""
        payload = {"preAuthTransactionId": intent_id, "amount": amount_cents}
        response = await self._request(
            "POST", "/payment/capture", json=payload, idempotency_key=f"capture-{intent_id}"
        )
        return self._charge_result(response)

    async def refund(self, transaction_id: str, amount_cents: int, reason: str = "") -> RefundResult:
        """Refund a settled transaction."""
        payload = {
            "originalTransactionId": transaction_id,
            "amount": amount_cents,
            "reason": reason,
        }
        response = await self._request(
            "POST", "/payment/refund", json=payload, idempotency_key=f"refund-{transaction_id}-{amount_cents}"
        )
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Refund failed"),
                status_code=response.status_code,
            )

        data = response.json()
        logger.info(f"Refund {data.get('transactionId')} issued for transaction {transaction_id}")
        return RefundResult(
            refund_id=str(data["transactionId"]),
            status=str(data.get("status", "APPROVED")),
            amount_cents=data.get("amount"),
        )

    async def disburse_payout(
        self,
        seller_id: uuid.UUID | str,
        amount_cents: int,
        destination: dict,
        reference: str,
    ) -> PayoutResult:
        """Send money to a seller's bank account or PayPal."""
        payload = {
            "sellerId": str(seller_id),
            "amount": amount_cents,
            "destination": destination,
            "reference": reference,
        }
        response = await self._request("POST", "/payouts", json=payload, idempotency_key=reference)
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Payout failed"),
                status_code=response.status_code,
            )

        data = response.json()
        return PayoutResult(
            payout_id=str(data["payoutId"]),
            status=str(data.get("status", "processing")),
            estimated_arrival=data.get("estimatedArrival"),
        )

    async def get_transaction_status(self, transaction_id: str) -> dict:
        """Fetch the gateway view of a card transaction."""
        response = await self._request("GET", f"/card-transactions/{transaction_id}")
        if response.status_code == 404:
            return {"transactionId": transaction_id, "status": "not_found"}
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Transaction lookup failed"),
                status_code=response.status_code,
            )
        return response.json()

    async def get_payout_status(self, payout_id: str) -> dict:
        """Fetch the gateway view of a payout."""
        response = await self._request("GET", f"/payouts/{payout_id}")
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Payout lookup failed"),
                status_code=response.status_code,
            )
        return response.json()

    async def get_payout_by_reference(self, reference: str) -> dict:
        """Fetch a payout by the reference it was sent with. 404 means it never arrived."""
        response = await self._request("GET", f"/payouts/reference/{reference}")
        if response.status_code == 404:
            return {"reference": reference, "status": "not_found"}
        if response.status_code >= 400:
            raise GatewayRejected(
                self._error_message(response, "Payout lookup failed"),
                status_code=response.status_code,
            )
        return response.json()

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        """
        Verify an HMAC-SHA256 webhook signature.

        The header may be ``sha256=<hex>`` or bare hex. Without a configured
        secret every webhook is rejected.
        """
        if not self.webhook_secret:
            logger.error("Gateway webhook secret not configured - rejecting webhook")
            return False
        if not signature_header:
            return False

        expected = hmac.new(
            self.webhook_secret.encode(),
            raw_payload,
            hashlib.sha256,
        ).hexdigest()
        provided = signature_header.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]

        return hmac.compare_digest(expected.encode(), provided.encode())
