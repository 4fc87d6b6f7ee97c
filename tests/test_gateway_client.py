import hashlib
import hmac
import json

import httpx
import pytest

from app.core.exceptions import GatewayRejected, GatewayTimeout, GatewayUnavailable
from app.services.gateway_client import GatewayClient


def make_client(handler, webhook_secret="whsec_test"):
    return GatewayClient(
        api_token="test-token",
        base_url="https://gateway.test/v2",
        webhook_secret=webhook_secret,
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


async def test_approved_charge_returns_result():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["idempotency"] = request.headers.get("idempotency-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": "APPROVED",
                "transactionId": 9001,
                "approvalCode": "T55555",
                "cardNumber": "4111111111111111",
            },
        )

    result = await make_client(handler).process_charge(
        {"card_number": "4111111111111111", "card_expiry": "1230", "card_cvv": "123"},
        5000,
        "intent_1",
    )

    assert result.success is True
    assert result.transaction_id == "9001"
    assert result.card_last4 == "1111"
    assert seen["path"] == "/v2/payment/purchase"
    assert seen["idempotency"] == "intent_1"
    assert seen["body"]["amount"] == 5000


async def test_decline_is_a_result_not_an_exception():
    def handler(request):
        return httpx.Response(402, json={"errors": ["Card declined: insufficient funds"]})

    result = await make_client(handler).process_charge({}, 5000, "intent_1")

    assert result.success is False
    assert result.status == "DECLINED"
    assert result.reason == "Card declined: insufficient funds"


async def test_unapproved_status_is_a_decline():
    def handler(request):
        return httpx.Response(200, json={"status": "DECLINED", "transactionId": 12, "declineReason": "Do not honor"})

    result = await make_client(handler).process_charge({}, 5000, "intent_1")

    assert result.success is False
    assert result.reason == "Do not honor"
    assert result.transaction_id == "12"


async def test_read_timeout_means_unknown_outcome():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeout) as exc_info:
        await make_client(handler).process_charge({}, 5000, "intent_1")

    assert exc_info.value.request_sent is True


async def test_connect_error_is_not_sent():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailable) as exc_info:
        await make_client(handler).process_charge({}, 5000, "intent_1")

    assert not isinstance(exc_info.value, GatewayTimeout)
    assert exc_info.value.request_sent is False


async def test_server_error_counts_as_sent():
    def handler(request):
        return httpx.Response(503, text="upstream unavailable")

    with pytest.raises(GatewayUnavailable) as exc_info:
        await make_client(handler).refund("tx_1", 5000)

    assert exc_info.value.request_sent is True


async def test_auth_failure_is_rejected():
    def handler(request):
        return httpx.Response(401, json={"message": "bad token"})

    with pytest.raises(GatewayRejected) as exc_info:
        await make_client(handler).create_charge_intent(5000, "cad", None, "checkout-1")

    assert exc_info.value.status_code == 401


async def test_disburse_payout_sends_reference_as_idempotency_key():
    seen = {}

    def handler(request):
        seen["idempotency"] = request.headers.get("idempotency-key")
        return httpx.Response(200, json={"payoutId": "po_77", "status": "processing", "estimatedArrival": "2 days"})

    result = await make_client(handler).disburse_payout("seller-1", 8775, {"type": "paypal"}, "PAYOUT-abc")

    assert result.payout_id == "po_77"
    assert result.estimated_arrival == "2 days"
    assert seen["idempotency"] == "PAYOUT-abc"


async def test_payout_lookup_by_reference():
    def handler(request):
        if request.url.path.endswith("/PAYOUT-known"):
            return httpx.Response(200, json={"payoutId": "po_77", "status": "completed"})
        return httpx.Response(404, json={"errors": ["Payout not found"]})

    client = make_client(handler)

    assert (await client.get_payout_by_reference("PAYOUT-known"))["status"] == "completed"
    assert (await client.get_payout_by_reference("PAYOUT-lost"))["status"] == "not_found"


def test_webhook_signature_verification():
    client = make_client(lambda request: httpx.Response(200))
    payload = b'{"eventType": "PAYMENT_SUCCESS"}'
    digest = hmac.new(b"whsec_test", payload, hashlib.sha256).hexdigest()

    assert client.verify_webhook_signature(payload, digest) is True
    assert client.verify_webhook_signature(payload, f"sha256={digest}") is True
    assert client.verify_webhook_signature(payload, "0" * 64) is False
    assert client.verify_webhook_signature(payload, None) is False


def test_webhook_rejected_without_secret():
    client = make_client(lambda request: httpx.Response(200), webhook_secret="")
    payload = b"{}"
    digest = hmac.new(b"", payload, hashlib.sha256).hexdigest()

    assert client.verify_webhook_signature(payload, digest) is False
