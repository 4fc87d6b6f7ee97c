import httpx
import pytest

from app.core.dependencies import get_gateway_client, get_notifier, get_session_factory, get_settings
from app.core.exceptions import GatewayTimeout
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.services.gateway_client import ChargeResult
from app.services.order_service import OrderService
from tests.conftest import BANK_DETAILS

CARD = {"card_number": "4242424242424242", "card_expiry": "1230", "card_cvv": "123"}


@pytest.fixture
async def client(session_factory, gateway, notifier, config):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_settings] = lambda: config

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def auth(user) -> dict:
    token = create_access_token({"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def checkout_setup(make_profile, make_seller, make_listing):
    async def _make():
        buyer = await make_profile()
        listing = await make_listing(await make_seller(), "40.00")
        body = {"items": [{"listing_id": str(listing.id), "quantity": 1}], "card_details": CARD}
        return buyer, body

    return _make


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_checkout(client, checkout_setup):
    buyer, body = await checkout_setup()

    response = await client.post("/api/v1/orders/checkout", json=body, headers=auth(buyer))

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["order"]["status"] == "processing"
    assert data["order"]["total_amount"] == 40.0
    assert data["transaction"]["id"] == "tx_1"


async def test_checkout_declined(client, gateway, checkout_setup):
    gateway.charge_result = ChargeResult(success=False, status="DECLINED", reason="Insufficient funds")
    buyer, body = await checkout_setup()

    response = await client.post("/api/v1/orders/checkout", json=body, headers=auth(buyer))

    assert response.status_code == 402
    assert response.json() == {"success": False, "error": "Insufficient funds", "paymentStatus": "declined"}


async def test_checkout_timeout(client, gateway, checkout_setup):
    gateway.charge_error = GatewayTimeout("Gateway call POST /charges timed out")
    buyer, body = await checkout_setup()

    response = await client.post("/api/v1/orders/checkout", json=body, headers=auth(buyer))

    assert response.status_code == 504
    data = response.json()
    assert data["paymentStatus"] == "unknown"
    assert data["reference"] == "intent_1"


async def test_checkout_order_failure_after_charge(client, notifier, checkout_setup, mocker):
    mocker.patch.object(OrderService, "_insert_paid_order", side_effect=RuntimeError("connection reset"))
    buyer, body = await checkout_setup()

    response = await client.post("/api/v1/orders/checkout", json=body, headers=auth(buyer))

    assert response.status_code == 500
    data = response.json()
    assert data["critical"] is True
    assert data["transactionId"] == "tx_1"
    assert notifier.admin_alerts


async def test_webhook_signature_and_body(client):
    url = "/api/v1/payments/webhook"

    bad_signature = await client.post(url, content=b"{}", headers={"X-Webhook-Signature": "forged"})
    bad_json = await client.post(url, content=b"not json", headers={"X-Webhook-Signature": "valid-signature"})
    unknown_event = await client.post(
        url,
        content=b'{"eventType": "CARD_UPDATED", "data": {}}',
        headers={"X-Webhook-Signature": "valid-signature"},
    )

    assert bad_signature.status_code == 401
    assert bad_json.status_code == 200
    assert bad_json.json() == {"received": True, "processed": False}
    assert unknown_event.status_code == 200
    assert unknown_event.json() == {"received": True, "processed": False}


async def test_seller_endpoints_require_seller(client, make_profile):
    buyer = await make_profile()

    response = await client.get("/api/v1/payments/seller-earnings", headers=auth(buyer))

    assert response.status_code == 403


async def test_seller_earnings(client, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    seller = await make_seller()
    listing = await make_listing(seller, "40.00")
    await make_delivered_order(buyer, [(listing, 1)])

    response = await client.get("/api/v1/payments/seller-earnings", headers=auth(seller))

    assert response.status_code == 200
    assert response.json()["total_earnings"] == 39.0


async def test_admin_lists_critical_errors(client, recovery, make_profile):
    buyer = await make_profile()
    admin = await make_profile(role="admin")
    await recovery.handle_payment_success_order_failure("tx_1", buyer.id, 5000, "CAD")

    forbidden = await client.get("/api/v1/admin/critical-errors", headers=auth(buyer))
    response = await client.get("/api/v1/admin/critical-errors", headers=auth(admin))
    bad_status = await client.get("/api/v1/admin/critical-errors?status=bogus", headers=auth(admin))

    assert forbidden.status_code == 403
    assert response.status_code == 200
    assert [incident["transaction_id"] for incident in response.json()] == ["tx_1"]
    assert bad_status.status_code == 400


async def test_admin_process_single_payout(client, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    admin = await make_profile(role="admin")
    seller = await make_seller(payout_method="bank_transfer", bank_details=dict(BANK_DETAILS))
    listing = await make_listing(seller, "60.00")
    await make_delivered_order(buyer, [(listing, 1)])

    response = await client.post(
        "/api/v1/payouts/process-single", json={"seller_id": str(seller.id)}, headers=auth(admin)
    )
    again = await client.post(
        "/api/v1/payouts/process-single", json={"seller_id": str(seller.id)}, headers=auth(admin)
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processing"
    assert response.json()["amount"] == 58.5
    assert again.status_code == 400
