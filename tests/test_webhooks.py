from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.exceptions import GatewayTimeout, PaymentOutcomeUnknown
from app.models import CriticalPaymentError, Listing, Order, PaymentTransaction, SellerPayout
from app.services.order_service import CheckoutItem
from app.services.payment_service import (
    CHARGEBACK_RECEIVED,
    PAYMENT_FAILED,
    PAYMENT_SUCCESS,
    PAYOUT_COMPLETED,
    PAYOUT_FAILED,
    REFUND_PROCESSED,
    PaymentService,
)
from tests.conftest import BANK_DETAILS

CARD = {"card_number": "4242424242424242", "card_expiry": "1230", "card_cvv": "123"}


@pytest.fixture
def payment_service(db, order_service):
    return PaymentService(db, order_service)


async def fetch(session_factory, model, object_id):
    async with session_factory() as session:
        return await session.get(model, object_id)


async def test_payment_success_replay_is_idempotent(
    payment_service, order_service, make_profile, make_seller, make_listing, session_factory
):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00", quantity=3)
    order = await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 2)])
    event = {"eventType": PAYMENT_SUCCESS, "data": {"orderNumber": str(order.id), "transactionId": "tx_wh_1"}}

    assert await payment_service.handle_webhook_event(event) is True
    assert await payment_service.handle_webhook_event(event) is False

    stored = await fetch(session_factory, Order, order.id)
    assert stored.status == "processing"
    assert stored.payment_status == "completed"
    assert stored.gateway_transaction_id == "tx_wh_1"
    assert (await fetch(session_factory, Listing, listing.id)).quantity == 1


async def test_payment_failed(payment_service, order_service, make_profile, make_seller, make_listing, session_factory):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    order = await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])
    event = {"eventType": PAYMENT_FAILED, "data": {"orderNumber": str(order.id), "errorMessage": "Card expired"}}

    assert await payment_service.handle_webhook_event(event) is True
    assert await payment_service.handle_webhook_event(event) is False

    stored = await fetch(session_factory, Order, order.id)
    assert stored.status == "payment_failed"
    assert stored.notes == "Card expired"


async def test_refund_and_chargeback(
    payment_service, make_profile, make_seller, make_listing, make_delivered_order, session_factory
):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    order = await make_delivered_order(buyer, [(listing, 1)])
    refund = {
        "eventType": REFUND_PROCESSED,
        "data": {"originalTransactionId": order.gateway_transaction_id, "refundTransactionId": "rf_77"},
    }
    chargeback = {
        "eventType": CHARGEBACK_RECEIVED,
        "data": {"transactionId": order.gateway_transaction_id, "reason": "Fraudulent"},
    }

    assert await payment_service.handle_webhook_event(refund) is True
    assert await payment_service.handle_webhook_event(refund) is False
    assert await payment_service.handle_webhook_event(chargeback) is True
    assert await payment_service.handle_webhook_event(chargeback) is False

    stored = await fetch(session_factory, Order, order.id)
    assert stored.payment_status == "refunded"
    assert stored.refund_id == "rf_77"
    assert stored.requires_manual_review is True
    assert "Fraudulent" in stored.notes


async def test_payout_events(payment_service, seller_with_pending_payout, session_factory):
    payout = await seller_with_pending_payout()
    completed = {"eventType": PAYOUT_COMPLETED, "data": {"payoutId": payout.external_payout_id}}

    assert await payment_service.handle_webhook_event(completed) is True
    assert await payment_service.handle_webhook_event(completed) is False

    stored = await fetch(session_factory, SellerPayout, payout.id)
    assert stored.status == "completed"
    assert stored.processed_at is not None


async def test_payout_failed_matches_reference_of_unknown_outcome(
    payment_service, gateway, seller_with_pending_payout, session_factory
):
    gateway.payout_error = GatewayTimeout("Gateway call POST /payouts timed out")
    payout = await seller_with_pending_payout()
    assert payout.external_payout_id is None
    failed = {"eventType": PAYOUT_FAILED, "data": {"reference": payout.external_reference, "reason": "Account closed"}}

    assert await payment_service.handle_webhook_event(failed) is True

    stored = await fetch(session_factory, SellerPayout, payout.id)
    assert stored.status == "failed"
    assert stored.failure_reason == "Account closed"


async def test_unknown_event_type_is_ignored(payment_service):
    assert await payment_service.handle_webhook_event({"eventType": "CARD_UPDATED", "data": {}}) is False


async def test_completed_event_for_cancelled_payout_alerts_admins(
    payment_service, payout_service, gateway, notifier, seller_with_pending_payout, session_factory
):
    gateway.payout_error = GatewayTimeout("Gateway call POST /payouts timed out")
    payout = await seller_with_pending_payout()
    await payout_service.cancel_payout(payout.id, "Gateway has no record")
    completed = {"eventType": PAYOUT_COMPLETED, "data": {"reference": payout.external_reference}}

    assert await payment_service.handle_webhook_event(completed) is False

    assert (await fetch(session_factory, SellerPayout, payout.id)).status == "cancelled"
    assert len(notifier.admin_alerts) == 1
    assert f"Cancelled payout {payout.id} was paid" in notifier.admin_alerts[0]["subject"]
    assert notifier.admin_alerts[0]["severity"] == "critical"


async def test_late_payment_success_for_unknown_checkout_goes_to_recovery(
    payment_service, order_service, gateway, notifier, make_profile, make_seller, make_listing, session_factory
):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    gateway.charge_error = GatewayTimeout("Gateway call POST /payment/purchase timed out")
    with pytest.raises(PaymentOutcomeUnknown):
        await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)
    event = {"eventType": PAYMENT_SUCCESS, "data": {"transactionId": "tx_late", "paymentIntentId": "intent_1"}}

    assert await payment_service.handle_webhook_event(event) is True
    assert await payment_service.handle_webhook_event(event) is False

    async with session_factory() as session:
        attempt = (
            await session.execute(select(PaymentTransaction).where(PaymentTransaction.intent_id == "intent_1"))
        ).scalar_one()
        incidents = (await session.execute(select(CriticalPaymentError))).scalars().all()
    assert attempt.status == "approved"
    assert attempt.gateway_transaction_id == "tx_late"
    assert [incident.transaction_id for incident in incidents] == ["tx_late"]
    assert incidents[0].amount == Decimal(attempt.amount_cents) / 100
    assert incidents[0].user_id == buyer.id


async def test_unmatched_payment_success_alerts_admins(payment_service, notifier):
    event = {"eventType": PAYMENT_SUCCESS, "data": {"transactionId": "tx_stray"}}

    assert await payment_service.handle_webhook_event(event) is False

    assert notifier.admin_alerts[0]["subject"] == "CRITICAL: Unmatched payment tx_stray"
    assert notifier.admin_alerts[0]["severity"] == "critical"


@pytest.fixture
def seller_with_pending_payout(payout_service, make_profile, make_seller, make_listing, make_delivered_order):
    async def _make():
        buyer = await make_profile()
        seller = await make_seller(payout_method="bank_transfer", bank_details=dict(BANK_DETAILS))
        listing = await make_listing(seller, "60.00")
        await make_delivered_order(buyer, [(listing, 1)])
        payout = await payout_service.process_single_payout(seller.id)
        assert payout.amount == Decimal("58.50")
        return payout

    return _make
