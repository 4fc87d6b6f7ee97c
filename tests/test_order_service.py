import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.exceptions import (
    BelowThreshold,
    Forbidden,
    GatewayDecline,
    GatewayTimeout,
    GatewayUnavailable,
    InsufficientQuantity,
    InvalidTransition,
    PaymentOutcomeUnknown,
    PersistenceError,
    ValidationError,
)
from app.database import Base
from app.models import CartItem, Listing, Order, PaymentTransaction, Profile
from app.services.gateway_client import ChargeResult
from app.services.order_service import CheckoutItem, OrderService
from app.services.recovery_service import PaymentRecoveryService
from tests.conftest import BANK_DETAILS

CARD = {"card_number": "4242424242424242", "card_expiry": "1230", "card_cvv": "123"}


async def count_orders(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Order))


async def get_transaction(session_factory, intent_id):
    async with session_factory() as session:
        result = await session.execute(select(PaymentTransaction).where(PaymentTransaction.intent_id == intent_id))
        return result.scalar_one()


async def get_listing(session_factory, listing_id):
    async with session_factory() as session:
        return await session.get(Listing, listing_id)


async def test_checkout_creates_paid_order(order_service, gateway, make_profile, make_seller, make_listing, db, session_factory):
    buyer = await make_profile()
    seller = await make_seller()
    charizard = await make_listing(seller, "40.00", quantity=2)
    blastoise = await make_listing(seller, "30.00", quantity=1, card_name="Blastoise Holo")
    db.add(CartItem(user_id=buyer.id, listing_id=charizard.id, quantity=2))
    await db.commit()

    result = await order_service.checkout(
        buyer_id=buyer.id,
        items=[CheckoutItem(charizard.id, 2), CheckoutItem(blastoise.id, 1)],
        card_details=CARD,
        shipping_cost=Decimal("5.00"),
        tax_amount=Decimal("14.30"),
    )

    order = result.order
    assert order.status == "processing"
    assert order.payment_status == "completed"
    assert order.subtotal == Decimal("110.00")
    assert order.total_amount == Decimal("129.30")
    assert order.gateway_transaction_id == "tx_1"
    assert len(order.items) == 2
    assert result.warnings == []
    assert gateway.charges[0]["amount_cents"] == 12930

    assert (await get_listing(session_factory, charizard.id)).quantity == 0
    assert (await get_listing(session_factory, blastoise.id)).quantity == 0

    transaction = await get_transaction(session_factory, "intent_1")
    assert transaction.status == "approved"
    assert transaction.order_id == order.id

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(CartItem)) == 0


async def test_checkout_rejects_client_total_mismatch(order_service, gateway, make_profile, make_seller, make_listing):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")

    with pytest.raises(ValidationError):
        await order_service.checkout(
            buyer_id=buyer.id,
            items=[CheckoutItem(listing.id, 1)],
            card_details=CARD,
            expected_total=Decimal("39.00"),
        )

    assert gateway.intents == []


async def test_decline_creates_no_order(order_service, gateway, make_profile, make_seller, make_listing, session_factory):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    gateway.charge_result = ChargeResult(success=False, status="DECLINED", reason="Insufficient funds")

    with pytest.raises(GatewayDecline) as exc_info:
        await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    assert exc_info.value.reason == "Insufficient funds"
    assert await count_orders(session_factory) == 0
    assert (await get_listing(session_factory, listing.id)).quantity == 1
    transaction = await get_transaction(session_factory, "intent_1")
    assert transaction.status == "declined"
    assert transaction.decline_reason == "Insufficient funds"


async def test_charge_timeout_is_unknown_outcome(order_service, gateway, make_profile, make_seller, make_listing, session_factory):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    gateway.charge_error = GatewayTimeout("Gateway call POST /payment/purchase timed out")

    with pytest.raises(PaymentOutcomeUnknown) as exc_info:
        await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    assert exc_info.value.reference == "intent_1"
    assert await count_orders(session_factory) == 0
    assert (await get_transaction(session_factory, "intent_1")).status == "unknown"


async def test_unsent_charge_is_plain_gateway_error(order_service, gateway, make_profile, make_seller, make_listing, session_factory):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    gateway.charge_error = GatewayUnavailable("Gateway connection failed")

    with pytest.raises(GatewayUnavailable):
        await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    assert await count_orders(session_factory) == 0
    assert (await get_transaction(session_factory, "intent_1")).status == "declined"


async def test_cannot_buy_own_listing(order_service, gateway, make_seller, make_listing):
    seller = await make_seller()
    listing = await make_listing(seller, "40.00")

    with pytest.raises(ValidationError):
        await order_service.checkout(buyer_id=seller.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    assert gateway.charges == []


async def test_insufficient_quantity_before_charge(order_service, gateway, make_profile, make_seller, make_listing):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00", quantity=1)

    with pytest.raises(InsufficientQuantity) as exc_info:
        await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 2)], card_details=CARD)

    assert exc_info.value.details["available"] == 1
    assert gateway.charges == []


async def test_inactive_listing_is_rejected(order_service, make_profile, make_seller, make_listing):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00", status="inactive")

    with pytest.raises(ValidationError):
        await order_service.validate_inventory(buyer.id, [CheckoutItem(listing.id, 1)])


async def test_quantity_guard_never_goes_negative(order_service, make_seller, make_listing, session_factory):
    listing = await make_listing(await make_seller(), "40.00", quantity=1)

    assert await order_service.decrement_listing_quantity(listing.id, 2) is False
    assert (await get_listing(session_factory, listing.id)).quantity == 1
    assert await order_service.decrement_listing_quantity(listing.id, 1) is True
    assert await order_service.decrement_listing_quantity(listing.id, 1) is False
    assert (await get_listing(session_factory, listing.id)).quantity == 0


async def test_oversold_after_charge_puts_order_under_review(
    order_service, notifier, make_profile, make_seller, make_listing, mocker
):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    mocker.patch.object(OrderService, "decrement_listing_quantity", return_value=False)

    result = await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    assert result.order.status == "needs_review"
    assert result.requires_review
    assert result.warnings
    assert any("requires review" in alert["subject"] for alert in notifier.admin_alerts)


async def test_order_failure_after_charge_runs_recovery(
    order_service, notifier, make_profile, make_seller, make_listing, mocker, session_factory
):
    from app.core.exceptions import CriticalInconsistency
    from app.models import CriticalPaymentError

    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "50.00")
    mocker.patch.object(OrderService, "_insert_paid_order", side_effect=RuntimeError("connection reset"))

    with pytest.raises(CriticalInconsistency) as exc_info:
        await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    assert exc_info.value.transaction_id == "tx_1"
    async with session_factory() as session:
        incident = (await session.execute(select(CriticalPaymentError))).scalar_one()
    assert incident.transaction_id == "tx_1"
    assert incident.amount == Decimal("50.00")
    assert notifier.admin_alerts


async def test_order_first_compensating_delete(order_service, make_profile, make_seller, make_listing, mocker, session_factory):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    mocker.patch.object(OrderService, "_insert_order_items", side_effect=RuntimeError("disk full"))

    with pytest.raises(PersistenceError):
        await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])

    assert await count_orders(session_factory) == 0


async def test_order_first_payment_capture(order_service, gateway, make_profile, make_seller, make_listing, session_factory):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00", quantity=3)

    order = await order_service.create_pending_order(
        buyer_id=buyer.id,
        items=[CheckoutItem(listing.id, 2)],
        total_amount=Decimal("80.00"),
    )
    assert order.status == "pending"
    assert (await get_listing(session_factory, listing.id)).quantity == 3

    intent = await order_service.create_payment_intent(order.id, buyer)
    paid = await order_service.confirm_order_payment(order.id, buyer)

    assert paid.status == "processing"
    assert paid.payment_status == "completed"
    assert paid.payment_intent_id == intent.intent_id
    assert (await get_listing(session_factory, listing.id)).quantity == 1

    # Confirming again changes nothing
    again = await order_service.confirm_order_payment(order.id, buyer)
    assert again.payment_status == "completed"
    assert (await get_listing(session_factory, listing.id)).quantity == 1


async def test_order_first_capture_decline(order_service, gateway, make_profile, make_seller, make_listing):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    order = await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])
    await order_service.create_payment_intent(order.id, buyer)
    gateway.capture_result = ChargeResult(success=False, status="DECLINED", reason="Expired card")

    with pytest.raises(GatewayDecline):
        await order_service.confirm_order_payment(order.id, buyer)

    order = await order_service.get_by_id(order.id)
    assert order.status == "payment_failed"
    assert order.payment_status == "failed"


async def test_status_transitions(order_service, make_profile, make_seller, make_listing):
    buyer = await make_profile()
    seller = await make_seller()
    stranger = await make_profile()
    listing = await make_listing(seller, "40.00", quantity=2)
    order = await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])

    with pytest.raises(InvalidTransition):
        await order_service.update_status(order.id, "delivered", seller)
    with pytest.raises(Forbidden):
        await order_service.update_status(order.id, "cancelled", stranger)
    with pytest.raises(ValidationError):
        await order_service.update_status(order.id, "teleported", seller)

    await order_service.mark_order_paid(order.id, "tx_paid")
    order = await order_service.update_status(order.id, "shipped", seller, tracking_number="1Z999")
    assert order.status == "shipped"
    assert order.tracking_number == "1Z999"
    assert order.shipped_at is not None

    order = await order_service.update_status(order.id, "delivered", seller)
    assert order.delivered_at is not None


async def test_unpaid_order_cannot_be_moved_into_fulfilment(
    order_service, payout_service, make_profile, make_seller, make_listing
):
    buyer = await make_profile()
    seller = await make_seller(payout_method="bank_transfer", bank_details=dict(BANK_DETAILS))
    listing = await make_listing(seller, "60.00")
    order = await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])

    for actor in (buyer, seller):
        with pytest.raises(InvalidTransition):
            await order_service.update_status(order.id, "processing", actor)

    stored = await order_service.get_by_id(order.id)
    assert stored.status == "pending"
    assert stored.payment_status == "pending"
    earnings = await payout_service.earnings.calculate_earnings(seller.id)
    assert earnings.order_ids == []


async def test_unpaid_delivered_order_earns_nothing(
    payout_service, gateway, make_profile, make_seller, make_listing, make_delivered_order, db
):
    buyer = await make_profile()
    seller = await make_seller(payout_method="bank_transfer", bank_details=dict(BANK_DETAILS))
    listing = await make_listing(seller, "60.00")
    order = await make_delivered_order(buyer, [(listing, 1)])
    await db.execute(update(Order).where(Order.id == order.id).values(payment_status="pending"))
    await db.commit()

    with pytest.raises(BelowThreshold):
        await payout_service.process_single_payout(seller.id)
    assert gateway.payouts == []


async def test_paid_order_cancellation(
    order_service, make_profile, make_seller, make_listing, session_factory
):
    buyer = await make_profile()
    seller = await make_seller()
    admin = await make_profile(role="admin")
    listing = await make_listing(seller, "40.00", quantity=3)
    result = await order_service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 2)], card_details=CARD)
    order = result.order
    assert (await get_listing(session_factory, listing.id)).quantity == 1

    for actor in (buyer, seller):
        with pytest.raises(Forbidden):
            await order_service.update_status(order.id, "cancelled", actor)
    with pytest.raises(ValidationError):
        await order_service.update_status(order.id, "cancelled", admin)

    await order_service.refund_order(order.id, None, "Out of stock at the shop", admin)
    cancelled = await order_service.update_status(order.id, "cancelled", admin)

    assert cancelled.status == "cancelled"
    assert (await get_listing(session_factory, listing.id)).quantity == 3


async def test_order_with_unknown_payment_cannot_be_cancelled(
    order_service, gateway, make_profile, make_seller, make_listing
):
    buyer = await make_profile()
    listing = await make_listing(await make_seller(), "40.00")
    order = await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])
    await order_service.create_payment_intent(order.id, buyer)
    gateway.charge_error = GatewayTimeout("Gateway call POST /payment/capture timed out")

    with pytest.raises(PaymentOutcomeUnknown):
        await order_service.confirm_order_payment(order.id, buyer)
    with pytest.raises(InvalidTransition):
        await order_service.update_status(order.id, "cancelled", buyer)


@pytest.fixture
async def file_session_factory(tmp_path):
    """Separate connections to one database file, so sessions really run concurrently."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def test_concurrent_checkouts_for_last_unit(file_session_factory, gateway, notifier, config, mocker):
    async with file_session_factory() as db:
        seller = Profile(id=uuid.uuid4(), email="seller@example.com", role="seller", approved=True)
        buyers = [Profile(id=uuid.uuid4(), email=f"buyer{i}@example.com", role="buyer") for i in range(2)]
        listing = Listing(
            id=uuid.uuid4(),
            seller_id=seller.id,
            card_name="Charizard Holo",
            condition="near_mint",
            price=Decimal("40.00"),
            quantity=1,
            status="active",
        )
        db.add_all([seller, *buyers, listing])
        await db.commit()

    mocker.patch.object(
        gateway,
        "process_charge",
        side_effect=[
            ChargeResult(success=True, status="APPROVED", transaction_id="tx_a"),
            ChargeResult(success=True, status="APPROVED", transaction_id="tx_b"),
        ],
    )
    recovery = PaymentRecoveryService(file_session_factory, gateway, notifier, config)

    async def buy(buyer):
        async with file_session_factory() as db:
            service = OrderService(db, gateway, recovery, notifier, config)
            return await service.checkout(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)], card_details=CARD)

    results = await asyncio.gather(*(buy(buyer) for buyer in buyers), return_exceptions=True)

    async with file_session_factory() as db:
        assert (await db.get(Listing, listing.id)).quantity == 0
        statuses = sorted((await db.execute(select(Order.status))).scalars().all())

    # The losing checkout is stopped before the charge, or was charged and lands in review
    rejected = [r for r in results if isinstance(r, InsufficientQuantity)]
    if rejected:
        assert statuses == ["processing"]
        assert gateway.process_charge.await_count == 1
    else:
        assert statuses == ["needs_review", "processing"]
        assert any("requires review" in alert["subject"] for alert in notifier.admin_alerts)
    assert not [r for r in results if isinstance(r, Exception) and not isinstance(r, InsufficientQuantity)]


async def test_refund_rules(order_service, gateway, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    seller = await make_seller()
    admin = await make_profile(role="admin")
    listing = await make_listing(seller, "40.00")
    order = await make_delivered_order(buyer, [(listing, 1)])

    with pytest.raises(Forbidden):
        await order_service.refund_order(order.id, None, "changed my mind", seller)
    with pytest.raises(ValidationError):
        await order_service.refund_order(order.id, Decimal("50.00"), "too much", admin)

    refunded = await order_service.refund_order(order.id, Decimal("10.00"), "damaged corner", buyer)

    assert refunded.refund_id == f"rf_{order.gateway_transaction_id}"
    assert refunded.refund_amount == Decimal("10.00")
    assert gateway.refunds[0]["amount_cents"] == 1000

    with pytest.raises(InvalidTransition):
        await order_service.refund_order(order.id, None, "again", admin)
