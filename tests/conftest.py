import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Base
from app.models import Listing, Order, OrderItem, Profile, SellerSettings
from app.services.gateway_client import ChargeIntent, ChargeResult, PayoutResult, RefundResult
from app.services.order_service import OrderService
from app.services.payout_service import PayoutService
from app.services.recovery_service import PaymentRecoveryService

BANK_DETAILS = {
    "accountNumber": "000123456789",
    "routingNumber": "021000021",
    "bankName": "Maple Bank",
    "accountHolder": "Pallet Town Cards",
}


class FakeGateway:
    """In-memory gateway. Set the *_error attributes to make a call raise."""

    def __init__(self):
        self.charge_result = ChargeResult(
            success=True,
            status="APPROVED",
            transaction_id="tx_1",
            approval_code="T12345",
            card_last4="4242",
        )
        self.capture_result = None
        self.charge_error = None
        self.refund_error = None
        self.payout_error = None
        self.payout_lookup = {}  # reference -> gateway status
        self.intents = []
        self.charges = []
        self.refunds = []
        self.payouts = []

    async def create_charge_intent(self, amount_cents, currency, billing_info, order_ref):
        intent = ChargeIntent(intent_id=f"intent_{len(self.intents) + 1}", client_token="client_tok")
        self.intents.append({"intent_id": intent.intent_id, "amount_cents": amount_cents, "currency": currency})
        return intent

    async def process_charge(self, card_details, amount_cents, intent_id):
        self.charges.append({"intent_id": intent_id, "amount_cents": amount_cents})
        if self.charge_error:
            raise self.charge_error
        return self.charge_result

    async def capture_payment(self, intent_id, amount_cents):
        self.charges.append({"intent_id": intent_id, "amount_cents": amount_cents, "capture": True})
        if self.charge_error:
            raise self.charge_error
        return self.capture_result or self.charge_result

    async def refund(self, transaction_id, amount_cents, reason=""):
        self.refunds.append({"transaction_id": transaction_id, "amount_cents": amount_cents, "reason": reason})
        if self.refund_error:
            raise self.refund_error
        return RefundResult(refund_id=f"rf_{transaction_id}", status="APPROVED", amount_cents=amount_cents)

    async def disburse_payout(self, seller_id, amount_cents, destination, reference):
        self.payouts.append(
            {"seller_id": seller_id, "amount_cents": amount_cents, "destination": destination, "reference": reference}
        )
        if self.payout_error:
            raise self.payout_error
        return PayoutResult(
            payout_id=f"po_{len(self.payouts)}",
            status="processing",
            estimated_arrival="2-3 business days",
        )

    async def get_transaction_status(self, transaction_id):
        return {"transactionId": transaction_id, "status": "APPROVED"}

    async def get_payout_status(self, payout_id):
        return {"payoutId": payout_id, "status": "processing"}

    async def get_payout_by_reference(self, reference):
        return {"reference": reference, "status": self.payout_lookup.get(reference, "not_found")}

    def verify_webhook_signature(self, raw_payload, signature_header):
        return signature_header == "valid-signature"


class FakeNotifier:
    """Records emails instead of sending them."""

    def __init__(self):
        self.sent = []
        self.admin_alerts = []
        self.urgent_alerts = []

    async def send(self, recipients, subject, text, tags=None):
        self.sent.append({"to": recipients, "subject": subject, "text": text})
        return True

    async def notify_admins(self, subject, text, severity="medium"):
        self.admin_alerts.append({"subject": subject, "text": text, "severity": severity})
        return True

    async def send_urgent_alert(self, subject, text):
        self.urgent_alerts.append({"subject": subject, "text": text})
        return True


@pytest.fixture
def config():
    return Settings(
        auto_refund_on_order_failure=False,
        admin_emails=["ops@example.com"],
        default_currency="CAD",
        default_commission_rate=Decimal("0.025"),
        default_payout_threshold=Decimal("25.00"),
        enable_scheduler=False,
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def recovery(session_factory, gateway, notifier, config):
    return PaymentRecoveryService(session_factory, gateway, notifier, config)


@pytest.fixture
def order_service(db, gateway, recovery, notifier, config):
    return OrderService(db, gateway, recovery, notifier, config)


@pytest.fixture
def payout_service(db, gateway, notifier, config):
    return PayoutService(db, gateway, notifier, config)


@pytest.fixture
def make_profile(db):
    async def _make(role="buyer", approved=False, display_name=None, **seller_settings):
        profile = Profile(
            id=uuid.uuid4(),
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            display_name=display_name,
            role=role,
            approved=approved,
        )
        if seller_settings:
            profile.seller_settings = SellerSettings(**seller_settings)
        db.add(profile)
        await db.commit()
        return profile

    return _make


@pytest.fixture
def make_seller(make_profile):
    async def _make(display_name="Pallet Town Cards", **seller_settings):
        return await make_profile(role="seller", approved=True, display_name=display_name, **seller_settings)

    return _make


@pytest.fixture
def make_listing(db):
    async def _make(seller, price, quantity=1, card_name="Charizard Holo", status="active"):
        listing = Listing(
            id=uuid.uuid4(),
            seller_id=seller.id,
            card_name=card_name,
            condition="near_mint",
            price=Decimal(str(price)),
            quantity=quantity,
            status=status,
        )
        db.add(listing)
        await db.commit()
        return listing

    return _make


@pytest.fixture
def make_delivered_order(db):
    """Delivered, paid order. ``lines`` are (listing, quantity) pairs."""

    async def _make(buyer, lines, delivered_at=None, payout_processed=False):
        subtotal = sum((listing.price * quantity for listing, quantity in lines), Decimal("0"))
        delivered_at = delivered_at or datetime.utcnow() - timedelta(days=1)
        order = Order(
            id=uuid.uuid4(),
            buyer_id=buyer.id,
            status="delivered",
            payment_status="completed",
            subtotal=subtotal,
            shipping_cost=Decimal("0"),
            tax_amount=Decimal("0"),
            total_amount=subtotal,
            currency="CAD",
            gateway_transaction_id=f"tx_{uuid.uuid4().hex[:12]}",
            payout_processed=payout_processed,
            paid_at=delivered_at - timedelta(days=3),
            delivered_at=delivered_at,
            items=[
                OrderItem(
                    listing_id=listing.id,
                    seller_id=listing.seller_id,
                    card_name_snapshot=listing.card_name,
                    quantity=quantity,
                    price=listing.price,
                )
                for listing, quantity in lines
            ],
        )
        db.add(order)
        await db.commit()
        return order

    return _make
