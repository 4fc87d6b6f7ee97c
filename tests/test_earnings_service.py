from datetime import datetime, timedelta
from decimal import Decimal

from app.services.earnings_service import EarningsService
from app.services.setting_service import PLATFORM_FEES_KEY, SettingService


async def test_commission_scenario(db, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    seller = await make_seller()
    for price in ("40.00", "30.00", "20.00"):
        listing = await make_listing(seller, price)
        await make_delivered_order(buyer, [(listing, 1)])

    earnings = await EarningsService(db).calculate_earnings(seller.id)

    assert earnings.total_earnings == Decimal("87.75")
    assert earnings.platform_commission == Decimal("2.25")
    assert earnings.gross_subtotal == Decimal("90.00")
    assert earnings.total_orders == 3
    assert earnings.total_items == 3
    assert abs(earnings.total_earnings + earnings.platform_commission - earnings.gross_subtotal) <= Decimal("0.01")


async def test_only_own_items_of_mixed_order(db, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    seller_a = await make_seller("Seller A")
    seller_b = await make_seller("Seller B")
    card_a = await make_listing(seller_a, "50.00", quantity=2)
    card_b = await make_listing(seller_b, "30.00")
    await make_delivered_order(buyer, [(card_a, 2), (card_b, 1)])

    service = EarningsService(db)
    earnings_a = await service.calculate_earnings(seller_a.id)
    earnings_b = await service.calculate_earnings(seller_b.id)

    assert earnings_a.gross_subtotal == Decimal("100.00")
    assert earnings_a.total_earnings == Decimal("97.50")
    assert earnings_a.total_items == 2
    assert earnings_b.total_earnings == Decimal("29.25")
    assert earnings_b.total_orders == 1


async def test_excludes_paid_out_and_undelivered_orders(
    db, make_profile, make_seller, make_listing, make_delivered_order, order_service
):
    from app.services.order_service import CheckoutItem

    buyer = await make_profile()
    seller = await make_seller()
    listing = await make_listing(seller, "40.00", quantity=5)
    await make_delivered_order(buyer, [(listing, 1)], payout_processed=True)
    await order_service.create_pending_order(buyer_id=buyer.id, items=[CheckoutItem(listing.id, 1)])

    earnings = await EarningsService(db).calculate_earnings(seller.id)

    assert earnings.total_earnings == Decimal("0.00")
    assert earnings.total_orders == 0
    assert earnings.order_ids == []


async def test_period_bounds(db, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    seller = await make_seller()
    listing = await make_listing(seller, "40.00", quantity=2)
    now = datetime.utcnow()
    await make_delivered_order(buyer, [(listing, 1)], delivered_at=now - timedelta(days=40))
    recent = await make_delivered_order(buyer, [(listing, 1)], delivered_at=now - timedelta(days=2))

    earnings = await EarningsService(db).calculate_earnings(seller.id, period_start=now - timedelta(days=30))

    assert earnings.order_ids == [recent.id]
    assert earnings.total_earnings == Decimal("39.00")


async def test_commission_rate_from_platform_settings(db, make_profile, make_seller, make_listing, make_delivered_order):
    buyer = await make_profile()
    seller = await make_seller()
    listing = await make_listing(seller, "90.00")
    await make_delivered_order(buyer, [(listing, 1)])
    await SettingService(db).set(PLATFORM_FEES_KEY, {"commission_rate": 0.1, "payout_threshold": 50})

    earnings = await EarningsService(db).calculate_earnings(seller.id)

    assert earnings.commission_rate == Decimal("0.1")
    assert earnings.total_earnings == Decimal("81.00")
    assert earnings.platform_commission == Decimal("9.00")
