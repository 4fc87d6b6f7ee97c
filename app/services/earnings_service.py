"""Seller earnings calculation."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.money import round_money
from app.models.order import Order, OrderItem
from app.services.setting_service import SettingService

logger = logging.getLogger(__name__)


@dataclass
class OrderEarnings:
    """Seller share of one order."""

    order_id: UUID
    order_date: datetime
    delivered_date: datetime | None
    subtotal: Decimal
    platform_fee: Decimal
    seller_earnings: Decimal
    item_count: int


@dataclass
class SellerEarnings:
    """
    Pending earnings of a seller.

    Monetary fields are rounded to cents; ``order_details`` keep full precision.
    """

    seller_id: UUID
    total_earnings: Decimal
    total_orders: int
    total_items: int
    platform_commission: Decimal
    gross_subtotal: Decimal
    commission_rate: Decimal
    order_details: list[OrderEarnings] = field(default_factory=list)
    period_start: datetime | None = None
    period_end: datetime | None = None

    @property
    def order_ids(self) -> list[UUID]:
        return [detail.order_id for detail in self.order_details]


class EarningsService:
    """Computes what the platform owes a seller for delivered, unpaid orders."""

    def __init__(self, db: AsyncSession, setting_service: SettingService | None = None):
        self.db = db
        self.setting_service = setting_service or SettingService(db)

    async def calculate_earnings(
        self,
        seller_id: UUID,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> SellerEarnings:
        """
        Calculate pending earnings for a seller.

        Only delivered, paid orders not yet attached to a payout count, and within
        them only the items this seller sold. The seller keeps
        ``subtotal * (1 - r)``; the commission is back-computed from the total
        so that earnings plus commission equal the gross subtotal.

        Args:
            seller_id: Seller profile ID
            period_start: Optional lower bound on delivered_at
            period_end: Optional upper bound on delivered_at
        """
        fees = await self.setting_service.get_platform_fees()
        rate = fees.commission_rate

        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(
                Order.status == "delivered",
                Order.payment_status == "completed",
                Order.payout_processed.is_(False),
                Order.id.in_(select(OrderItem.order_id).where(OrderItem.seller_id == seller_id)),
            )
            .order_by(Order.delivered_at)
            .execution_options(populate_existing=True)
        )
        if period_start:
            stmt = stmt.where(Order.delivered_at >= period_start)
        if period_end:
            stmt = stmt.where(Order.delivered_at <= period_end)

        result = await self.db.execute(stmt)
        orders = result.scalars().all()

        total_earnings = Decimal("0")
        gross_subtotal = Decimal("0")
        total_items = 0
        order_details = []

        for order in orders:
            seller_items = [item for item in order.items if item.seller_id == seller_id]
            order_subtotal = sum((item.price * item.quantity for item in seller_items), Decimal("0"))
            item_count = sum(item.quantity for item in seller_items)

            platform_fee = order_subtotal * rate
            seller_earnings = order_subtotal - platform_fee

            total_earnings += seller_earnings
            gross_subtotal += order_subtotal
            total_items += item_count
            order_details.append(
                OrderEarnings(
                    order_id=order.id,
                    order_date=order.created_at,
                    delivered_date=order.delivered_at,
                    subtotal=order_subtotal,
                    platform_fee=platform_fee,
                    seller_earnings=seller_earnings,
                    item_count=item_count,
                )
            )

        commission = total_earnings * rate / (1 - rate) if rate < 1 else gross_subtotal

        logger.info(
            f"Earnings for seller {seller_id}: {round_money(total_earnings)} from {len(order_details)} orders "
            f"(commission rate {rate})"
        )
        return SellerEarnings(
            seller_id=seller_id,
            total_earnings=round_money(total_earnings),
            total_orders=len(order_details),
            total_items=total_items,
            platform_commission=round_money(commission),
            gross_subtotal=round_money(gross_subtotal),
            commission_rate=rate,
            order_details=order_details,
            period_start=period_start,
            period_end=period_end,
        )
