"""Seller payout model."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Text, Numeric, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class SellerPayout(Base):
    """One payout attempt to a seller."""

    __tablename__ = "seller_payouts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="CAD")
    payout_method: Mapped[str] = mapped_column(String, nullable=False)  # bank_transfer / paypal
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)  # pending / processing / completed / failed / cancelled
    order_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # str(order.id) covered by this payout
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    external_payout_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    estimated_arrival: Mapped[str | None] = mapped_column(String, nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)
