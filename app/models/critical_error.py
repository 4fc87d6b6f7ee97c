"""Critical payment error model."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Text, Numeric, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class CriticalPaymentError(Base):
    """Incident record for a charge that succeeded without a stored order."""

    __tablename__ = "critical_payment_errors"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String, nullable=False, default="payment_success_order_failure")
    transaction_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="CAD")
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="needs_manual_review", index=True)  # needs_manual_review / auto_refunded / resolved
    refund_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_method: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
