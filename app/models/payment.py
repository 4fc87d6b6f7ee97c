"""Payment models."""
import uuid
from datetime import datetime

from sqlalchemy import String, Text, BigInteger, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class PaymentTransaction(Base):
    """One attempt to charge a buyer. Amounts are stored in minor units."""

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    intent_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    buyer_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="initiated")  # initiated / approved / declined / unknown
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)


class GatewayTransactionLog(Base):
    """Audit trail of gateway calls."""

    __tablename__ = "gateway_transaction_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    transaction_type: Mapped[str] = mapped_column(String, nullable=False)  # charge / capture / refund / payout / webhook
    status: Mapped[str] = mapped_column(String, nullable=False)  # success / error
    transaction_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
