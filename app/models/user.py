"""User profile models."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, Boolean, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Profile(Base):
    """Marketplace user profile."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="buyer")  # buyer / seller / admin
    approved: Mapped[bool] = mapped_column(Boolean, default=False)  # seller application approved
    suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    seller_settings: Mapped["SellerSettings | None"] = relationship(
        "SellerSettings", back_populates="profile", uselist=False
    )


class SellerSettings(Base):
    """Payout preferences of a seller."""

    __tablename__ = "seller_settings"

    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("profiles.id"), primary_key=True)
    payout_method: Mapped[str | None] = mapped_column(String, nullable=True)  # bank_transfer / paypal
    payout_threshold: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    auto_payout: Mapped[bool] = mapped_column(Boolean, default=False)
    bank_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    paypal_email: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    profile: Mapped["Profile"] = relationship("Profile", back_populates="seller_settings")
