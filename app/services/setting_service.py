"""Service for platform settings."""
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings as app_settings
from app.models.setting import Setting

PLATFORM_FEES_KEY = "platform_fees"


@dataclass
class PlatformFees:
    """Commission and payout threshold in effect."""

    commission_rate: Decimal
    payout_threshold: Decimal


class SettingService:
    """Service for platform settings."""

    def __init__(self, db: AsyncSession, config: Settings | None = None):
        self.db = db
        self.config = config or app_settings

    async def get_by_key(self, key: str) -> dict | None:
        """Get a setting value by key."""
        stmt = select(Setting).where(Setting.key == key)
        result = await self.db.execute(stmt)
        setting = result.scalar_one_or_none()

        return setting.value if setting else None

    async def set(self, key: str, value: dict) -> Setting:
        """Create or replace a setting."""
        stmt = select(Setting).where(Setting.key == key)
        result = await self.db.execute(stmt)
        existing_setting = result.scalar_one_or_none()

        if existing_setting:
            existing_setting.value = value
            await self.db.commit()
            await self.db.refresh(existing_setting)
            return existing_setting

        setting = Setting(key=key, value=value)
        self.db.add(setting)
        await self.db.commit()
        await self.db.refresh(setting)
        return setting

    async def get_platform_fees(self) -> PlatformFees:
        """
        Get commission rate and minimum payout threshold.

        Values missing from the platform_fees setting fall back to configuration.
        """
        value = await self.get_by_key(PLATFORM_FEES_KEY) or {}

        commission_rate = value.get("commission_rate")
        payout_threshold = value.get("payout_threshold")

        return PlatformFees(
            # str() keeps JSON floats like 0.025 exact
            commission_rate=Decimal(str(commission_rate)) if commission_rate is not None else self.config.default_commission_rate,
            payout_threshold=Decimal(str(payout_threshold)) if payout_threshold is not None else self.config.default_payout_threshold,
        )
