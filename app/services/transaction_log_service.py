"""Audit trail of gateway interactions."""
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import GatewayTransactionLog

logger = logging.getLogger(__name__)


class TransactionLogService:
    """Writes GatewayTransactionLog rows. Never breaks the calling flow."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(self, transaction_type: str, data: dict, status: str = "success") -> bool:
        """
        Record one gateway interaction.

        Args:
            transaction_type: charge / capture / refund / payout / webhook
            data: JSON-safe payload (no card data)
            status: success or error

        Returns:
            True if the row was written
        """
        try:
            self.db.add(
                GatewayTransactionLog(
                    transaction_type=transaction_type,
                    status=status,
                    transaction_data=data,
                )
            )
            await self.db.commit()
            return True
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to log {transaction_type} gateway transaction: {e}", exc_info=True)
            return False
