"""Service for gateway webhook events."""
import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order
from app.models.payment import PaymentTransaction
from app.models.payout import SellerPayout
from app.services.order_service import OrderService
from app.services.transaction_log_service import TransactionLogService

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
PAYMENT_FAILED = "PAYMENT_FAILED"
REFUND_PROCESSED = "REFUND_PROCESSED"
CHARGEBACK_RECEIVED = "CHARGEBACK_RECEIVED"
PAYOUT_COMPLETED = "PAYOUT_COMPLETED"
PAYOUT_FAILED = "PAYOUT_FAILED"

# Charge attempts a late PAYMENT_SUCCESS may still settle
ORPHAN_ATTEMPT_STATUSES = ["initiated", "unknown"]


class PaymentService:
    """
    Applies verified gateway events to orders and payouts.

    Gateways resend events, so every handler is a conditional update keyed on
    the gateway reference: applying the same event twice leaves the same state.
    """

    def __init__(self, db: AsyncSession, order_service: OrderService | None = None):
        self.db = db
        self.order_service = order_service or OrderService(db)
        self.audit = TransactionLogService(db)

    async def handle_webhook_event(self, event: dict) -> bool:
        """
        Dispatch one webhook event.

        Args:
            event: {"eventType": ..., "data": {...}}

        Returns:
            True if the event changed any state
        """
        event_type = event.get("eventType")
        data = event.get("data") or {}

        handlers = {
            PAYMENT_SUCCESS: self._handle_payment_success,
            PAYMENT_FAILED: self._handle_payment_failed,
            REFUND_PROCESSED: self._handle_refund_processed,
            CHARGEBACK_RECEIVED: self._handle_chargeback,
            PAYOUT_COMPLETED: self._handle_payout_completed,
            PAYOUT_FAILED: self._handle_payout_failed,
        }
        handler = handlers.get(event_type)
        if not handler:
            logger.info(f"Unhandled webhook event type: {event_type}")
            return False

        applied = await handler(data)
        await self.audit.log(
            "webhook",
            {"event_type": event_type, "data": data, "applied": applied},
        )
        return applied

    async def _find_order(self, data: dict) -> Order | None:
        """Find the order an event refers to: by order number first, then by transaction id."""
        conditions = []
        order_number = data.get("orderNumber")
        if order_number:
            try:
                conditions.append(Order.id == uuid.UUID(str(order_number)))
            except ValueError:
                logger.warning(f"Webhook orderNumber is not an order id: {order_number}")
        transaction_id = data.get("transactionId")
        if transaction_id:
            conditions.append(Order.gateway_transaction_id == str(transaction_id))
        if not conditions:
            return None

        stmt = select(Order).where(or_(*conditions)).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def _handle_payment_success(self, data: dict) -> bool:
        transaction_id = data.get("transactionId")
        if not transaction_id:
            logger.warning("PAYMENT_SUCCESS webhook without transactionId")
            return False

        order = await self._find_order(data)
        if not order:
            return await self._handle_orphaned_charge(data, str(transaction_id))

        applied = await self.order_service.mark_order_paid(order.id, str(transaction_id))
        logger.info(f"Payment success webhook for order {order.id}: applied={applied}")
        return applied

    async def _handle_orphaned_charge(self, data: dict, transaction_id: str) -> bool:
        """
        PAYMENT_SUCCESS for a charge without an order.

        This is a checkout whose charge outcome was unknown when the buyer got
        the answer. The attempt is marked approved once and handed to recovery;
        a charge that matches no attempt at all is escalated to admins.
        """
        conditions = [PaymentTransaction.gateway_transaction_id == transaction_id]
        intent_id = data.get("paymentIntentId") or data.get("intentId")
        if intent_id:
            conditions.append(PaymentTransaction.intent_id == str(intent_id))

        result = await self.db.execute(
            select(PaymentTransaction)
            .where(or_(*conditions), PaymentTransaction.order_id.is_(None))
            .execution_options(populate_existing=True)
        )
        attempt = result.scalars().first()
        if not attempt:
            logger.critical(f"PAYMENT_SUCCESS for unknown charge {transaction_id}: {data}")
            await self._alert_admins(
                f"CRITICAL: Unmatched payment {transaction_id}",
                f"The gateway reported a successful charge that matches no order or checkout.\n\n"
                f"Transaction: {transaction_id}\nEvent data: {data}",
            )
            return False

        claimed = await self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == attempt.id,
                PaymentTransaction.status.in_(ORPHAN_ATTEMPT_STATUSES),
            )
            .values(status="approved", gateway_transaction_id=transaction_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if claimed.rowcount != 1:
            logger.info(f"Charge {transaction_id} without order already recorded, skipping")
            return False

        logger.critical(f"Charge {transaction_id} of intent {attempt.intent_id} succeeded without an order")
        recovery = self.order_service.recovery
        if recovery:
            await recovery.handle_payment_success_order_failure(
                transaction_id=transaction_id,
                user_id=attempt.buyer_id,
                amount_cents=attempt.amount_cents,
                currency=attempt.currency,
                payment_intent_id=attempt.intent_id,
                error="Charge confirmed by webhook after the checkout outcome was unknown",
            )
        else:
            await self._alert_admins(
                f"CRITICAL: Payment {transaction_id} has no order",
                f"Intent {attempt.intent_id} was charged {attempt.amount_cents} {attempt.currency} "
                f"for buyer {attempt.buyer_id} but no order exists.",
            )
        return True

    async def _alert_admins(self, subject: str, text: str) -> None:
        notifier = self.order_service.notifier
        if notifier:
            await notifier.notify_admins(subject, text, severity="critical")

    async def _handle_payment_failed(self, data: dict) -> bool:
        order = await self._find_order(data)
        if not order:
            logger.warning(f"No order found for PAYMENT_FAILED webhook {data.get('transactionId')}")
            return False

        return await self.order_service.mark_order_payment_failed(
            order.id,
            data.get("errorMessage") or "Payment failed",
        )

    async def _handle_refund_processed(self, data: dict) -> bool:
        original_transaction_id = data.get("originalTransactionId")
        if not original_transaction_id:
            logger.warning("REFUND_PROCESSED webhook without originalTransactionId")
            return False

        now = datetime.utcnow()
        values = {"payment_status": "refunded", "refunded_at": now, "updated_at": now}
        if data.get("refundTransactionId"):
            values["refund_id"] = str(data["refundTransactionId"])

        result = await self.db.execute(
            update(Order)
            .where(
                Order.gateway_transaction_id == str(original_transaction_id),
                Order.payment_status != "refunded",
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Refund webhook for transaction {original_transaction_id}: applied={result.rowcount == 1}")
        return result.rowcount == 1

    async def _handle_chargeback(self, data: dict) -> bool:
        transaction_id = data.get("transactionId")
        if not transaction_id:
            return False

        result = await self.db.execute(
            update(Order)
            .where(
                Order.gateway_transaction_id == str(transaction_id),
                Order.requires_manual_review.is_(False),
            )
            .values(
                requires_manual_review=True,
                notes=f"Chargeback received: {data.get('reason') or 'No reason provided'}",
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning(f"Chargeback received for transaction {transaction_id}")
        return result.rowcount == 1

    async def _handle_payout_completed(self, data: dict) -> bool:
        match = self._payout_match(data)
        if match is None:
            return False
        payout_id = data.get("payoutId") or data.get("reference")

        now = datetime.utcnow()
        result = await self.db.execute(
            update(SellerPayout)
            .where(
                match,
                SellerPayout.status.in_(["pending", "processing"]),
            )
            .values(status="completed", processed_at=now, updated_at=now, failure_reason=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Payout completed webhook for {payout_id}: applied={result.rowcount == 1}")
        if result.rowcount != 1:
            await self._check_closed_payout_paid(match, payout_id)
        return result.rowcount == 1

    async def _check_closed_payout_paid(self, match, payout_id: str) -> None:
        """Alert admins when the gateway paid out a payout already closed here."""
        result = await self.db.execute(
            select(SellerPayout)
            .where(match, SellerPayout.status.in_(["cancelled", "failed"]))
            .execution_options(populate_existing=True)
        )
        payout = result.scalars().first()
        if not payout:
            return

        logger.critical(f"Gateway completed payout {payout_id} which is {payout.status} (payout {payout.id})")
        await self._alert_admins(
            f"CRITICAL: {payout.status.capitalize()} payout {payout.id} was paid",
            f"The gateway reported payout {payout_id} as completed, but payout {payout.id} of seller "
            f"{payout.seller_id} for {payout.amount} {payout.currency} is {payout.status}. "
            f"Its orders may have been paid twice.",
        )

    async def _handle_payout_failed(self, data: dict) -> bool:
        match = self._payout_match(data)
        if match is None:
            return False
        payout_id = data.get("payoutId") or data.get("reference")

        now = datetime.utcnow()
        result = await self.db.execute(
            update(SellerPayout)
            .where(
                match,
                SellerPayout.status.in_(["pending", "processing"]),
            )
            .values(
                status="failed",
                failed_at=now,
                updated_at=now,
                failure_reason=data.get("reason") or "Payout failed at gateway",
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Payout failed webhook for {payout_id}: applied={result.rowcount == 1}")
        return result.rowcount == 1

    @staticmethod
    def _payout_match(data: dict):
        """Match a payout by gateway payout id or by the reference sent at disbursement."""
        conditions = []
        if data.get("payoutId"):
            conditions.append(SellerPayout.external_payout_id == str(data["payoutId"]))
        if data.get("reference"):
            conditions.append(SellerPayout.external_reference == str(data["reference"]))
        if not conditions:
            return None
        return or_(*conditions)
