"""Recovery for charges that succeeded without a stored order."""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.core.exceptions import GatewayError, InvalidTransition, NotFound
from app.core.money import from_minor_units
from app.models.critical_error import CriticalPaymentError
from app.models.order import Order
from app.models.user import Profile
from app.services.gateway_client import GatewayClient
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

INCIDENT_STATUSES = ["needs_manual_review", "auto_refunded", "resolved"]


@dataclass
class RecoveryOutcome:
    """What the recovery sequence managed to do."""

    incident_stored: bool
    fallback_logged: bool
    refunded: bool = False
    refund_id: str | None = None
    admin_notified: bool = False
    escalated: bool = False


def describe_error(error: BaseException | dict | str | None) -> dict:
    """Turn an exception into JSON-safe error details."""
    if error is None:
        return {}
    if isinstance(error, dict):
        return error
    if isinstance(error, BaseException):
        return {"type": type(error).__name__, "message": str(error)}
    return {"message": str(error)}


class PaymentRecoveryService:
    """
    Handles the "charge succeeded, order persistence failed" case.

    Every step is isolated: a failure in one never prevents the others, and
    the entry point never raises. Incident writes use their own session
    because the request session is usually unusable at this point.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayClient,
        notifier: NotificationService,
        config: Settings,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.config = config

    async def handle_payment_success_order_failure(
        self,
        transaction_id: str,
        user_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        payment_intent_id: str | None = None,
        error: BaseException | dict | str | None = None,
    ) -> RecoveryOutcome:
        """Run the recovery sequence for one orphaned charge."""
        error_details = describe_error(error)
        record = {
            "type": "payment_success_order_failure",
            "transaction_id": transaction_id,
            "user_id": str(user_id),
            "amount": str(from_minor_units(amount_cents)),
            "amount_cents": amount_cents,
            "currency": currency,
            "payment_intent_id": payment_intent_id,
            "error_details": error_details,
            "status": "needs_manual_review",
            "created_at": datetime.utcnow().isoformat(),
        }

        # 1. Durable incident record, or the alerting log line
        stored = await self._store_incident(record)
        fallback_logged = False
        if not stored:
            fallback_logged = self._log_to_fallback(record)

        outcome = RecoveryOutcome(incident_stored=stored, fallback_logged=fallback_logged)

        # 2. Automatic refund
        if self.config.auto_refund_on_order_failure:
            refund_id = await self._attempt_automatic_refund(transaction_id, amount_cents)
            if refund_id:
                outcome.refunded = True
                outcome.refund_id = refund_id
                if stored:
                    await self._mark_auto_refunded(transaction_id, refund_id)
                await self._notify_user_of_refund(user_id, transaction_id, amount_cents, currency, refund_id)

        # 3. Operators are told regardless of the refund outcome
        outcome.admin_notified = await self._notify_admin_of_critical_error(
            transaction_id, user_id, amount_cents, currency, error_details, outcome.refunded
        )

        # 4. Nothing recorded anywhere: page humans
        if not stored and not fallback_logged:
            outcome.escalated = await self.escalate_critical_failure(record)

        return outcome

    async def _store_incident(self, record: dict) -> bool:
        """Insert the CriticalPaymentError row. Returns False instead of raising."""
        try:
            async with self.session_factory() as db:
                incident = CriticalPaymentError(
                    type=record["type"],
                    transaction_id=record["transaction_id"],
                    user_id=uuid.UUID(record["user_id"]),
                    amount=from_minor_units(record["amount_cents"]),
                    currency=record["currency"],
                    payment_intent_id=record["payment_intent_id"],
                    error_details=record["error_details"],
                    status="needs_manual_review",
                )
                db.add(incident)
                await db.commit()
            logger.info(f"Critical payment error recorded for transaction {record['transaction_id']}")
            return True
        except Exception as e:
            logger.error(f"Failed to record critical payment error in database: {e}", exc_info=True)
            return False

    def _log_to_fallback(self, record: dict) -> bool:
        """Write the incident as one JSON log line tagged for alerting."""
        try:
            payload = json.dumps(record, default=str, sort_keys=True)
        except (TypeError, ValueError) as e:
            logger.error(f"Could not serialize critical payment error for fallback log: {e}")
            return False

        logger.critical("CRITICAL PAYMENT ERROR - MANUAL INTERVENTION REQUIRED: %s", payload)
        return True

    async def _attempt_automatic_refund(self, transaction_id: str, amount_cents: int) -> str | None:
        """Refund the orphaned charge. Returns the refund id on success."""
        try:
            result = await self.gateway.refund(
                transaction_id,
                amount_cents,
                reason="Automatic refund: order could not be created",
            )
        except GatewayError as e:
            logger.error(f"Automatic refund failed for transaction {transaction_id}: {e}")
            return None
        except Exception as e:
            logger.error(f"Automatic refund error for transaction {transaction_id}: {e}", exc_info=True)
            return None

        logger.info(f"Automatic refund {result.refund_id} issued for transaction {transaction_id}")
        return result.refund_id

    async def _mark_auto_refunded(self, transaction_id: str, refund_id: str) -> None:
        """Move the incident to auto_refunded."""
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(CriticalPaymentError)
                    .where(
                        CriticalPaymentError.transaction_id == transaction_id,
                        CriticalPaymentError.status == "needs_manual_review",
                    )
                    .values(status="auto_refunded", refund_id=refund_id, resolved_at=datetime.utcnow())
                )
                await db.commit()
        except Exception as e:
            # Refund happened; the incident stays in manual review with the refund logged here
            logger.error(
                f"Failed to mark incident {transaction_id} as auto_refunded (refund {refund_id}): {e}",
                exc_info=True,
            )

    async def _notify_user_of_refund(
        self,
        user_id: uuid.UUID,
        transaction_id: str,
        amount_cents: int,
        currency: str,
        refund_id: str,
    ) -> bool:
        """Email the buyer about the automatic refund."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(Profile).where(Profile.id == user_id))
                user = result.scalar_one_or_none()
        except Exception as e:
            logger.error(f"Failed to load buyer {user_id} for refund notification: {e}")
            return False

        if not user or not user.email:
            return False

        text = (
            f"Dear {user.display_name or 'Customer'},\n\n"
            "We encountered a technical issue while processing your order, but your payment "
            "was successfully charged. We have automatically refunded the full amount.\n\n"
            f"Original transaction: {transaction_id}\n"
            f"Refund ID: {refund_id}\n"
            f"Amount refunded: {from_minor_units(amount_cents)} {currency}\n\n"
            "The refund should appear on your statement within 3-5 business days. "
            "If you still want these cards, please place your order again."
        )
        try:
            return await self.notifier.send(user.email, "Automatic refund processed - order issue", text)
        except Exception as e:
            logger.error(f"Failed to notify buyer {user_id} of refund: {e}")
            return False

    async def _notify_admin_of_critical_error(
        self,
        transaction_id: str,
        user_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        error_details: dict,
        refunded: bool,
    ) -> bool:
        """Alert operators about the incident."""
        text = (
            "CRITICAL PAYMENT ERROR - IMMEDIATE ATTENTION REQUIRED\n\n"
            f"Transaction ID: {transaction_id}\n"
            f"User ID: {user_id}\n"
            f"Amount: {from_minor_units(amount_cents)} {currency}\n"
            f"Automatically refunded: {'yes' if refunded else 'no'}\n"
            f"Timestamp: {datetime.utcnow().isoformat()}\n\n"
            f"Error details:\n{json.dumps(error_details, indent=2, default=str)}\n\n"
            "Action required:\n"
            "1. Verify the transaction in the gateway dashboard\n"
            "2. Create the order manually or refund the payment\n"
            "3. Contact the customer\n"
            "4. Resolve the incident in the admin panel"
        )
        try:
            return await self.notifier.notify_admins(
                f"CRITICAL: Payment success / order failure - {transaction_id}",
                text,
                severity="critical",
            )
        except Exception as e:
            logger.error(f"Failed to notify admins of critical error {transaction_id}: {e}", exc_info=True)
            return False

    async def escalate_critical_failure(self, record: dict) -> bool:
        """
        Maximum escalation when the incident could not be recorded anywhere.

        Each channel is attempted even if the previous one raised.
        """
        delivered = False
        text = (
            "MAXIMUM ESCALATION - IMMEDIATE ACTION REQUIRED\n\n"
            "A payment succeeded, the order was not created, and the incident could not be recorded.\n\n"
            f"Transaction: {record.get('transaction_id')}\n"
            f"User: {record.get('user_id')}\n"
            f"Amount: {record.get('amount')} {record.get('currency')}\n"
            f"Error: {record.get('error_details')}"
        )

        try:
            delivered = await self.notifier.send_urgent_alert("MAX ESCALATION: Payment system failure", text)
        except Exception as e:
            logger.error(f"Urgent email escalation failed: {e}")

        # logging reports handler errors itself instead of raising
        logger.critical(
            f"MAXIMUM ESCALATION - PAYMENT AND RECOVERY BOTH FAILED: "
            f"transaction={record.get('transaction_id')} user={record.get('user_id')} "
            f"amount={record.get('amount')} {record.get('currency')}"
        )
        return delivered

    async def flag_order_for_review(
        self,
        order_id: uuid.UUID,
        transaction_id: str | None,
        reason: str,
    ) -> bool:
        """
        Put a paid order whose contents or inventory are uncertain under review.

        Returns:
            True if the order row was flagged
        """
        flagged = False
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(
                        status="needs_review",
                        requires_manual_review=True,
                        notes=reason,
                        updated_at=datetime.utcnow(),
                    )
                )
                await db.commit()
            flagged = True
        except Exception as e:
            logger.error(f"Failed to flag order {order_id} for review: {e}", exc_info=True)

        text = (
            "A paid order requires manual review.\n\n"
            f"Order ID: {order_id}\n"
            f"Transaction ID: {transaction_id}\n"
            f"Reason: {reason}\n"
            f"Order flagged in database: {'yes' if flagged else 'NO - flag it manually'}"
        )
        try:
            await self.notifier.notify_admins(f"Order requires review - {order_id}", text, severity="high")
        except Exception as e:
            logger.error(f"Failed to notify admins about order {order_id}: {e}", exc_info=True)

        return flagged

    async def list_incidents(self, status: str = "needs_manual_review") -> list[CriticalPaymentError]:
        """List incidents with the given status, newest first."""
        if status not in INCIDENT_STATUSES:
            raise ValueError(f"Invalid incident status: {status}. Allowed: {', '.join(INCIDENT_STATUSES)}")

        async with self.session_factory() as db:
            stmt = (
                select(CriticalPaymentError)
                .where(CriticalPaymentError.status == status)
                .order_by(CriticalPaymentError.created_at.desc())
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def resolve_incident(
        self,
        transaction_id: str,
        method: str,
        notes: str | None,
        admin_id: uuid.UUID,
    ) -> CriticalPaymentError:
        """Mark an incident resolved. No gateway side effects."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CriticalPaymentError).where(CriticalPaymentError.transaction_id == transaction_id)
            )
            incident = result.scalar_one_or_none()
            if not incident:
                raise NotFound(f"Critical error for transaction '{transaction_id}' not found")
            if incident.status == "resolved":
                raise InvalidTransition(f"Critical error for transaction '{transaction_id}' is already resolved")

            incident.status = "resolved"
            incident.resolution_method = method
            incident.resolution_notes = notes
            incident.resolved_by = admin_id
            incident.resolved_at = datetime.utcnow()
            await db.commit()
            await db.refresh(incident)

        logger.info(f"Critical error {transaction_id} resolved by {admin_id} via {method}")
        return incident

    async def validate_payment_order_consistency(self, transaction_id: str) -> dict:
        """Compare the stored order with the gateway view of a transaction."""
        async with self.session_factory() as db:
            result = await db.execute(select(Order).where(Order.gateway_transaction_id == transaction_id))
            order = result.scalar_one_or_none()

        try:
            gateway_status = await self.gateway.get_transaction_status(transaction_id)
        except GatewayError as e:
            logger.error(f"Error validating payment/order consistency for {transaction_id}: {e}")
            return {
                "has_order": order is not None,
                "order_status": order.status if order else None,
                "payment_status": "unknown",
                "consistent": False,
                "error": str(e),
            }

        payment_status = str(gateway_status.get("status", "unknown")).lower()
        return {
            "has_order": order is not None,
            "order_status": order.status if order else None,
            "payment_status": payment_status,
            "consistent": order is not None and payment_status in ("approved", "completed", "captured"),
        }
