"""Order reconciliation: checkout flows, payment confirmation and order lifecycle."""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import Settings, settings as app_settings
from app.core.exceptions import (
    CriticalInconsistency,
    Forbidden,
    GatewayDecline,
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    InsufficientQuantity,
    InvalidTransition,
    NotFound,
    PaymentOutcomeUnknown,
    PersistenceError,
    ValidationError,
)
from app.core.money import CENT, to_minor_units
from app.models.cart import CartItem
from app.models.listing import Listing
from app.models.order import Order, OrderItem
from app.models.payment import PaymentTransaction
from app.models.user import Profile
from app.services.gateway_client import ChargeIntent, ChargeResult, GatewayClient
from app.services.notification_service import NotificationService
from app.services.recovery_service import PaymentRecoveryService
from app.services.transaction_log_service import TransactionLogService

logger = logging.getLogger(__name__)

ORDER_STATUSES = [
    "pending",
    "processing",
    "shipped",
    "delivered",
    "completed",
    "cancelled",
    "payment_failed",
    "needs_review",
]

# Manual transitions. completed, cancelled, payment_failed and needs_review are terminal.
# pending -> processing only happens through a recorded payment (mark_order_paid).
ORDER_TRANSITIONS = {
    "pending": {"cancelled", "payment_failed"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": {"completed"},
}

STATUS_TIMESTAMPS = {
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "completed": "completed_at",
}

CRITICAL_SUPPORT_MESSAGE = (
    "Your payment was processed successfully, but we encountered an issue creating your order. "
    "Our team has been notified and will resolve this shortly. Please keep this transaction "
    "reference for your records."
)


@dataclass
class CheckoutItem:
    """Requested listing and quantity."""

    listing_id: UUID
    quantity: int


@dataclass
class ValidatedItem:
    """Listing snapshot taken during inventory validation."""

    listing_id: UUID
    seller_id: UUID
    card_name: str
    price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class CheckoutResult:
    """Outcome of a charge-first checkout that took the buyer's money."""

    order: Order
    charge: ChargeResult
    warnings: list[str] = field(default_factory=list)

    @property
    def requires_review(self) -> bool:
        return self.order.status == "needs_review" or self.order.requires_manual_review


class OrderService:
    """
    Order reconciliation engine.

    Charge-first checkout never creates an order without a confirmed charge and
    never lets a confirmed charge go unrecorded: if the order cannot be stored,
    the recovery service takes over before the caller gets a response.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: GatewayClient | None = None,
        recovery: PaymentRecoveryService | None = None,
        notifier: NotificationService | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.recovery = recovery
        self.notifier = notifier
        self.config = config or app_settings
        self.audit = TransactionLogService(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_id(self, order_id: UUID) -> Order | None:
        """Get an order with its items."""
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_actor(self, order_id: UUID, actor: Profile) -> Order:
        """Get an order visible to the buyer, a seller of one of its items, or an admin."""
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFound(f"Order '{order_id}' not found")
        if not self._is_participant(order, actor):
            raise Forbidden("Not authorized to view this order")
        return order

    @staticmethod
    def _is_participant(order: Order, actor: Profile) -> bool:
        if actor.role == "admin" or order.buyer_id == actor.id:
            return True
        return any(item.seller_id == actor.id for item in order.items)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_inventory(self, buyer_id: UUID, items: list[CheckoutItem]) -> list[ValidatedItem]:
        """
        Check every requested listing before any money moves.

        Prices are read from the database; the client never supplies them.

        Raises:
            ValidationError: empty cart, bad quantity, inactive listing, own listing
            InsufficientQuantity: listing has fewer units than requested
        """
        if not items:
            raise ValidationError("Order must contain at least one item")

        # Same listing twice counts as one combined request
        requested: dict[UUID, int] = {}
        for item in items:
            if item.quantity <= 0:
                raise ValidationError(f"Invalid quantity {item.quantity} for listing '{item.listing_id}'")
            requested[item.listing_id] = requested.get(item.listing_id, 0) + item.quantity

        result = await self.db.execute(
            select(Listing)
            .where(Listing.id.in_(list(requested)))
            .execution_options(populate_existing=True)
        )
        listings = {listing.id: listing for listing in result.scalars().all()}

        validated = []
        for listing_id, quantity in requested.items():
            listing = listings.get(listing_id)
            if not listing or listing.status != "active":
                raise ValidationError(f"Listing '{listing_id}' is no longer available", listing_id=str(listing_id))
            if listing.seller_id == buyer_id:
                raise ValidationError("You cannot purchase your own listing", listing_id=str(listing_id))
            if listing.quantity < quantity:
                raise InsufficientQuantity(
                    f"Insufficient quantity for '{listing.card_name}'. "
                    f"Available: {listing.quantity}, requested: {quantity}",
                    listing_id=str(listing_id),
                    available=listing.quantity,
                    requested=quantity,
                )

            validated.append(
                ValidatedItem(
                    listing_id=listing.id,
                    seller_id=listing.seller_id,
                    card_name=listing.card_name,
                    price=listing.price,
                    quantity=quantity,
                )
            )

        return validated

    @staticmethod
    def _compute_totals(
        validated: list[ValidatedItem],
        shipping_cost: Decimal,
        tax_amount: Decimal,
    ) -> tuple[Decimal, Decimal]:
        """Return (subtotal, total) for validated items."""
        if shipping_cost < 0 or tax_amount < 0:
            raise ValidationError("Shipping cost and tax must not be negative")
        subtotal = sum((item.line_total for item in validated), Decimal("0"))
        return subtotal, subtotal + shipping_cost + tax_amount

    @staticmethod
    def _check_client_amount(name: str, client_value: Decimal | None, server_value: Decimal) -> None:
        if client_value is not None and abs(client_value - server_value) >= CENT:
            raise ValidationError(
                f"Order {name} mismatch: expected {server_value}, got {client_value}",
                expected=str(server_value),
                received=str(client_value),
            )

    # ------------------------------------------------------------------
    # Charge-first checkout
    # ------------------------------------------------------------------

    async def checkout(
        self,
        buyer_id: UUID,
        items: list[CheckoutItem],
        card_details: dict,
        shipping_address: dict | None = None,
        billing_address: dict | None = None,
        shipping_cost: Decimal = Decimal("0"),
        tax_amount: Decimal = Decimal("0"),
        expected_total: Decimal | None = None,
        currency: str | None = None,
    ) -> CheckoutResult:
        """
        Charge the buyer, then record the order.

        Steps run strictly in order: validate inventory, charge, insert order,
        insert items, decrement listings, clear cart.

        Raises:
            ValidationError / InsufficientQuantity: before any gateway call
            GatewayDecline: charge declined, no order created
            GatewayUnavailable / GatewayRejected: charge provably not taken
            PaymentOutcomeUnknown: charge timed out, no order created
            CriticalInconsistency: charged but the order could not be stored
        """
        currency = (currency or self.config.default_currency).upper()

        validated = await self.validate_inventory(buyer_id, items)
        subtotal, total = self._compute_totals(validated, shipping_cost, tax_amount)
        self._check_client_amount("total", expected_total, total)
        amount_cents = to_minor_units(total)

        order_ref = f"checkout-{uuid.uuid4().hex}"
        intent = await self.gateway.create_charge_intent(amount_cents, currency, billing_address, order_ref)
        await self._record_transaction(intent, buyer_id, amount_cents, currency)

        charge = await self._charge(card_details, amount_cents, intent)

        if not charge.success:
            await self._finish_transaction(intent.intent_id, "declined", decline_reason=charge.reason)
            await self.audit.log(
                "charge",
                {"intent_id": intent.intent_id, "amount_cents": amount_cents, "reason": charge.reason},
                status="error",
            )
            logger.info(f"Charge declined for buyer {buyer_id}: {charge.reason}")
            raise GatewayDecline(charge.reason or "Payment declined", transaction_id=charge.transaction_id)

        # From here on the buyer has paid; nothing below may lose that fact
        transaction_id = charge.transaction_id
        await self._finish_transaction(intent.intent_id, "approved", gateway_transaction_id=transaction_id)

        try:
            order_id = await self._insert_paid_order(
                buyer_id=buyer_id,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                tax_amount=tax_amount,
                total=total,
                currency=currency,
                shipping_address=shipping_address,
                billing_address=billing_address,
                intent_id=intent.intent_id,
                transaction_id=transaction_id,
            )
        except Exception as e:
            await self._safe_rollback()
            logger.critical(
                f"Order creation failed after successful payment {transaction_id}: {e}",
                exc_info=True,
            )
            await self.recovery.handle_payment_success_order_failure(
                transaction_id=transaction_id,
                user_id=buyer_id,
                amount_cents=amount_cents,
                currency=currency,
                payment_intent_id=intent.intent_id,
                error=e,
            )
            raise CriticalInconsistency(transaction_id) from e

        warnings = []
        try:
            await self._insert_order_items(order_id, validated)
        except Exception as e:
            await self._safe_rollback()
            logger.critical(f"Order items creation failed for order {order_id} ({transaction_id}): {e}", exc_info=True)
            await self.recovery.flag_order_for_review(
                order_id,
                transaction_id,
                reason=f"Order items could not be recorded: {e}",
            )
            warnings.append("Order contents could not be recorded; the order is under review")
        else:
            warnings.extend(await self._decrement_inventory(order_id, transaction_id, validated))
            await self._link_transaction(intent.intent_id, order_id)
            await self.clear_cart(buyer_id)

        await self.audit.log(
            "charge",
            {
                "intent_id": intent.intent_id,
                "transaction_id": transaction_id,
                "order_id": str(order_id),
                "amount_cents": amount_cents,
                "currency": currency,
            },
        )

        order = await self.get_by_id(order_id)
        logger.info(f"Checkout completed: order {order_id}, transaction {transaction_id}, total {total} {currency}")
        return CheckoutResult(order=order, charge=charge, warnings=warnings)

    async def _charge(self, card_details: dict, amount_cents: int, intent: ChargeIntent) -> ChargeResult:
        """Run the charge and translate ambiguous transport failures to an unknown outcome."""
        try:
            return await self.gateway.process_charge(card_details, amount_cents, intent.intent_id)
        except GatewayUnavailable as e:
            if isinstance(e, GatewayTimeout) or e.request_sent:
                logger.error(f"Charge outcome unknown for intent {intent.intent_id}: {e}")
                await self._finish_transaction(intent.intent_id, "unknown", decline_reason=str(e))
                raise PaymentOutcomeUnknown(intent.intent_id) from e
            await self._finish_transaction(intent.intent_id, "declined", decline_reason=str(e))
            raise
        except GatewayRejected as e:
            await self._finish_transaction(intent.intent_id, "declined", decline_reason=e.reason)
            raise

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}")

    async def _record_transaction(
        self,
        intent: ChargeIntent,
        buyer_id: UUID,
        amount_cents: int,
        currency: str,
    ) -> None:
        """Persist the charge attempt before the card is charged."""
        try:
            self.db.add(
                PaymentTransaction(
                    intent_id=intent.intent_id,
                    buyer_id=buyer_id,
                    amount_cents=amount_cents,
                    currency=currency,
                    status="initiated",
                )
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to record payment attempt: {e}") from e

    async def _finish_transaction(self, intent_id: str, status: str, **values) -> None:
        """Move a charge attempt to its terminal status. Only an initiated attempt can move."""
        try:
            await self.db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.intent_id == intent_id,
                    PaymentTransaction.status == "initiated",
                )
                .values(status=status, **values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to mark payment attempt {intent_id} as {status}: {e}", exc_info=True)

    async def _link_transaction(self, intent_id: str, order_id: UUID) -> None:
        try:
            await self.db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.intent_id == intent_id)
                .values(order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to link payment attempt {intent_id} to order {order_id}: {e}")

    async def _insert_paid_order(
        self,
        buyer_id: UUID,
        subtotal: Decimal,
        shipping_cost: Decimal,
        tax_amount: Decimal,
        total: Decimal,
        currency: str,
        shipping_address: dict | None,
        billing_address: dict | None,
        intent_id: str,
        transaction_id: str,
    ) -> UUID:
        """Insert the order row of a charged checkout. Returns the order id."""
        order = Order(
            buyer_id=buyer_id,
            status="processing",
            payment_status="completed",
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            total_amount=total,
            currency=currency,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_intent_id=intent_id,
            gateway_transaction_id=transaction_id,
            paid_at=datetime.utcnow(),
        )
        self.db.add(order)
        await self.db.commit()
        return order.id

    async def _insert_order_items(self, order_id: UUID, validated: list[ValidatedItem]) -> None:
        for item in validated:
            self.db.add(
                OrderItem(
                    order_id=order_id,
                    listing_id=item.listing_id,
                    seller_id=item.seller_id,
                    card_name_snapshot=item.card_name,
                    quantity=item.quantity,
                    price=item.price,
                )
            )
        await self.db.commit()

    async def _decrement_inventory(
        self,
        order_id: UUID,
        transaction_id: str | None,
        items: list[ValidatedItem] | list[OrderItem],
    ) -> list[str]:
        """
        Decrement listings for a paid order.

        Failures are non-fatal. A listing that no longer has enough units
        (lost race with another checkout) puts the order under review.
        """
        warnings = []
        oversold = []
        for item in items:
            try:
                if not await self.decrement_listing_quantity(item.listing_id, item.quantity):
                    oversold.append(str(item.listing_id))
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to decrement listing {item.listing_id} for order {order_id}: {e}", exc_info=True)
                warnings.append(f"Inventory update pending for listing {item.listing_id}")

        if oversold:
            logger.warning(f"Order {order_id} oversold listings {oversold}")
            if self.recovery:
                await self.recovery.flag_order_for_review(
                    order_id,
                    transaction_id,
                    reason=f"Insufficient quantity at fulfilment for listings: {', '.join(oversold)}",
                )
            warnings.append("Some items sold out while your payment was processed; the order is under review")

        return warnings

    async def decrement_listing_quantity(self, listing_id: UUID, quantity: int) -> bool:
        """
        Atomically take units from a listing.

        Single guarded UPDATE, so concurrent checkouts can never drive the
        quantity below zero.

        Returns:
            True if the units were taken, False if not enough were left
        """
        result = await self.db.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.quantity >= quantity)
            .values(quantity=Listing.quantity - quantity, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _restore_inventory(self, order: Order) -> None:
        """Give the units of a cancelled paid order back to their listings. Committed by the caller."""
        for item in order.items:
            await self.db.execute(
                update(Listing)
                .where(Listing.id == item.listing_id)
                .values(quantity=Listing.quantity + item.quantity, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )

    async def clear_cart(self, buyer_id: UUID) -> None:
        """Remove the buyer's cart items. Non-fatal."""
        try:
            await self.db.execute(delete(CartItem).where(CartItem.user_id == buyer_id))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to clear cart for buyer {buyer_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Order-first checkout
    # ------------------------------------------------------------------

    async def create_pending_order(
        self,
        buyer_id: UUID,
        items: list[CheckoutItem],
        shipping_address: dict | None = None,
        billing_address: dict | None = None,
        subtotal: Decimal | None = None,
        shipping_cost: Decimal = Decimal("0"),
        tax_amount: Decimal = Decimal("0"),
        total_amount: Decimal | None = None,
        currency: str | None = None,
    ) -> Order:
        """
        Create a pending order before any payment.

        If the items cannot be inserted the order row is deleted again; no
        money has moved at this point.
        """
        validated = await self.validate_inventory(buyer_id, items)
        server_subtotal, server_total = self._compute_totals(validated, shipping_cost, tax_amount)
        self._check_client_amount("subtotal", subtotal, server_subtotal)
        self._check_client_amount("total", total_amount, server_total)

        order = Order(
            buyer_id=buyer_id,
            status="pending",
            payment_status="pending",
            subtotal=server_subtotal,
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            total_amount=server_total,
            currency=(currency or self.config.default_currency).upper(),
            shipping_address=shipping_address,
            billing_address=billing_address,
        )
        try:
            self.db.add(order)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to create order: {e}") from e

        order_id = order.id
        try:
            await self._insert_order_items(order_id, validated)
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Order items creation failed for order {order_id}, rolling back: {e}", exc_info=True)
            await self._delete_order(order_id)
            raise PersistenceError("Failed to create order items") from e

        logger.info(f"Pending order {order_id} created for buyer {buyer_id}: total {server_total}")
        return await self.get_by_id(order_id)

    async def _delete_order(self, order_id: UUID) -> None:
        """Compensating delete for an order that never received items."""
        try:
            await self.db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
            await self.db.execute(delete(Order).where(Order.id == order_id))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Compensating delete of order {order_id} failed: {e}", exc_info=True)

    async def create_payment_intent(self, order_id: UUID, actor: Profile) -> ChargeIntent:
        """Create a gateway intent for a pending order so the client can pay it."""
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFound(f"Order '{order_id}' not found")
        if order.buyer_id != actor.id:
            raise Forbidden("Only the buyer can pay for this order")
        if order.status != "pending" or order.payment_status == "completed":
            raise InvalidTransition(f"Order '{order_id}' is not awaiting payment")

        intent = await self.gateway.create_charge_intent(
            to_minor_units(order.total_amount),
            order.currency,
            order.billing_address,
            str(order.id),
        )
        order.payment_intent_id = intent.intent_id
        await self.db.commit()
        return intent

    async def confirm_order_payment(self, order_id: UUID, actor: Profile) -> Order:
        """
        Capture the intent of a pending order and mark it paid.

        Raises:
            GatewayDecline: capture declined; the order moves to payment_failed
            PaymentOutcomeUnknown: capture timed out; the webhook settles it
        """
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFound(f"Order '{order_id}' not found")
        if order.buyer_id != actor.id and actor.role != "admin":
            raise Forbidden("Not authorized to confirm payment for this order")
        if order.payment_status == "completed":
            return order
        if not order.payment_intent_id:
            raise ValidationError("Order has no payment intent")
        if order.status != "pending":
            raise InvalidTransition(f"Order '{order_id}' is {order.status}, payment cannot be confirmed")

        intent_id = order.payment_intent_id
        amount_cents = to_minor_units(order.total_amount)
        try:
            result = await self.gateway.capture_payment(intent_id, amount_cents)
        except GatewayUnavailable as e:
            if isinstance(e, GatewayTimeout) or e.request_sent:
                await self._set_payment_status(order_id, "unknown")
                raise PaymentOutcomeUnknown(intent_id) from e
            raise

        if not result.success:
            await self.mark_order_payment_failed(order_id, result.reason)
            await self.audit.log("capture", {"order_id": str(order_id), "reason": result.reason}, status="error")
            raise GatewayDecline(result.reason or "Payment declined", transaction_id=result.transaction_id)

        await self.mark_order_paid(order_id, result.transaction_id)
        await self.audit.log(
            "capture",
            {"order_id": str(order_id), "transaction_id": result.transaction_id, "amount_cents": amount_cents},
        )
        return await self.get_by_id(order_id)

    async def _set_payment_status(self, order_id: UUID, payment_status: str) -> None:
        await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status.in_(["pending", "unknown"]))
            .values(payment_status=payment_status)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def mark_order_paid(self, order_id: UUID, transaction_id: str, paid_at: datetime | None = None) -> bool:
        """
        Record payment of an order exactly once.

        Conditional on the payment not being completed yet, so a replayed
        confirmation changes nothing and inventory is decremented only by the
        call that actually flipped the row.

        Returns:
            True if this call applied the payment
        """
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status != "completed",
                Order.status.in_(["pending", "payment_failed"]),
            )
            .values(
                status="processing",
                payment_status="completed",
                gateway_transaction_id=transaction_id,
                paid_at=paid_at or datetime.utcnow(),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            logger.info(f"Payment for order {order_id} already recorded, skipping")
            return False

        order = await self.get_by_id(order_id)
        await self._decrement_inventory(order_id, transaction_id, list(order.items))
        logger.info(f"Order {order_id} paid with transaction {transaction_id}")
        return True

    async def mark_order_payment_failed(self, order_id: UUID, reason: str | None = None) -> bool:
        """Move a pending order to payment_failed. Returns True if it changed."""
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == "pending",
                Order.payment_status != "completed",
            )
            .values(
                status="payment_failed",
                payment_status="failed",
                notes=reason,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def update_status(
        self,
        order_id: UUID,
        status: str,
        actor: Profile,
        tracking_number: str | None = None,
    ) -> Order:
        """
        Move an order along its lifecycle.

        Args:
            order_id: Order ID
            status: Target status, one of ORDER_STATUSES
            actor: Buyer, seller of one of the items, or admin
            tracking_number: Optional carrier tracking number (on shipping)
        """
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status: {status}. Allowed: {', '.join(ORDER_STATUSES)}")

        order = await self.get_by_id(order_id)
        if not order:
            raise NotFound(f"Order '{order_id}' not found")
        if not self._is_participant(order, actor):
            raise Forbidden("Not authorized to update this order")

        allowed = ORDER_TRANSITIONS.get(order.status, set())
        if status not in allowed:
            raise InvalidTransition(
                f"Cannot change order status from '{order.status}' to '{status}'",
                current=order.status,
                requested=status,
            )
        if status in ("cancelled", "payment_failed") and order.payment_status == "unknown":
            raise InvalidTransition(
                f"Payment outcome of order '{order_id}' is not known yet",
                current=order.status,
                requested=status,
            )

        paid_cancellation = status == "cancelled" and order.payment_status in ("completed", "refunded")
        if paid_cancellation:
            if actor.role != "admin":
                raise Forbidden("Paid orders can only be cancelled by an admin")
            if not order.refund_id:
                raise ValidationError("Refund the order before cancelling it")
            await self._restore_inventory(order)

        old_status = order.status
        order.status = status
        timestamp_field = STATUS_TIMESTAMPS.get(status)
        if timestamp_field:
            setattr(order, timestamp_field, datetime.utcnow())
        if tracking_number:
            order.tracking_number = tracking_number
        if status == "payment_failed":
            order.payment_status = "failed"

        await self.db.commit()
        logger.info(f"Order {order_id} status {old_status} -> {status} by {actor.id}")
        return await self.get_by_id(order_id)

    async def refund_order(
        self,
        order_id: UUID,
        amount: Decimal | None,
        reason: str,
        actor: Profile,
    ) -> Order:
        """
        Refund a paid order through the gateway.

        Admins can refund any paid order; buyers only delivered ones. The
        REFUND_PROCESSED webhook later settles payment_status.
        """
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFound(f"Order '{order_id}' not found")

        is_admin = actor.role == "admin"
        if not is_admin and not (order.buyer_id == actor.id and order.status == "delivered"):
            raise Forbidden("Only admins or the buyer of a delivered order can request a refund")
        if order.payment_status != "completed" or not order.gateway_transaction_id:
            raise ValidationError("Order has no completed payment to refund")
        if order.refund_id:
            raise InvalidTransition(f"Order '{order_id}' has already been refunded")

        refund_amount = amount if amount is not None else order.total_amount
        if refund_amount <= 0 or refund_amount > order.total_amount:
            raise ValidationError(f"Refund amount must be between 0 and {order.total_amount}")

        result = await self.gateway.refund(
            order.gateway_transaction_id,
            to_minor_units(refund_amount),
            reason=reason,
        )

        order.refund_amount = refund_amount
        order.refund_reason = reason
        order.refund_id = result.refund_id
        await self.db.commit()

        await self.audit.log(
            "refund",
            {
                "order_id": str(order_id),
                "transaction_id": order.gateway_transaction_id,
                "refund_id": result.refund_id,
                "amount": str(refund_amount),
            },
        )
        logger.info(f"Refund {result.refund_id} of {refund_amount} issued for order {order_id}")
        return await self.get_by_id(order_id)

