"""Seller payout orchestration."""
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import Settings, settings as app_settings
from app.core.exceptions import (
    BelowThreshold,
    GatewayError,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidTransition,
    MarketplaceError,
    NoPayoutMethod,
    NotFound,
    PersistenceError,
    ValidationError,
)
from app.core.money import round_money, to_minor_units
from app.models.order import Order
from app.models.payout import SellerPayout
from app.models.user import Profile, SellerSettings
from app.services.earnings_service import EarningsService, SellerEarnings
from app.services.gateway_client import GatewayClient
from app.services.notification_service import NotificationService
from app.services.setting_service import SettingService
from app.services.transaction_log_service import TransactionLogService

logger = logging.getLogger(__name__)

PAYOUT_METHODS = ["bank_transfer", "paypal"]
PAYOUT_STATUSES = ["pending", "processing", "completed", "failed", "cancelled"]
MIN_PAYOUT_THRESHOLD = Decimal("25.00")
REQUIRED_BANK_FIELDS = ["accountNumber", "routingNumber", "bankName", "accountHolder"]
OUTCOME_UNKNOWN_REASON = "Disbursement outcome unknown - awaiting gateway confirmation"
# Gateway payout states in which no money left the platform
UNDISBURSED_GATEWAY_STATUSES = {"not_found", "failed", "rejected", "cancelled"}
DEFAULT_PERIOD_DAYS = 30


@dataclass
class EligibleSeller:
    """Seller whose pending earnings reach their payout threshold."""

    seller: Profile
    pending_earnings: Decimal
    order_count: int
    threshold: Decimal
    can_auto_process: bool


def payout_destination(seller: Profile, method: str) -> dict | None:
    """Gateway destination for a payout method, or None if it is not fully configured."""
    seller_settings = seller.seller_settings
    if not seller_settings:
        return None

    if method == "bank_transfer":
        bank = seller_settings.bank_details or {}
        if not bank.get("accountNumber") or not bank.get("routingNumber"):
            return None
        return {
            "type": "bank_transfer",
            "accountNumber": bank["accountNumber"],
            "routingNumber": bank["routingNumber"],
            "bankName": bank.get("bankName"),
            "accountHolder": bank.get("accountHolder") or seller.display_name,
            "accountType": bank.get("accountType") or "checking",
            "email": seller.email,
        }
    if method == "paypal":
        if not seller_settings.paypal_email:
            return None
        return {"type": "paypal", "email": seller_settings.paypal_email}
    return None


def mask_bank_details(bank_details: dict | None) -> dict | None:
    """Hide all but the last four digits of account and routing numbers."""
    if not bank_details:
        return None

    def mask(value):
        return f"****{str(value)[-4:]}" if value else None

    return {
        "bankName": bank_details.get("bankName"),
        "accountHolder": bank_details.get("accountHolder"),
        "accountType": bank_details.get("accountType"),
        "accountNumber": mask(bank_details.get("accountNumber")),
        "routingNumber": mask(bank_details.get("routingNumber")),
    }


class PayoutService:
    """
    Drives seller payouts through the gateway.

    A payout row and the ``payout_processed`` marks on its orders are written
    in one transaction, so an order is never attached to two live payouts.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: GatewayClient,
        notifier: NotificationService,
        config: Settings | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.config = config or app_settings
        self.setting_service = SettingService(db, self.config)
        self.earnings = EarningsService(db, self.setting_service)
        self.audit = TransactionLogService(db)

    async def _get_seller(self, seller_id: UUID) -> Profile:
        stmt = (
            select(Profile)
            .options(selectinload(Profile.seller_settings))
            .where(Profile.id == seller_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        seller = result.scalar_one_or_none()
        if not seller:
            raise NotFound(f"Seller '{seller_id}' not found")
        return seller

    async def _get_payout(self, payout_id: UUID) -> SellerPayout:
        stmt = select(SellerPayout).where(SellerPayout.id == payout_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        payout = result.scalar_one_or_none()
        if not payout:
            raise NotFound(f"Payout '{payout_id}' not found")
        return payout

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    async def get_eligible_sellers(self) -> list[EligibleSeller]:
        """Approved, active sellers whose pending earnings reach their threshold."""
        fees = await self.setting_service.get_platform_fees()

        stmt = (
            select(Profile)
            .join(SellerSettings, SellerSettings.user_id == Profile.id)
            .options(selectinload(Profile.seller_settings))
            .where(
                Profile.role == "seller",
                Profile.approved.is_(True),
                Profile.suspended.is_(False),
            )
        )
        result = await self.db.execute(stmt)
        sellers = result.scalars().all()

        eligible = []
        for seller in sellers:
            earnings = await self.earnings.calculate_earnings(seller.id)
            seller_settings = seller.seller_settings
            threshold = seller_settings.payout_threshold or fees.payout_threshold

            if earnings.total_earnings >= threshold:
                method = seller_settings.payout_method
                eligible.append(
                    EligibleSeller(
                        seller=seller,
                        pending_earnings=earnings.total_earnings,
                        order_count=earnings.total_orders,
                        threshold=threshold,
                        can_auto_process=bool(
                            seller_settings.auto_payout
                            and method
                            and payout_destination(seller, method) is not None
                        ),
                    )
                )

        logger.info(f"Found {len(eligible)} sellers eligible for payout")
        return eligible

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_single_payout(
        self,
        seller_id: UUID,
        amount: Decimal | None = None,
        method: str | None = None,
    ) -> SellerPayout:
        """
        Pay a seller their pending earnings.

        Args:
            seller_id: Seller profile ID
            amount: Explicit amount; defaults to the full pending earnings. Rounded
                up to whole orders, oldest first
            method: bank_transfer or paypal; defaults to the seller's setting

        Returns:
            The payout. ``processing`` when the gateway accepted it, ``failed``
            when it refused, ``pending`` when the outcome is unknown.

        Raises:
            NoPayoutMethod, BelowThreshold, ValidationError
        """
        seller = await self._get_seller(seller_id)
        earnings = await self.earnings.calculate_earnings(seller_id)

        if amount is None:
            amount = earnings.total_earnings
        elif amount <= 0 or amount > earnings.total_earnings:
            raise ValidationError(
                f"Payout amount {amount} must be positive and not exceed pending earnings {earnings.total_earnings}"
            )

        method = method or (seller.seller_settings.payout_method if seller.seller_settings else None)
        if not method:
            raise NoPayoutMethod("No payout method configured for seller")
        if method not in PAYOUT_METHODS:
            raise ValidationError(f"Unsupported payout method: {method}")
        destination = payout_destination(seller, method)
        if destination is None:
            raise NoPayoutMethod(f"Payout details for {method} are not configured")

        fees = await self.setting_service.get_platform_fees()
        if amount < fees.payout_threshold:
            raise BelowThreshold(
                f"Payout amount ${amount} is below minimum threshold ${fees.payout_threshold}",
                amount=str(amount),
                threshold=str(fees.payout_threshold),
            )
        if not earnings.order_ids:
            raise ValidationError("Seller has no delivered orders awaiting payout")

        order_ids, amount = self._orders_covering(earnings, amount)
        payout = await self._create_payout(seller, amount, method, earnings, order_ids)
        await self._disburse(payout, seller, destination)
        if payout.status == "processing":
            await self._notify_seller(seller, payout, len(order_ids))
        return payout

    @staticmethod
    def _orders_covering(earnings: SellerEarnings, amount: Decimal) -> tuple[list[UUID], Decimal]:
        """
        Oldest orders whose earnings reach ``amount``, with their exact total.

        A payout always covers whole orders, so a partial amount is raised to
        the next order boundary and the remaining orders stay unpaid.
        """
        order_ids = []
        covered = Decimal("0")
        for detail in earnings.order_details:
            if order_ids and round_money(covered) >= amount:
                break
            order_ids.append(detail.order_id)
            covered += detail.seller_earnings
        return order_ids, round_money(covered)

    async def _create_payout(
        self,
        seller: Profile,
        amount: Decimal,
        method: str,
        earnings: SellerEarnings,
        order_ids: list[UUID],
    ) -> SellerPayout:
        """Insert the payout and claim its orders in one transaction."""
        now = datetime.utcnow()
        payout = SellerPayout(
            id=uuid.uuid4(),
            seller_id=seller.id,
            amount=amount,
            fee_amount=Decimal("0"),
            net_amount=amount,
            currency=self.config.default_currency,
            payout_method=method,
            status="pending",
            order_ids=[str(order_id) for order_id in order_ids],
            period_start=earnings.period_start or now - timedelta(days=DEFAULT_PERIOD_DAYS),
            period_end=earnings.period_end or now,
            initiated_at=now,
        )
        payout.external_reference = f"PAYOUT-{payout.id}"

        try:
            self.db.add(payout)
            await self.db.flush()
            result = await self.db.execute(
                update(Order)
                .where(Order.id.in_(order_ids), Order.payout_processed.is_(False))
                .values(payout_processed=True, payout_id=payout.id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(order_ids):
                await self.db.rollback()
                raise InvalidTransition(
                    f"Orders for seller {seller.id} were claimed by another payout, try again"
                )
            await self.db.commit()
        except MarketplaceError:
            raise
        except Exception as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to create payout: {e}") from e

        logger.info(f"Payout {payout.id} created for seller {seller.id}: {amount} covering {len(order_ids)} orders")
        return payout

    async def _disburse(self, payout: SellerPayout, seller: Profile, destination: dict) -> None:
        """Send a pending payout to the gateway and record the outcome on the row."""
        amount_cents = to_minor_units(payout.net_amount)
        try:
            result = await self.gateway.disburse_payout(
                seller.id,
                amount_cents,
                destination,
                payout.external_reference,
            )
        except GatewayError as e:
            if isinstance(e, GatewayUnavailable) and (isinstance(e, GatewayTimeout) or e.request_sent):
                # The gateway may have paid; leave pending until a webhook or an admin settles it
                payout.failure_reason = OUTCOME_UNKNOWN_REASON
                logger.error(f"Payout {payout.id} outcome unknown: {e}")
            else:
                payout.status = "failed"
                payout.failed_at = datetime.utcnow()
                payout.failure_reason = str(e)
                logger.error(f"Payout {payout.id} failed: {e}")
            await self.db.commit()
            await self.audit.log(
                "payout",
                {"payout_id": str(payout.id), "amount_cents": amount_cents, "error": str(e)},
                status="error",
            )
            return

        payout.status = "processing"
        payout.external_payout_id = result.payout_id
        payout.estimated_arrival = result.estimated_arrival
        payout.failure_reason = None
        await self.db.commit()
        await self.audit.log(
            "payout",
            {
                "payout_id": str(payout.id),
                "external_payout_id": result.payout_id,
                "amount_cents": amount_cents,
                "method": payout.payout_method,
            },
        )
        logger.info(f"Payout {payout.id} sent to gateway as {result.payout_id}")

    async def _notify_seller(self, seller: Profile, payout: SellerPayout, order_count: int) -> None:
        """Payout email to the seller. Failures never roll back the payout."""
        if not seller.email:
            return
        text = (
            f"Hello {seller.display_name or 'Seller'},\n\n"
            f"A payout of {payout.amount} {payout.currency} is on its way.\n\n"
            f"Method: {payout.payout_method}\n"
            f"Orders: {order_count}\n"
            f"Period: {payout.period_start:%Y-%m-%d} - {payout.period_end:%Y-%m-%d}\n"
            f"Estimated arrival: {payout.estimated_arrival or 'n/a'}\n"
            f"Reference: {payout.external_reference}"
        )
        try:
            await self.notifier.send(seller.email, "Your payout is on its way", text, tags=["payout"])
        except Exception as e:
            logger.error(f"Error sending payout notification for {payout.id}: {e}", exc_info=True)

    async def process_automatic_payouts(self) -> list[dict]:
        """
        Pay every seller that can be paid automatically.

        One seller's failure never stops the others. Admins get one summary.
        """
        eligible = await self.get_eligible_sellers()
        auto_sellers = [entry for entry in eligible if entry.can_auto_process]
        logger.info(f"Found {len(auto_sellers)} sellers eligible for automatic payout")

        # Plain values: a rollback below expires every loaded profile
        targets = [(entry.seller.id, entry.seller.display_name) for entry in auto_sellers]

        results = []
        for seller_id, seller_name in targets:
            try:
                payout = await self.process_single_payout(seller_id)
            except MarketplaceError as e:
                await self.db.rollback()
                logger.error(f"Failed payout for seller {seller_id}: {e.message}")
                results.append({"seller_id": seller_id, "seller_name": seller_name, "success": False, "error": e.message})
                continue
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Unexpected error paying seller {seller_id}: {e}", exc_info=True)
                results.append({"seller_id": seller_id, "seller_name": seller_name, "success": False, "error": str(e)})
                continue

            success = payout.status == "processing"
            results.append(
                {
                    "seller_id": seller_id,
                    "seller_name": seller_name,
                    "success": success,
                    "amount": payout.amount,
                    "payout_id": payout.id,
                    "status": payout.status,
                    "error": None if success else payout.failure_reason,
                }
            )

        if results:
            await self._send_admin_summary(results)
        return results

    async def _send_admin_summary(self, results: list[dict]) -> None:
        successful = [r for r in results if r["success"]]
        failed = [r for r in results if not r["success"]]
        total = sum((r["amount"] for r in successful), Decimal("0"))

        lines = [
            "Automated payout processing completed.",
            "",
            f"Successful payouts: {len(successful)}",
            f"Failed payouts: {len(failed)}",
            f"Total amount processed: {total} {self.config.default_currency}",
        ]
        if successful:
            lines += ["", "Successful:"] + [f"- {r['seller_name']}: {r['amount']} ({r['payout_id']})" for r in successful]
        if failed:
            lines += ["", "Failed:"] + [f"- {r['seller_name']}: {r['error']}" for r in failed]

        try:
            await self.notifier.notify_admins(
                "Automatic Payout Summary",
                "\n".join(lines),
                severity="medium" if failed else "low",
            )
        except Exception as e:
            logger.error(f"Error sending admin payout summary: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel_payout(self, payout_id: UUID, reason: str = "") -> SellerPayout:
        """
        Cancel a pending payout and release its orders.

        A payout whose disbursement outcome is unknown is only cancelled once
        the gateway confirms it never moved the money.
        """
        payout = await self._get_payout(payout_id)
        if payout.status != "pending":
            raise InvalidTransition("Can only cancel pending payouts", status=payout.status)
        if payout.failure_reason == OUTCOME_UNKNOWN_REASON:
            await self._ensure_not_disbursed(payout)

        now = datetime.utcnow()
        result = await self.db.execute(
            update(SellerPayout)
            .where(SellerPayout.id == payout_id, SellerPayout.status == "pending")
            .values(status="cancelled", failure_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidTransition("Payout changed state while cancelling")

        order_ids = [uuid.UUID(order_id) for order_id in payout.order_ids or []]
        if order_ids:
            await self.db.execute(
                update(Order)
                .where(Order.id.in_(order_ids), Order.payout_id == payout_id)
                .values(payout_processed=False, payout_id=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        logger.info(f"Payout {payout_id} cancelled, {len(order_ids)} orders released: {reason}")
        return await self._get_payout(payout_id)

    async def _ensure_not_disbursed(self, payout: SellerPayout) -> None:
        """Raise unless the gateway reports that this payout never paid out."""
        try:
            gateway_payout = await self.gateway.get_payout_by_reference(payout.external_reference)
        except GatewayError as e:
            raise InvalidTransition(
                f"Cannot confirm the gateway state of payout {payout.id}, it cannot be cancelled yet: {e}"
            ) from e

        gateway_status = str(gateway_payout.get("status", "")).lower()
        if gateway_status not in UNDISBURSED_GATEWAY_STATUSES:
            raise InvalidTransition(
                f"Gateway reports payout {payout.id} as '{gateway_status}', it cannot be cancelled",
                gateway_status=gateway_status,
            )

    async def retry_payout(self, payout_id: UUID) -> SellerPayout:
        """
        Retry a failed payout.

        The same row is disbursed again with its original amount and orders;
        earnings are not recalculated.
        """
        payout = await self._get_payout(payout_id)
        if payout.status != "failed":
            raise InvalidTransition("Can only retry failed payouts", status=payout.status)

        seller = await self._get_seller(payout.seller_id)
        destination = payout_destination(seller, payout.payout_method)
        if destination is None:
            raise NoPayoutMethod(f"Payout details for {payout.payout_method} are not configured")

        retry_count = (payout.retry_count or 0) + 1
        result = await self.db.execute(
            update(SellerPayout)
            .where(SellerPayout.id == payout_id, SellerPayout.status == "failed")
            .values(
                status="pending",
                failed_at=None,
                failure_reason=None,
                retry_count=retry_count,
                # New reference so the gateway does not replay the failed attempt
                external_reference=f"PAYOUT-{payout_id}-R{retry_count}",
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidTransition("Payout changed state while retrying")
        await self.db.commit()

        payout = await self._get_payout(payout_id)
        logger.info(f"Retrying payout {payout_id} (attempt {retry_count})")
        await self._disburse(payout, seller, destination)
        if payout.status == "processing":
            await self._notify_seller(seller, payout, len(payout.order_ids or []))
        return payout

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------

    async def generate_payout_report(self, start: datetime, end: datetime) -> dict:
        """Aggregate payouts created in [start, end] by status and by method."""
        stmt = (
            select(SellerPayout)
            .where(SellerPayout.created_at >= start, SellerPayout.created_at <= end)
            .order_by(SellerPayout.created_at.desc())
        )
        result = await self.db.execute(stmt)
        payouts = list(result.scalars().all())

        by_status: dict[str, dict] = {}
        by_method: dict[str, dict] = {}
        for payout in payouts:
            for bucket, key in ((by_status, payout.status), (by_method, payout.payout_method)):
                entry = bucket.setdefault(key, {"count": 0, "amount": Decimal("0")})
                entry["count"] += 1
                entry["amount"] += payout.amount

        def count(*statuses):
            return sum(by_status.get(s, {}).get("count", 0) for s in statuses)

        summary = {
            "total_payouts": len(payouts),
            "total_amount": sum((p.amount for p in payouts), Decimal("0")),
            "successful_payouts": count("completed"),
            "pending_payouts": count("pending", "processing"),
            "failed_payouts": count("failed"),
            "cancelled_payouts": count("cancelled"),
            "by_status": by_status,
            "by_method": by_method,
        }
        return {"summary": summary, "payouts": payouts, "date_range": {"start": start, "end": end}}

    async def check_failed_payouts(self) -> list[SellerPayout]:
        """Alert admins about payouts that failed in the last 24 hours."""
        since = datetime.utcnow() - timedelta(hours=24)
        stmt = select(SellerPayout).where(SellerPayout.status == "failed", SellerPayout.failed_at >= since)
        result = await self.db.execute(stmt)
        failed = list(result.scalars().all())

        if failed:
            total = sum((p.amount for p in failed), Decimal("0"))
            details = "\n".join(f"- {p.id}: {p.amount} ({p.failure_reason})" for p in failed)
            try:
                await self.notifier.notify_admins(
                    "Failed Payout Alert",
                    f"{len(failed)} payout(s) failed in the last 24 hours totaling "
                    f"{total} {self.config.default_currency}.\n\n{details}\n\n"
                    "Review failed payouts in the admin panel and contact affected sellers.",
                    severity="high",
                )
            except Exception as e:
                logger.error(f"Error sending failed payout alert: {e}", exc_info=True)
        return failed

    async def reconcile_payout_orders(self) -> int:
        """
        Mark orders referenced by a live payout that lost their payout mark.

        Orders already attached to another payout are left alone and logged.

        Returns:
            Number of orders corrected
        """
        stmt = select(SellerPayout).where(SellerPayout.status.in_(["processing", "completed"]))
        result = await self.db.execute(stmt)
        payouts = result.scalars().all()

        corrected = 0
        for payout in payouts:
            order_ids = [uuid.UUID(order_id) for order_id in payout.order_ids or []]
            if not order_ids:
                continue
            update_result = await self.db.execute(
                update(Order)
                .where(Order.id.in_(order_ids), Order.payout_processed.is_(False))
                .values(payout_processed=True, payout_id=payout.id, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount:
                corrected += update_result.rowcount
                logger.warning(f"Re-marked {update_result.rowcount} orders for payout {payout.id}")

            conflicts = await self.db.execute(
                select(Order.id).where(
                    Order.id.in_(order_ids),
                    Order.payout_id.is_not(None),
                    Order.payout_id != payout.id,
                )
            )
            for order_id in conflicts.scalars().all():
                logger.error(f"Order {order_id} of payout {payout.id} is attached to another payout")

        await self.db.commit()
        return corrected

    # ------------------------------------------------------------------
    # Seller-facing
    # ------------------------------------------------------------------

    async def get_seller_payout_history(self, seller_id: UUID, page: int = 1, limit: int = 20) -> dict:
        """Paginated payouts of a seller, newest first."""
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        total = await self.db.scalar(
            select(func.count()).select_from(SellerPayout).where(SellerPayout.seller_id == seller_id)
        )
        stmt = (
            select(SellerPayout)
            .where(SellerPayout.seller_id == seller_id)
            .order_by(SellerPayout.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return {
            "payouts": list(result.scalars().all()),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total or 0,
                "total_pages": math.ceil((total or 0) / limit),
            },
        }

    async def get_payout_details(self, payout_id: UUID) -> dict:
        """Payout with its seller, its orders and, best-effort, the gateway status."""
        payout = await self._get_payout(payout_id)
        seller = await self._get_seller(payout.seller_id)

        order_ids = [uuid.UUID(order_id) for order_id in payout.order_ids or []]
        orders = []
        if order_ids:
            result = await self.db.execute(
                select(Order).options(selectinload(Order.items)).where(Order.id.in_(order_ids))
            )
            orders = list(result.scalars().all())

        external_status = None
        if payout.external_payout_id:
            try:
                external_status = await self.gateway.get_payout_status(payout.external_payout_id)
            except GatewayError as e:
                logger.warning(f"Could not fetch external payout status for {payout_id}: {e}")

        return {"payout": payout, "seller": seller, "orders": orders, "external_status": external_status}

    async def request_payout(self, seller_id: UUID) -> SellerPayout:
        """Seller-initiated payout for sellers without automatic payouts."""
        seller = await self._get_seller(seller_id)
        seller_settings = seller.seller_settings
        if not seller_settings or not seller_settings.payout_method:
            raise NoPayoutMethod("Payout method not configured. Please update your settings.")
        if seller_settings.auto_payout:
            raise ValidationError("Auto-payout is enabled. Payouts will be processed automatically.")

        fees = await self.setting_service.get_platform_fees()
        threshold = seller_settings.payout_threshold or fees.payout_threshold
        earnings = await self.earnings.calculate_earnings(seller_id)
        if earnings.total_earnings < threshold:
            raise BelowThreshold(
                f"Minimum payout threshold not met. Current: ${earnings.total_earnings}, Required: ${threshold}"
            )

        return await self.process_single_payout(seller_id)

    async def get_seller_settings(self, seller_id: UUID) -> dict | None:
        """Payout settings with bank details masked."""
        seller_settings = await self.db.get(SellerSettings, seller_id)
        if not seller_settings:
            return None
        return {
            "payout_method": seller_settings.payout_method,
            "payout_threshold": seller_settings.payout_threshold,
            "auto_payout": seller_settings.auto_payout,
            "paypal_email": seller_settings.paypal_email,
            "bank_details": mask_bank_details(seller_settings.bank_details),
            "updated_at": seller_settings.updated_at,
        }

    async def update_seller_settings(self, seller_id: UUID, **changes) -> dict:
        """
        Create or update a seller's payout settings.

        Only keys present in ``changes`` are written.
        """
        method = changes.get("payout_method")
        if method is not None and method not in PAYOUT_METHODS:
            raise ValidationError(f"Invalid payout method: {method}")
        threshold = changes.get("payout_threshold")
        if threshold is not None and threshold < MIN_PAYOUT_THRESHOLD:
            raise ValidationError(f"Minimum payout threshold is ${MIN_PAYOUT_THRESHOLD}")

        seller_settings = await self.db.get(SellerSettings, seller_id)

        if method == "bank_transfer" and changes.get("bank_details"):
            missing = [name for name in REQUIRED_BANK_FIELDS if not changes["bank_details"].get(name)]
            if missing:
                raise ValidationError(f"Missing required bank details: {', '.join(missing)}")
        if method == "paypal" and not (changes.get("paypal_email") or (seller_settings and seller_settings.paypal_email)):
            raise ValidationError("PayPal email required for PayPal payouts")

        if not seller_settings:
            seller_settings = SellerSettings(user_id=seller_id)
            self.db.add(seller_settings)

        for key in ("payout_method", "payout_threshold", "auto_payout", "bank_details", "paypal_email"):
            if key in changes:
                setattr(seller_settings, key, changes[key])
        seller_settings.updated_at = datetime.utcnow()

        await self.db.commit()
        logger.info(f"Payout settings updated for seller {seller_id}")
        return await self.get_seller_settings(seller_id)
