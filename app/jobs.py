"""Scheduled payout jobs."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, settings
from app.database import AsyncSessionLocal
from app.models.setting import JobExecutionLog
from app.services.gateway_client import GatewayClient
from app.services.notification_service import NotificationService
from app.services.payout_service import PayoutService

logger = logging.getLogger(__name__)

# Eligibility report is mailed only when this many sellers are waiting
ELIGIBILITY_REPORT_MIN_SELLERS = 10


@dataclass
class JobContext:
    """Collaborators shared by all jobs."""

    session_factory: async_sessionmaker[AsyncSession]
    gateway: GatewayClient
    notifier: NotificationService
    config: Settings

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "JobContext":
        return cls(
            session_factory=AsyncSessionLocal,
            gateway=GatewayClient.from_settings(config),
            notifier=NotificationService(config),
            config=config,
        )

    def payout_service(self, db: AsyncSession) -> PayoutService:
        return PayoutService(db, self.gateway, self.notifier, self.config)


async def automatic_payouts(ctx: JobContext) -> dict:
    """Weekly automatic payouts."""
    async with ctx.session_factory() as db:
        results = await ctx.payout_service(db).process_automatic_payouts()

    successful = sum(1 for r in results if r["success"])
    logger.info(f"Automatic payouts completed: {successful} successful, {len(results) - successful} failed")
    return {
        "successful_payouts": successful,
        "failed_payouts": len(results) - successful,
        "total_processed": len(results),
    }


async def payout_eligibility_check(ctx: JobContext) -> dict:
    """Daily scan of sellers waiting for a payout."""
    async with ctx.session_factory() as db:
        eligible = await ctx.payout_service(db).get_eligible_sellers()

    auto_eligible = sum(1 for entry in eligible if entry.can_auto_process)
    logger.info(f"Found {len(eligible)} eligible sellers ({auto_eligible} auto-payout enabled)")

    if len(eligible) > ELIGIBILITY_REPORT_MIN_SELLERS:
        total = sum((entry.pending_earnings for entry in eligible), Decimal("0"))
        top = sorted(eligible, key=lambda entry: entry.pending_earnings, reverse=True)[:10]
        lines = [
            f"Date: {datetime.utcnow():%Y-%m-%d}",
            f"Eligible sellers: {len(eligible)}",
            f"Total pending amount: {total} {ctx.config.default_currency}",
            f"Auto-payout enabled: {auto_eligible}",
            "",
            "Top pending payouts:",
        ] + [
            f"- {entry.seller.display_name}: {entry.pending_earnings} "
            f"({'Auto' if entry.can_auto_process else 'Manual'})"
            for entry in top
        ]
        await ctx.notifier.notify_admins("Daily Payout Eligibility Report", "\n".join(lines), severity="low")

    return {"eligible_sellers": len(eligible), "auto_eligible": auto_eligible}


async def failed_payout_check(ctx: JobContext) -> dict:
    """Alert on payouts that failed in the last 24 hours."""
    async with ctx.session_factory() as db:
        failed = await ctx.payout_service(db).check_failed_payouts()

    if failed:
        logger.warning(f"Found {len(failed)} failed payouts requiring attention")
    return {"failed_payouts_found": len(failed)}


async def payout_reconciliation(ctx: JobContext) -> dict:
    """Re-mark orders of live payouts that lost their payout flag."""
    async with ctx.session_factory() as db:
        corrected = await ctx.payout_service(db).reconcile_payout_orders()

    if corrected:
        logger.warning(f"Payout reconciliation corrected {corrected} orders")
    return {"orders_corrected": corrected}


async def weekly_payout_report(ctx: JobContext) -> dict:
    """Mail the last seven days of payouts to admins."""
    end = datetime.utcnow()
    start = end - timedelta(days=7)
    async with ctx.session_factory() as db:
        report = await ctx.payout_service(db).generate_payout_report(start, end)

    summary = report["summary"]
    lines = [
        f"Period: {start:%Y-%m-%d} to {end:%Y-%m-%d}",
        f"Total payouts: {summary['total_payouts']}",
        f"Total amount: {summary['total_amount']} {ctx.config.default_currency}",
        f"Successful: {summary['successful_payouts']}",
        f"Failed: {summary['failed_payouts']}",
        f"Pending: {summary['pending_payouts']}",
        "",
        "Payout methods:",
    ] + [f"- {method}: {data['count']} payouts, {data['amount']}" for method, data in summary["by_method"].items()]
    await ctx.notifier.notify_admins("Weekly Payout Report", "\n".join(lines), severity="low")

    return {"total_payouts": summary["total_payouts"], "total_amount": str(summary["total_amount"])}


JobFunc = Callable[[JobContext], Awaitable[dict]]

# job name -> (function, name of the cron setting)
JOBS: dict[str, tuple[JobFunc, str]] = {
    "automatic_payouts": (automatic_payouts, "automatic_payouts_cron"),
    "payout_eligibility_check": (payout_eligibility_check, "eligibility_check_cron"),
    "failed_payout_check": (failed_payout_check, "failed_payouts_cron"),
    "payout_reconciliation": (payout_reconciliation, "payout_reconciliation_cron"),
    "weekly_payout_report": (weekly_payout_report, "weekly_report_cron"),
}


async def log_job_execution(ctx: JobContext, job_name: str, status: str, metadata: dict) -> None:
    """Store one JobExecutionLog row. Failures are only logged."""
    try:
        async with ctx.session_factory() as db:
            db.add(JobExecutionLog(job_name=job_name, status=status, job_metadata=metadata))
            await db.commit()
    except Exception as e:
        logger.error(f"Failed to log execution of job {job_name}: {e}", exc_info=True)


async def run_job(ctx: JobContext, job_name: str) -> dict | None:
    """
    Run one job by name and record the execution.

    Never raises: a failing job is logged and recorded as failed.
    """
    func, _ = JOBS[job_name]
    logger.info(f"Starting job {job_name}")
    try:
        metadata = await func(ctx)
    except Exception as e:
        logger.error(f"Job {job_name} failed: {e}", exc_info=True)
        await log_job_execution(ctx, job_name, "failed", {"error": str(e)})
        return None

    await log_job_execution(ctx, job_name, "completed", metadata)
    return metadata


def create_scheduler(ctx: JobContext | None = None) -> AsyncIOScheduler:
    """Build a scheduler with every payout job on its configured cron trigger."""
    ctx = ctx or JobContext.from_settings()
    scheduler = AsyncIOScheduler(timezone=ctx.config.scheduler_timezone)

    for job_name, (_, cron_setting) in JOBS.items():
        expression = getattr(ctx.config, cron_setting)
        scheduler.add_job(
            run_job,
            trigger=CronTrigger.from_crontab(expression, timezone=ctx.config.scheduler_timezone),
            args=[ctx, job_name],
            id=job_name,
            name=job_name.replace("_", " "),
            replace_existing=True,
        )
        logger.info(f"Scheduled job {job_name}: {expression} ({ctx.config.scheduler_timezone})")

    return scheduler
