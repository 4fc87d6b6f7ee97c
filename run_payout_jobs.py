"""Manual trigger for the scheduled payout jobs."""
import argparse
import asyncio
import logging

from app.jobs import JOBS, JobContext, run_job

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(job_names: list[str]):
    """Run the given jobs one after another."""
    ctx = JobContext.from_settings()
    failed = []
    for job_name in job_names:
        result = await run_job(ctx, job_name)
        if result is None:
            failed.append(job_name)
        else:
            logger.info(f"Job {job_name} finished: {result}")

    if failed:
        raise SystemExit(f"Jobs failed: {', '.join(failed)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run payout jobs now")
    parser.add_argument(
        "--job",
        action="append",
        choices=sorted(JOBS),
        help="Job to run (repeatable). Defaults to all jobs.",
    )
    args = parser.parse_args()
    asyncio.run(main(args.job or list(JOBS)))
