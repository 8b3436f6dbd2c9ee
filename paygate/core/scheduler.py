"""
APScheduler Setup for Background Jobs

Handles automatic payment lifecycle maintenance:
- Payment expiry: every PAYMENT_EXPIRY_SWEEP_SECONDS (default 5 minutes)

Note: Jobs run with database connection from app context.
"""
import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()

# Job status tracking
job_status = {
    "last_run": None,
    "payment_expiry": {"runs": 0, "last_result": None}
}


async def run_payment_expiry():
    """Job: Fail pending payments abandoned past the expiry window."""
    from paygate.database import Database
    from paygate.routes.dependencies import build_payment_service
    from paygate.services.scheduler.payment_expiry import PaymentExpiryScheduler

    try:
        db = Database.get_db()
        if db is None:
            logger.warning("[SCHEDULER] Database not connected, skipping payment_expiry")
            return

        expiry = PaymentExpiryScheduler(build_payment_service(db))
        result = await expiry.expire_stale_payments()

        job_status["payment_expiry"]["runs"] += 1
        job_status["payment_expiry"]["last_result"] = result
        job_status["last_run"] = datetime.utcnow().isoformat()

        if result.get("processed", 0) > 0:
            logger.info("[SCHEDULER] payment_expiry: %d payments expired", result["processed"])

    except Exception as e:
        logger.exception("[ERROR] payment_expiry job failed: %s", e)


def setup_scheduler(sweep_seconds: int = None):
    """Configure and setup all scheduled jobs."""
    if sweep_seconds is None:
        sweep_seconds = int(os.getenv("PAYMENT_EXPIRY_SWEEP_SECONDS", "300"))

    # Clear any existing jobs
    scheduler.remove_all_jobs()

    scheduler.add_job(
        run_payment_expiry,
        IntervalTrigger(seconds=sweep_seconds),
        id="payment_expiry",
        name="Expire abandoned pending payments",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    logger.info("[SCHEDULER] Payment scheduler configured, expiry sweep every %ss", sweep_seconds)


def start_scheduler():
    """Start the scheduler if not already running."""
    if not scheduler.running:
        scheduler.start()
        logger.info("[SCHEDULER] Background scheduler started")


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Background scheduler stopped")


def get_scheduler_status() -> dict:
    """Get current scheduler status for monitoring."""
    return {
        "running": scheduler.running,
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None
            }
            for job in scheduler.get_jobs()
            # Jobs added before start() have no next_run_time yet
            for next_run in [getattr(job, "next_run_time", None)]
        ],
        "job_status": job_status
    }
