"""
APScheduler setup for the periodic due-item scan.

Reminder state lives in the database, not in the job store: the scheduler
only drives ticks, so an in-memory job store is enough and a restart just
resumes scanning.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from checkin.config.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

SCAN_JOB_ID = "due_item_scan"
CLEANUP_JOB_ID = "processed_message_cleanup"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")

    return scheduler


async def run_scan_tick() -> None:
    """Run one scanner tick against the application database."""
    from checkin.infrastructure.database import async_session_factory
    from checkin.infrastructure.twilio_sms import get_gateway
    from checkin.usecases.scanner import DueItemScanner

    scanner = DueItemScanner(async_session_factory, get_gateway(), settings)
    try:
        await scanner.run_tick()
    except Exception as e:
        logger.exception(f"Scanner tick failed: {e}")


async def run_processed_message_cleanup() -> None:
    """Trim the inbound idempotency table."""
    from checkin.api.sms_webhook import cleanup_old_processed_messages

    try:
        removed = await cleanup_old_processed_messages()
        if removed:
            logger.info(f"Removed {removed} old processed-message records")
    except Exception as e:
        logger.exception(f"Processed-message cleanup failed: {e}")


def schedule_scanner(sched: AsyncIOScheduler) -> None:
    """
    Register the recurring jobs.

    Args:
        sched: Scheduler to register on
    """
    sched.add_job(
        run_scan_tick,
        trigger=IntervalTrigger(seconds=settings.scan_interval_seconds),
        id=SCAN_JOB_ID,
        replace_existing=True,
        coalesce=True,
        # Ticks may overlap; the dispatch ledger keeps sends exactly-once
        max_instances=2,
    )
    sched.add_job(
        run_processed_message_cleanup,
        trigger=IntervalTrigger(hours=24),
        id=CLEANUP_JOB_ID,
        replace_existing=True,
        coalesce=True,
    )
    logger.info(f"Scheduled due-item scan every {settings.scan_interval_seconds}s")


async def start_scheduler() -> None:
    """Start the scheduler."""
    sched = get_scheduler()
    if not sched.running:
        schedule_scanner(sched)
        sched.start()
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")
