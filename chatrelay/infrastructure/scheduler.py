"""
APScheduler setup for media jobs and periodic maintenance.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from chatrelay.config.settings import get_settings
from chatrelay.domain.conversation_history import cleanup_old_conversations
from chatrelay.infrastructure.media_queue import MEDIA_JOBSTORE

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        # Media jobs hold raw bytes and callbacks, so they stay in memory
        jobstores = {
            'default': MemoryJobStore(),
            MEDIA_JOBSTORE: MemoryJobStore(),
        }

        scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            timezone='UTC'
        )

    return scheduler


async def start_scheduler() -> None:
    """Start the scheduler."""
    sched = get_scheduler()
    if not sched.running:
        sched.start()
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None


def schedule_maintenance_jobs(deduplicator, transaction_store, recovery, session_factory) -> None:
    """
    Register the periodic housekeeping jobs and the startup recovery.

    Args:
        deduplicator: MessageDeduplicator whose expired ids are purged
        transaction_store: TransactionStore whose expired failures are purged
        recovery: RecoveryCoordinator running the redelivery sweeps
        session_factory: Session factory used to trim conversation history
    """
    sched = get_scheduler()

    sched.add_job(
        deduplicator.purge_expired,
        trigger=IntervalTrigger(minutes=30),
        id="dedup_purge",
        replace_existing=True,
    )
    sched.add_job(
        transaction_store.purge_expired,
        trigger=IntervalTrigger(days=1),
        id="transaction_purge",
        replace_existing=True,
        kwargs={'days': settings.transaction_retention_days},
    )
    sched.add_job(
        cleanup_conversations,
        trigger=IntervalTrigger(days=1),
        id="conversation_cleanup",
        replace_existing=True,
        kwargs={'session_factory': session_factory, 'days': settings.transaction_retention_days},
    )
    sched.add_job(
        recovery.recover_all,
        trigger=IntervalTrigger(seconds=settings.recovery_interval_seconds),
        id="recovery_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    startup_time = datetime.utcnow() + timedelta(seconds=settings.recovery_startup_delay_seconds)
    sched.add_job(
        recovery.recover_all,
        trigger=DateTrigger(run_date=startup_time, timezone='UTC'),
        id="startup_recovery",
        replace_existing=True,
        misfire_grace_time=None,
    )
    logger.info(
        f"Maintenance jobs scheduled; startup recovery in {settings.recovery_startup_delay_seconds}s"
    )


async def cleanup_conversations(session_factory, days: int) -> None:
    """
    Trim stored conversation exchanges older than the retention window.

    This function is called by the scheduler once a day.
    """
    async with session_factory() as session:
        removed = await cleanup_old_conversations(session, days=days)
    logger.info(f"Removed {removed} conversation exchanges older than {days} days")
