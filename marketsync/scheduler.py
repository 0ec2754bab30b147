"""
Scheduled tasks for the sync engine.

Four jobs run inside the FastAPI process on an AsyncIOScheduler:
token refresh, order polling, the stuck-claim reaper and the queue
retention purge. Each task opens its own database session.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from marketsync.core.config import get_settings
from marketsync.database import async_session
from marketsync.services import sync_queue
from marketsync.services.order_importer import poll_all_connections
from marketsync.services.token_refresher import TokenRefresher

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def refresh_tokens_task(adapters, settings=None, session_factory=async_session):
    """Refresh tokens that expire within the configured threshold"""
    try:
        refresher = TokenRefresher(session_factory, adapters, settings=settings)
        return await refresher.run_once()
    except Exception as e:
        logger.exception(f"Error in token refresh task: {str(e)}")


async def poll_orders_task(adapters, order_sink, settings=None, session_factory=async_session):
    """Import orders changed since the last poll for every connected tenant"""
    try:
        return await poll_all_connections(session_factory, adapters, order_sink, settings=settings)
    except Exception as e:
        logger.exception(f"Error in order polling task: {str(e)}")


async def reap_stale_claims_task(settings=None, session_factory=async_session):
    """Give PROCESSING items abandoned by crashed workers back to the queue"""
    settings = settings or get_settings()
    try:
        async with session_factory() as db:
            count = await sync_queue.reap_stale_claims(
                db, older_than_minutes=settings.SYNC_PROCESSING_TIMEOUT_MINUTES
            )
            await db.commit()
            return count
    except Exception as e:
        logger.exception(f"Error in reaper task: {str(e)}")


async def purge_queue_task(settings=None, session_factory=async_session):
    """Delete terminal queue items past the retention window"""
    settings = settings or get_settings()
    try:
        async with session_factory() as db:
            count = await sync_queue.purge_terminal(db, older_than_days=settings.SYNC_RETENTION_DAYS)
            await db.commit()
            return count
    except Exception as e:
        logger.exception(f"Error in queue retention task: {str(e)}")


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler(adapters, order_sink, settings=None) -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = settings or get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    scheduler.add_job(
        refresh_tokens_task,
        IntervalTrigger(minutes=settings.TOKEN_REFRESH_INTERVAL_MINUTES),
        args=[adapters, settings],
        id="refresh_tokens",
        name="Refresh Marketplace Tokens",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.add_job(
        poll_orders_task,
        IntervalTrigger(
            minutes=settings.ORDER_POLL_INTERVAL_MINUTES,
            start_date=datetime.now() + timedelta(minutes=1),
        ),
        args=[adapters, order_sink, settings],
        id="poll_orders",
        name="Poll Marketplace Orders",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.add_job(
        reap_stale_claims_task,
        IntervalTrigger(minutes=settings.SYNC_REAPER_INTERVAL_MINUTES),
        args=[settings],
        id="reap_stale_claims",
        name="Reap Stale Queue Claims",
        replace_existing=True,
        max_instances=1,
    )
    # Retention purge runs daily at 3 AM
    scheduler.add_job(
        purge_queue_task,
        CronTrigger(hour=3, minute=0),
        args=[settings],
        id="purge_sync_queue",
        name="Purge Terminal Queue Items",
        replace_existing=True,
        max_instances=1,
    )
    return scheduler


async def start_scheduler(adapters, order_sink, settings=None):
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler(adapters, order_sink, settings)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Get current scheduler status and job information"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = []
    for job in scheduler.get_jobs():
        jobs_info.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs_info
    }
