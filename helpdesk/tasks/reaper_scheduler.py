"""In-process schedule for the inactivity reaper.

Runs the sweep once a day at the configured hour (UTC). Deployments that
trigger ``POST /maintenance/close-inactive`` from an external scheduler leave
``reaper_schedule_enabled`` off.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from helpdesk.tickets.errors import TicketStorageError
from helpdesk.tickets.reaper import InactivityReaper

logger = logging.getLogger(__name__)

JOB_ID = "close_inactive_tickets"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")
    return scheduler


async def close_inactive_tickets(reaper: InactivityReaper) -> None:
    try:
        report = await reaper.run()
    except TicketStorageError as exc:
        # Nothing was committed; the next scheduled run retries.
        logger.error("Scheduled inactivity sweep failed: %s", exc)
        return
    logger.info("Scheduled inactivity sweep closed %d tickets", report.closed_count)


def start_reaper_scheduler(reaper: InactivityReaper, *, hour: int = 3) -> AsyncIOScheduler:
    """Register the daily sweep and start the scheduler."""
    sched = get_scheduler()
    sched.add_job(
        close_inactive_tickets,
        CronTrigger(hour=hour, minute=0),
        args=[reaper],
        id=JOB_ID,
        name="Close inactive tickets",
        replace_existing=True,
    )
    if not sched.running:
        sched.start()
    logger.info("Inactivity reaper scheduled daily at %02d:00 UTC", hour)
    return sched


def stop_reaper_scheduler() -> None:
    """Stop the scheduler if it is running."""
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Inactivity reaper scheduler stopped")
    scheduler = None
