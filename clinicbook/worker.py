# clinicbook/worker.py
"""Timer process: hourly reminder runs and waitlist sweeps.

Run with `python -m clinicbook.worker`. Run exactly one worker per
database; concurrent scheduler instances are not deduplicated.
"""
import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from . import crud
from .core.logging import setup_logging
from .database import SessionLocal, create_tables
from .models import RunTrigger
from .services import waitlist_service
from .services.notification_service import NotificationService
from .services.reminder_service import ReminderScheduler

logger = logging.getLogger(__name__)


async def reminder_job():
    """Runs every hour on the hour."""
    db = SessionLocal()
    try:
        outcome = await ReminderScheduler(db, NotificationService(db)).run(trigger=RunTrigger.SCHEDULED)
        logger.info("Reminder run %s finished with %s", outcome.run_id, outcome.status.value)
    finally:
        db.close()


async def waitlist_job():
    """Retries waitlist promotion for every active clinic."""
    db = SessionLocal()
    try:
        transport = NotificationService(db)
        for clinic in crud.get_active_clinics(db):
            clinic_id = clinic.id
            try:
                stats = await waitlist_service.process_all(db, clinic_id, transport=transport)
                logger.info("Waitlist sweep clinic %s: %s filled of %s", clinic_id, stats.filled, stats.processed)
            except Exception:
                db.rollback()
                logger.exception("Waitlist sweep failed for clinic %s", clinic_id)
    finally:
        db.close()


def build_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        reminder_job, CronTrigger(minute=0), id="appointment-reminders",
        max_instances=1, coalesce=True, misfire_grace_time=300,
    )
    scheduler.add_job(
        waitlist_job, CronTrigger(minute=30), id="waitlist-sweep",
        max_instances=1, coalesce=True, misfire_grace_time=300,
    )
    return scheduler


async def main():
    setup_logging()
    create_tables()
    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Worker started with jobs: %s", [job.id for job in scheduler.get_jobs()])
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    asyncio.run(main())
