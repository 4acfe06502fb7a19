"""
Appointment Reminder Scheduler - Background polling of due reminder jobs

This module handles:
1. Polling pending reminder jobs whose scheduled_for has passed
2. Delivering them in scheduled_for order (email via Postmark, WhatsApp logged)
3. Marking each job sent or failed (no retry)

Run as a background task using APScheduler.
"""

import asyncio
import logging

from config import settings
from database import async_session_maker
from reminders import process_due_reminders

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def check_and_send_due_reminders() -> dict:
    """
    Deliver due reminders across all companies, in batches of
    REMINDER_BATCH_SIZE until nothing is due.
    """
    logger.info("🔍 Starting reminder poll...")
    totals = {"processed": 0, "failed": 0}

    async with async_session_maker() as db:
        while True:
            result = await process_due_reminders(db, limit=settings.REMINDER_BATCH_SIZE)
            totals["processed"] += result["processed"]
            totals["failed"] += result["failed"]
            if result["processed"] < settings.REMINDER_BATCH_SIZE:
                break

    logger.info(f"✅ Reminder poll completed - {totals['processed']} processed, {totals['failed']} failed")
    return totals


async def run_reminder_checks():
    """Main entry point for reminder delivery."""
    try:
        await check_and_send_due_reminders()
    except Exception as e:
        logger.error(f"❌ Fatal error in reminder delivery: {str(e)}", exc_info=True)


# ============================================================================
# Scheduler Setup (APScheduler)
# ============================================================================

def start_reminder_scheduler():
    """
    Start the APScheduler background scheduler for appointment reminders.
    Runs every REMINDER_INTERVAL_MINUTES.
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_reminder_checks,
        IntervalTrigger(minutes=settings.REMINDER_INTERVAL_MINUTES),
        id='appointment_reminder_checks',
        name='Appointment Reminder Delivery',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"📅 Reminder scheduler started - polls every {settings.REMINDER_INTERVAL_MINUTES} minutes")

    return scheduler


# ============================================================================
# Manual Testing / CLI Execution
# ============================================================================

async def test_reminders():
    """
    Manually trigger a reminder poll.
    Run with: python reminder_scheduler.py
    """
    logger.info("🧪 Running reminder poll in test mode...")
    await run_reminder_checks()


if __name__ == "__main__":
    asyncio.run(test_reminders())
