"""
Subscription Scheduler - Background tasks for subscription management

This module handles:
1. Daily checks for companies whose trial period has ended
2. Moving expired trials to past_due (writes are then blocked)

Run as a background task using APScheduler or as a cron job.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker
from models import Company, CompanyStatus

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def expire_trials(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Move trial companies whose trial_ends_at has passed to past_due.
    Returns the number of companies changed.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(Company).where(
            Company.status == CompanyStatus.TRIAL.value,
            Company.trial_ends_at.isnot(None),
            Company.trial_ends_at <= now
        )
    )
    companies = result.scalars().all()

    for company in companies:
        company.status = CompanyStatus.PAST_DUE.value
        logger.info(f"⏰ Trial ended for company #{company.id} ({company.name}) - now past_due")

    await db.commit()
    return len(companies)


async def run_daily_subscription_checks():
    """Main entry point for daily subscription checks."""
    logger.info("=" * 60)
    logger.info("🚀 Starting daily subscription maintenance tasks...")
    logger.info("=" * 60)

    try:
        async with async_session_maker() as db:
            changed = await expire_trials(db)
        logger.info(f"📊 {changed} trial(s) moved to past_due")
        logger.info("=" * 60)
        logger.info("✅ All subscription maintenance tasks completed successfully")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"❌ Fatal error in subscription maintenance: {str(e)}", exc_info=True)


# ============================================================================
# Scheduler Setup (APScheduler)
# ============================================================================

def start_subscription_scheduler():
    """
    Start the APScheduler background scheduler.
    This runs the daily subscription checks at 9:00 AM UTC every day.
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.cron import CronTrigger

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_daily_subscription_checks,
        CronTrigger(hour=9, minute=0),
        id='daily_subscription_checks',
        name='Daily Subscription Expiry Checks',
        replace_existing=True
    )

    scheduler.start()
    logger.info("📅 Subscription scheduler started - daily checks at 09:00 UTC")

    return scheduler


# ============================================================================
# Manual Testing / CLI Execution
# ============================================================================

if __name__ == "__main__":
    asyncio.run(run_daily_subscription_checks())
