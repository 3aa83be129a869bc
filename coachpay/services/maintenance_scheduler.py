"""
Scheduled ledger maintenance.

Runs the credit maintenance sweep and the expiry notification sweep once a day
on an APScheduler AsyncIOScheduler started from the app lifespan. The HTTP
maintenance endpoints remain available for an external cron.
"""

import asyncio
import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from coachpay.config import Config
from coachpay.schemas.payments import MaintenanceAction
from coachpay.services.credit_maintenance import run_credit_maintenance
from coachpay.services.expiry_notifications import send_expiry_notifications

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def run_scheduled_credit_maintenance() -> None:
    try:
        summary = await asyncio.to_thread(run_credit_maintenance, MaintenanceAction.ALL)
        if summary.errors:
            logger.warning(f"Scheduled credit maintenance finished with {len(summary.errors)} errors")
    except Exception as e:
        logger.exception(f"Scheduled credit maintenance failed: {e}")


async def run_scheduled_expiry_notifications() -> None:
    try:
        await asyncio.to_thread(send_expiry_notifications)
    except Exception as e:
        logger.exception(f"Scheduled expiry notifications failed: {e}")


def start_scheduler() -> None:
    """
    Start the maintenance scheduler.

    Called during application startup. Only starts if ENABLE_SCHEDULED_MAINTENANCE is set.
    """
    global _scheduler

    if not Config.ENABLE_SCHEDULED_MAINTENANCE:
        logger.info("Scheduled maintenance DISABLED: ENABLE_SCHEDULED_MAINTENANCE=false")
        return

    if _scheduler is not None:
        return

    try:
        _scheduler = AsyncIOScheduler(timezone="UTC")

        _scheduler.add_job(
            run_scheduled_credit_maintenance,
            trigger=CronTrigger(hour=Config.MAINTENANCE_HOUR_UTC, minute=0, timezone="UTC"),
            id="credit_maintenance",
            name="Credit Maintenance",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        _scheduler.add_job(
            run_scheduled_expiry_notifications,
            trigger=CronTrigger(hour=Config.EXPIRY_NOTIFICATION_HOUR_UTC, minute=0, timezone="UTC"),
            id="expiry_notifications",
            name="Credit Expiry Notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        _scheduler.start()
        logger.info(
            f"Maintenance scheduler started (maintenance {Config.MAINTENANCE_HOUR_UTC:02d}:00 UTC, "
            f"expiry notifications {Config.EXPIRY_NOTIFICATION_HOUR_UTC:02d}:00 UTC)"
        )
    except Exception as e:
        logger.error(f"Failed to start maintenance scheduler: {e}", exc_info=True)
        _scheduler = None


def stop_scheduler() -> None:
    """Stop the scheduler gracefully. Called during application shutdown."""
    global _scheduler

    if _scheduler is None:
        return

    try:
        _scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")
    except Exception as e:
        logger.error(f"Error stopping maintenance scheduler: {e}")
    finally:
        _scheduler = None


def get_scheduler_status() -> dict[str, Any]:
    if _scheduler is None:
        return {"running": False, "jobs": []}
    return {
        "running": _scheduler.running,
        "jobs": [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in _scheduler.get_jobs()
        ],
    }
