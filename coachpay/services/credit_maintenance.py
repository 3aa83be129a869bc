"""
Scheduled credit ledger maintenance.

Actions:
    expire   - mark batches past their expiry as expired
    rollover - carry unused subscription allowance forward, capped per plan
    cleanup  - count zero-balance batches old enough to archive (report only)
    stats    - ledger totals per owner type
    all      - expire, rollover, cleanup and stats in that order

Every step is safe to run concurrently with another run: the ledger primitives
are repeatable and nothing here holds state between calls.
"""

import logging
import math
from datetime import datetime, timedelta

from coachpay.config import Config
from coachpay.db.ledger import (
    count_archivable_batches,
    expire_credit_batches,
    get_ledger_stats,
    process_credit_rollover,
)
from coachpay.db.subscriptions import list_active_subscribers
from coachpay.schemas.payments import MaintenanceAction, MaintenanceSummary, OwnerType, RolloverReport
from coachpay.utils.dates import utc_now
from coachpay.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)


def rollover_cap(credit_allowance: int) -> int:
    return math.floor(credit_allowance * Config.ROLLOVER_FRACTION)


def run_rollover() -> RolloverReport:
    report = RolloverReport()

    for owner_type in (OwnerType.USER, OwnerType.ORG):
        try:
            subscribers = list_active_subscribers(owner_type)
        except Exception as e:
            logger.error(f"Error listing active {owner_type.value} subscriptions: {e}", exc_info=True)
            report.errors.append(f"{owner_type.value} subscriptions: {e}")
            continue

        for owner_id, allowance in subscribers:
            cap = rollover_cap(allowance)
            if cap <= 0:
                continue
            try:
                rolled = process_credit_rollover(owner_type, owner_id, cap)
            except Exception as e:
                logger.error(f"Rollover failed for {owner_type.value} {owner_id}: {e}")
                report.errors.append(f"rollover {owner_type.value} {owner_id}: {e}")
                continue
            report.owners_processed += 1
            report.credits_rolled_over += rolled

    logger.info(
        f"Rollover processed {report.owners_processed} owners, "
        f"{report.credits_rolled_over} credits rolled over"
    )
    return report


def run_credit_maintenance(
    action: MaintenanceAction = MaintenanceAction.ALL, now: datetime | None = None
) -> MaintenanceSummary:
    now = now or utc_now()
    summary = MaintenanceSummary(action=action, started_at=now)
    run_all = action == MaintenanceAction.ALL

    if run_all or action == MaintenanceAction.EXPIRE:
        try:
            summary.expired_batches = expire_credit_batches()
            logger.info(f"Expired {summary.expired_batches} credit batches")
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}", exc_info=True)
            capture_payment_error(e, operation="maintenance_expire", provider="supabase")
            summary.errors.append(f"expire: {e}")

    if run_all or action == MaintenanceAction.ROLLOVER:
        report = run_rollover()
        summary.rolled_over_owners = report.owners_processed
        summary.rolled_over_credits = report.credits_rolled_over
        summary.errors.extend(report.errors)

    if run_all or action == MaintenanceAction.CLEANUP:
        try:
            summary.archivable_batches = count_archivable_batches(now - timedelta(days=Config.CLEANUP_AGE_DAYS))
        except Exception as e:
            logger.error(f"Cleanup count failed: {e}", exc_info=True)
            summary.errors.append(f"cleanup: {e}")

    if run_all or action == MaintenanceAction.STATS:
        try:
            summary.stats = get_ledger_stats(now)
        except Exception as e:
            logger.error(f"Ledger stats failed: {e}", exc_info=True)
            summary.errors.append(f"stats: {e}")

    summary.finished_at = utc_now()
    logger.info(f"Credit maintenance '{action.value}' finished with {len(summary.errors)} errors")
    return summary
