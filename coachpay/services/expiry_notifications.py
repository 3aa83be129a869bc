"""
Credit expiry notifications.

Warns users about credits expiring within USER_EXPIRY_WINDOW_DAYS and the
owners/admins of organizations about credits expiring within
ORG_EXPIRY_WINDOW_DAYS. One owner's failure never stops the sweep.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from coachpay.config import Config
from coachpay.db.ledger import get_expiring_batches
from coachpay.db.organizations import get_org_admin_ids
from coachpay.schemas.payments import ExpiryNotificationSummary, NotificationOutcome, OwnerType
from coachpay.services.notifications import notify
from coachpay.utils.dates import utc_now

logger = logging.getLogger(__name__)

EXPIRY_TYPE_KEY = "credits_expiring"
USER_TITLE = "Credits Expiring Soon"
ORG_TITLE = "Organization Credits Expiring"


def _plural(count: int) -> str:
    return "credit" if count == 1 else "credits"


def _group_by_owner(batches: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    grouped: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"total": 0, "batch_ids": [], "earliest_expiry": None}
    )
    for batch in batches:
        entry = grouped[str(batch["owner_id"])]
        entry["total"] += int(batch.get("remaining_amount") or 0)
        entry["batch_ids"].append(batch["id"])
        expires_at = batch.get("expires_at")
        if expires_at and (entry["earliest_expiry"] is None or expires_at < entry["earliest_expiry"]):
            entry["earliest_expiry"] = expires_at
    return dict(grouped)


def _tally(summary: ExpiryNotificationSummary, outcome: NotificationOutcome, org: bool) -> None:
    if outcome.sent:
        if org:
            summary.org_admins_notified += 1
        else:
            summary.users_notified += 1
    elif outcome.skipped_duplicate:
        summary.skipped_duplicates += 1
    elif outcome.error:
        summary.errors.append(f"notify {outcome.recipient_id}: {outcome.error}")


def _notify_users(summary: ExpiryNotificationSummary, now: datetime) -> None:
    window_days = Config.USER_EXPIRY_WINDOW_DAYS
    try:
        batches = get_expiring_batches(OwnerType.USER, now, now + timedelta(days=window_days))
    except Exception as e:
        logger.error(f"Error fetching expiring user batches: {e}", exc_info=True)
        summary.errors.append(f"user batches: {e}")
        return

    for user_id, entry in _group_by_owner(batches).items():
        total = entry["total"]
        outcome = notify(
            user_id,
            type_key=EXPIRY_TYPE_KEY,
            title=USER_TITLE,
            message=(
                f"You have {total} {_plural(total)} expiring within {window_days} days. "
                "Use them before they expire."
            ),
            link="/credits",
            metadata={
                "batch_ids": entry["batch_ids"],
                "total_expiring": total,
                "earliest_expiry": entry["earliest_expiry"],
            },
            now=now,
        )
        _tally(summary, outcome, org=False)


def _notify_orgs(summary: ExpiryNotificationSummary, now: datetime) -> None:
    window_days = Config.ORG_EXPIRY_WINDOW_DAYS
    try:
        batches = get_expiring_batches(OwnerType.ORG, now, now + timedelta(days=window_days))
    except Exception as e:
        logger.error(f"Error fetching expiring org batches: {e}", exc_info=True)
        summary.errors.append(f"org batches: {e}")
        return

    for org_id, entry in _group_by_owner(batches).items():
        try:
            admin_ids = get_org_admin_ids(org_id)
        except Exception as e:
            logger.error(f"Error fetching admins for organization {org_id}: {e}")
            summary.errors.append(f"org {org_id}: {e}")
            continue

        total = entry["total"]
        for admin_id in admin_ids:
            outcome = notify(
                admin_id,
                type_key=EXPIRY_TYPE_KEY,
                title=ORG_TITLE,
                message=f"Your organization has {total} {_plural(total)} expiring within {window_days} days.",
                link="/org/credits",
                metadata={
                    "org_id": org_id,
                    "total_expiring": total,
                    "earliest_expiry": entry["earliest_expiry"],
                },
                now=now,
            )
            _tally(summary, outcome, org=True)


def send_expiry_notifications(now: datetime | None = None) -> ExpiryNotificationSummary:
    """Run the user and organization expiry notification sweeps."""
    now = now or utc_now()
    summary = ExpiryNotificationSummary()

    _notify_users(summary, now)
    _notify_orgs(summary, now)

    logger.info(
        f"Expiry notifications: {summary.users_notified} users, {summary.org_admins_notified} org admins, "
        f"{summary.skipped_duplicates} duplicates skipped, {len(summary.errors)} errors"
    )
    return summary
