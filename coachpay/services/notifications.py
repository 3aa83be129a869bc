import logging
from datetime import datetime, timedelta
from typing import Any

from coachpay.config import Config
from coachpay.db.notifications import create_notification, has_recent_notification
from coachpay.schemas.payments import NotificationOutcome
from coachpay.utils.dates import utc_now

logger = logging.getLogger(__name__)


def notify(
    user_id: str,
    *,
    type_key: str,
    title: str,
    message: str,
    link: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> NotificationOutcome:
    """
    Best-effort in-app notification with title-based deduplication.

    A recipient who already received a notification with the same title within
    NOTIFICATION_DEDUP_HOURS is skipped. Failures are reported in the outcome,
    never raised.
    """
    since = (now or utc_now()) - timedelta(hours=Config.NOTIFICATION_DEDUP_HOURS)

    try:
        if has_recent_notification(user_id, title, since):
            logger.debug(f"Skipping '{title}' for {user_id}: already notified")
            return NotificationOutcome(recipient_id=user_id, sent=False, skipped_duplicate=True)

        create_notification(user_id, type_key, title, message, link, metadata)
    except Exception as e:
        logger.warning(f"Failed to notify {user_id} ('{title}'): {e}")
        return NotificationOutcome(recipient_id=user_id, sent=False, error=str(e))

    return NotificationOutcome(recipient_id=user_id, sent=True)
