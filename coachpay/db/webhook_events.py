"""
Processed Stripe webhook events.

Recording an event id lets redeliveries short-circuit before dispatch. Handlers
stay idempotent on their own, so a failed read or write here is logged and
processing continues.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from coachpay.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = "stripe_webhook_events"

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """Warn once when the events table is missing from the PostgREST schema cache."""
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if WEBHOOK_EVENTS_TABLE in message or "PGRST205" in message:
        logger.warning(
            f"{WEBHOOK_EVENTS_TABLE} table is unavailable (migrations not applied or schema cache "
            "stale). Run NOTIFY pgrst, 'reload schema'; after applying migrations."
        )
        _missing_table_warning_logged = True


def is_event_processed(event_id: str) -> bool:
    """
    Check if a webhook event has already been processed

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        True if event was already processed, False otherwise (including on read errors)
    """
    try:
        result = execute_with_retry(
            lambda client: client.table(WEBHOOK_EVENTS_TABLE)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute(),
            operation_name="is_event_processed",
        )
    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error checking if event is processed: {e}", exc_info=True)
        return False

    return bool(result.data)


def record_processed_event(
    event_id: str,
    event_type: str,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Record that a webhook event has been processed

    Returns:
        True if recorded (or already present), False on error
    """
    row = {
        "event_id": event_id,
        "event_type": event_type,
        "metadata": metadata or {},
        "processed_at": datetime.now(UTC).isoformat(),
    }

    try:
        execute_with_retry(
            lambda client: client.table(WEBHOOK_EVENTS_TABLE)
            .upsert(row, on_conflict="event_id", ignore_duplicates=True)
            .execute(),
            operation_name="record_processed_event",
        )
    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording processed event {event_id}: {e}", exc_info=True)
        return False

    logger.info(f"Recorded processed webhook event: {event_id} ({event_type})")
    return True
