"""
Installment payment schedules.

One row per installment subscription, keyed by stripe_subscription_id. Updates
are compare-and-swap on the previously read installments_paid and status.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from coachpay.config.supabase_config import execute_with_retry
from coachpay.schemas.payments import ScheduleStatus
from coachpay.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

PAYMENT_SCHEDULES_TABLE = "payment_schedules"


def get_schedule_by_subscription(subscription_id: str) -> dict[str, Any] | None:
    def _op(client):
        return (
            client.table(PAYMENT_SCHEDULES_TABLE)
            .select("*")
            .eq("stripe_subscription_id", subscription_id)
            .limit(1)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="get_schedule_by_subscription")
    except Exception as e:
        logger.error(f"Error fetching payment schedule for {subscription_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to read payment schedule", detail=str(e)) from e

    return result.data[0] if result.data else None


def insert_schedule(record: dict[str, Any]) -> dict[str, Any] | None:
    """
    Create a schedule, ignoring the insert if one already exists for the subscription.

    Returns:
        The inserted row, or None when the subscription already had a schedule
    """

    def _op(client):
        return (
            client.table(PAYMENT_SCHEDULES_TABLE)
            .upsert(record, on_conflict="stripe_subscription_id", ignore_duplicates=True)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="insert_schedule")
    except Exception as e:
        logger.error(
            f"Error creating payment schedule for {record.get('stripe_subscription_id')}: {e}",
            exc_info=True,
        )
        raise PersistenceError("Failed to create payment schedule", detail=str(e)) from e

    return result.data[0] if result.data else None


def update_schedule_if_unchanged(
    subscription_id: str,
    expected_installments_paid: int,
    expected_status: str,
    changes: dict[str, Any],
) -> dict[str, Any] | None:
    """
    Apply changes only if the row still has the values the caller read.

    Returns:
        The updated row, or None if the row moved on since it was read
    """
    payload = {**changes, "updated_at": datetime.now(UTC).isoformat()}

    def _op(client):
        return (
            client.table(PAYMENT_SCHEDULES_TABLE)
            .update(payload)
            .eq("stripe_subscription_id", subscription_id)
            .eq("installments_paid", expected_installments_paid)
            .eq("status", expected_status)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="update_schedule_if_unchanged")
    except Exception as e:
        logger.error(f"Error updating payment schedule {subscription_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to update payment schedule", detail=str(e)) from e

    return result.data[0] if result.data else None


def get_locking_schedules(user_id: str) -> list[dict[str, Any]]:
    """Schedules in a state that locks the user's access."""

    def _op(client):
        return (
            client.table(PAYMENT_SCHEDULES_TABLE)
            .select("id, stripe_subscription_id, status")
            .eq("user_id", user_id)
            .in_("status", [ScheduleStatus.OUTSTANDING.value, ScheduleStatus.DEFAULTED.value])
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="get_locking_schedules")
    except Exception as e:
        logger.error(f"Error reading payment schedules for user {user_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to read payment schedules", detail=str(e)) from e

    return result.data or []


def attach_credit_batch(subscription_id: str, credit_batch_id: str) -> dict[str, Any] | None:
    """
    Record the batch funding a claimed schedule. Only applies while
    credit_batch_id is still null.

    Returns:
        The updated row, or None if the schedule is gone or already funded
    """

    def _op(client):
        return (
            client.table(PAYMENT_SCHEDULES_TABLE)
            .update({"credit_batch_id": credit_batch_id, "updated_at": datetime.now(UTC).isoformat()})
            .eq("stripe_subscription_id", subscription_id)
            .is_("credit_batch_id", "null")
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="attach_credit_batch")
    except Exception as e:
        logger.error(f"Error attaching credit batch to schedule {subscription_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to update payment schedule", detail=str(e)) from e

    return result.data[0] if result.data else None


def delete_unfunded_schedule(subscription_id: str) -> bool:
    """Remove a claimed schedule whose credits were never granted."""

    def _op(client):
        return (
            client.table(PAYMENT_SCHEDULES_TABLE)
            .delete()
            .eq("stripe_subscription_id", subscription_id)
            .is_("credit_batch_id", "null")
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="delete_unfunded_schedule")
    except Exception as e:
        logger.error(f"Error releasing unfunded schedule {subscription_id}: {e}", exc_info=True)
        return False

    return bool(result.data)
