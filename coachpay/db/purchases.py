"""
Credit purchase records.

User and organization purchases live in two symmetric tables that differ only
in the owner column. All status transitions are conditional updates scoped on
the row id and the expected current status; an empty result means another
caller won the transition.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from coachpay.config.supabase_config import execute_with_retry
from coachpay.schemas.payments import OwnerType, PurchaseStatus
from coachpay.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseTable:
    name: str
    owner_column: str


USER_PURCHASES = PurchaseTable("user_credit_purchases", "user_id")
ORG_PURCHASES = PurchaseTable("org_credit_purchases", "organization_id")


def purchase_table_for(owner_type: OwnerType) -> PurchaseTable:
    return ORG_PURCHASES if owner_type == OwnerType.ORG else USER_PURCHASES


def get_purchase_by_session(table: PurchaseTable, session_id: str) -> dict[str, Any] | None:
    """
    Fetch the purchase row for a checkout session

    Args:
        table: User or organization purchase table
        session_id: Stripe checkout session id (cs_xxx)

    Returns:
        The purchase row, or None if no row exists yet
    """

    def _op(client):
        return (
            client.table(table.name)
            .select("*")
            .eq("stripe_checkout_session_id", session_id)
            .limit(1)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name=f"get_purchase_by_session[{table.name}]")
    except Exception as e:
        logger.error(f"Error fetching purchase for session {session_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to read purchase record", detail=str(e)) from e

    return result.data[0] if result.data else None


def create_pending_purchase(table: PurchaseTable, record: dict[str, Any]) -> dict[str, Any]:
    """Insert the pending row written when a checkout session is created."""
    row = {**record, "status": PurchaseStatus.PENDING.value}

    try:
        result = execute_with_retry(
            lambda client: client.table(table.name).insert(row).execute(),
            operation_name=f"create_pending_purchase[{table.name}]",
        )
    except Exception as e:
        logger.error(f"Error creating pending purchase in {table.name}: {e}", exc_info=True)
        raise PersistenceError("Failed to create purchase record", detail=str(e)) from e

    if not result.data:
        raise PersistenceError(
            "Failed to create purchase record",
            detail=f"insert into {table.name} returned no rows",
        )
    return result.data[0]


def insert_completed_purchase(table: PurchaseTable, record: dict[str, Any]) -> dict[str, Any] | None:
    """
    Insert a purchase directly as completed when no pending row exists.

    The insert is an upsert on stripe_checkout_session_id that ignores
    duplicates, so a concurrent insert for the same session yields no row.

    Returns:
        The inserted row, or None if another caller created the row first
    """
    row = {**record, "status": PurchaseStatus.COMPLETED.value}

    def _op(client):
        return (
            client.table(table.name)
            .upsert(row, on_conflict="stripe_checkout_session_id", ignore_duplicates=True)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name=f"insert_completed_purchase[{table.name}]")
    except Exception as e:
        logger.error(
            f"Error inserting completed purchase for session {record.get('stripe_checkout_session_id')}: {e}",
            exc_info=True,
        )
        raise PersistenceError("Failed to record purchase", detail=str(e)) from e

    return result.data[0] if result.data else None


def mark_purchase_completed(
    table: PurchaseTable,
    purchase_id: str,
    payment_intent_id: str | None = None,
    expires_at: datetime | None = None,
) -> dict[str, Any] | None:
    """
    Transition a purchase pending -> completed.

    Returns:
        The updated row, or None if the row was no longer pending
    """
    changes: dict[str, Any] = {
        "status": PurchaseStatus.COMPLETED.value,
        "updated_at": datetime.now(UTC).isoformat(),
    }
    if payment_intent_id:
        changes["stripe_payment_intent_id"] = payment_intent_id
    if expires_at:
        changes["expires_at"] = expires_at.isoformat()

    def _op(client):
        return (
            client.table(table.name)
            .update(changes)
            .eq("id", purchase_id)
            .eq("status", PurchaseStatus.PENDING.value)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name=f"mark_purchase_completed[{table.name}]")
    except Exception as e:
        logger.error(f"Error completing purchase {purchase_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to update purchase record", detail=str(e)) from e

    return result.data[0] if result.data else None


def revert_purchase_to_pending(table: PurchaseTable, purchase_id: str) -> bool:
    """Undo a completed transition whose credit grant failed."""

    def _op(client):
        return (
            client.table(table.name)
            .update({"status": PurchaseStatus.PENDING.value, "updated_at": datetime.now(UTC).isoformat()})
            .eq("id", purchase_id)
            .eq("status", PurchaseStatus.COMPLETED.value)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name=f"revert_purchase_to_pending[{table.name}]")
    except Exception as e:
        logger.error(
            f"Failed to revert purchase {purchase_id} to pending after grant failure: {e}. "
            "ACTION REQUIRED: purchase is completed without a credit batch.",
            exc_info=True,
        )
        return False

    return bool(result.data)
