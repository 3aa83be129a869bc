"""
Credit ledger access.

Thin wrappers around the ledger primitives exposed as Supabase RPCs
(grant_credit_batch, expire_credit_batches, process_credit_rollover) plus the
read queries the maintenance jobs need. Batch arithmetic lives in the database;
nothing here mutates credit_batches directly.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from coachpay.config.supabase_config import execute_with_retry
from coachpay.schemas.payments import LedgerStats, OwnerType
from coachpay.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

CREDIT_BATCHES_TABLE = "credit_batches"
LIVE_BATCH_STATUSES = ["active", "partial"]


def _scalar(data: Any) -> Any:
    """Unwrap an RPC scalar that PostgREST may hand back bare, in a list, or in a row."""
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]
    if isinstance(data, dict):
        if len(data) == 1:
            return next(iter(data.values()))
        return data.get("id")
    return data


def find_batch_by_source(
    owner_type: OwnerType, owner_id: str, source_type: str, source_reference_id: str
) -> dict[str, Any] | None:
    def _op(client):
        return (
            client.table(CREDIT_BATCHES_TABLE)
            .select("id, original_amount, expires_at")
            .eq("owner_type", owner_type.value)
            .eq("owner_id", owner_id)
            .eq("source_type", source_type)
            .eq("source_reference_id", source_reference_id)
            .limit(1)
            .execute()
        )

    try:
        result = execute_with_retry(_op, operation_name="find_batch_by_source")
    except Exception as e:
        logger.error(f"Error looking up credit batch for {source_type}:{source_reference_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to read credit ledger", detail=str(e)) from e

    return result.data[0] if result.data else None


def grant_credit_batch(
    owner_type: OwnerType,
    owner_id: str,
    amount: int,
    expires_at: datetime,
    source_type: str,
    source_reference_id: str,
    feature_key: str | None = None,
    description: str | None = None,
) -> str:
    """
    Grant a credit batch, at most once per source reference.

    An existing batch for (owner_type, owner_id, source_type, source_reference_id)
    is returned instead of granting again, so callers can safely retry.

    Returns:
        The credit batch id

    Raises:
        PersistenceError: If the lookup or the RPC fails
    """
    existing = find_batch_by_source(owner_type, owner_id, source_type, source_reference_id)
    if existing:
        logger.info(
            f"Credit batch {existing['id']} already granted for {source_type}:{source_reference_id}, "
            "skipping grant"
        )
        return str(existing["id"])

    params = {
        "p_owner_type": owner_type.value,
        "p_owner_id": owner_id,
        "p_amount": amount,
        "p_expires_at": expires_at.isoformat(),
        "p_source_type": source_type,
        "p_feature_key": feature_key,
        "p_source_reference_id": source_reference_id,
        "p_description": description,
    }

    try:
        result = execute_with_retry(
            lambda client: client.rpc("grant_credit_batch", params).execute(),
            operation_name="grant_credit_batch",
        )
    except Exception as e:
        logger.error(
            f"grant_credit_batch failed for {owner_type.value} {owner_id} "
            f"({amount} credits, ref={source_reference_id}): {e}",
            exc_info=True,
        )
        raise PersistenceError("Failed to grant credits", detail=str(e)) from e

    batch_id = _scalar(result.data)
    if not batch_id:
        raise PersistenceError(
            "Failed to grant credits",
            detail=f"grant_credit_batch returned no batch id for ref={source_reference_id}",
        )

    logger.info(
        f"Granted {amount} credits to {owner_type.value} {owner_id} "
        f"(batch={batch_id}, source={source_type}, ref={source_reference_id})"
    )
    return str(batch_id)


def expire_credit_batches() -> int:
    """Run the expiry sweep. Returns the number of batches marked expired."""
    result = execute_with_retry(
        lambda client: client.rpc("expire_credit_batches", {}).execute(),
        operation_name="expire_credit_batches",
    )
    return int(_scalar(result.data) or 0)


def process_credit_rollover(owner_type: OwnerType, owner_id: str, max_rollover: int) -> int:
    """Roll unused allowance into a rollover batch, capped at max_rollover. Returns credits rolled."""
    params = {
        "p_owner_type": owner_type.value,
        "p_owner_id": owner_id,
        "p_max_rollover": max_rollover,
    }
    result = execute_with_retry(
        lambda client: client.rpc("process_credit_rollover", params).execute(),
        operation_name="process_credit_rollover",
    )
    return int(_scalar(result.data) or 0)


def get_expiring_batches(
    owner_type: OwnerType, now: datetime, window_end: datetime
) -> list[dict[str, Any]]:
    """
    Live batches with a positive balance expiring in (now, window_end].
    """

    def _op(client):
        return (
            client.table(CREDIT_BATCHES_TABLE)
            .select("id, owner_id, remaining_amount, expires_at")
            .eq("owner_type", owner_type.value)
            .gt("remaining_amount", 0)
            .neq("status", "expired")
            .gt("expires_at", now.isoformat())
            .lte("expires_at", window_end.isoformat())
            .order("expires_at")
            .execute()
        )

    result = execute_with_retry(_op, operation_name="get_expiring_batches")
    return result.data or []


def count_archivable_batches(cutoff: datetime) -> int:
    """Zero-balance batches created before cutoff."""

    def _op(client):
        return (
            client.table(CREDIT_BATCHES_TABLE)
            .select("id", count="exact")
            .eq("remaining_amount", 0)
            .lt("created_at", cutoff.isoformat())
            .execute()
        )

    result = execute_with_retry(_op, operation_name="count_archivable_batches")
    if result.count is not None:
        return int(result.count)
    return len(result.data or [])


def get_ledger_stats(now: datetime | None = None) -> LedgerStats:
    now = now or datetime.now(UTC)

    def _op(client):
        return (
            client.table(CREDIT_BATCHES_TABLE)
            .select("owner_type, remaining_amount, original_amount")
            .in_("status", LIVE_BATCH_STATUSES)
            .gt("expires_at", now.isoformat())
            .execute()
        )

    result = execute_with_retry(_op, operation_name="get_ledger_stats")

    stats = LedgerStats()
    for row in result.data or []:
        remaining = int(row.get("remaining_amount") or 0)
        original = int(row.get("original_amount") or 0)
        if row.get("owner_type") == OwnerType.ORG.value:
            stats.org_active_batches += 1
            stats.org_remaining_credits += remaining
            stats.org_original_credits += original
        else:
            stats.user_active_batches += 1
            stats.user_remaining_credits += remaining
            stats.user_original_credits += original

    if stats.user_original_credits:
        used = stats.user_original_credits - stats.user_remaining_credits
        stats.user_utilization_rate = round(used / stats.user_original_credits * 100, 2)

    return stats
