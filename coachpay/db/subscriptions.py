"""
Subscription links and plan resolution.

profiles.plan_id holds a user's platform plan; org_platform_subscriptions
holds an organization's Stripe subscription. Both are written only from
webhook handlers.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from coachpay.config.supabase_config import execute_with_retry
from coachpay.schemas.payments import OwnerType
from coachpay.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

ORG_SUBSCRIPTIONS_TABLE = "org_platform_subscriptions"

# Tables listing active subscribers eligible for rollover
_ROLLOVER_SOURCES = {
    OwnerType.USER: ("user_subscriptions", "user_id"),
    OwnerType.ORG: ("organization_subscriptions", "organization_id"),
}


def _read(operation, operation_name: str, error_message: str):
    try:
        return execute_with_retry(operation, operation_name=operation_name)
    except Exception as e:
        logger.error(f"{error_message}: {e}", exc_info=True)
        raise PersistenceError(error_message, detail=str(e)) from e


def resolve_plan_id_for_price(price_id: str) -> str | None:
    """Map a Stripe price id to the plan it sells."""
    if not price_id:
        return None

    result = _read(
        lambda client: client.table("plan_prices")
        .select("plan_id")
        .eq("stripe_price_id", price_id)
        .limit(1)
        .execute(),
        "resolve_plan_id_for_price",
        f"Failed to resolve plan for price {price_id}",
    )
    return result.data[0]["plan_id"] if result.data else None


def plan_exists(plan_id: str) -> bool:
    result = _read(
        lambda client: client.table("plans").select("id").eq("id", plan_id).limit(1).execute(),
        "plan_exists",
        f"Failed to look up plan {plan_id}",
    )
    return bool(result.data)


def get_plan_id_by_key(key: str) -> str | None:
    result = _read(
        lambda client: client.table("plans").select("id").eq("key", key).limit(1).execute(),
        "get_plan_id_by_key",
        f"Failed to look up plan '{key}'",
    )
    return result.data[0]["id"] if result.data else None


def set_user_plan(user_id: str, plan_id: str) -> bool:
    """Point a user's profile at plan_id. Setting the same plan twice is a no-op."""
    result = _read(
        lambda client: client.table("profiles")
        .update({"plan_id": plan_id, "updated_at": datetime.now(UTC).isoformat()})
        .eq("id", user_id)
        .execute(),
        "set_user_plan",
        f"Failed to update plan for user {user_id}",
    )
    if not result.data:
        logger.warning(f"No profile found for user {user_id} while setting plan {plan_id}")
        return False
    return True


def find_user_id_by_email(email: str) -> str | None:
    """Profile id for an email address; profiles.username holds the sign-in email."""
    result = _read(
        lambda client: client.table("profiles").select("id").eq("username", email).limit(1).execute(),
        "find_user_id_by_email",
        "Failed to look up profile by email",
    )
    return result.data[0]["id"] if result.data else None


def activate_org_subscription(organization_id: str, subscription_id: str) -> None:
    """Link an organization to its Stripe subscription and mark it active."""
    row = {
        "organization_id": organization_id,
        "stripe_subscription_id": subscription_id,
        "status": "active",
        "updated_at": datetime.now(UTC).isoformat(),
    }
    _read(
        lambda client: client.table(ORG_SUBSCRIPTIONS_TABLE)
        .upsert(row, on_conflict="organization_id")
        .execute(),
        "activate_org_subscription",
        f"Failed to activate subscription for organization {organization_id}",
    )


def get_org_subscription(subscription_id: str) -> dict[str, Any] | None:
    result = _read(
        lambda client: client.table(ORG_SUBSCRIPTIONS_TABLE)
        .select("*")
        .eq("stripe_subscription_id", subscription_id)
        .limit(1)
        .execute(),
        "get_org_subscription",
        f"Failed to read organization subscription {subscription_id}",
    )
    return result.data[0] if result.data else None


def set_org_subscription_status(subscription_id: str, status: str) -> bool:
    result = _read(
        lambda client: client.table(ORG_SUBSCRIPTIONS_TABLE)
        .update({"status": status, "updated_at": datetime.now(UTC).isoformat()})
        .eq("stripe_subscription_id", subscription_id)
        .execute(),
        "set_org_subscription_status",
        f"Failed to update organization subscription {subscription_id}",
    )
    return bool(result.data)


def cancel_org_subscription(subscription_id: str) -> bool:
    """Mark canceled and detach the Stripe subscription id."""
    result = _read(
        lambda client: client.table(ORG_SUBSCRIPTIONS_TABLE)
        .update(
            {
                "status": "canceled",
                "stripe_subscription_id": None,
                "updated_at": datetime.now(UTC).isoformat(),
            }
        )
        .eq("stripe_subscription_id", subscription_id)
        .execute(),
        "cancel_org_subscription",
        f"Failed to cancel organization subscription {subscription_id}",
    )
    return bool(result.data)


def list_active_subscribers(owner_type: OwnerType) -> list[tuple[str, int]]:
    """
    Active subscribers of the given owner type with their plan's credit allowance

    Returns:
        List of (owner_id, credit_allowance) pairs
    """
    table, owner_column = _ROLLOVER_SOURCES[owner_type]

    subs = _read(
        lambda client: client.table(table)
        .select(f"{owner_column}, plan_id")
        .eq("status", "active")
        .execute(),
        "list_active_subscribers",
        f"Failed to list active {owner_type.value} subscriptions",
    ).data or []

    plan_ids = sorted({row["plan_id"] for row in subs if row.get("plan_id")})
    if not plan_ids:
        return []

    plans = _read(
        lambda client: client.table("plans").select("id, credit_allowance").in_("id", plan_ids).execute(),
        "list_active_subscribers.plans",
        "Failed to read plan allowances",
    ).data or []
    allowance_by_plan = {row["id"]: int(row.get("credit_allowance") or 0) for row in plans}

    return [
        (str(row[owner_column]), allowance_by_plan.get(row.get("plan_id"), 0))
        for row in subs
        if row.get(owner_column)
    ]
