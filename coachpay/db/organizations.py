import logging

from coachpay.config.supabase_config import execute_with_retry
from coachpay.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

ADMIN_ROLES = ["owner", "admin"]


def get_org_admin_ids(organization_id: str) -> list[str]:
    """Active owner/admin members of an organization."""

    def _op(client):
        return (
            client.table("organization_members")
            .select("user_id")
            .eq("organization_id", organization_id)
            .in_("role", ADMIN_ROLES)
            .eq("is_active", True)
            .execute()
        )

    result = execute_with_retry(_op, operation_name="get_org_admin_ids")
    return [str(row["user_id"]) for row in result.data or [] if row.get("user_id")]


def is_org_admin(organization_id: str, user_id: str) -> bool:
    try:
        return user_id in get_org_admin_ids(organization_id)
    except Exception as e:
        logger.error(f"Error checking membership of {user_id} in {organization_id}: {e}", exc_info=True)
        raise PersistenceError("Failed to verify organization membership", detail=str(e)) from e
