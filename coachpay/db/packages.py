import logging
from typing import Any

from coachpay.config import Config
from coachpay.config.supabase_config import execute_with_retry
from coachpay.schemas.payments import OwnerType
from coachpay.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

PACKAGE_TABLES = {
    OwnerType.USER: "credit_topup_packages",
    OwnerType.ORG: "org_credit_packages",
}

PURCHASE_EXPIRY_SETTING = "purchased_credit_expiry_months"


def get_credit_package(owner_type: OwnerType, package_id: str) -> dict[str, Any] | None:
    """
    Fetch a credit package

    Args:
        owner_type: Selects the user top-up or organization package catalogue
        package_id: Package id

    Returns:
        Package row (credit_value, price_cents, currency, validity_months, is_active) or None
    """
    table = PACKAGE_TABLES[owner_type]

    def _op(client):
        return client.table(table).select("*").eq("id", package_id).limit(1).execute()

    try:
        result = execute_with_retry(_op, operation_name="get_credit_package")
    except Exception as e:
        logger.error(f"Error fetching package {package_id} from {table}: {e}", exc_info=True)
        raise PersistenceError("Failed to read credit package", detail=str(e)) from e

    return result.data[0] if result.data else None


def get_default_purchase_expiry_months() -> int:
    """System-wide validity for purchased credits, falling back to config."""
    try:
        result = execute_with_retry(
            lambda client: client.table("system_settings")
            .select("value")
            .eq("key", PURCHASE_EXPIRY_SETTING)
            .limit(1)
            .execute(),
            operation_name="get_default_purchase_expiry_months",
        )
    except Exception as e:
        logger.warning(f"Could not read {PURCHASE_EXPIRY_SETTING}, using default: {e}")
        return Config.DEFAULT_PURCHASE_EXPIRY_MONTHS

    if result.data:
        try:
            months = int(result.data[0]["value"])
            if months > 0:
                return months
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Invalid {PURCHASE_EXPIRY_SETTING} value: {result.data[0].get('value')!r}")

    return Config.DEFAULT_PURCHASE_EXPIRY_MONTHS
