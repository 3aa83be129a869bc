"""
Sentry error context utilities for payment and ledger failures.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Returns:
        Event ID if captured, None if Sentry is not initialised
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    owner_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Payment operation (e.g., 'confirm_purchase', 'webhook', 'maintenance')
        provider: Payment provider (default: 'stripe')
        owner_id: Ledger owner (user or organization id) if applicable
        details: Additional details (session id, subscription id, ...)
    """
    context_data: dict[str, Any] = {"operation": operation, "provider": provider}
    if owner_id:
        context_data["owner_id"] = owner_id
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )


def sanitize_for_logging(value: Any) -> str:
    """Strip newlines and NULs from user-controlled strings before logging them."""
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")
