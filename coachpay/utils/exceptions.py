"""
Billing error taxonomy.

Every error raised out of the reconciliation, webhook and maintenance layers
is a BillingError carrying the HTTP status it maps to and the message that is
safe to return to the caller. Server-side failures keep their detail for the
logs and hand the caller a generic message.

Usage:
    from coachpay.utils.exceptions import NotFoundError

    raise NotFoundError("Credit package not found", resource_id=package_id)
"""

from typing import Any

GENERIC_SERVER_ERROR = "An internal error occurred while processing the payment"


class BillingError(Exception):
    """Base class for errors surfaced by the billing layer."""

    status_code: int = 500
    error_code: str = "billing_error"

    def __init__(self, message: str, *, detail: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail or message
        self.context = context

    @property
    def public_message(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.public_message}


class ValidationError(BillingError):
    """Malformed or missing input, unsupported purchase type."""

    status_code = 400
    error_code = "validation_error"


class AuthError(BillingError):
    """Missing or invalid credentials."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(AuthError):
    """Authenticated, but not the payer referenced by the checkout."""

    status_code = 403
    error_code = "forbidden"


class WebhookSignatureError(AuthError):
    """Webhook payload failed signature verification."""

    error_code = "invalid_signature"


class NotFoundError(BillingError):
    """Unknown package, or checkout session not found at the gateway."""

    status_code = 404
    error_code = "not_found"


class GatewayError(BillingError):
    """Payment gateway unreachable or returned an unexpected shape."""

    status_code = 500
    error_code = "gateway_error"

    @property
    def public_message(self) -> str:
        return GENERIC_SERVER_ERROR


class PersistenceError(BillingError):
    """Ledger, purchase or schedule write failed."""

    status_code = 500
    error_code = "persistence_error"

    @property
    def public_message(self) -> str:
        return GENERIC_SERVER_ERROR
