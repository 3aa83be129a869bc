"""
Stripe Gateway
Wraps the Stripe SDK calls the billing flows depend on and normalises SDK
failures into GatewayError / NotFoundError / WebhookSignatureError.
"""

import logging
from typing import Any

import stripe

from coachpay.config import Config
from coachpay.utils.exceptions import GatewayError, NotFoundError, WebhookSignatureError
from coachpay.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)


class StripeGateway:
    """Stripe SDK access with consistent error mapping"""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or Config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or Config.STRIPE_WEBHOOK_SECRET

        if not self.api_key:
            raise ValueError("STRIPE_SECRET_KEY not found in environment variables")

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

        stripe.api_key = self.api_key

    # ==================== Object helpers ====================

    @staticmethod
    def get_value(obj: Any, attr: str) -> Any:
        """
        Safely extract a field from a Stripe object (dict-like or attribute-based).
        """
        if obj is None:
            return None

        if isinstance(obj, dict):
            return obj.get(attr)

        try:
            return obj[attr]
        except (KeyError, TypeError, IndexError, AttributeError):
            pass

        return getattr(obj, attr, None)

    @staticmethod
    def metadata_to_dict(metadata: Any) -> dict[str, Any]:
        """Convert Stripe metadata object into a plain dictionary."""
        if metadata is None:
            return {}
        if isinstance(metadata, dict):
            return dict(metadata)
        to_dict = getattr(metadata, "to_dict", None)
        if callable(to_dict):
            return dict(to_dict())
        try:
            return dict(metadata)
        except (TypeError, ValueError):
            return {}

    @staticmethod
    def coerce_to_int(value: Any) -> int | None:
        """
        Convert Stripe metadata values (str, float) into an int.
        Returns None when conversion is not possible.
        """
        if value is None or isinstance(value, bool):
            return None

        if isinstance(value, int | float):
            return int(round(value))

        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return None
            try:
                return int(round(float(stripped)))
            except ValueError:
                return None

        return None

    def get_metadata(self, obj: Any) -> dict[str, Any]:
        return self.metadata_to_dict(self.get_value(obj, "metadata"))

    def get_id(self, value: Any) -> str | None:
        """Return the id of an expanded object, or the value itself when it is already an id."""
        if value is None:
            return None
        if isinstance(value, str):
            return value
        object_id = self.get_value(value, "id")
        return str(object_id) if object_id else None

    def first_price_id(self, subscription: Any) -> str | None:
        items = self.get_value(subscription, "items")
        data = self.get_value(items, "data") if items else None
        if not data:
            return None
        price = self.get_value(data[0], "price")
        return self.get_id(price)

    # ==================== Retrieval ====================

    def retrieve_checkout_session(self, session_id: str) -> Any:
        """
        Retrieve a checkout session with its payment intent expanded.

        Raises:
            NotFoundError: Stripe does not know the session
            GatewayError: Stripe unreachable or returned an error
        """
        try:
            return stripe.checkout.Session.retrieve(session_id, expand=["payment_intent"])
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise NotFoundError("Checkout session not found", session_id=session_id) from e
            logger.error(f"Stripe rejected checkout session lookup {session_id}: {e}")
            capture_payment_error(e, operation="retrieve_checkout_session", details={"session_id": session_id})
            raise GatewayError("Failed to retrieve checkout session", detail=str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving checkout session {session_id}: {e}")
            capture_payment_error(e, operation="retrieve_checkout_session", details={"session_id": session_id})
            raise GatewayError("Failed to retrieve checkout session", detail=str(e)) from e

    def retrieve_subscription(self, subscription_id: str) -> Any:
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving subscription {subscription_id}: {e}")
            capture_payment_error(
                e, operation="retrieve_subscription", details={"subscription_id": subscription_id}
            )
            raise GatewayError("Failed to retrieve subscription", detail=str(e)) from e

    def retrieve_customer(self, customer_id: str) -> Any:
        try:
            return stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe error retrieving customer {customer_id}: {e}")
            capture_payment_error(e, operation="retrieve_customer", details={"customer_id": customer_id})
            raise GatewayError("Failed to retrieve customer", detail=str(e)) from e

    # ==================== Webhooks ====================

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        """
        Verify the signature and parse a webhook payload.

        Raises:
            WebhookSignatureError: Missing secret, missing header or invalid signature
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid webhook signature: {e}")
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning(f"Malformed webhook payload: {e}")
            raise WebhookSignatureError("Invalid webhook payload") from e

    # ==================== Checkout creation ====================

    def create_payment_checkout(
        self,
        *,
        product_name: str,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> Any:
        """One-time payment checkout for a credit package."""
        try:
            return stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": amount_cents,
                            "product_data": {"name": product_name},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                metadata=metadata,
                payment_intent_data={"metadata": dict(metadata)},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session: {e}")
            capture_payment_error(e, operation="checkout_session", details={"amount_cents": amount_cents})
            raise GatewayError("Failed to create checkout session", detail=str(e)) from e

    def create_installment_checkout(
        self,
        *,
        product_name: str,
        installment_amount_cents: int,
        currency: str,
        cancel_at: int,
        metadata: dict[str, str],
        subscription_metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> Any:
        """Monthly subscription checkout that auto-cancels after the last installment."""
        try:
            return stripe.checkout.Session.create(
                mode="subscription",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": installment_amount_cents,
                            "recurring": {"interval": "month", "interval_count": 1},
                            "product_data": {"name": product_name},
                        },
                        "quantity": 1,
                    }
                ],
                subscription_data={"cancel_at": cancel_at, "metadata": subscription_metadata},
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating installment checkout: {e}")
            capture_payment_error(
                e,
                operation="installment_checkout",
                details={"installment_amount_cents": installment_amount_cents},
            )
            raise GatewayError("Failed to create installment checkout", detail=str(e)) from e
