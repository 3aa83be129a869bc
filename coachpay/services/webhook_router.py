"""
Webhook Event Router
Verifies Stripe webhook deliveries and dispatches them to idempotent handlers
for subscriptions, organization platform subscriptions and installment plans.

Stripe delivers at least once and out of order; every handler is safe to run
twice for the same event. The processed-event ledger only short-circuits
redeliveries early.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from coachpay.config import Config
from coachpay.config.logging_config import billing_log_context
from coachpay.db.ledger import find_batch_by_source, grant_credit_batch
from coachpay.db.packages import get_credit_package, get_default_purchase_expiry_months
from coachpay.db.payment_schedules import get_schedule_by_subscription
from coachpay.db.subscriptions import (
    activate_org_subscription,
    cancel_org_subscription,
    find_user_id_by_email,
    get_plan_id_by_key,
    plan_exists,
    resolve_plan_id_for_price,
    set_org_subscription_status,
    set_user_plan,
)
from coachpay.db.webhook_events import is_event_processed, record_processed_event
from coachpay.schemas.payments import CheckoutKind, OwnerType, WebhookProcessingResult
from coachpay.services.installment_schedule import InstallmentScheduleManager
from coachpay.services.stripe_gateway import StripeGateway
from coachpay.utils.dates import expiry_after_months, parse_timestamp
from coachpay.utils.exceptions import PersistenceError, ValidationError
from coachpay.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

INSTALLMENT_SOURCE_TYPE = "purchase"
FIRST_INVOICE_REASON = "subscription_create"


class WebhookRouter:
    """Signature-verified dispatch of Stripe events"""

    def __init__(
        self,
        gateway: StripeGateway | None = None,
        schedules: InstallmentScheduleManager | None = None,
    ):
        self._gateway = gateway
        self.schedules = schedules or InstallmentScheduleManager()
        self._handlers: dict[str, Callable[[Any], str]] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway()
        return self._gateway

    def handle(self, payload: bytes, signature: str | None) -> WebhookProcessingResult:
        """
        Verify and process one webhook delivery.

        Raises:
            WebhookSignatureError: Signature missing or invalid; nothing was parsed
            BillingError: A handler failed; GatewayError/PersistenceError warrant redelivery
        """
        event = self.gateway.construct_event(payload, signature)
        event_id = str(event["id"])
        event_type = str(event["type"])

        with billing_log_context(event_id=event_id, event_type=event_type):
            logger.info(f"Processing webhook: {event_type} (ID: {event_id})")

            if is_event_processed(event_id):
                logger.warning(f"Duplicate webhook event detected, skipping: {event_id}")
                return WebhookProcessingResult(
                    success=True,
                    event_type=event_type,
                    event_id=event_id,
                    message=f"Event {event_id} already processed (duplicate)",
                    duplicate=True,
                    processed_at=datetime.now(UTC),
                )

            handler = self._handlers.get(event_type)
            if handler is None:
                message = f"Event type {event_type} ignored"
                logger.info(message)
            else:
                message = handler(event["data"]["object"])

            record_processed_event(event_id, event_type, metadata={"message": message})

            return WebhookProcessingResult(
                success=True,
                event_type=event_type,
                event_id=event_id,
                message=message,
                processed_at=datetime.now(UTC),
            )

    # ==================== Helpers ====================

    def _subscription_kind(self, subscription: Any) -> tuple[CheckoutKind, dict[str, Any]]:
        metadata = self.gateway.get_metadata(subscription)
        return CheckoutKind.parse(metadata.get("type")), metadata

    def _invoice_subscription_id(self, invoice: Any) -> str | None:
        gw = self.gateway
        subscription = gw.get_value(invoice, "subscription")
        if subscription:
            return gw.get_id(subscription)
        # Newer API versions nest the subscription under parent.subscription_details
        parent = gw.get_value(invoice, "parent")
        details = gw.get_value(parent, "subscription_details") if parent else None
        return gw.get_id(gw.get_value(details, "subscription")) if details else None

    def _invoice_period_end(self, invoice: Any) -> datetime | None:
        gw = self.gateway
        lines = gw.get_value(gw.get_value(invoice, "lines"), "data") or []
        if lines:
            period = gw.get_value(lines[0], "period")
            end = parse_timestamp(gw.get_value(period, "end"))
            if end:
                return end
        return parse_timestamp(gw.get_value(invoice, "period_end"))

    def _subscription_period_end(self, subscription: Any) -> datetime | None:
        gw = self.gateway
        end = parse_timestamp(gw.get_value(subscription, "current_period_end"))
        if end:
            return end
        items = gw.get_value(gw.get_value(subscription, "items"), "data") or []
        return parse_timestamp(gw.get_value(items[0], "current_period_end")) if items else None

    def _resolve_user_plan(self, subscription: Any, metadata: dict[str, Any]) -> str | None:
        plan_id = metadata.get("plan_id")
        if plan_id and plan_exists(plan_id):
            return plan_id
        price_id = self.gateway.first_price_id(subscription)
        resolved = resolve_plan_id_for_price(price_id) if price_id else None
        if not resolved:
            logger.error(
                f"Could not resolve plan for subscription {self.gateway.get_id(subscription)} "
                f"(price={price_id}). ACTION REQUIRED: add the price to plan_prices."
            )
        return resolved

    def _user_id_from_customer(self, subscription: Any) -> str | None:
        """Fallback for subscriptions created without user_id metadata: match the customer's email."""
        gw = self.gateway
        customer_id = gw.get_id(gw.get_value(subscription, "customer"))
        if not customer_id:
            return None
        email = gw.get_value(gw.retrieve_customer(customer_id), "email")
        if not email:
            logger.warning(f"Stripe customer {customer_id} has no email, cannot match a user")
            return None
        user_id = find_user_id_by_email(email)
        if user_id:
            logger.info(f"Matched customer {customer_id} to user {user_id} by email")
        return user_id

    # ==================== checkout.session.completed ====================

    def _handle_checkout_completed(self, session: Any) -> str:
        gw = self.gateway
        metadata = gw.get_metadata(session)
        kind = CheckoutKind.parse(metadata.get("type"))
        subscription_id = gw.get_id(gw.get_value(session, "subscription"))

        if kind == CheckoutKind.UNKNOWN:
            logger.info(f"Checkout session with unhandled type {metadata.get('type')!r} ignored")
            return f"Checkout type {metadata.get('type')!r} ignored"

        if not subscription_id:
            raise ValidationError(f"{kind.value} checkout session has no subscription")

        with billing_log_context(subscription_id=subscription_id):
            if kind == CheckoutKind.USER_SUBSCRIPTION:
                return self._complete_user_subscription(metadata, subscription_id)
            if kind == CheckoutKind.ORG_PLATFORM_SUBSCRIPTION:
                return self._complete_org_subscription(metadata, subscription_id)
            return self._complete_installment_checkout(session, metadata, subscription_id)

    def _complete_user_subscription(self, metadata: dict[str, Any], subscription_id: str) -> str:
        user_id = metadata.get("user_id")
        if not user_id:
            raise ValidationError("user_subscription checkout is missing user_id")

        subscription = self.gateway.retrieve_subscription(subscription_id)
        plan_id = self._resolve_user_plan(subscription, metadata)
        if not plan_id:
            return "Plan could not be resolved"

        set_user_plan(user_id, plan_id)
        logger.info(f"User {user_id} moved to plan {plan_id}")
        return f"User {user_id} subscribed to plan {plan_id}"

    def _complete_org_subscription(self, metadata: dict[str, Any], subscription_id: str) -> str:
        organization_id = metadata.get("organization_id")
        if not organization_id:
            raise ValidationError("org_platform_subscription checkout is missing organization_id")

        activate_org_subscription(organization_id, subscription_id)
        logger.info(f"Organization {organization_id} platform subscription active")
        return f"Organization {organization_id} subscription activated"

    def _complete_installment_checkout(
        self, session: Any, session_metadata: dict[str, Any], subscription_id: str
    ) -> str:
        existing = get_schedule_by_subscription(subscription_id)
        if existing:
            return self._installment_replay(existing, subscription_id)

        gw = self.gateway
        subscription = gw.retrieve_subscription(subscription_id)
        metadata = {**session_metadata, **gw.get_metadata(subscription)}

        user_id = metadata.get("user_id")
        if not user_id:
            raise ValidationError("credit_installment checkout is missing user_id")

        package_id = metadata.get("package_id")
        package = get_credit_package(OwnerType.USER, package_id) if package_id else None

        credits = gw.coerce_to_int(metadata.get("credit_value")) or gw.coerce_to_int(
            (package or {}).get("credit_value")
        )
        installment_count = gw.coerce_to_int(metadata.get("installment_count"))
        if not credits or not installment_count or installment_count < 1:
            raise ValidationError("credit_installment checkout is missing credit_value or installment_count")

        installment_amount = gw.coerce_to_int(metadata.get("installment_amount_cents")) or (
            gw.coerce_to_int(gw.get_value(session, "amount_total")) or 0
        )
        total_amount = gw.coerce_to_int(metadata.get("total_amount_cents")) or (
            installment_amount * installment_count
        )

        expires_at = parse_timestamp(metadata.get("expires_at"))
        if expires_at is None:
            months = (package or {}).get("validity_months") or get_default_purchase_expiry_months()
            expires_at = expiry_after_months(int(months))

        next_payment = self._subscription_period_end(subscription) or (
            datetime.now(UTC) + timedelta(days=30)
        )

        # Claim the subscription first; a delivery that loses the insert never grants
        claimed = self.schedules.create_schedule(
            user_id=user_id,
            package_id=package_id,
            subscription_id=subscription_id,
            total_amount_cents=total_amount,
            installment_count=installment_count,
            installment_amount_cents=installment_amount,
            credits_granted=credits,
            credit_batch_id=None,
            next_payment_date=next_payment,
        )
        if claimed is None:
            return self._installment_replay(get_schedule_by_subscription(subscription_id), subscription_id)

        # Full package value is granted upfront
        try:
            batch_id = grant_credit_batch(
                owner_type=OwnerType.USER,
                owner_id=user_id,
                amount=credits,
                expires_at=expires_at,
                source_type=INSTALLMENT_SOURCE_TYPE,
                source_reference_id=subscription_id,
                description=f"Installment plan ({credits} credits over {installment_count} payments)",
            )
        except PersistenceError as e:
            released = self.schedules.release_unfunded(subscription_id)
            logger.error(
                f"Credit grant failed for installment plan {subscription_id}; "
                f"{'schedule released for redelivery' if released else 'schedule release FAILED'}"
            )
            capture_payment_error(
                e,
                operation="installment_checkout",
                owner_id=user_id,
                details={"subscription_id": subscription_id, "released": released},
            )
            raise

        self.schedules.fund_schedule(subscription_id, batch_id)
        return f"Installment plan created: {credits} credits, {installment_count} installments"

    def _installment_replay(self, schedule: dict[str, Any] | None, subscription_id: str) -> str:
        """Outcome for a checkout delivery that found the schedule already claimed."""
        if schedule is None:
            # Claimed, then released after a failed grant
            raise PersistenceError(
                "Installment plan creation failed",
                detail=f"schedule for {subscription_id} was released, redeliver to retry",
            )

        if schedule.get("credit_batch_id"):
            logger.info("Installment schedule already exists, checkout replay ignored")
            return "Installment plan already created"

        # The claimant may have granted without linking the batch yet
        batch = find_batch_by_source(
            OwnerType.USER, str(schedule["user_id"]), INSTALLMENT_SOURCE_TYPE, subscription_id
        )
        if batch:
            self.schedules.fund_schedule(subscription_id, str(batch["id"]))
            return "Installment plan already created"

        logger.warning(f"Installment schedule {subscription_id} is claimed but not yet funded")
        raise PersistenceError(
            "Installment plan is still being created",
            detail=f"schedule for {subscription_id} has no credit batch yet",
        )

    # ==================== customer.subscription.* ====================

    def _handle_subscription_updated(self, subscription: Any) -> str:
        gw = self.gateway
        subscription_id = gw.get_id(subscription)
        status = gw.get_value(subscription, "status")
        if status != "active":
            logger.info(f"Subscription {subscription_id} status {status}, ignored")
            return f"Subscription status {status} ignored"

        kind, metadata = self._subscription_kind(subscription)

        if kind == CheckoutKind.USER_SUBSCRIPTION:
            user_id = metadata.get("user_id")
            if not user_id:
                raise ValidationError("user_subscription is missing user_id")
            plan_id = self._resolve_user_plan(subscription, metadata)
            if not plan_id:
                return "Plan could not be resolved"
            set_user_plan(user_id, plan_id)
            return f"User {user_id} plan synced to {plan_id}"

        if kind == CheckoutKind.ORG_PLATFORM_SUBSCRIPTION:
            set_org_subscription_status(subscription_id, "active")
            return f"Organization subscription {subscription_id} synced"

        logger.info(f"Subscription update for {kind.value} subscription {subscription_id} ignored")
        return f"Subscription update for {kind.value} ignored"

    def _handle_subscription_deleted(self, subscription: Any) -> str:
        gw = self.gateway
        subscription_id = gw.get_id(subscription)
        kind, metadata = self._subscription_kind(subscription)

        with billing_log_context(subscription_id=subscription_id):
            if kind == CheckoutKind.USER_SUBSCRIPTION:
                user_id = metadata.get("user_id") or self._user_id_from_customer(subscription)
                if not user_id:
                    logger.warning(f"No user found for deleted subscription {subscription_id}, not downgraded")
                    return "User not found for subscription"
                free_plan_id = get_plan_id_by_key(Config.FREE_PLAN_KEY)
                if not free_plan_id:
                    logger.error(f"Free plan '{Config.FREE_PLAN_KEY}' not found; cannot downgrade {user_id}")
                    return "Free plan not configured"
                set_user_plan(user_id, free_plan_id)
                logger.info(f"User {user_id} downgraded to {Config.FREE_PLAN_KEY} plan")
                return f"User {user_id} downgraded to free plan"

            if kind == CheckoutKind.ORG_PLATFORM_SUBSCRIPTION:
                cancel_org_subscription(subscription_id)
                return f"Organization subscription {subscription_id} canceled"

            if kind == CheckoutKind.CREDIT_INSTALLMENT:
                final_status = self.schedules.close_on_cancellation(subscription_id)
                return f"Installment plan {final_status.value}"

        logger.info(f"Deleted subscription {subscription_id} has unhandled type, ignored")
        return "Subscription deletion ignored"

    # ==================== invoice.* ====================

    def _installment_subscription(self, invoice: Any) -> str | None:
        """Subscription id when the invoice belongs to an installment plan."""
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        kind, _ = self._subscription_kind(self.gateway.retrieve_subscription(subscription_id))
        return subscription_id if kind == CheckoutKind.CREDIT_INSTALLMENT else None

    def _handle_invoice_paid(self, invoice: Any) -> str:
        gw = self.gateway
        invoice_id = gw.get_id(invoice)

        if gw.get_value(invoice, "billing_reason") == FIRST_INVOICE_REASON:
            logger.info(f"Invoice {invoice_id} is the first invoice, counted at checkout")
            return "First invoice skipped"

        subscription_id = self._installment_subscription(invoice)
        if not subscription_id:
            return "Invoice is not for an installment plan"

        with billing_log_context(subscription_id=subscription_id):
            progress = self.schedules.record_payment(
                subscription_id,
                amount_paid=gw.coerce_to_int(gw.get_value(invoice, "amount_paid")) or 0,
                next_due_date=self._invoice_period_end(invoice),
                invoice_id=invoice_id,
            )
        return f"Installment {progress.installments_paid}/{progress.installment_count} recorded"

    def _handle_invoice_payment_failed(self, invoice: Any) -> str:
        subscription_id = self._installment_subscription(invoice)
        if not subscription_id:
            return "Invoice is not for an installment plan"

        with billing_log_context(subscription_id=subscription_id):
            result = self.schedules.record_failure(subscription_id)
        return "Installment plan outstanding" if result["locked"] else "Installment failure ignored"
