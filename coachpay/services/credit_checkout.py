"""
Credit checkout creation.

Opens Stripe checkout sessions for credit packages, stamping them with the
metadata the reconciler and the webhook router key on, and writes the pending
purchase row the reconciler later completes.
"""

import logging
import math
from datetime import timedelta

from coachpay.config import Config
from coachpay.db.packages import get_credit_package
from coachpay.db.purchases import create_pending_purchase, purchase_table_for
from coachpay.schemas.payments import (
    PURCHASE_TAGS,
    CheckoutKind,
    CheckoutSessionResult,
    OwnerType,
    PayerIdentity,
)
from coachpay.services.stripe_gateway import StripeGateway
from coachpay.utils.dates import expiry_after_months, utc_now
from coachpay.utils.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MIN_INSTALLMENT_MONTHS = 2
DAYS_PER_INSTALLMENT = 30


def _load_active_package(owner_type: OwnerType, package_id: str) -> dict:
    package = get_credit_package(owner_type, package_id)
    if not package or not package.get("is_active", True):
        raise NotFoundError("Credit package not found", package_id=package_id)
    return package


def _frontend_path(owner_type: OwnerType) -> str:
    return "/org/credits" if owner_type == OwnerType.ORG else "/credits"


class CreditCheckoutService:
    def __init__(self, gateway: StripeGateway | None = None):
        self._gateway = gateway

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway()
        return self._gateway

    def create_package_checkout(
        self, payer: PayerIdentity, package_id: str, customer_email: str | None = None
    ) -> CheckoutSessionResult:
        """One-time purchase of a credit package for a user or an organization."""
        package = _load_active_package(payer.owner_type, package_id)
        credits = int(package["credit_value"])
        price_cents = int(package["price_cents"])
        currency = package.get("currency") or "usd"

        owner_key = "organization_id" if payer.owner_type == OwnerType.ORG else "user_id"
        metadata = {
            "type": PURCHASE_TAGS[payer.owner_type],
            owner_key: payer.owner_id,
            "package_id": str(package["id"]),
            "credit_value": str(credits),
        }
        if payer.owner_type == OwnerType.ORG:
            metadata["purchased_by"] = payer.acting_user_id

        path = _frontend_path(payer.owner_type)
        session = self.gateway.create_payment_checkout(
            product_name=package.get("name") or f"{credits} credits",
            amount_cents=price_cents,
            currency=currency,
            metadata=metadata,
            success_url=f"{Config.FRONTEND_URL}{path}?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{Config.FRONTEND_URL}{path}?canceled=true",
            customer_email=customer_email,
        )
        session_id = self.gateway.get_id(session)

        table = purchase_table_for(payer.owner_type)
        record = {
            table.owner_column: payer.owner_id,
            "package_id": str(package["id"]),
            "credits_purchased": credits,
            "amount_cents": price_cents,
            "currency": currency,
            "stripe_checkout_session_id": session_id,
        }
        if package.get("validity_months"):
            record["expires_at"] = expiry_after_months(int(package["validity_months"])).isoformat()
        if payer.owner_type == OwnerType.ORG:
            record["purchased_by"] = payer.acting_user_id

        purchase = create_pending_purchase(table, record)
        logger.info(f"Checkout session {session_id} created for package {package['id']} ({credits} credits)")

        return CheckoutSessionResult(
            session_id=session_id,
            url=self.gateway.get_value(session, "url"),
            purchase_id=str(purchase["id"]),
        )

    def create_installment_checkout(
        self,
        user_id: str,
        package_id: str,
        installment_months: int,
        customer_email: str | None = None,
    ) -> CheckoutSessionResult:
        """
        Subscription checkout paying a package off in monthly installments.

        Each installment is ceil(price / months); the subscription cancels itself
        after months x 30 days so no installment is charged past the plan.
        """
        if installment_months < MIN_INSTALLMENT_MONTHS:
            raise ValidationError(f"Installment plans need at least {MIN_INSTALLMENT_MONTHS} months")

        package = _load_active_package(OwnerType.USER, package_id)
        credits = int(package["credit_value"])
        price_cents = int(package["price_cents"])
        currency = package.get("currency") or "usd"
        installment_amount = math.ceil(price_cents / installment_months)

        now = utc_now()
        cancel_at = int((now + timedelta(days=installment_months * DAYS_PER_INSTALLMENT)).timestamp())
        expires_at = (
            expiry_after_months(int(package["validity_months"]), now).isoformat()
            if package.get("validity_months")
            else ""
        )

        base_metadata = {
            "type": CheckoutKind.CREDIT_INSTALLMENT.value,
            "user_id": user_id,
            "package_id": str(package["id"]),
            "credit_value": str(credits),
            "installment_count": str(installment_months),
        }
        subscription_metadata = {
            **base_metadata,
            "total_amount_cents": str(price_cents),
            "installment_amount_cents": str(installment_amount),
            "expires_at": expires_at,
        }

        session = self.gateway.create_installment_checkout(
            product_name=f"Installment Plan: {package.get('name') or f'{credits} credits'}",
            installment_amount_cents=installment_amount,
            currency=currency,
            cancel_at=cancel_at,
            metadata=base_metadata,
            subscription_metadata=subscription_metadata,
            success_url=(
                f"{Config.FRONTEND_URL}/credits?success=true&session_id={{CHECKOUT_SESSION_ID}}&installment=true"
            ),
            cancel_url=f"{Config.FRONTEND_URL}/credits?canceled=true",
            customer_email=customer_email,
        )
        session_id = self.gateway.get_id(session)

        # Full package price; the payment schedule tracks what has actually been paid
        record = {
            "user_id": user_id,
            "package_id": str(package["id"]),
            "credits_purchased": credits,
            "amount_cents": price_cents,
            "currency": currency,
            "stripe_checkout_session_id": session_id,
        }
        if expires_at:
            record["expires_at"] = expires_at

        purchase = create_pending_purchase(purchase_table_for(OwnerType.USER), record)
        logger.info(
            f"Installment checkout {session_id} created: {installment_months} x {installment_amount} "
            f"{currency} for package {package['id']}"
        )

        return CheckoutSessionResult(
            session_id=session_id,
            url=self.gateway.get_value(session, "url"),
            purchase_id=str(purchase["id"]),
            installment_months=installment_months,
            per_installment_cents=installment_amount,
            total_charged_cents=installment_amount * installment_months,
        )
