"""
Credit purchase routes
Checkout creation and post-checkout confirmation for users and organizations.
"""

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends

from coachpay.schemas.payments import (
    ConfirmPurchaseRequest,
    CreditCheckoutRequest,
    InstallmentCheckoutRequest,
    OrgConfirmPurchaseRequest,
    OrgCreditCheckoutRequest,
    PayerIdentity,
)
from coachpay.security.deps import AuthenticatedUser, ensure_org_admin, get_current_user
from coachpay.services.credit_checkout import CreditCheckoutService
from coachpay.services.purchase_reconciliation import PurchaseReconciler
from coachpay.utils.sentry_context import sanitize_for_logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Credits"])


@lru_cache(maxsize=1)
def get_reconciler() -> PurchaseReconciler:
    return PurchaseReconciler()


@lru_cache(maxsize=1)
def get_checkout_service() -> CreditCheckoutService:
    return CreditCheckoutService()


@router.post("/credits/confirm")
def confirm_credit_purchase(
    body: ConfirmPurchaseRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    reconciler: PurchaseReconciler = Depends(get_reconciler),
):
    """
    Confirm a user credit top-up after the Stripe checkout redirect.

    Safe to call repeatedly and concurrently with the webhook; credits are
    granted once per checkout session.
    """
    logger.info(f"Confirming credit purchase {sanitize_for_logging(body.session_id)} for user {user.id}")
    result = reconciler.confirm(body.session_id, PayerIdentity.for_user(user.id))
    return result.to_response()


@router.post("/org/credits/confirm")
def confirm_org_credit_purchase(
    body: OrgConfirmPurchaseRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    reconciler: PurchaseReconciler = Depends(get_reconciler),
):
    ensure_org_admin(body.organization_id, user)
    result = reconciler.confirm(body.session_id, PayerIdentity.for_org(body.organization_id, user.id))
    return result.to_response()


@router.post("/credits/checkout")
def create_credit_checkout(
    body: CreditCheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    checkout: CreditCheckoutService = Depends(get_checkout_service),
):
    result = checkout.create_package_checkout(PayerIdentity.for_user(user.id), body.package_id, user.email)
    return result.to_response()


@router.post("/org/credits/checkout")
def create_org_credit_checkout(
    body: OrgCreditCheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    checkout: CreditCheckoutService = Depends(get_checkout_service),
):
    ensure_org_admin(body.organization_id, user)
    result = checkout.create_package_checkout(
        PayerIdentity.for_org(body.organization_id, user.id), body.package_id, user.email
    )
    return result.to_response()


@router.post("/credits/installment-checkout")
def create_installment_checkout(
    body: InstallmentCheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    checkout: CreditCheckoutService = Depends(get_checkout_service),
):
    result = checkout.create_installment_checkout(
        user.id, body.package_id, body.installment_months, user.email
    )
    return result.to_response()
