"""
Purchase Reconciliation
Confirms a paid credit-package checkout session and grants its credits exactly
once, whether it is reached from the client redirect, the webhook, or several
concurrent callers.

Synchronisation relies only on the store: the pending -> completed transition
is a conditional update and the bootstrap insert ignores duplicates, so exactly
one caller wins and every loser reads back the winner's result.
"""

import logging
from datetime import datetime
from typing import Any

from coachpay.config.logging_config import billing_log_context
from coachpay.db.ledger import grant_credit_batch
from coachpay.db.packages import get_credit_package, get_default_purchase_expiry_months
from coachpay.db.purchases import (
    PurchaseTable,
    get_purchase_by_session,
    insert_completed_purchase,
    mark_purchase_completed,
    purchase_table_for,
    revert_purchase_to_pending,
)
from coachpay.schemas.payments import (
    PURCHASE_TAGS,
    ConfirmPurchaseResult,
    OwnerType,
    PayerIdentity,
    PurchaseStatus,
)
from coachpay.services.stripe_gateway import StripeGateway
from coachpay.utils.dates import expiry_after_months, parse_timestamp
from coachpay.utils.exceptions import (
    ForbiddenError,
    PersistenceError,
    ValidationError,
)
from coachpay.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

PURCHASE_SOURCE_TYPE = "purchase"


def _owner_metadata_key(owner_type: OwnerType) -> str:
    return "organization_id" if owner_type == OwnerType.ORG else "user_id"


def _already_processed(record: dict[str, Any]) -> ConfirmPurchaseResult:
    return ConfirmPurchaseResult(
        success=True,
        credits_added=int(record.get("credits_purchased") or 0),
        already_processed=True,
    )


class PurchaseReconciler:
    """Confirms checkout sessions against the purchase records and the ledger"""

    def __init__(self, gateway: StripeGateway | None = None):
        self._gateway = gateway

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway()
        return self._gateway

    def confirm(self, session_id: str, payer: PayerIdentity) -> ConfirmPurchaseResult:
        """
        Confirm a checkout session for the given payer.

        Returns:
            success=False with the session status while payment is not settled,
            otherwise the credits granted (or previously granted) for the session

        Raises:
            ValidationError: Session is not a credit purchase of the payer's kind
            ForbiddenError: Session belongs to a different user or organization
            NotFoundError / GatewayError: Stripe lookup failed
            PersistenceError: Purchase or ledger write failed
        """
        with billing_log_context(session_id=session_id, owner=f"{payer.owner_type.value}:{payer.owner_id}"):
            return self._confirm(session_id, payer)

    def _confirm(self, session_id: str, payer: PayerIdentity) -> ConfirmPurchaseResult:
        gw = self.gateway
        session = gw.retrieve_checkout_session(session_id)

        payment_status = gw.get_value(session, "payment_status")
        if payment_status != "paid":
            logger.info(f"Checkout session not paid yet (payment_status={payment_status})")
            return ConfirmPurchaseResult(success=False, status=payment_status or "unknown")

        metadata = gw.get_metadata(session)
        self._verify_payer(metadata, payer)

        table = purchase_table_for(payer.owner_type)
        purchase = get_purchase_by_session(table, session_id)

        if purchase and purchase.get("status") == PurchaseStatus.COMPLETED.value:
            logger.info(f"Purchase {purchase['id']} already completed, returning stored result")
            return _already_processed(purchase)

        package = self._load_package(payer.owner_type, metadata.get("package_id"))
        expires_at = self._resolve_expiry(package, metadata)
        payment_intent_id = gw.get_id(gw.get_value(session, "payment_intent"))

        record = None
        if purchase is None:
            credits = self._resolve_credits(None, package, metadata)
            record = insert_completed_purchase(
                table,
                self._bootstrap_row(table, session, session_id, payer, metadata, credits, payment_intent_id, expires_at),
            )
            if record is None:
                # A concurrent caller created the row between our read and insert
                purchase = get_purchase_by_session(table, session_id)
                if purchase is None:
                    raise PersistenceError(
                        "Failed to record purchase",
                        detail=f"insert for session {session_id} was ignored but no row exists",
                    )
                if purchase.get("status") == PurchaseStatus.COMPLETED.value:
                    return _already_processed(purchase)
            else:
                logger.info(f"Created completed purchase {record['id']} with no prior pending row")

        if record is None:
            record = mark_purchase_completed(table, purchase["id"], payment_intent_id, expires_at)
            if record is None:
                return self._result_after_lost_race(table, session_id)
            logger.info(f"Purchase {record['id']} transitioned pending -> completed")

        credits = self._resolve_credits(record, package, metadata)
        batch_id = self._grant(table, record, payer, credits, expires_at, session_id)

        return ConfirmPurchaseResult(success=True, credits_added=credits, batch_id=batch_id)

    # ==================== Steps ====================

    @staticmethod
    def _verify_payer(metadata: dict[str, Any], payer: PayerIdentity) -> None:
        expected_tag = PURCHASE_TAGS[payer.owner_type]
        if metadata.get("type") != expected_tag:
            logger.warning(f"Rejected confirmation: metadata type {metadata.get('type')!r} != {expected_tag!r}")
            raise ValidationError("Invalid purchase type")

        if str(metadata.get(_owner_metadata_key(payer.owner_type)) or "") != payer.owner_id:
            logger.warning("Rejected confirmation: checkout session belongs to a different payer")
            raise ForbiddenError("Checkout session does not belong to this account")

    @staticmethod
    def _load_package(owner_type: OwnerType, package_id: str | None) -> dict[str, Any] | None:
        if not package_id:
            return None
        package = get_credit_package(owner_type, package_id)
        if package is None:
            logger.warning(f"Package {package_id} referenced by checkout metadata no longer exists")
        return package

    def _resolve_credits(
        self,
        record: dict[str, Any] | None,
        package: dict[str, Any] | None,
        metadata: dict[str, Any],
    ) -> int:
        candidates = (
            (record or {}).get("credits_purchased"),
            metadata.get("credit_value"),
            (package or {}).get("credit_value"),
        )
        for candidate in candidates:
            credits = self.gateway.coerce_to_int(candidate)
            if credits and credits > 0:
                return credits
        raise ValidationError("Checkout session does not specify a credit amount")

    @staticmethod
    def _resolve_expiry(package: dict[str, Any] | None, metadata: dict[str, Any]) -> datetime:
        validity_months = (package or {}).get("validity_months")
        if validity_months:
            return expiry_after_months(int(validity_months))

        metadata_expiry = parse_timestamp(metadata.get("expires_at"))
        if metadata_expiry:
            return metadata_expiry

        return expiry_after_months(get_default_purchase_expiry_months())

    def _bootstrap_row(
        self,
        table: PurchaseTable,
        session: Any,
        session_id: str,
        payer: PayerIdentity,
        metadata: dict[str, Any],
        credits: int,
        payment_intent_id: str | None,
        expires_at: datetime,
    ) -> dict[str, Any]:
        gw = self.gateway
        row: dict[str, Any] = {
            table.owner_column: payer.owner_id,
            "package_id": metadata.get("package_id"),
            "credits_purchased": credits,
            "amount_cents": gw.coerce_to_int(gw.get_value(session, "amount_total")) or 0,
            "currency": gw.get_value(session, "currency") or "usd",
            "stripe_checkout_session_id": session_id,
            "stripe_payment_intent_id": payment_intent_id,
            "expires_at": expires_at.isoformat(),
        }
        if payer.owner_type == OwnerType.ORG:
            row["purchased_by"] = payer.acting_user_id
        return row

    @staticmethod
    def _result_after_lost_race(table: PurchaseTable, session_id: str) -> ConfirmPurchaseResult:
        winner = get_purchase_by_session(table, session_id)
        if winner and winner.get("status") == PurchaseStatus.COMPLETED.value:
            logger.info("Lost completion race, returning the winner's result")
            return _already_processed(winner)

        # Winner reverted after a failed grant; the caller can retry
        logger.warning("Lost completion race but purchase is not completed")
        return ConfirmPurchaseResult(success=False, status=PurchaseStatus.PENDING.value)

    @staticmethod
    def _grant(
        table: PurchaseTable,
        record: dict[str, Any],
        payer: PayerIdentity,
        credits: int,
        expires_at: datetime,
        session_id: str,
    ) -> str:
        try:
            return grant_credit_batch(
                owner_type=payer.owner_type,
                owner_id=payer.owner_id,
                amount=credits,
                expires_at=expires_at,
                source_type=PURCHASE_SOURCE_TYPE,
                source_reference_id=str(record["id"]),
                description=f"Credit purchase ({credits} credits)",
            )
        except PersistenceError as e:
            reverted = revert_purchase_to_pending(table, str(record["id"]))
            logger.error(
                f"Credit grant failed for purchase {record['id']}; "
                f"{'reverted to pending for retry' if reverted else 'revert FAILED'}",
            )
            capture_payment_error(
                e,
                operation="confirm_purchase",
                owner_id=payer.owner_id,
                details={"session_id": session_id, "purchase_id": str(record["id"]), "reverted": reverted},
            )
            raise
