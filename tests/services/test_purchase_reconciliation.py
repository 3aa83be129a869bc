"""
Tests for purchase confirmation: fast path, race path, bootstrap path,
grant compensation and concurrent callers.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from coachpay.schemas.payments import OwnerType, PayerIdentity
from coachpay.services.purchase_reconciliation import PurchaseReconciler
from coachpay.utils.exceptions import (
    ForbiddenError,
    GatewayError,
    PersistenceError,
    ValidationError,
)

SESSION_ID = "cs_test_fresh"
USER_ID = "user-1"


def _session(
    payment_status="paid",
    metadata=None,
    amount_total=5000,
    session_id=SESSION_ID,
):
    return {
        "id": session_id,
        "payment_status": payment_status,
        "amount_total": amount_total,
        "currency": "usd",
        "payment_intent": {"id": "pi_test_1", "status": "succeeded"},
        "metadata": metadata
        if metadata is not None
        else {
            "type": "user_credit_topup",
            "user_id": USER_ID,
            "package_id": "pkg-100",
            "credit_value": "100",
        },
    }


@pytest.fixture
def seeded_db(fake_db):
    fake_db.seed(
        "credit_topup_packages",
        {
            "id": "pkg-100",
            "name": "100 credits",
            "credit_value": 100,
            "price_cents": 5000,
            "currency": "usd",
            "validity_months": 12,
            "is_active": True,
        },
    )
    return fake_db


@pytest.fixture
def reconciler(gateway):
    gateway.retrieve_checkout_session = MagicMock(return_value=_session())
    return PurchaseReconciler(gateway=gateway)


def _seed_pending(db, purchase_id="pur-1", table="user_credit_purchases", owner=("user_id", USER_ID)):
    db.seed(
        table,
        {
            "id": purchase_id,
            owner[0]: owner[1],
            "package_id": "pkg-100",
            "credits_purchased": 100,
            "amount_cents": 5000,
            "currency": "usd",
            "stripe_checkout_session_id": SESSION_ID,
            "status": "pending",
        },
    )


class TestFreshPurchase:
    def test_pending_purchase_is_completed_and_granted(self, seeded_db, reconciler):
        _seed_pending(seeded_db)

        result = reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.success is True
        assert result.credits_added == 100
        assert result.already_processed is None
        assert result.batch_id

        purchase = seeded_db.rows("user_credit_purchases")[0]
        assert purchase["status"] == "completed"
        assert purchase["stripe_payment_intent_id"] == "pi_test_1"

        batches = seeded_db.rows("credit_batches")
        assert len(batches) == 1
        batch = batches[0]
        assert batch["id"] == result.batch_id
        assert batch["owner_type"] == "user"
        assert batch["owner_id"] == USER_ID
        assert batch["original_amount"] == 100
        assert batch["source_type"] == "purchase"
        assert batch["source_reference_id"] == "pur-1"

        expires_at = datetime.fromisoformat(batch["expires_at"])
        now = datetime.now(UTC)
        assert now + timedelta(days=360) < expires_at < now + timedelta(days=370)

    def test_second_confirmation_is_idempotent(self, seeded_db, reconciler):
        _seed_pending(seeded_db)
        payer = PayerIdentity.for_user(USER_ID)

        first = reconciler.confirm(SESSION_ID, payer)
        second = reconciler.confirm(SESSION_ID, payer)

        assert first.credits_added == second.credits_added == 100
        assert second.already_processed is True
        assert len(seeded_db.rows("credit_batches")) == 1
        assert len(seeded_db.calls("grant_credit_batch")) == 1

    def test_response_uses_camel_case(self, seeded_db, reconciler):
        _seed_pending(seeded_db)

        body = reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID)).to_response()

        assert body["success"] is True
        assert body["creditsAdded"] == 100
        assert "batchId" in body
        assert "alreadyProcessed" not in body


class TestBootstrapPath:
    def test_missing_record_is_created_completed(self, seeded_db, reconciler):
        result = reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.success is True
        assert result.credits_added == 100

        purchases = seeded_db.rows("user_credit_purchases")
        assert len(purchases) == 1
        assert purchases[0]["status"] == "completed"
        assert purchases[0]["amount_cents"] == 5000
        assert purchases[0]["user_id"] == USER_ID
        assert seeded_db.rows("credit_batches")[0]["source_reference_id"] == purchases[0]["id"]

    def test_ignored_insert_reads_back_winner(self, seeded_db, reconciler, monkeypatch):
        """Another caller inserts the completed row between our read and our insert."""
        from coachpay.services import purchase_reconciliation as module

        def _racing_insert(table, record):
            seeded_db.seed(table.name, {**record, "id": "pur-winner", "status": "completed"})
            return None

        monkeypatch.setattr(module, "insert_completed_purchase", _racing_insert)

        result = reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.success is True
        assert result.already_processed is True
        assert result.credits_added == 100
        assert seeded_db.rows("credit_batches") == []

    def test_falls_back_to_metadata_expiry_without_package_validity(self, fake_db, gateway):
        metadata = {
            "type": "user_credit_topup",
            "user_id": USER_ID,
            "credit_value": "40",
            "expires_at": "2031-01-15T00:00:00+00:00",
        }
        gateway.retrieve_checkout_session = MagicMock(return_value=_session(metadata=metadata))

        result = PurchaseReconciler(gateway=gateway).confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.credits_added == 40
        batch = fake_db.rows("credit_batches")[0]
        assert datetime.fromisoformat(batch["expires_at"]) == datetime(2031, 1, 15, tzinfo=UTC)

    def test_falls_back_to_system_default_expiry(self, fake_db, gateway):
        fake_db.seed("system_settings", {"key": "purchased_credit_expiry_months", "value": "6"})
        metadata = {"type": "user_credit_topup", "user_id": USER_ID, "credit_value": "10"}
        gateway.retrieve_checkout_session = MagicMock(return_value=_session(metadata=metadata))

        PurchaseReconciler(gateway=gateway).confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        expires_at = datetime.fromisoformat(fake_db.rows("credit_batches")[0]["expires_at"])
        now = datetime.now(UTC)
        assert now + timedelta(days=178) < expires_at < now + timedelta(days=186)


class TestRacePath:
    def test_lost_conditional_update_returns_winner_result(self, seeded_db, reconciler, monkeypatch):
        _seed_pending(seeded_db)
        from coachpay.services import purchase_reconciliation as module

        def _lose_race(table, purchase_id, *args, **kwargs):
            seeded_db.tables[table.name][0]["status"] = "completed"
            return None

        monkeypatch.setattr(module, "mark_purchase_completed", _lose_race)

        result = reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.success is True
        assert result.already_processed is True
        assert result.credits_added == 100
        assert seeded_db.calls("grant_credit_batch") == []

    @pytest.mark.concurrency
    @pytest.mark.parametrize("with_pending_row", [True, False])
    def test_concurrent_confirmations_grant_once(self, seeded_db, reconciler, with_pending_row):
        if with_pending_row:
            _seed_pending(seeded_db)
        payer = PayerIdentity.for_user(USER_ID)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: reconciler.confirm(SESSION_ID, payer), range(8)))

        assert all(r.success for r in results)
        assert {r.credits_added for r in results} == {100}
        assert sum(1 for r in results if not r.already_processed) == 1
        assert len(seeded_db.rows("credit_batches")) == 1
        assert len(seeded_db.rows("user_credit_purchases")) == 1


class TestGrantFailure:
    def test_failed_grant_reverts_to_pending_and_retry_succeeds(self, seeded_db, reconciler):
        _seed_pending(seeded_db)

        def _broken_grant(_params):
            raise RuntimeError("ledger unavailable")

        original = seeded_db.rpc_handlers["grant_credit_batch"]
        seeded_db.rpc_handlers["grant_credit_batch"] = _broken_grant

        with pytest.raises(PersistenceError):
            reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert seeded_db.rows("user_credit_purchases")[0]["status"] == "pending"
        assert seeded_db.rows("credit_batches") == []

        seeded_db.rpc_handlers["grant_credit_batch"] = original
        result = reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.success is True
        assert result.credits_added == 100
        assert len(seeded_db.rows("credit_batches")) == 1

    def test_public_message_is_generic(self, seeded_db, reconciler):
        _seed_pending(seeded_db)
        seeded_db.fail("credit_batches", "select")

        with pytest.raises(PersistenceError) as exc_info:
            reconciler.confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert "simulated failure" in exc_info.value.detail
        assert "simulated" not in exc_info.value.to_dict()["error"]


class TestValidation:
    def test_unpaid_session_is_not_an_error(self, seeded_db, gateway):
        gateway.retrieve_checkout_session = MagicMock(return_value=_session(payment_status="unpaid"))

        result = PurchaseReconciler(gateway=gateway).confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

        assert result.success is False
        assert result.status == "unpaid"
        assert seeded_db.rows("user_credit_purchases") == []

    def test_wrong_purchase_type_is_rejected(self, seeded_db, gateway):
        metadata = {"type": "user_subscription", "user_id": USER_ID}
        gateway.retrieve_checkout_session = MagicMock(return_value=_session(metadata=metadata))

        with pytest.raises(ValidationError):
            PurchaseReconciler(gateway=gateway).confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))

    def test_other_users_session_is_forbidden(self, seeded_db, reconciler):
        with pytest.raises(ForbiddenError) as exc_info:
            reconciler.confirm(SESSION_ID, PayerIdentity.for_user("someone-else"))

        assert exc_info.value.status_code == 403
        assert seeded_db.rows("user_credit_purchases") == []

    def test_user_session_cannot_be_confirmed_as_org(self, seeded_db, reconciler):
        with pytest.raises(ValidationError):
            reconciler.confirm(SESSION_ID, PayerIdentity.for_org("org-1", USER_ID))

    def test_gateway_failure_propagates(self, seeded_db, gateway):
        gateway.retrieve_checkout_session = MagicMock(side_effect=GatewayError("stripe down"))

        with pytest.raises(GatewayError):
            PurchaseReconciler(gateway=gateway).confirm(SESSION_ID, PayerIdentity.for_user(USER_ID))


class TestOrgPurchase:
    def test_org_purchase_credits_the_organization(self, fake_db, gateway):
        fake_db.seed(
            "org_credit_packages",
            {"id": "org-pkg", "credit_value": 1000, "price_cents": 40000, "validity_months": 24, "is_active": True},
        )
        metadata = {
            "type": "org_credit_purchase",
            "organization_id": "org-1",
            "package_id": "org-pkg",
            "credit_value": "1000",
        }
        gateway.retrieve_checkout_session = MagicMock(
            return_value=_session(metadata=metadata, amount_total=40000)
        )

        result = PurchaseReconciler(gateway=gateway).confirm(
            SESSION_ID, PayerIdentity.for_org("org-1", "admin-1")
        )

        assert result.credits_added == 1000
        purchase = fake_db.rows("org_credit_purchases")[0]
        assert purchase["organization_id"] == "org-1"
        assert purchase["purchased_by"] == "admin-1"
        batch = fake_db.rows("credit_batches")[0]
        assert batch["owner_type"] == OwnerType.ORG.value
        assert batch["owner_id"] == "org-1"
