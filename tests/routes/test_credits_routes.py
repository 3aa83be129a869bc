from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from coachpay.main import app
from coachpay.routes.credits import get_checkout_service, get_reconciler
from coachpay.schemas.payments import CheckoutSessionResult, ConfirmPurchaseResult, OwnerType
from coachpay.security.deps import AuthenticatedUser, get_current_user
from coachpay.utils.exceptions import ForbiddenError, PersistenceError

USER = AuthenticatedUser(id="user-1", email="user@example.com")


@pytest.fixture
def reconciler():
    return MagicMock()


@pytest.fixture
def checkout():
    return MagicMock()


@pytest.fixture
def client(fake_db, reconciler, checkout):
    app.dependency_overrides[get_current_user] = lambda: USER
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_checkout_service] = lambda: checkout
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_confirm_returns_camel_case(client, reconciler):
    reconciler.confirm.return_value = ConfirmPurchaseResult(success=True, credits_added=100, batch_id="b-1")

    response = client.post("/api/credits/confirm", json={"sessionId": "cs_1"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "creditsAdded": 100, "batchId": "b-1"}
    session_id, payer = reconciler.confirm.call_args.args
    assert session_id == "cs_1"
    assert payer.owner_type == OwnerType.USER
    assert payer.owner_id == "user-1"


def test_confirm_accepts_snake_case_body(client, reconciler):
    reconciler.confirm.return_value = ConfirmPurchaseResult(success=False, status="unpaid")

    response = client.post("/api/credits/confirm", json={"session_id": "cs_1"})

    assert response.json() == {"success": False, "creditsAdded": 0, "status": "unpaid"}


def test_missing_session_id_is_400(client):
    response = client.post("/api/credits/confirm", json={})

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid request")


def test_forbidden_maps_to_403(client, reconciler):
    reconciler.confirm.side_effect = ForbiddenError("Checkout session does not belong to this account")

    response = client.post("/api/credits/confirm", json={"sessionId": "cs_1"})

    assert response.status_code == 403
    assert response.json() == {"error": "Checkout session does not belong to this account"}


def test_persistence_failure_hides_detail(client, reconciler):
    reconciler.confirm.side_effect = PersistenceError("Failed to grant credits", detail="connection reset by peer")

    response = client.post("/api/credits/confirm", json={"sessionId": "cs_1"})

    assert response.status_code == 500
    assert "connection reset" not in response.text


def test_org_confirm_requires_admin(client, fake_db, reconciler):
    fake_db.seed(
        "organization_members",
        {"organization_id": "org-1", "user_id": "user-1", "role": "member", "is_active": True},
    )

    response = client.post("/api/org/credits/confirm", json={"sessionId": "cs_1", "organizationId": "org-1"})

    assert response.status_code == 403
    reconciler.confirm.assert_not_called()


def test_org_confirm_as_admin(client, fake_db, reconciler):
    fake_db.seed(
        "organization_members",
        {"organization_id": "org-1", "user_id": "user-1", "role": "admin", "is_active": True},
    )
    reconciler.confirm.return_value = ConfirmPurchaseResult(success=True, credits_added=1000, already_processed=True)

    response = client.post("/api/org/credits/confirm", json={"sessionId": "cs_1", "organizationId": "org-1"})

    assert response.status_code == 200
    assert response.json()["alreadyProcessed"] is True
    payer = reconciler.confirm.call_args.args[1]
    assert payer.owner_type == OwnerType.ORG
    assert payer.owner_id == "org-1"
    assert payer.acting_user_id == "user-1"


def test_installment_checkout_bounds(client, checkout):
    checkout.create_installment_checkout.return_value = CheckoutSessionResult(
        session_id="cs_i", url="https://pay", installment_months=6,
        per_installment_cents=20000, total_charged_cents=120000,
    )

    ok = client.post("/api/credits/installment-checkout", json={"packageId": "pkg-1", "installmentMonths": 6})
    too_short = client.post("/api/credits/installment-checkout", json={"packageId": "pkg-1", "installmentMonths": 1})

    assert ok.status_code == 200
    assert ok.json()["perInstallment"] == 20000
    assert too_short.status_code == 400
    checkout.create_installment_checkout.assert_called_once_with("user-1", "pkg-1", 6, "user@example.com")


def test_missing_bearer_token_is_401(fake_db):
    response = TestClient(app).post("/api/credits/confirm", json={"sessionId": "cs_1"})

    assert response.status_code == 401
    assert "error" in response.json()
