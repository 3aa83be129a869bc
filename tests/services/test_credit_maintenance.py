from datetime import UTC, datetime, timedelta

import pytest

from coachpay.schemas.payments import MaintenanceAction
from coachpay.services.credit_maintenance import rollover_cap, run_credit_maintenance


def _iso(days: int) -> str:
    return (datetime.now(UTC) + timedelta(days=days)).isoformat()


@pytest.fixture
def db(fake_db):
    fake_db.seed(
        "plans",
        {"id": "plan-pro", "key": "pro", "credit_allowance": 301},
        {"id": "plan-tiny", "key": "tiny", "credit_allowance": 1},
        {"id": "plan-org", "key": "org", "credit_allowance": 2000},
    )
    fake_db.seed(
        "user_subscriptions",
        {"user_id": "user-a", "plan_id": "plan-pro", "status": "active"},
        {"user_id": "user-b", "plan_id": "plan-tiny", "status": "active"},
        {"user_id": "user-c", "plan_id": "plan-pro", "status": "canceled"},
    )
    fake_db.seed(
        "organization_subscriptions",
        {"organization_id": "org-a", "plan_id": "plan-org", "status": "active"},
    )
    return fake_db


def test_rollover_cap_floors_half_the_allowance():
    assert rollover_cap(301) == 150
    assert rollover_cap(1) == 0
    assert rollover_cap(0) == 0


def test_rollover_calls_primitive_with_cap_per_active_subscriber(db):
    summary = run_credit_maintenance(MaintenanceAction.ROLLOVER)

    calls = db.calls("process_credit_rollover")
    assert {(c["p_owner_type"], c["p_owner_id"], c["p_max_rollover"]) for c in calls} == {
        ("user", "user-a", 150),
        ("org", "org-a", 1000),
    }
    assert summary.rolled_over_owners == 2
    assert summary.rolled_over_credits == 1150
    assert summary.errors == []
    assert summary.expired_batches is None


def test_one_owner_failure_does_not_stop_the_sweep(db):
    def _flaky_rollover(params):
        if params["p_owner_id"] == "user-a":
            raise RuntimeError("rollover exploded")
        return 7

    db.rpc_handlers["process_credit_rollover"] = _flaky_rollover

    summary = run_credit_maintenance(MaintenanceAction.ROLLOVER)

    assert summary.rolled_over_owners == 1
    assert summary.rolled_over_credits == 7
    assert len(summary.errors) == 1
    assert "user-a" in summary.errors[0]
    assert summary.success is False


def test_expire_reports_count(db):
    db.seed(
        "credit_batches",
        {"owner_type": "user", "owner_id": "user-a", "original_amount": 10, "remaining_amount": 5,
         "status": "partial", "expires_at": _iso(-1)},
        {"owner_type": "user", "owner_id": "user-a", "original_amount": 10, "remaining_amount": 10,
         "status": "active", "expires_at": _iso(10)},
    )

    summary = run_credit_maintenance(MaintenanceAction.EXPIRE)

    assert summary.expired_batches == 1
    assert summary.rolled_over_owners is None


def test_expire_failure_is_reported_not_raised(db):
    def _broken(_params):
        raise RuntimeError("expiry sweep down")

    db.rpc_handlers["expire_credit_batches"] = _broken

    summary = run_credit_maintenance(MaintenanceAction.ALL)

    assert summary.expired_batches is None
    assert any("expire" in error for error in summary.errors)
    assert summary.rolled_over_owners == 2
    assert summary.stats is not None


def test_cleanup_counts_old_zero_balance_batches(db):
    old = (datetime.now(UTC) - timedelta(days=120)).isoformat()
    recent = (datetime.now(UTC) - timedelta(days=10)).isoformat()
    db.seed(
        "credit_batches",
        {"owner_type": "user", "owner_id": "u", "remaining_amount": 0, "status": "depleted", "created_at": old},
        {"owner_type": "user", "owner_id": "u", "remaining_amount": 0, "status": "depleted", "created_at": recent},
        {"owner_type": "user", "owner_id": "u", "remaining_amount": 3, "status": "partial", "created_at": old},
    )

    summary = run_credit_maintenance(MaintenanceAction.CLEANUP)

    assert summary.archivable_batches == 1
    assert len(db.rows("credit_batches")) == 3


def test_stats_summarise_live_batches(db):
    db.seed(
        "credit_batches",
        {"owner_type": "user", "owner_id": "u1", "original_amount": 100, "remaining_amount": 25,
         "status": "partial", "expires_at": _iso(30)},
        {"owner_type": "user", "owner_id": "u2", "original_amount": 100, "remaining_amount": 100,
         "status": "active", "expires_at": _iso(30)},
        {"owner_type": "org", "owner_id": "o1", "original_amount": 500, "remaining_amount": 400,
         "status": "active", "expires_at": _iso(30)},
        {"owner_type": "user", "owner_id": "u3", "original_amount": 50, "remaining_amount": 50,
         "status": "expired", "expires_at": _iso(-3)},
    )

    stats = run_credit_maintenance(MaintenanceAction.STATS).stats

    assert stats.user_active_batches == 2
    assert stats.user_original_credits == 200
    assert stats.user_remaining_credits == 125
    assert stats.user_utilization_rate == 37.5
    assert stats.org_active_batches == 1
    assert stats.org_remaining_credits == 400
