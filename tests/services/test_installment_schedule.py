from datetime import UTC, datetime, timedelta

import pytest

from coachpay.schemas.payments import ScheduleStatus
from coachpay.services import installment_schedule as module
from coachpay.services.installment_schedule import InstallmentScheduleManager
from coachpay.utils.exceptions import NotFoundError, PersistenceError

SUB_ID = "sub_plan_1"


@pytest.fixture
def manager(fake_db):
    mgr = InstallmentScheduleManager()
    mgr.create_schedule(
        user_id="user-1",
        package_id="pkg-1",
        subscription_id=SUB_ID,
        total_amount_cents=90000,
        installment_count=3,
        installment_amount_cents=30000,
        credits_granted=900,
        credit_batch_id="batch-1",
        next_payment_date=datetime.now(UTC) + timedelta(days=30),
    )
    return mgr


def _schedule(db):
    return db.rows("payment_schedules")[0]


def test_create_is_ignored_when_schedule_exists(fake_db, manager):
    again = manager.create_schedule(
        user_id="user-1",
        package_id="pkg-1",
        subscription_id=SUB_ID,
        total_amount_cents=90000,
        installment_count=3,
        installment_amount_cents=30000,
        credits_granted=900,
        credit_batch_id="batch-1",
        next_payment_date=None,
    )

    assert again is None
    assert len(fake_db.rows("payment_schedules")) == 1


def test_record_payment_progresses_to_completion(fake_db, manager):
    due = datetime.now(UTC) + timedelta(days=60)

    progress = manager.record_payment(SUB_ID, 30000, due, invoice_id="in_2")
    assert progress.installments_paid == 2
    assert progress.schedule_complete is False
    assert _schedule(fake_db)["next_payment_date"] == due.isoformat()

    progress = manager.record_payment(SUB_ID, 30000, None, invoice_id="in_3")
    assert progress.installments_paid == 3
    assert progress.installment_count == 3
    assert progress.schedule_complete is True

    schedule = _schedule(fake_db)
    assert schedule["status"] == "completed"
    assert schedule["amount_paid_cents"] == 90000
    assert schedule["next_payment_date"] is None


def test_payments_never_exceed_installment_count(fake_db, manager):
    for n in range(2, 7):
        manager.record_payment(SUB_ID, 30000, None, invoice_id=f"in_{n}")

    schedule = _schedule(fake_db)
    assert schedule["installments_paid"] == 3
    assert schedule["amount_paid_cents"] == 90000


def test_same_invoice_is_applied_once(fake_db, manager):
    manager.record_payment(SUB_ID, 30000, None, invoice_id="in_2")
    progress = manager.record_payment(SUB_ID, 30000, None, invoice_id="in_2")

    assert progress.installments_paid == 2
    assert _schedule(fake_db)["amount_paid_cents"] == 60000


def test_failure_locks_and_payment_unlocks(fake_db, manager):
    assert manager.record_failure(SUB_ID) == {"locked": True}
    assert _schedule(fake_db)["status"] == "outstanding"
    assert manager.is_access_locked("user-1") is True

    manager.record_payment(SUB_ID, 30000, None, invoice_id="in_2")

    assert _schedule(fake_db)["status"] == "active"
    assert manager.is_access_locked("user-1") is False


def test_repeated_failure_stays_outstanding(fake_db, manager):
    manager.record_failure(SUB_ID)
    assert manager.record_failure(SUB_ID) == {"locked": True}
    assert _schedule(fake_db)["status"] == "outstanding"


def test_cancellation_with_unpaid_installments_defaults(fake_db, manager):
    assert manager.close_on_cancellation(SUB_ID) is ScheduleStatus.DEFAULTED
    assert manager.is_access_locked("user-1") is True


def test_terminal_schedule_is_not_mutated(fake_db, manager):
    manager.close_on_cancellation(SUB_ID)

    progress = manager.record_payment(SUB_ID, 30000, None, invoice_id="in_late")
    manager.record_failure(SUB_ID)

    schedule = _schedule(fake_db)
    assert progress.installments_paid == 1
    assert schedule["installments_paid"] == 1
    assert schedule["status"] == "defaulted"


def test_contended_update_is_retried(fake_db, manager, monkeypatch):
    real_update = module.update_schedule_if_unchanged
    calls = {"n": 0}

    def _conflict_once(subscription_id, expected_paid, expected_status, changes):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer records a payment between our read and our write
            real_update(
                subscription_id, expected_paid, expected_status,
                {"installments_paid": expected_paid + 1, "amount_paid_cents": 60000},
            )
            return real_update(subscription_id, expected_paid, expected_status, changes)
        return real_update(subscription_id, expected_paid, expected_status, changes)

    monkeypatch.setattr(module, "update_schedule_if_unchanged", _conflict_once)

    progress = manager.record_payment(SUB_ID, 30000, None, invoice_id="in_3")

    assert calls["n"] == 2
    assert progress.installments_paid == 3
    assert _schedule(fake_db)["amount_paid_cents"] == 90000


def test_persistent_contention_raises(fake_db, manager, monkeypatch):
    monkeypatch.setattr(module, "update_schedule_if_unchanged", lambda *args, **kwargs: None)

    with pytest.raises(PersistenceError):
        manager.record_payment(SUB_ID, 30000, None)


def test_unknown_subscription_raises_not_found(fake_db):
    with pytest.raises(NotFoundError):
        InstallmentScheduleManager().record_failure("sub_missing")
