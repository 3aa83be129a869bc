"""
Installment Payment Schedule Manager

Tracks installment plans whose credits were granted upfront. Every write is a
compare-and-swap on the installments_paid and status values read just before,
retried a few times on contention, so replayed or concurrent invoice events
cannot over-count. Terminal schedules (completed, defaulted) are never mutated.
"""

import logging
from datetime import datetime
from typing import Any

from coachpay.db.payment_schedules import (
    attach_credit_batch,
    delete_unfunded_schedule,
    get_locking_schedules,
    get_schedule_by_subscription,
    insert_schedule,
    update_schedule_if_unchanged,
)
from coachpay.schemas.payments import InstallmentProgress, ScheduleStatus
from coachpay.utils.exceptions import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


def _progress(schedule: dict[str, Any]) -> InstallmentProgress:
    return InstallmentProgress(
        installments_paid=int(schedule["installments_paid"]),
        installment_count=int(schedule["installment_count"]),
        schedule_complete=schedule["status"] == ScheduleStatus.COMPLETED.value,
    )


class InstallmentScheduleManager:
    def __init__(self, max_attempts: int = MAX_CAS_ATTEMPTS):
        self.max_attempts = max_attempts

    def _load(self, subscription_id: str) -> dict[str, Any]:
        schedule = get_schedule_by_subscription(subscription_id)
        if schedule is None:
            raise NotFoundError("Payment schedule not found", subscription_id=subscription_id)
        return schedule

    def _contention(self, operation: str, subscription_id: str) -> PersistenceError:
        logger.error(
            f"{operation} for {subscription_id} gave up after {self.max_attempts} conflicting updates"
        )
        return PersistenceError(
            "Payment schedule update conflicted",
            detail=f"{operation} exhausted {self.max_attempts} compare-and-swap attempts",
        )

    def create_schedule(
        self,
        *,
        user_id: str,
        package_id: str | None,
        subscription_id: str,
        total_amount_cents: int,
        installment_count: int,
        installment_amount_cents: int,
        credits_granted: int,
        credit_batch_id: str | None,
        next_payment_date: datetime | None,
    ) -> dict[str, Any] | None:
        """
        Create the schedule for a new installment subscription.

        The checkout payment counts as the first installment. Creating the row
        with no credit_batch_id claims the subscription: only the caller that
        gets a row back grants the credits, then calls fund_schedule.

        Returns:
            The new schedule, or None if one already existed for the subscription
        """
        record = {
            "user_id": user_id,
            "package_id": package_id,
            "stripe_subscription_id": subscription_id,
            "total_amount_cents": total_amount_cents,
            "installment_count": installment_count,
            "installment_amount_cents": installment_amount_cents,
            "installments_paid": 1,
            "amount_paid_cents": installment_amount_cents,
            "next_payment_date": next_payment_date.isoformat() if next_payment_date else None,
            "credits_granted": credits_granted,
            "credit_batch_id": credit_batch_id,
            "status": ScheduleStatus.ACTIVE.value,
        }
        created = insert_schedule(record)
        if created is None:
            logger.info(f"Payment schedule for {subscription_id} already exists, skipping create")
        else:
            logger.info(
                f"Created payment schedule for {subscription_id}: 1/{installment_count} paid, "
                f"{credits_granted} credits granted"
            )
        return created

    def fund_schedule(self, subscription_id: str, credit_batch_id: str) -> bool:
        """
        Link a claimed schedule to the batch granted for it.

        Returns:
            False if the schedule was already funded or no longer exists
        """
        funded = attach_credit_batch(subscription_id, credit_batch_id)
        if funded is None:
            logger.warning(
                f"Schedule {subscription_id} was not awaiting funding, batch {credit_batch_id} not linked"
            )
            return False
        logger.info(f"Schedule {subscription_id} funded by credit batch {credit_batch_id}")
        return True

    def release_unfunded(self, subscription_id: str) -> bool:
        """Drop a claimed schedule whose grant failed so a redelivery can claim it again."""
        released = delete_unfunded_schedule(subscription_id)
        if not released:
            logger.error(f"Could not release unfunded schedule {subscription_id}")
        return released

    def record_payment(
        self,
        subscription_id: str,
        amount_paid: int,
        next_due_date: datetime | None,
        invoice_id: str | None = None,
    ) -> InstallmentProgress:
        """
        Record one installment payment.

        A payment for an invoice already applied, or against a schedule that is
        fully paid or terminal, is a no-op returning the current progress.
        """
        for _attempt in range(self.max_attempts):
            schedule = self._load(subscription_id)
            status = ScheduleStatus(schedule["status"])
            paid = int(schedule["installments_paid"])
            count = int(schedule["installment_count"])

            if invoice_id and schedule.get("last_invoice_id") == invoice_id:
                logger.info(f"Invoice {invoice_id} already applied to {subscription_id}")
                return _progress(schedule)
            if status.is_terminal or paid >= count:
                logger.info(f"Schedule {subscription_id} is {status.value} ({paid}/{count}), ignoring payment")
                return _progress(schedule)

            new_paid = paid + 1
            complete = new_paid >= count
            changes = {
                "installments_paid": new_paid,
                "amount_paid_cents": int(schedule.get("amount_paid_cents") or 0) + amount_paid,
                "next_payment_date": None if complete or next_due_date is None else next_due_date.isoformat(),
                "status": (ScheduleStatus.COMPLETED if complete else ScheduleStatus.ACTIVE).value,
            }
            if invoice_id:
                changes["last_invoice_id"] = invoice_id

            updated = update_schedule_if_unchanged(subscription_id, paid, status.value, changes)
            if updated:
                logger.info(
                    f"Recorded installment {new_paid}/{count} for {subscription_id}"
                    + (" - schedule completed" if complete else "")
                )
                return _progress(updated)

            logger.info(f"Schedule {subscription_id} changed concurrently, re-reading")

        raise self._contention("record_payment", subscription_id)

    def record_failure(self, subscription_id: str) -> dict[str, bool]:
        """Mark the schedule outstanding, locking access. Granted credits are untouched."""
        for _attempt in range(self.max_attempts):
            schedule = self._load(subscription_id)
            status = ScheduleStatus(schedule["status"])

            if status == ScheduleStatus.OUTSTANDING:
                return {"locked": True}
            if status.is_terminal:
                logger.info(f"Schedule {subscription_id} is {status.value}, ignoring payment failure")
                return {"locked": status == ScheduleStatus.DEFAULTED}

            updated = update_schedule_if_unchanged(
                subscription_id,
                int(schedule["installments_paid"]),
                status.value,
                {"status": ScheduleStatus.OUTSTANDING.value},
            )
            if updated:
                logger.warning(f"Installment payment failed for {subscription_id}, schedule now outstanding")
                return {"locked": True}

        raise self._contention("record_failure", subscription_id)

    def close_on_cancellation(self, subscription_id: str) -> ScheduleStatus:
        """Subscription ended: completed when every installment is paid, defaulted otherwise."""
        for _attempt in range(self.max_attempts):
            schedule = self._load(subscription_id)
            status = ScheduleStatus(schedule["status"])
            if status.is_terminal:
                return status

            paid = int(schedule["installments_paid"])
            final = (
                ScheduleStatus.COMPLETED
                if paid >= int(schedule["installment_count"])
                else ScheduleStatus.DEFAULTED
            )
            changes: dict[str, Any] = {"status": final.value, "next_payment_date": None}

            if update_schedule_if_unchanged(subscription_id, paid, status.value, changes):
                log = logger.info if final == ScheduleStatus.COMPLETED else logger.warning
                log(f"Installment subscription {subscription_id} ended: schedule {final.value}")
                return final

        raise self._contention("close_on_cancellation", subscription_id)

    def is_access_locked(self, user_id: str) -> bool:
        return bool(get_locking_schedules(user_id))
