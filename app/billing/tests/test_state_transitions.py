"""
Tests for installment and payment plan state transitions.

Verifies the django-fsm transitions allow the documented paths and reject
everything else, PAID being terminal for installments.
"""

import datetime

import pytest
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from billing.conf import BillingJobConfig
from billing.exceptions import InvalidStateTransitionError
from billing.gateways import ChargeResult
from billing.services.reconciliation import InstallmentReconciler
from billing.state_machines import InstallmentStatus, PaymentPlanStatus
from billing.tests.factories import InstallmentFactory, PaymentPlanFactory


@pytest.mark.django_db
class TestInstallmentTransitions:
    """Tests for Installment state transitions."""

    def test_pending_to_due(self):
        installment = InstallmentFactory()

        installment.mark_due()

        assert installment.status == InstallmentStatus.DUE

    def test_due_to_retrying_records_failure(self):
        installment = InstallmentFactory(status=InstallmentStatus.DUE)

        installment.mark_retrying(failure_code="card_declined", failure_reason="Declined")

        assert installment.status == InstallmentStatus.RETRYING
        assert installment.failure_code == "card_declined"

    def test_retrying_to_failed(self):
        installment = InstallmentFactory(status=InstallmentStatus.RETRYING)

        installment.mark_failed(failure_code="card_declined")

        assert installment.status == InstallmentStatus.FAILED

    @pytest.mark.parametrize(
        "source",
        [
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.RETRYING,
            InstallmentStatus.FAILED,
        ],
    )
    def test_paid_from_any_unpaid_state(self, source):
        """A late processor confirmation may pay even a FAILED installment."""
        installment = InstallmentFactory(status=source, failure_code="card_declined")

        installment.mark_paid()

        assert installment.status == InstallmentStatus.PAID
        assert installment.paid_at is not None
        assert installment.failure_code == ""

    @pytest.mark.parametrize(
        "transition",
        ["mark_due", "mark_retrying", "mark_failed", "mark_paid", "reset_for_retry"],
    )
    def test_paid_is_terminal(self, transition):
        installment = InstallmentFactory(status=InstallmentStatus.PAID)

        with pytest.raises(TransitionNotAllowed):
            getattr(installment, transition)()

    def test_reset_for_retry_restarts_attempts(self):
        installment = InstallmentFactory(
            status=InstallmentStatus.FAILED,
            attempt_count=3,
            last_attempted_at=timezone.now(),
        )

        installment.reset_for_retry()

        assert installment.status == InstallmentStatus.RETRYING
        assert installment.attempt_count == 0
        assert installment.last_attempted_at is None

    def test_reset_only_from_failed(self):
        installment = InstallmentFactory(status=InstallmentStatus.RETRYING)

        with pytest.raises(TransitionNotAllowed):
            installment.reset_for_retry()


@pytest.mark.django_db
class TestInstallmentEligibility:
    """Tests for retry interval and reminder window helpers."""

    def test_first_attempt_is_always_eligible(self):
        installment = InstallmentFactory(status=InstallmentStatus.PENDING)

        assert installment.is_retry_eligible(BillingJobConfig(), timezone.localdate()) is True

    def test_retry_waits_full_interval(self):
        today = datetime.date(2026, 3, 5)
        installment = InstallmentFactory(
            status=InstallmentStatus.RETRYING,
            attempt_count=1,
            last_attempted_at=datetime.datetime(2026, 3, 3, 9, 0, tzinfo=datetime.timezone.utc),
        )

        assert installment.is_retry_eligible(BillingJobConfig(retry_interval_days=3), today) is False
        assert installment.is_retry_eligible(BillingJobConfig(retry_interval_days=2), today) is True

    def test_zero_interval_retries_same_day(self):
        now = timezone.now()
        installment = InstallmentFactory(
            status=InstallmentStatus.RETRYING,
            attempt_count=1,
            last_attempted_at=now,
        )

        assert installment.is_retry_eligible(BillingJobConfig(retry_interval_days=0), timezone.localdate(now))

    def test_attempts_remaining(self):
        installment = InstallmentFactory(attempt_count=2)

        assert installment.attempts_remaining(BillingJobConfig(max_retry_attempts=3)) == 1
        assert installment.attempts_remaining(BillingJobConfig(max_retry_attempts=1)) == 0

    def test_reminder_sent_in_window(self):
        due = datetime.date(2026, 3, 10)
        installment = InstallmentFactory(
            due_date=due,
            reminder_sent_at=datetime.datetime(2026, 3, 8, 9, 0, tzinfo=datetime.timezone.utc),
        )

        assert installment.reminder_sent_in_window(BillingJobConfig(reminder_days_before_due=3)) is True
        assert installment.reminder_sent_in_window(BillingJobConfig(reminder_days_before_due=1)) is False


@pytest.mark.django_db
class TestPaymentPlanTransitions:
    """Tests for PaymentPlan state transitions."""

    def test_complete(self):
        plan = PaymentPlanFactory()

        plan.complete()

        assert plan.status == PaymentPlanStatus.COMPLETED
        assert plan.completed_at is not None

    def test_default_records_reason(self):
        plan = PaymentPlanFactory()

        plan.mark_defaulted(reason="Installment 2 failed")

        assert plan.status == PaymentPlanStatus.DEFAULTED
        assert plan.status_reason == "Installment 2 failed"
        assert plan.defaulted_at is not None

    def test_cancel(self):
        plan = PaymentPlanFactory()

        plan.cancel(reason="Patient moved")

        assert plan.status == PaymentPlanStatus.CANCELLED

    @pytest.mark.parametrize(
        "source",
        [PaymentPlanStatus.COMPLETED, PaymentPlanStatus.DEFAULTED, PaymentPlanStatus.CANCELLED],
    )
    @pytest.mark.parametrize("transition", ["complete", "mark_defaulted", "cancel"])
    def test_only_active_plans_transition(self, source, transition):
        plan = PaymentPlanFactory(status=source)

        with pytest.raises(TransitionNotAllowed):
            getattr(plan, transition)()

    def test_amounts_follow_paid_installments(self):
        plan = PaymentPlanFactory(total_amount_cents=45000)
        InstallmentFactory(plan=plan, sequence_number=1, status=InstallmentStatus.PAID)
        InstallmentFactory(plan=plan, sequence_number=2)
        InstallmentFactory(plan=plan, sequence_number=3)

        assert plan.amount_paid_cents == 15000
        assert plan.amount_remaining_cents == 30000
        assert plan.installments_paid == 1
        assert plan.all_installments_paid() is False
        assert plan.next_due_installment().sequence_number == 2


@pytest.mark.django_db
class TestReconcilerGuards:
    def test_failed_attempt_on_paid_installment_raises(self):
        installment = InstallmentFactory(status=InstallmentStatus.PAID, attempt_count=1)
        declined = ChargeResult.declined(error_code="card_declined", error_message="Declined")

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            InstallmentReconciler.record_failed_attempt(installment, None, declined, BillingJobConfig())

        assert exc_info.value.details["current_state"] == InstallmentStatus.PAID
        installment.refresh_from_db()
        assert installment.status == InstallmentStatus.PAID
