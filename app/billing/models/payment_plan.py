"""
PaymentPlan and Installment models.

A payment plan splits a total into scheduled installments. The billing
job drives each installment through charge attempts; webhook handlers
reconcile processor confirmations onto the same rows.

State Machines:
    PaymentPlan:
        ACTIVE → COMPLETED (complete)
        ACTIVE → DEFAULTED (mark_defaulted)
        ACTIVE → CANCELLED (cancel)

    Installment:
        PENDING → DUE (mark_due)
        PENDING/DUE/RETRYING → RETRYING (mark_retrying)
        PENDING/DUE/RETRYING → FAILED (mark_failed)
        PENDING/DUE/RETRYING/FAILED → PAID (mark_paid)
        FAILED → RETRYING (reset_for_retry)

Invariants:
    - attempt_count never exceeds the configured maximum (enforced by the
      billing job's selection and its row-locked re-check)
    - no transition leaves PAID

Usage:
    from billing.models import Installment

    installment.mark_paid(paid_at=timezone.now())
    installment.save()
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import models
from django.db.models import Q, Sum
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import (
    CHARGEABLE_INSTALLMENT_STATUSES,
    InstallmentStatus,
    PaymentPlanStatus,
    PlanFrequency,
)

if TYPE_CHECKING:
    import datetime

    from billing.conf import BillingJobConfig


class PaymentPlan(UUIDPrimaryKeyMixin, BaseModel):
    """
    An agreement to collect a total amount across scheduled installments.

    Fields:
        practice / patient: Tenant and payer
        invoice: Invoice being paid off (optional; plans may precede invoicing)
        name: Short label shown to the patient
        total_amount_cents: Sum of all installments
        installment_count: Number of installments
        installment_amount_cents: Regular installment amount (last one absorbs rounding)
        frequency: Spacing between due dates
        start_date: Due date of the first installment
        status: Plan state (managed by FSM)
    """

    practice = models.ForeignKey(
        "practices.Practice",
        on_delete=models.PROTECT,
        related_name="payment_plans",
    )
    patient = models.ForeignKey(
        "practices.Patient",
        on_delete=models.PROTECT,
        related_name="payment_plans",
    )
    invoice = models.ForeignKey(
        "billing.Invoice",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_plans",
    )
    name = models.CharField(max_length=200, blank=True, default="")

    total_amount_cents = models.PositiveBigIntegerField()
    installment_count = models.PositiveSmallIntegerField()
    installment_amount_cents = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="usd")
    frequency = models.CharField(
        max_length=20,
        choices=PlanFrequency.choices,
        default=PlanFrequency.MONTHLY,
    )
    start_date = models.DateField()

    status = FSMField(
        default=PaymentPlanStatus.ACTIVE,
        choices=PaymentPlanStatus.choices,
        db_index=True,
        help_text="Current state of the plan (managed by FSM)",
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    defaulted_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    status_reason = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["practice", "status"], name="plan_practice_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(installment_count__gt=0),
                name="payment_plan_installment_count_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentPlan({self.id}, {self.status}, {self.total_amount_cents / 100:.2f})"

    # ==========================================================================
    # Derived amounts
    # ==========================================================================

    @property
    def amount_paid_cents(self) -> int:
        paid = self.installments.filter(status=InstallmentStatus.PAID).aggregate(
            total=Sum("amount_cents")
        )["total"]
        return paid or 0

    @property
    def amount_remaining_cents(self) -> int:
        return self.total_amount_cents - self.amount_paid_cents

    @property
    def installments_paid(self) -> int:
        return self.installments.filter(status=InstallmentStatus.PAID).count()

    def next_due_installment(self) -> Installment | None:
        return (
            self.installments.filter(status__in=CHARGEABLE_INSTALLMENT_STATUSES)
            .order_by("due_date", "sequence_number")
            .first()
        )

    def all_installments_paid(self) -> bool:
        return not self.installments.exclude(status=InstallmentStatus.PAID).exists()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentPlanStatus.ACTIVE,
        target=PaymentPlanStatus.COMPLETED,
    )
    def complete(self):
        """Every installment is paid."""
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=PaymentPlanStatus.ACTIVE,
        target=PaymentPlanStatus.DEFAULTED,
    )
    def mark_defaulted(self, reason: str = ""):
        """
        An installment exhausted its retries.

        Transition: ACTIVE -> DEFAULTED

        Remaining unpaid installments are no longer selected by the job
        because only ACTIVE plans are billed.
        """
        self.defaulted_at = timezone.now()
        self.status_reason = reason

    @transition(
        field=status,
        source=PaymentPlanStatus.ACTIVE,
        target=PaymentPlanStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        self.cancelled_at = timezone.now()
        self.status_reason = reason


class Installment(UUIDPrimaryKeyMixin, BaseModel):
    """
    One scheduled charge within a payment plan.

    Fields:
        plan: Owning payment plan
        sequence_number: 1-based position within the plan
        due_date: Date the charge becomes collectable
        amount_cents: Amount to collect
        status: Installment state (managed by FSM)
        attempt_count: Charge attempts made by the billing job
        last_attempted_at: Time of the most recent attempt
        paid_at: When the processor confirmed payment
        failure_code / failure_reason: Most recent failure
        reminder_sent_at: When the upcoming-payment reminder went out

    Note:
        attempt_count is owned by the billing job. Webhook confirmations
        change status but never the count.
    """

    plan = models.ForeignKey(
        PaymentPlan,
        on_delete=models.CASCADE,
        related_name="installments",
    )
    sequence_number = models.PositiveSmallIntegerField()
    due_date = models.DateField(db_index=True)
    amount_cents = models.PositiveBigIntegerField()

    status = FSMField(
        default=InstallmentStatus.PENDING,
        choices=InstallmentStatus.choices,
        db_index=True,
        help_text="Current state of the installment (managed by FSM)",
    )
    attempt_count = models.PositiveSmallIntegerField(default=0)
    last_attempted_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    failure_code = models.CharField(max_length=100, blank=True, default="")
    failure_reason = models.TextField(blank=True, default="")
    reminder_sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["plan", "sequence_number"]
        indexes = [
            models.Index(fields=["status", "due_date"], name="installment_status_due_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["plan", "sequence_number"],
                name="unique_installment_sequence_per_plan",
            ),
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="installment_amount_cents_positive",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"Installment({self.plan_id}#{self.sequence_number}, {self.status}, "
            f"{self.amount_cents / 100:.2f})"
        )

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def is_retry(self) -> bool:
        """True once at least one attempt has been made."""
        return self.attempt_count > 0

    def attempts_remaining(self, config: BillingJobConfig) -> int:
        return max(config.max_retry_attempts - self.attempt_count, 0)

    def is_retry_eligible(self, config: BillingJobConfig, today: datetime.date) -> bool:
        """
        Whether enough days have passed since the last attempt.

        Only RETRYING installments wait out the interval; first attempts
        are eligible as soon as they are due. Compared by calendar date so a
        run a few seconds earlier than the previous one still qualifies.
        """
        if self.status != InstallmentStatus.RETRYING or self.last_attempted_at is None:
            return True
        last_attempt_day = timezone.localtime(self.last_attempted_at).date()
        return last_attempt_day <= today - timedelta(days=config.retry_interval_days)

    def reminder_window_start(self, config: BillingJobConfig) -> datetime.date:
        return self.due_date - timedelta(days=config.reminder_days_before_due)

    def reminder_sent_in_window(self, config: BillingJobConfig) -> bool:
        if self.reminder_sent_at is None:
            return False
        sent_day = timezone.localtime(self.reminder_sent_at).date()
        return sent_day >= self.reminder_window_start(config)

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=InstallmentStatus.PENDING,
        target=InstallmentStatus.DUE,
    )
    def mark_due(self):
        """Picked up by the billing job for its first attempt."""
        pass

    @transition(
        field=status,
        source=[
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.RETRYING,
        ],
        target=InstallmentStatus.RETRYING,
    )
    def mark_retrying(self, failure_code: str = "", failure_reason: str = ""):
        """An attempt failed and retries remain."""
        self.failure_code = failure_code
        self.failure_reason = failure_reason

    @transition(
        field=status,
        source=[
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.RETRYING,
        ],
        target=InstallmentStatus.FAILED,
    )
    def mark_failed(self, failure_code: str = "", failure_reason: str = ""):
        """Retries exhausted."""
        self.failure_code = failure_code
        self.failure_reason = failure_reason

    @transition(
        field=status,
        source=[
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.RETRYING,
            InstallmentStatus.FAILED,
        ],
        target=InstallmentStatus.PAID,
    )
    def mark_paid(self, paid_at: datetime.datetime | None = None):
        """
        Payment collected.

        Transition: PENDING/DUE/RETRYING/FAILED -> PAID

        FAILED is a valid source because a processor may confirm a charge
        after the job already gave up on it. The money is real either way.
        """
        self.paid_at = paid_at or timezone.now()
        self.failure_code = ""
        self.failure_reason = ""

    @transition(
        field=status,
        source=InstallmentStatus.FAILED,
        target=InstallmentStatus.RETRYING,
    )
    def reset_for_retry(self):
        """
        Staff re-open a failed installment after the patient updates their card.

        Transition: FAILED -> RETRYING

        The attempt counter starts over so the job may try again.
        """
        self.attempt_count = 0
        self.last_attempted_at = None
