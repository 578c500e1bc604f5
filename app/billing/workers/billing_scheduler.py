"""
Billing retry scheduler.

Runs once per schedule tick (Celery beat or the cron endpoint) and drives
payment-plan installments through charge attempts.

Run order:
    1. Reminders for installments coming due within the reminder window
    2. Exhausted sweep: RETRYING or DUE installments with no attempts left
       and no charge awaiting confirmation become FAILED
    3. Charge every due installment that is eligible

Per-installment flow:
    - Row-locked re-check, count the attempt, write a PENDING transaction
      and commit (the committed PENDING row keeps other runs and the
      selection query away from the installment)
    - Charge through the gateway with a per-attempt idempotency key
    - Success -> settle; pending -> wait for the webhook;
      decline, gateway error or unexpected error -> record_failed_attempt

Errors are isolated per installment and per practice: a failure is
recorded in the result and the loop moves on.

Usage:
    from billing.workers import run_billing_job

    outcome = run_billing_job(get_billing_config(), overrides={"max_retry_attempts": 1})
    if outcome.success:
        print(outcome.result.successful)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from core.exceptions import BaseApplicationError

from billing.exceptions import GatewayError, LockAcquisitionError
from billing.gateways import ChargeRequest, ChargeResult, charge_idempotency_key, get_gateway
from billing.locks import RunLease, lock_row
from billing.models import Installment, PaymentTransaction
from billing.notifications import BillingNotifier
from billing.services.reconciliation import InstallmentReconciler
from billing.state_machines import (
    CHARGEABLE_INSTALLMENT_STATUSES,
    InstallmentStatus,
    PaymentPlanStatus,
    PaymentTransactionStatus,
)

if TYPE_CHECKING:
    import datetime
    from typing import Any, Callable

    from billing.conf import BillingConfig, BillingJobConfig
    from billing.gateways import PaymentGateway
    from core.services import ServiceResult
    from practices.models import Practice

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Redis lease guarding a run
RUN_LOCK_KEY = "billing:installment-job"

# Widest reminder window a practice or invocation may configure
MAX_REMINDER_WINDOW_DAYS = 30

NO_PAYMENT_METHOD = "no_payment_method"
UNEXPECTED_ERROR = "unexpected_error"


# =============================================================================
# Results
# =============================================================================


@dataclass
class BillingJobResult:
    """
    Aggregate counts for one run.

    Attributes:
        processed: Installments a charge was attempted for
        successful: Charges that succeeded
        failed: Charges that were declined or errored
        retried: Attempts that were retries (attempt 2 or later)
        pending: Charges accepted but awaiting confirmation
        completed_plans / defaulted_plans: Plan transitions caused by the run
        reminders_sent: Upcoming-payment reminders sent
        skipped: Selected installments dropped at the locked re-check
        exhausted: RETRYING installments finalized without a charge
        errors: Per-item error descriptions (capped)
        errors_truncated: Errors dropped beyond the cap
    """

    max_reported_errors: int = 50
    processed: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    pending: int = 0
    completed_plans: int = 0
    defaulted_plans: int = 0
    reminders_sent: int = 0
    skipped: int = 0
    exhausted: int = 0
    errors: list[str] = field(default_factory=list)
    errors_truncated: int = 0

    def add_error(self, message: str) -> None:
        if len(self.errors) < self.max_reported_errors:
            self.errors.append(message)
        else:
            self.errors_truncated += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedInstallments": self.processed,
            "successfulPayments": self.successful,
            "failedPayments": self.failed,
            "retriedPayments": self.retried,
            "pendingPayments": self.pending,
            "completedPlans": self.completed_plans,
            "defaultedPlans": self.defaulted_plans,
            "remindersSent": self.reminders_sent,
            "skippedInstallments": self.skipped,
            "exhaustedInstallments": self.exhausted,
            "errors": self.errors,
            "errorsTruncated": self.errors_truncated,
        }


@dataclass
class BillingJobOutcome:
    """
    Job-level outcome returned to the endpoint and the Celery task.

    Attributes:
        success: The run completed (per-item errors do not make it fail)
        duration_ms: Elapsed time
        result: Counts, partial when the run failed
        error: Why the run failed or was skipped
        skipped: Another run holds the lease
    """

    success: bool
    duration_ms: int
    result: BillingJobResult
    error: str | None = None
    skipped: bool = False

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success, "durationMs": self.duration_ms}
        if self.error:
            body["error"] = self.error
        if self.skipped:
            body["skipped"] = True
            return body
        body.update(self.result.to_dict())
        return body


# =============================================================================
# Scheduler
# =============================================================================


class BillingScheduler:
    """
    One billing run.

    Args:
        config: Job configuration (invocation overrides already applied)
        gateway: Gateway used for every charge in the run
        notifier: Patient and staff email
        now: Run time (default: timezone.now())
        overrides: Invocation overrides, re-applied over each practice's
            stored preferences so an explicit override always wins
    """

    def __init__(
        self,
        config: BillingJobConfig,
        gateway: PaymentGateway,
        notifier: BillingNotifier,
        now: datetime.datetime | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.notifier = notifier
        self.now = now or timezone.now()
        self.today = timezone.localdate(self.now)
        self.overrides = overrides or {}
        self.result = BillingJobResult(max_reported_errors=config.max_reported_errors)
        self._practice_configs: dict[Any, BillingJobConfig] = {}

    def config_for(self, practice: Practice) -> BillingJobConfig | None:
        """
        The practice's effective job config, or None if it cannot be built.

        A practice without a usable config is reported once and its
        installments are left alone for the rest of the run.
        """
        if practice.pk not in self._practice_configs:
            try:
                config = self.config.for_practice(practice).with_overrides(**self.overrides)
            except (BaseApplicationError, TypeError, ValueError) as e:
                logger.exception(
                    "Could not build billing config for practice",
                    extra={"practice_id": str(practice.pk)},
                )
                self.result.add_error(f"Practice {practice.pk}: {e}")
                config = None
            self._practice_configs[practice.pk] = config
        return self._practice_configs[practice.pk]

    def run(self) -> BillingJobResult:
        logger.info(
            "Starting billing run",
            extra={"run_date": self.today.isoformat(), "processor": self.gateway.processor},
        )

        self.send_reminders()
        self.finalize_exhausted()

        installments = self.select_due_installments()
        for installment in installments:
            try:
                self.process_installment(installment)
            except Exception as e:
                logger.exception(
                    "Failed to process installment",
                    extra={"installment_id": str(installment.id)},
                )
                self.result.add_error(f"Installment {installment.id}: {e}")

        logger.info(
            "Billing run complete",
            extra={
                "processed": self.result.processed,
                "successful": self.result.successful,
                "failed": self.result.failed,
                "reminders_sent": self.result.reminders_sent,
                "errors": len(self.result.errors) + self.result.errors_truncated,
            },
        )
        return self.result

    # =========================================================================
    # Selection
    # =========================================================================

    def _base_queryset(self):
        return Installment.objects.select_related("plan__patient__practice", "plan__invoice").filter(
            plan__status=PaymentPlanStatus.ACTIVE,
            plan__practice__is_active=True,
        )

    def _awaiting_confirmation(self):
        return PaymentTransaction.objects.filter(
            installment=OuterRef("pk"),
            status=PaymentTransactionStatus.PENDING,
        )

    def select_due_installments(self) -> list[Installment]:
        """
        Installments to charge this run.

        Due, chargeable, ACTIVE plan, no charge awaiting confirmation,
        attempts left, and RETRYING ones only after the retry interval.
        """
        candidates = (
            self._base_queryset()
            .filter(
                due_date__lte=self.today,
                status__in=CHARGEABLE_INSTALLMENT_STATUSES,
            )
            .exclude(Exists(self._awaiting_confirmation()))
            .order_by("due_date", "plan_id", "sequence_number")
        )

        selected = []
        for installment in candidates:
            config = self.config_for(installment.plan.practice)
            if config is None:
                continue
            if installment.attempt_count >= config.max_retry_attempts:
                continue
            if not installment.is_retry_eligible(config, self.today):
                continue
            selected.append(installment)

        logger.info(f"Selected {len(selected)} installments for charging")
        return selected

    # =========================================================================
    # Charging
    # =========================================================================

    def process_installment(self, installment: Installment) -> None:
        config = self.config_for(installment.plan.practice)
        if config is None:
            self.result.skipped += 1
            return

        with transaction.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan__patient__practice",))
            plan = locked.plan
            if (
                locked.is_paid
                or locked.status not in CHARGEABLE_INSTALLMENT_STATUSES
                or locked.attempt_count >= config.max_retry_attempts
                or plan.status != PaymentPlanStatus.ACTIVE
            ):
                logger.info(
                    "Installment no longer chargeable, skipping",
                    extra={"installment_id": str(locked.id), "status": locked.status},
                )
                self.result.skipped += 1
                return

            was_retry = locked.is_retry
            attempt_number = InstallmentReconciler.begin_attempt(locked, self.now)
            payment_method = plan.patient.default_payment_method()
            txn = PaymentTransaction.objects.create(
                practice=plan.practice,
                patient=plan.patient,
                installment=locked,
                invoice=plan.invoice,
                payment_method=payment_method,
                processor=self.gateway.processor,
                amount_cents=locked.amount_cents,
                currency=plan.currency,
                attempt_number=attempt_number,
            )

        self.result.processed += 1
        if was_retry:
            self.result.retried += 1

        try:
            charge_result = self._charge(locked, txn, payment_method, attempt_number)
        except Exception as e:
            # The attempt is already counted, so it must end as a failure
            logger.exception(
                "Unexpected error charging installment",
                extra={"installment_id": str(locked.id), "transaction_id": str(txn.id)},
            )
            self.result.add_error(f"Installment {locked.id}: {e}")
            charge_result = ChargeResult.declined(error_code=UNEXPECTED_ERROR, error_message=str(e))

        if charge_result.success:
            self._on_success(locked, txn, charge_result)
        elif charge_result.pending:
            txn.external_transaction_id = charge_result.transaction_id
            txn.processor_response = charge_result.raw_response
            txn.save(update_fields=["external_transaction_id", "processor_response", "updated_at"])
            self.result.pending += 1
            logger.info(
                "Charge pending confirmation",
                extra={"installment_id": str(locked.id), "transaction_id": str(txn.id)},
            )
        else:
            self._on_failure(locked, txn, charge_result, config)

    def _charge(
        self,
        installment: Installment,
        txn: PaymentTransaction,
        payment_method,
        attempt_number: int,
    ) -> ChargeResult:
        if payment_method is None:
            return ChargeResult.declined(
                error_code=NO_PAYMENT_METHOD,
                error_message="No stored payment method on file",
            )

        plan = installment.plan
        request = ChargeRequest(
            amount_cents=installment.amount_cents,
            currency=plan.currency,
            payment_token=payment_method.payment_token,
            idempotency_key=charge_idempotency_key(installment.id, attempt_number),
            customer_id=plan.patient.processor_customer_id or None,
            description=f"{plan.practice.name}: {plan.name} installment {installment.sequence_number}",
            metadata={
                "installment_id": str(installment.id),
                "plan_id": str(plan.id),
                "practice_id": str(plan.practice_id),
                "transaction_id": str(txn.id),
            },
        )
        try:
            return self.gateway.charge(request)
        except GatewayError as e:
            logger.warning(
                "Gateway error charging installment",
                extra={
                    "installment_id": str(installment.id),
                    "error_code": e.error_code,
                    "retryable": e.is_retryable,
                },
            )
            self.result.add_error(f"Installment {installment.id}: {e.message}")
            return ChargeResult.from_error(e)

    def _on_success(self, installment: Installment, txn: PaymentTransaction, charge_result: ChargeResult) -> None:
        with transaction.atomic():
            txn.mark_completed(charge_result.transaction_id)
            txn.processor_response = charge_result.raw_response
            txn.save()
            outcome = InstallmentReconciler.settle(installment, txn, paid_at=self.now, source="billing_job")

        self.result.successful += 1
        settled = outcome.installment
        if outcome.newly_paid:
            self._notify(
                "payment confirmation",
                lambda: self.notifier.send_payment_confirmation(txn, settled),
            )
        if outcome.plan_completed:
            self.result.completed_plans += 1
            self._notify("plan completion notice", lambda: self.notifier.send_plan_completed(settled.plan))

    def _on_failure(
        self,
        installment: Installment,
        txn: PaymentTransaction,
        charge_result: ChargeResult,
        config: BillingJobConfig,
    ) -> None:
        with transaction.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan__patient__practice",))
            if locked.is_paid:
                # A confirmation for an earlier attempt arrived meanwhile
                txn.mark_failed(charge_result.error_code or "", charge_result.error_message or "")
                txn.save()
                self.result.skipped += 1
                return
            outcome = InstallmentReconciler.record_failed_attempt(locked, txn, charge_result, config)

        self.result.failed += 1
        failed = outcome.installment
        self._notify(
            "payment failure notice",
            lambda: self.notifier.send_payment_failed(failed, final=outcome.exhausted),
        )
        if outcome.exhausted:
            self._on_exhausted(outcome, config)

    def _on_exhausted(self, outcome, config: BillingJobConfig) -> None:
        if outcome.plan_defaulted:
            self.result.defaulted_plans += 1
        if config.alert_staff_on_failure:
            installment = outcome.installment
            self._notify(
                "staff failure alert",
                lambda: self.notifier.alert_staff_failure(installment, plan_defaulted=outcome.plan_defaulted),
            )

    # =========================================================================
    # Exhausted sweep
    # =========================================================================

    def finalize_exhausted(self) -> None:
        """
        Fail installments that have used every attempt but are not FAILED.

        Covers RETRYING ones left over after the maximum was lowered and
        DUE ones whose last attempt ended without a recorded outcome. An
        installment with a charge still awaiting confirmation is left for
        the webhook.
        """
        unfinished = (
            self._base_queryset()
            .filter(status__in=[InstallmentStatus.RETRYING, InstallmentStatus.DUE], attempt_count__gt=0)
            .exclude(Exists(self._awaiting_confirmation()))
        )
        for installment in unfinished:
            config = self.config_for(installment.plan.practice)
            if config is None or installment.attempt_count < config.max_retry_attempts:
                continue
            try:
                outcome = InstallmentReconciler.exhaust(installment, config)
            except Exception as e:
                logger.exception(
                    "Failed to finalize exhausted installment",
                    extra={"installment_id": str(installment.id)},
                )
                self.result.add_error(f"Installment {installment.id}: {e}")
                continue
            if not outcome.changed:
                continue
            self.result.exhausted += 1
            self._on_exhausted(outcome, config)

    # =========================================================================
    # Reminders
    # =========================================================================

    def send_reminders(self) -> None:
        """
        Remind patients of installments due within the reminder window.

        At most one reminder per installment per window: reminder_sent_at
        is stamped only after a successful send.
        """
        upcoming = self._base_queryset().filter(
            status__in=[InstallmentStatus.PENDING, InstallmentStatus.DUE],
            due_date__gte=self.today,
            due_date__lte=self.today + timedelta(days=MAX_REMINDER_WINDOW_DAYS),
        )
        for installment in upcoming:
            config = self.config_for(installment.plan.practice)
            if config is None:
                continue
            if not config.send_reminders:
                continue
            if installment.due_date > self.today + timedelta(days=config.reminder_days_before_due):
                continue
            if installment.reminder_sent_in_window(config):
                continue
            if not installment.plan.patient.can_receive_email:
                continue
            try:
                notification = self.notifier.send_reminder(installment)
            except Exception as e:
                logger.exception(
                    "Failed to send reminder",
                    extra={"installment_id": str(installment.id)},
                )
                self.result.add_error(f"Reminder for installment {installment.id}: {e}")
                continue
            if not notification.success:
                self.result.add_error(f"Reminder for installment {installment.id}: {notification.error}")
                continue
            Installment.objects.filter(pk=installment.pk).update(reminder_sent_at=self.now)
            self.result.reminders_sent += 1

    # =========================================================================
    # Helpers
    # =========================================================================

    def _notify(self, description: str, func: Callable[[], ServiceResult]) -> None:
        """Send a notification; failures are recorded, never raised."""
        try:
            notification = func()
        except Exception as e:
            logger.exception(f"Billing notification failed: {description}")
            self.result.add_error(f"{description}: {e}")
            return
        if not notification.success and notification.error_code != "EMAIL_SKIPPED":
            self.result.add_error(f"{description}: {notification.error}")


# =============================================================================
# Job entry point
# =============================================================================


def run_billing_job(
    config: BillingConfig,
    overrides: dict[str, Any] | None = None,
    gateway: PaymentGateway | None = None,
    notifier: BillingNotifier | None = None,
    now: datetime.datetime | None = None,
) -> BillingJobOutcome:
    """
    Run the billing scheduler under the run lease.

    Never raises: lease contention is a skipped outcome and any failure
    outside the per-installment loop is a failed outcome with the counts
    gathered so far.
    """
    start_time = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start_time) * 1000)

    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
    result = BillingJobResult(max_reported_errors=config.job.max_reported_errors)

    try:
        job_config = config.job.with_overrides(**overrides)
        gateway = gateway or get_gateway(config.primary_processor, config)
        notifier = notifier or BillingNotifier(staff_alert_email=job_config.staff_alert_email)
        scheduler = BillingScheduler(job_config, gateway, notifier, now=now, overrides=overrides)
        result = scheduler.result

        if job_config.use_run_lock:
            with RunLease(RUN_LOCK_KEY, ttl=job_config.lock_timeout_seconds):
                scheduler.run()
        else:
            scheduler.run()

    except LockAcquisitionError:
        logger.info("Billing job already running, skipping this invocation")
        return BillingJobOutcome(
            success=False,
            skipped=True,
            duration_ms=elapsed_ms(),
            result=result,
            error="Billing job already running",
        )
    except BaseApplicationError as e:
        logger.exception("Billing job failed", extra={"error_code": e.error_code})
        return BillingJobOutcome(success=False, duration_ms=elapsed_ms(), result=result, error=e.message)
    except Exception:
        logger.exception("Billing job failed with unexpected error")
        return BillingJobOutcome(
            success=False,
            duration_ms=elapsed_ms(),
            result=result,
            error="Internal error during billing job",
        )

    duration_ms = elapsed_ms()
    logger.info("Billing job finished", extra={"duration_ms": duration_ms})
    return BillingJobOutcome(success=True, duration_ms=duration_ms, result=result)
