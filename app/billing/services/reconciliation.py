"""
Installment reconciliation.

The billing job and the webhook handlers both change installment state.
Every such change goes through InstallmentReconciler so both paths apply
the same rules and converge on the same rows:

    - PAID is terminal: settle() re-reads the installment under a row lock
      and does nothing if it is already PAID
    - One ledger credit per installment: the credit is keyed
      "installment-payment:<installment id>" whichever path gets there first
    - Attempts are counted when they begin (begin_attempt), never when a
      processor reports the outcome

Usage:
    from billing.services.reconciliation import InstallmentReconciler

    outcome = InstallmentReconciler.settle(installment, txn, source="webhook")
    if outcome.plan_completed:
        notifier.send_plan_completed(outcome.installment.plan)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import transaction

from core.services import BaseService

from billing.exceptions import InvalidStateTransitionError
from billing.ledger import LedgerService
from billing.locks import lock_row
from billing.models import Installment, PaymentPlan
from billing.state_machines import InstallmentStatus, PaymentPlanStatus

if TYPE_CHECKING:
    import datetime

    from billing.conf import BillingJobConfig
    from billing.gateways.base import ChargeResult
    from billing.ledger import LedgerEntry
    from billing.models import PaymentTransaction

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_REACHED = "max_attempts_reached"


def installment_credit_key(installment_id) -> str:
    return f"installment-payment:{installment_id}"


@dataclass
class SettlementOutcome:
    """
    Result of settling an installment.

    Attributes:
        installment: The re-read installment
        newly_paid: False when the installment was already PAID (replay)
        plan_completed: This settlement completed the plan
        ledger_entry: The installment's credit (None on replay)
    """

    installment: Installment
    newly_paid: bool
    plan_completed: bool = False
    ledger_entry: LedgerEntry | None = None


@dataclass
class FailureOutcome:
    """
    Result of recording a failed attempt.

    Attributes:
        installment: The updated installment
        changed: False when the failure was ignored (PAID or already FAILED)
        exhausted: No attempts remain; the installment is FAILED
        plan_defaulted: This failure defaulted the plan
        attempts_remaining: Attempts left under the current config
    """

    installment: Installment
    changed: bool = True
    exhausted: bool = False
    plan_defaulted: bool = False
    attempts_remaining: int = 0


class InstallmentReconciler(BaseService):
    """
    Applies charge outcomes to installments and plans.

    Methods:
        begin_attempt: Count a charge attempt before the gateway call
        settle: Mark PAID, post the credit, complete the plan
        record_failed_attempt: Apply a failure from the billing job
        apply_failure_confirmation: Apply a failure reported by webhook
        exhaust: Finalize an installment that has no attempts left
        maybe_complete_plan / default_plan: Plan transitions
    """

    @classmethod
    def begin_attempt(cls, installment: Installment, now: datetime.datetime) -> int:
        """
        Count a charge attempt. Caller holds the installment row lock.

        Returns:
            The attempt number (1-based)
        """
        if installment.status == InstallmentStatus.PENDING:
            installment.mark_due()
        installment.attempt_count += 1
        installment.last_attempted_at = now
        installment.save(update_fields=["status", "attempt_count", "last_attempted_at", "updated_at"])
        return installment.attempt_count

    @classmethod
    def settle(
        cls,
        installment: Installment,
        payment_transaction: PaymentTransaction | None = None,
        paid_at: datetime.datetime | None = None,
        source: str = "billing_job",
    ) -> SettlementOutcome:
        """
        Mark an installment PAID and credit the ledger, exactly once.

        Safe to call from both the billing job and the webhook handler, in
        any order, any number of times.
        """
        with transaction.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan",))
            if locked.is_paid:
                logger.info(
                    "Installment already paid, nothing to settle",
                    extra={"installment_id": str(locked.id), "source": source},
                )
                return SettlementOutcome(installment=locked, newly_paid=False)

            locked.mark_paid(paid_at=paid_at)
            locked.save(
                update_fields=["status", "paid_at", "failure_code", "failure_reason", "updated_at"]
            )

            plan = locked.plan
            metadata = {"source": source}
            if payment_transaction is not None:
                metadata["transaction_id"] = str(payment_transaction.id)
            entry = LedgerService.post_payment(
                patient_id=plan.patient_id,
                invoice_id=plan.invoice_id,
                amount_cents=locked.amount_cents,
                idempotency_key=installment_credit_key(locked.id),
                currency=plan.currency,
                reference_type="installment",
                reference_id=locked.id,
                description=f"Installment {locked.sequence_number} of {plan.name or 'payment plan'}",
                metadata=metadata,
                created_by=source,
            )

            if plan.invoice is not None and plan.invoice.refresh_status():
                plan.invoice.save(update_fields=["status", "updated_at"])

            plan_completed = cls.maybe_complete_plan(plan)

        logger.info(
            "Installment settled",
            extra={
                "installment_id": str(locked.id),
                "plan_id": str(plan.id),
                "amount_cents": locked.amount_cents,
                "plan_completed": plan_completed,
                "source": source,
            },
        )
        return SettlementOutcome(
            installment=locked,
            newly_paid=True,
            plan_completed=plan_completed,
            ledger_entry=entry,
        )

    @classmethod
    def record_failed_attempt(
        cls,
        installment: Installment,
        payment_transaction: PaymentTransaction | None,
        result: ChargeResult,
        config: BillingJobConfig,
    ) -> FailureOutcome:
        """
        Apply a failed charge made by the billing job.

        The attempt was already counted by begin_attempt(). Caller holds
        the installment row lock.
        """
        if installment.is_paid:
            raise InvalidStateTransitionError(
                f"Cannot record a failed attempt on paid installment {installment.id}",
                details={"current_state": installment.status, "target_state": InstallmentStatus.RETRYING},
            )
        if payment_transaction is not None:
            payment_transaction.mark_failed(
                error_code=result.error_code or "",
                error_message=result.error_message or "",
                decline_code=result.decline_code or "",
            )
            if result.transaction_id and not payment_transaction.external_transaction_id:
                payment_transaction.external_transaction_id = result.transaction_id
            payment_transaction.processor_response = result.raw_response
            payment_transaction.save()

        return cls._apply_failure(
            installment,
            failure_code=result.error_code or "payment_failed",
            failure_reason=result.failure_reason,
            config=config,
        )

    @classmethod
    def apply_failure_confirmation(
        cls,
        installment: Installment,
        failure_code: str,
        failure_reason: str,
        config: BillingJobConfig,
    ) -> FailureOutcome:
        """
        Apply a failure reported asynchronously by the processor.

        A PAID installment stays PAID and a FAILED one stays FAILED.
        The attempt count is not touched.
        """
        with transaction.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan",))
            if locked.status in (InstallmentStatus.PAID, InstallmentStatus.FAILED):
                return FailureOutcome(installment=locked, changed=False)
            return cls._apply_failure(locked, failure_code, failure_reason, config)

    @classmethod
    def exhaust(
        cls,
        installment: Installment,
        config: BillingJobConfig,
        reason: str = "Maximum payment attempts reached",
    ) -> FailureOutcome:
        """Finalize an installment whose attempt count already hit the maximum."""
        with transaction.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan",))
            if locked.status not in (InstallmentStatus.RETRYING, InstallmentStatus.DUE):
                return FailureOutcome(installment=locked, changed=False)
            return cls._mark_exhausted(
                locked,
                failure_code=locked.failure_code or MAX_ATTEMPTS_REACHED,
                failure_reason=locked.failure_reason or reason,
                config=config,
            )

    @classmethod
    def _apply_failure(
        cls,
        installment: Installment,
        failure_code: str,
        failure_reason: str,
        config: BillingJobConfig,
    ) -> FailureOutcome:
        if installment.attempt_count >= config.max_retry_attempts:
            return cls._mark_exhausted(installment, failure_code, failure_reason, config)

        installment.mark_retrying(failure_code=failure_code, failure_reason=failure_reason)
        installment.save(update_fields=["status", "failure_code", "failure_reason", "updated_at"])
        remaining = installment.attempts_remaining(config)
        logger.info(
            "Installment payment failed, will retry",
            extra={
                "installment_id": str(installment.id),
                "attempt_count": installment.attempt_count,
                "attempts_remaining": remaining,
                "failure_code": failure_code,
            },
        )
        return FailureOutcome(installment=installment, attempts_remaining=remaining)

    @classmethod
    def _mark_exhausted(
        cls,
        installment: Installment,
        failure_code: str,
        failure_reason: str,
        config: BillingJobConfig,
    ) -> FailureOutcome:
        installment.mark_failed(failure_code=failure_code, failure_reason=failure_reason)
        installment.save(update_fields=["status", "failure_code", "failure_reason", "updated_at"])

        plan_defaulted = False
        if config.default_plan_on_failure:
            plan_defaulted = cls.default_plan(
                installment.plan,
                reason=f"Installment {installment.sequence_number} failed: {failure_reason}",
            )

        logger.warning(
            "Installment payment attempts exhausted",
            extra={
                "installment_id": str(installment.id),
                "plan_id": str(installment.plan_id),
                "attempt_count": installment.attempt_count,
                "failure_code": failure_code,
                "plan_defaulted": plan_defaulted,
            },
        )
        return FailureOutcome(
            installment=installment,
            exhausted=True,
            plan_defaulted=plan_defaulted,
        )

    # =========================================================================
    # Plan transitions
    # =========================================================================

    @classmethod
    def maybe_complete_plan(cls, plan: PaymentPlan) -> bool:
        """Complete an ACTIVE plan whose installments are all PAID."""
        with transaction.atomic():
            locked = lock_row(PaymentPlan, plan.pk)
            if locked.status != PaymentPlanStatus.ACTIVE or not locked.all_installments_paid():
                return False
            locked.complete()
            locked.save(update_fields=["status", "completed_at", "updated_at"])
        plan.status = locked.status
        plan.completed_at = locked.completed_at
        logger.info("Payment plan completed", extra={"plan_id": str(plan.id)})
        return True

    @classmethod
    def default_plan(cls, plan: PaymentPlan, reason: str) -> bool:
        """Default an ACTIVE plan. Returns False if it was not ACTIVE."""
        with transaction.atomic():
            locked = lock_row(PaymentPlan, plan.pk)
            if locked.status != PaymentPlanStatus.ACTIVE:
                return False
            locked.mark_defaulted(reason=reason)
            locked.save(update_fields=["status", "defaulted_at", "status_reason", "updated_at"])
        plan.status = locked.status
        plan.defaulted_at = locked.defaulted_at
        plan.status_reason = locked.status_reason
        logger.warning("Payment plan defaulted", extra={"plan_id": str(plan.id), "reason": reason})
        return True
