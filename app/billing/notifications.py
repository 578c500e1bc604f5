"""
Billing email notifications.

BillingNotifier turns billing events into NotificationService calls:
patients get reminders, confirmations, failure notices and refund
notices (only with email consent); staff get failure and dispute alerts.

Every method returns the ServiceResult from NotificationService. Callers
collect failures as non-fatal errors; a notification problem never
rolls back a payment.

Usage:
    notifier = BillingNotifier(staff_alert_email=config.job.staff_alert_email)
    result = notifier.send_reminder(installment)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.utils import timezone

from core.services import ServiceResult
from notifications.models import NotificationCategory
from notifications.services import NotificationService

if TYPE_CHECKING:
    from billing.gateways.base import GatewayEvent
    from billing.models import Installment, Invoice, PaymentPlan, PaymentTransaction
    from notifications.models import Notification
    from practices.models import Patient, Practice

logger = logging.getLogger(__name__)

TEMPLATE_DIR = "billing/email"


def format_money(cents: int, currency: str = "usd") -> str:
    """Format cents for display: "$150.00" for USD, "150.00 EUR" otherwise."""
    amount = f"{cents / 100:,.2f}"
    if currency.lower() == "usd":
        return f"${amount}"
    return f"{amount} {currency.upper()}"


class BillingNotifier:
    """
    Routes billing messages to patients and practice staff.

    Args:
        staff_alert_email: Fallback staff address for practices that have
            no billing or contact email
    """

    def __init__(self, staff_alert_email: str | None = None) -> None:
        self.staff_alert_email = staff_alert_email

    # =========================================================================
    # Routing
    # =========================================================================

    def _send_to_patient(
        self,
        patient: Patient,
        subject: str,
        template: str,
        category: str,
        context: dict,
        reference_type: str,
        reference_id,
    ) -> ServiceResult[Notification]:
        practice = patient.practice
        base_context = {"patient_name": patient.full_name, "practice_name": practice.name}
        if not patient.can_receive_email:
            return NotificationService.record_skipped(
                reason="Patient has no email or has not consented to email",
                category=category,
                subject=subject,
                practice=practice,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        return NotificationService.send_email(
            to=patient.email,
            subject=subject,
            template_name=f"{TEMPLATE_DIR}/{template}",
            context={**base_context, **context},
            category=category,
            practice=practice,
            reference_type=reference_type,
            reference_id=reference_id,
        )

    def staff_address(self, practice: Practice) -> str | None:
        return practice.staff_alert_email or self.staff_alert_email

    def _send_to_staff(
        self,
        practice: Practice,
        subject: str,
        template: str,
        context: dict,
        reference_type: str,
        reference_id,
    ) -> ServiceResult[Notification]:
        return NotificationService.send_email(
            to=self.staff_address(practice),
            subject=subject,
            template_name=f"{TEMPLATE_DIR}/{template}",
            context={"practice_name": practice.name, **context},
            category=NotificationCategory.STAFF_ALERT,
            practice=practice,
            reference_type=reference_type,
            reference_id=reference_id,
        )

    # =========================================================================
    # Patient messages
    # =========================================================================

    def send_reminder(self, installment: Installment) -> ServiceResult[Notification]:
        plan = installment.plan
        return self._send_to_patient(
            plan.patient,
            subject=f"Upcoming payment for {plan.name}",
            template="reminder",
            category=NotificationCategory.PAYMENT_REMINDER,
            context={
                "amount": format_money(installment.amount_cents, plan.currency),
                "due_date": installment.due_date,
                "plan_name": plan.name,
                "sequence_number": installment.sequence_number,
                "installment_count": plan.installment_count,
            },
            reference_type="installment",
            reference_id=installment.id,
        )

    def send_payment_confirmation(
        self,
        transaction: PaymentTransaction,
        installment: Installment | None = None,
    ) -> ServiceResult[Notification]:
        plan = installment.plan if installment else None
        context = {
            "amount": format_money(transaction.amount_cents, transaction.currency),
            "paid_at": (installment.paid_at if installment else None) or timezone.now(),
            "plan_name": plan.name if plan else "",
            "sequence_number": installment.sequence_number if installment else None,
        }
        if plan and plan.amount_remaining_cents > 0:
            context["remaining"] = format_money(plan.amount_remaining_cents, plan.currency)
        return self._send_to_patient(
            transaction.patient,
            subject="Payment received",
            template="payment_confirmation",
            category=NotificationCategory.PAYMENT_CONFIRMATION,
            context=context,
            reference_type="payment_transaction",
            reference_id=transaction.id,
        )

    def send_payment_failed(
        self,
        installment: Installment,
        final: bool,
    ) -> ServiceResult[Notification]:
        plan = installment.plan
        return self._send_to_patient(
            plan.patient,
            subject=f"Payment unsuccessful for {plan.name}",
            template="payment_failed",
            category=NotificationCategory.PAYMENT_FAILED,
            context={
                "amount": format_money(installment.amount_cents, plan.currency),
                "plan_name": plan.name,
                "sequence_number": installment.sequence_number,
                "failure_reason": installment.failure_reason or "The payment was declined",
                "final": final,
            },
            reference_type="installment",
            reference_id=installment.id,
        )

    def send_plan_completed(self, plan: PaymentPlan) -> ServiceResult[Notification]:
        return self._send_to_patient(
            plan.patient,
            subject=f"{plan.name} is paid in full",
            template="plan_completed",
            category=NotificationCategory.PLAN_COMPLETED,
            context={
                "plan_name": plan.name,
                "total": format_money(plan.total_amount_cents, plan.currency),
            },
            reference_type="payment_plan",
            reference_id=plan.id,
        )

    def send_refund_processed(
        self,
        transaction: PaymentTransaction,
        amount_cents: int,
    ) -> ServiceResult[Notification]:
        return self._send_to_patient(
            transaction.patient,
            subject="Refund issued",
            template="refund_processed",
            category=NotificationCategory.REFUND_PROCESSED,
            context={"amount": format_money(amount_cents, transaction.currency)},
            reference_type="payment_transaction",
            reference_id=transaction.id,
        )

    # =========================================================================
    # Staff alerts
    # =========================================================================

    def alert_staff_failure(
        self,
        installment: Installment,
        plan_defaulted: bool,
    ) -> ServiceResult[Notification]:
        plan = installment.plan
        patient = plan.patient
        logger.info(
            "Alerting staff of exhausted installment",
            extra={"installment_id": str(installment.id), "plan_id": str(plan.id)},
        )
        return self._send_to_staff(
            plan.practice,
            subject=f"Payment failed: {patient.full_name} ({plan.name})",
            template="staff_failure_alert",
            context={
                "patient_name": patient.full_name,
                "plan_name": plan.name,
                "sequence_number": installment.sequence_number,
                "amount": format_money(installment.amount_cents, plan.currency),
                "failure_reason": installment.failure_reason or installment.failure_code,
                "attempt_count": installment.attempt_count,
                "plan_defaulted": plan_defaulted,
                "installment_id": installment.id,
                "plan_id": plan.id,
            },
            reference_type="installment",
            reference_id=installment.id,
        )

    def alert_staff_dispute(
        self,
        transaction: PaymentTransaction,
        invoice: Invoice | None,
        event: GatewayEvent,
    ) -> ServiceResult[Notification]:
        return self._send_to_staff(
            transaction.practice,
            subject=f"Payment disputed: {transaction.patient.full_name}",
            template="dispute_alert",
            context={
                "patient_name": transaction.patient.full_name,
                "amount": format_money(
                    event.amount_cents or transaction.amount_cents,
                    transaction.currency,
                ),
                "dispute_status": event.dispute_status,
                "dispute_reason": event.dispute_reason,
                "invoice_number": invoice.number if invoice else "",
                "payment_id": transaction.external_transaction_id,
            },
            reference_type="payment_transaction",
            reference_id=transaction.id,
        )
