"""
Payment plan enrollment.

Creates plans with their installment schedule and handles staff actions
on existing plans.

Schedule rules:
    - Installments are equal; the last one absorbs the remainder
    - WEEKLY/BIWEEKLY due dates step 7/14 days from the start date
    - MONTHLY due dates keep the start day of month, clamped to the last
      day of shorter months (Jan 31 -> Feb 28 -> Mar 31)

Usage:
    from billing.services import PaymentPlanService

    result = PaymentPlanService.create_plan(
        patient=patient,
        total_amount_cents=45000,
        installment_count=3,
        start_date=date(2025, 1, 31),
        frequency=PlanFrequency.MONTHLY,
    )
"""

from __future__ import annotations

import calendar
import datetime
from datetime import timedelta
from typing import TYPE_CHECKING

from core.services import BaseService, ServiceResult

from billing.locks import lock_row
from billing.models import Installment, PaymentPlan
from billing.state_machines import InstallmentStatus, PaymentPlanStatus, PlanFrequency

if TYPE_CHECKING:
    from billing.models import Invoice
    from practices.models import Patient


def add_months(start: datetime.date, months: int) -> datetime.date:
    """Same day of month `months` later, clamped to the month's last day."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, min(start.day, last_day))


def schedule_due_dates(start: datetime.date, count: int, frequency: str) -> list[datetime.date]:
    if frequency == PlanFrequency.WEEKLY:
        return [start + timedelta(weeks=i) for i in range(count)]
    if frequency == PlanFrequency.BIWEEKLY:
        return [start + timedelta(weeks=2 * i) for i in range(count)]
    return [add_months(start, i) for i in range(count)]


def split_amount(total_cents: int, count: int) -> list[int]:
    base = total_cents // count
    amounts = [base] * count
    amounts[-1] += total_cents - base * count
    return amounts


class PaymentPlanService(BaseService):
    """
    Payment plan operations.

    Methods:
        create_plan: Enroll a patient in a plan with its schedule
        cancel_plan: Stop billing an ACTIVE plan
        reset_installment: Re-open a FAILED installment for retry
    """

    @classmethod
    def create_plan(
        cls,
        patient: Patient,
        total_amount_cents: int,
        installment_count: int,
        start_date: datetime.date,
        frequency: str = PlanFrequency.MONTHLY,
        invoice: Invoice | None = None,
        name: str = "",
        currency: str = "usd",
    ) -> ServiceResult[PaymentPlan]:
        validation = cls.validate_required(patient=patient, start_date=start_date)
        if validation is not None:
            return validation

        errors: dict[str, list[str]] = {}
        if installment_count < 1:
            errors["installment_count"] = ["Must be at least 1."]
        if total_amount_cents <= 0:
            errors["total_amount_cents"] = ["Must be greater than zero."]
        elif installment_count >= 1 and total_amount_cents < installment_count:
            errors["total_amount_cents"] = ["Too small to split into that many installments."]
        if frequency not in PlanFrequency.values:
            errors["frequency"] = [f"Must be one of: {', '.join(PlanFrequency.values)}."]
        if invoice is not None and invoice.patient_id != patient.id:
            errors["invoice"] = ["Invoice belongs to a different patient."]
        if errors:
            return ServiceResult.failure(
                "Invalid payment plan",
                error_code="VALIDATION_ERROR",
                errors=errors,
            )

        amounts = split_amount(total_amount_cents, installment_count)
        due_dates = schedule_due_dates(start_date, installment_count, frequency)

        with cls.atomic():
            plan = PaymentPlan.objects.create(
                practice_id=patient.practice_id,
                patient=patient,
                invoice=invoice,
                name=name or f"{installment_count}-payment plan",
                total_amount_cents=total_amount_cents,
                installment_count=installment_count,
                installment_amount_cents=amounts[0],
                currency=currency,
                frequency=frequency,
                start_date=start_date,
            )
            Installment.objects.bulk_create(
                [
                    Installment(
                        plan=plan,
                        sequence_number=i + 1,
                        due_date=due_date,
                        amount_cents=amount,
                    )
                    for i, (due_date, amount) in enumerate(zip(due_dates, amounts))
                ]
            )

        cls.get_logger().info(
            f"Created payment plan {plan.id}",
            extra={
                "plan_id": str(plan.id),
                "patient_id": str(patient.id),
                "total_amount_cents": total_amount_cents,
                "installment_count": installment_count,
            },
        )
        return ServiceResult.success(plan)

    @classmethod
    def cancel_plan(cls, plan: PaymentPlan, reason: str = "") -> ServiceResult[PaymentPlan]:
        """
        Cancel an ACTIVE plan.

        Unpaid installments are left as they are; the billing job only
        selects installments of ACTIVE plans.
        """
        with cls.atomic():
            locked = lock_row(PaymentPlan, plan.pk)
            if locked.status != PaymentPlanStatus.ACTIVE:
                return ServiceResult.failure(
                    f"Cannot cancel a {locked.status} plan",
                    error_code="PLAN_NOT_ACTIVE",
                )
            locked.cancel(reason=reason)
            locked.save(update_fields=["status", "cancelled_at", "status_reason", "updated_at"])

        cls.get_logger().info(f"Cancelled payment plan {locked.id}", extra={"reason": reason})
        return ServiceResult.success(locked)

    @classmethod
    def reset_installment(cls, installment: Installment) -> ServiceResult[Installment]:
        """Re-open a FAILED installment of an ACTIVE plan with a fresh attempt count."""
        with cls.atomic():
            locked = lock_row(Installment, installment.pk, select_related=("plan",))
            if locked.status != InstallmentStatus.FAILED:
                return ServiceResult.failure(
                    f"Only failed installments can be reset (status is {locked.status})",
                    error_code="INSTALLMENT_NOT_FAILED",
                )
            if locked.plan.status != PaymentPlanStatus.ACTIVE:
                return ServiceResult.failure(
                    f"Plan is {locked.plan.status}",
                    error_code="PLAN_NOT_ACTIVE",
                )
            locked.reset_for_retry()
            locked.save(update_fields=["status", "attempt_count", "last_attempted_at", "updated_at"])

        cls.get_logger().info(f"Reset installment {locked.id} for retry")
        return ServiceResult.success(locked)
