"""
Tests for payment plan and invoice services.
"""

import datetime

import pytest

from billing.ledger import LedgerService
from billing.services import InvoiceService, PaymentPlanService
from billing.services.plan_service import add_months, schedule_due_dates, split_amount
from billing.state_machines import InstallmentStatus, PaymentPlanStatus, PlanFrequency
from billing.tests.factories import InstallmentFactory, PatientFactory, PaymentPlanFactory


class TestScheduleHelpers:
    """Tests for due-date and amount splitting helpers."""

    def test_split_amount_puts_remainder_on_last(self):
        assert split_amount(10000, 3) == [3333, 3333, 3334]

    def test_split_amount_even(self):
        assert split_amount(45000, 3) == [15000, 15000, 15000]

    def test_add_months_clamps_to_month_end(self):
        assert add_months(datetime.date(2026, 1, 31), 1) == datetime.date(2026, 2, 28)
        assert add_months(datetime.date(2026, 11, 15), 3) == datetime.date(2027, 2, 15)

    @pytest.mark.parametrize(
        "frequency, expected",
        [
            (PlanFrequency.WEEKLY, [datetime.date(2026, 3, 2), datetime.date(2026, 3, 9)]),
            (PlanFrequency.BIWEEKLY, [datetime.date(2026, 3, 2), datetime.date(2026, 3, 16)]),
            (PlanFrequency.MONTHLY, [datetime.date(2026, 3, 2), datetime.date(2026, 4, 2)]),
        ],
    )
    def test_schedule_due_dates(self, frequency, expected):
        assert schedule_due_dates(datetime.date(2026, 3, 2), 2, frequency) == expected


@pytest.mark.django_db
class TestCreatePlan:
    """Tests for PaymentPlanService.create_plan."""

    def test_creates_schedule(self, patient):
        result = PaymentPlanService.create_plan(
            patient=patient,
            total_amount_cents=45000,
            installment_count=3,
            start_date=datetime.date(2026, 3, 2),
        )

        assert result.success
        plan = result.data
        installments = list(plan.installments.order_by("sequence_number"))
        assert plan.status == PaymentPlanStatus.ACTIVE
        assert plan.practice_id == patient.practice_id
        assert plan.name == "3-payment plan"
        assert [i.amount_cents for i in installments] == [15000, 15000, 15000]
        assert [i.due_date for i in installments] == [
            datetime.date(2026, 3, 2),
            datetime.date(2026, 4, 2),
            datetime.date(2026, 5, 2),
        ]
        assert all(i.status == InstallmentStatus.PENDING for i in installments)

    def test_links_invoice(self, patient):
        invoice = InvoiceService.create_invoice(patient=patient, amount_cents=30000).data

        result = PaymentPlanService.create_plan(
            patient=patient,
            total_amount_cents=30000,
            installment_count=2,
            start_date=datetime.date(2026, 3, 2),
            invoice=invoice,
        )

        assert result.success
        assert result.data.invoice == invoice

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"installment_count": 0}, "installment_count"),
            ({"total_amount_cents": 0}, "total_amount_cents"),
            ({"total_amount_cents": 2, "installment_count": 3}, "total_amount_cents"),
            ({"frequency": "daily"}, "frequency"),
        ],
    )
    def test_rejects_invalid_input(self, patient, kwargs, field):
        params = {
            "patient": patient,
            "total_amount_cents": 45000,
            "installment_count": 3,
            "start_date": datetime.date(2026, 3, 2),
            **kwargs,
        }

        result = PaymentPlanService.create_plan(**params)

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert field in result.errors

    def test_rejects_other_patients_invoice(self, patient):
        other = PatientFactory(practice=patient.practice)
        invoice = InvoiceService.create_invoice(patient=other, amount_cents=10000).data

        result = PaymentPlanService.create_plan(
            patient=patient,
            total_amount_cents=10000,
            installment_count=1,
            start_date=datetime.date(2026, 3, 2),
            invoice=invoice,
        )

        assert not result.success
        assert "invoice" in result.errors

    def test_requires_start_date(self, patient):
        result = PaymentPlanService.create_plan(
            patient=patient,
            total_amount_cents=10000,
            installment_count=1,
            start_date=None,
        )

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"


@pytest.mark.django_db
class TestCancelPlan:
    def test_cancels_active_plan(self):
        plan = PaymentPlanFactory()

        result = PaymentPlanService.cancel_plan(plan, reason="Patient request")

        plan.refresh_from_db()
        assert result.success
        assert plan.status == PaymentPlanStatus.CANCELLED
        assert plan.status_reason == "Patient request"

    def test_rejects_completed_plan(self):
        plan = PaymentPlanFactory(status=PaymentPlanStatus.COMPLETED)

        result = PaymentPlanService.cancel_plan(plan)

        assert not result.success
        assert result.error_code == "PLAN_NOT_ACTIVE"


@pytest.mark.django_db
class TestResetInstallment:
    def test_resets_failed_installment(self):
        installment = InstallmentFactory(status=InstallmentStatus.FAILED, attempt_count=3)

        result = PaymentPlanService.reset_installment(installment)

        installment.refresh_from_db()
        assert result.success
        assert installment.status == InstallmentStatus.RETRYING
        assert installment.attempt_count == 0

    def test_rejects_unfailed_installment(self):
        installment = InstallmentFactory(status=InstallmentStatus.RETRYING)

        result = PaymentPlanService.reset_installment(installment)

        assert not result.success
        assert result.error_code == "INSTALLMENT_NOT_FAILED"

    def test_rejects_defaulted_plan(self):
        plan = PaymentPlanFactory(status=PaymentPlanStatus.DEFAULTED)
        installment = InstallmentFactory(plan=plan, status=InstallmentStatus.FAILED, attempt_count=3)

        result = PaymentPlanService.reset_installment(installment)

        assert not result.success
        assert result.error_code == "PLAN_NOT_ACTIVE"


@pytest.mark.django_db
class TestCreateInvoice:
    """Tests for InvoiceService.create_invoice."""

    def test_posts_charge(self, patient):
        result = InvoiceService.create_invoice(patient=patient, amount_cents=15000, description="Adjustment")

        invoice = result.data
        assert result.success
        assert invoice.number.startswith("INV-")
        assert LedgerService.get_invoice_balance(invoice.id).cents == 15000

    def test_rejects_non_positive_amount(self, patient):
        result = InvoiceService.create_invoice(patient=patient, amount_cents=0)

        assert not result.success
        assert "amount_cents" in result.errors

    def test_rejects_duplicate_number(self, patient):
        InvoiceService.create_invoice(patient=patient, amount_cents=1000, number="INV-1")

        result = InvoiceService.create_invoice(patient=patient, amount_cents=1000, number="INV-1")

        assert not result.success
        assert result.error_code == "INVOICE_NUMBER_EXISTS"

    def test_numbers_are_per_practice(self, patient):
        other_patient = PatientFactory()
        InvoiceService.create_invoice(patient=patient, amount_cents=1000, number="INV-1")

        result = InvoiceService.create_invoice(patient=other_patient, amount_cents=1000, number="INV-1")

        assert result.success
