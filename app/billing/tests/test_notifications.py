"""
Tests for billing email routing.
"""

import pytest
from django.core import mail

from billing.notifications import BillingNotifier, format_money
from billing.state_machines import InstallmentStatus
from billing.tests.factories import InstallmentFactory, PaymentTransactionFactory
from notifications.models import DeliveryStatus, Notification, NotificationCategory


@pytest.mark.parametrize(
    "cents, currency, expected",
    [(15000, "usd", "$150.00"), (123456, "USD", "$1,234.56"), (999, "eur", "9.99 EUR")],
)
def test_format_money(cents, currency, expected):
    assert format_money(cents, currency) == expected


@pytest.mark.django_db
class TestPatientMessages:
    def test_reminder_sent_with_consent(self, notifier, due_installment):
        result = notifier.send_reminder(due_installment)

        assert result.success
        assert result.data.category == NotificationCategory.PAYMENT_REMINDER
        assert result.data.reference_id == due_installment.id
        assert mail.outbox[0].to == [due_installment.plan.patient.email]
        assert "$150.00" in mail.outbox[0].body

    def test_no_consent_is_recorded_as_skipped(self, notifier, patient, due_installment):
        patient.allow_email = False
        patient.save()
        due_installment.refresh_from_db()

        result = notifier.send_reminder(due_installment)

        assert not result.success
        assert mail.outbox == []
        assert Notification.objects.get().status == DeliveryStatus.SKIPPED

    def test_confirmation_mentions_remaining_balance(self, notifier, plan):
        first = InstallmentFactory(plan=plan, sequence_number=1, amount_cents=5000, status=InstallmentStatus.PAID)
        InstallmentFactory(plan=plan, sequence_number=2, amount_cents=10000)
        transaction = PaymentTransactionFactory(installment=first)

        result = notifier.send_payment_confirmation(transaction, first)

        assert result.success
        assert "$100.00" in mail.outbox[0].body

    def test_final_failure_notice(self, notifier, due_installment):
        due_installment.failure_reason = "Your card has insufficient funds."

        notifier.send_payment_failed(due_installment, final=True)

        assert "insufficient funds" in mail.outbox[0].body


@pytest.mark.django_db
class TestStaffAlerts:
    def test_uses_practice_billing_address(self, notifier, due_installment):
        result = notifier.alert_staff_failure(due_installment, plan_defaulted=True)

        assert result.success
        assert result.data.category == NotificationCategory.STAFF_ALERT
        assert mail.outbox[0].to == ["billing@practice.example.com"]

    def test_falls_back_to_contact_then_config(self, practice):
        notifier = BillingNotifier(staff_alert_email="fallback@test.example.com")
        practice.billing_alert_email = ""

        assert notifier.staff_address(practice) == practice.contact_email

        practice.contact_email = ""

        assert notifier.staff_address(practice) == "fallback@test.example.com"

    def test_no_address_anywhere_is_skipped(self, due_installment):
        practice = due_installment.plan.practice
        practice.billing_alert_email = ""
        practice.contact_email = ""
        practice.save()
        due_installment.refresh_from_db()

        result = BillingNotifier().alert_staff_failure(due_installment, plan_defaulted=False)

        assert not result.success
        assert result.error_code == "EMAIL_SKIPPED"
