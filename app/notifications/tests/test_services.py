"""
Tests for the email notification service.

Mail goes to Django's locmem backend in tests; mail.outbox holds what
was sent.
"""

import pytest
from django.core import mail
from django.template import TemplateDoesNotExist

from notifications.models import DeliveryStatus, Notification, NotificationCategory
from notifications.services import NotificationService

TEMPLATE = "billing/email/plan_completed"
CONTEXT = {"patient_name": "Jane Doe", "practice_name": "Spine & Wellness", "plan_name": "Care plan", "total": "$450.00"}


@pytest.mark.django_db
class TestSendEmail:
    """Tests for NotificationService.send_email()."""

    def test_sends_and_records(self):
        result = NotificationService.send_email(
            to="jane@example.com",
            subject="Care plan is paid in full",
            template_name=TEMPLATE,
            context=CONTEXT,
            category=NotificationCategory.PLAN_COMPLETED,
        )

        assert result.success
        notification = result.data
        assert notification.status == DeliveryStatus.SENT
        assert notification.sent_at is not None
        assert notification.was_sent
        assert len(mail.outbox) == 1
        assert mail.outbox[0].to == ["jane@example.com"]
        assert "Jane Doe" in mail.outbox[0].body

    def test_blank_recipient_is_skipped(self):
        result = NotificationService.send_email(
            to="",
            subject="Payment failed",
            template_name=TEMPLATE,
            context=CONTEXT,
            category=NotificationCategory.STAFF_ALERT,
        )

        assert not result.success
        assert result.error_code == "EMAIL_SKIPPED"
        assert mail.outbox == []
        assert Notification.objects.get().status == DeliveryStatus.SKIPPED

    def test_backend_failure_returns_failure(self, mocker):
        mocker.patch(
            "notifications.services.EmailMultiAlternatives.send",
            side_effect=OSError("Connection refused"),
        )

        result = NotificationService.send_email(
            to="jane@example.com",
            subject="Payment received",
            template_name=TEMPLATE,
            context=CONTEXT,
            category=NotificationCategory.PAYMENT_CONFIRMATION,
        )

        assert not result.success
        assert result.error_code == "EMAIL_DELIVERY_FAILED"
        notification = Notification.objects.get()
        assert notification.status == DeliveryStatus.FAILED
        assert "Connection refused" in notification.failure_reason

    def test_missing_template_raises(self):
        with pytest.raises(TemplateDoesNotExist):
            NotificationService.send_email(
                to="jane@example.com",
                subject="Oops",
                template_name="billing/email/does_not_exist",
                context={},
                category=NotificationCategory.PAYMENT_REMINDER,
            )


@pytest.mark.django_db
class TestRecordSkipped:
    def test_records_reason(self):
        result = NotificationService.record_skipped(
            reason="Patient has not consented to email",
            category=NotificationCategory.PAYMENT_REMINDER,
            subject="Upcoming payment",
        )

        notification = Notification.objects.get()
        assert not result.success
        assert notification.failure_reason == "Patient has not consented to email"
        assert not notification.was_sent
