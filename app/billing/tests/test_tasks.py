"""
Tests for billing Celery tasks.
"""

import datetime

import pytest
from django.utils import timezone

from billing.models import WebhookEvent
from billing.state_machines import InstallmentStatus, WebhookEventStatus
from billing.tasks import cleanup_webhook_events, process_due_installments
from billing.tests.factories import WebhookEventFactory


@pytest.mark.django_db
class TestProcessDueInstallments:
    """Tests for the scheduled billing job task."""

    def test_runs_job_with_settings(self, mock_redis, card, due_installment):
        body = process_due_installments()

        due_installment.refresh_from_db()
        assert body["success"] is True
        assert body["successfulPayments"] == 1
        assert due_installment.status == InstallmentStatus.PAID

    def test_passes_overrides(self, mock_redis, declining_card, due_installment):
        body = process_due_installments(overrides={"max_retry_attempts": 1})

        due_installment.refresh_from_db()
        assert body["defaultedPlans"] == 1
        assert due_installment.status == InstallmentStatus.FAILED

    def test_skipped_when_lease_held(self, mock_redis):
        mock_redis.set.return_value = False

        body = process_due_installments()

        assert body["skipped"] is True
        assert body["success"] is False

    def test_runs_through_celery(self, mock_redis, card, due_installment):
        """Eager Celery in tests executes .delay() inline."""
        body = process_due_installments.delay().get()

        assert body["processedInstallments"] == 1


@pytest.mark.django_db
class TestCleanupWebhookEvents:
    """Tests for purging old webhook markers."""

    def test_deletes_old_processed_events(self):
        old = WebhookEventFactory(processed_at=timezone.now() - datetime.timedelta(days=100))
        recent = WebhookEventFactory(processed_at=timezone.now() - datetime.timedelta(days=10))

        result = cleanup_webhook_events()

        assert result == {"deleted_count": 1}
        assert not WebhookEvent.objects.filter(pk=old.pk).exists()
        assert WebhookEvent.objects.filter(pk=recent.pk).exists()

    def test_keeps_failed_and_processing_events(self):
        long_ago = timezone.now() - datetime.timedelta(days=365)
        WebhookEventFactory(status=WebhookEventStatus.FAILED, processed_at=long_ago)
        WebhookEventFactory(status=WebhookEventStatus.PROCESSING, processed_at=long_ago)

        result = cleanup_webhook_events()

        assert result == {"deleted_count": 0}
        assert WebhookEvent.objects.count() == 2

    def test_custom_retention(self):
        WebhookEventFactory(processed_at=timezone.now() - datetime.timedelta(days=10))

        assert cleanup_webhook_events(days=30) == {"deleted_count": 0}
        assert cleanup_webhook_events(days=7) == {"deleted_count": 1}
