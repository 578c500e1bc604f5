"""
Celery tasks for billing.

This module provides periodic tasks for:
- Running the installment billing job (scheduled daily by django-celery-beat)
- Purging old processed webhook markers

Usage:
    from billing.tasks import process_due_installments

    # Run the job on a worker now
    process_due_installments.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

from billing.conf import get_billing_config
from billing.models import WebhookEvent
from billing.state_machines import WebhookEventStatus
from billing.workers import run_billing_job

logger = logging.getLogger(__name__)


@shared_task
def process_due_installments(overrides: dict | None = None) -> dict:
    """
    Run the installment billing job.

    Not retried on failure: a failed run leaves every installment in a
    state the next scheduled run picks up.

    Args:
        overrides: Optional BillingJobConfig overrides (snake_case)

    Returns:
        The job response body
    """
    outcome = run_billing_job(get_billing_config(), overrides=overrides)

    if outcome.skipped:
        logger.info("Billing task skipped, another run in progress")
    elif not outcome.success:
        logger.error("Billing task failed", extra={"error": outcome.error})

    return outcome.to_response()


@shared_task
def cleanup_webhook_events(days: int | None = None) -> dict:
    """
    Delete processed webhook markers older than the retention window.

    FAILED and PROCESSING markers are kept for investigation and redelivery.

    Args:
        days: Retention in days (default: WEBHOOK_EVENT_RETENTION_DAYS)

    Returns:
        Dict with count of markers deleted
    """
    if days is None:
        days = get_billing_config().webhook_retention_days
    cutoff = timezone.now() - timedelta(days=days)

    deleted_count, _ = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSED,
        processed_at__lt=cutoff,
    ).delete()

    if deleted_count > 0:
        logger.info(
            f"Deleted {deleted_count} old webhook events",
            extra={"deleted_count": deleted_count, "cutoff_date": cutoff.isoformat()},
        )

    return {"deleted_count": deleted_count}
