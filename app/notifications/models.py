"""
Notification records.

Every outbound message is stored, whether it went out, failed or was
skipped, so staff can answer "did the patient get told?" from the admin.

Design Decisions:
    - Notification inherits from BaseModel (timestamps, ordering)
    - Practice uses SET_NULL (keep history if a practice is removed)
    - The referenced object is stored as a type/id pair rather than a
      GenericForeignKey; installments and transactions use UUID keys

Usage:
    from notifications.models import Notification, NotificationCategory

    Notification.objects.filter(
        category=NotificationCategory.PAYMENT_FAILED,
        reference_id=installment.id,
    )
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


# =============================================================================
# Enums
# =============================================================================


class NotificationCategory(models.TextChoices):
    """Kinds of billing messages."""

    PAYMENT_REMINDER = "payment_reminder", "Payment Reminder"
    PAYMENT_CONFIRMATION = "payment_confirmation", "Payment Confirmation"
    PAYMENT_FAILED = "payment_failed", "Payment Failed"
    PLAN_COMPLETED = "plan_completed", "Plan Completed"
    REFUND_PROCESSED = "refund_processed", "Refund Processed"
    STAFF_ALERT = "staff_alert", "Staff Alert"


class DeliveryStatus(models.TextChoices):
    """
    Outcome of a send.

    SKIPPED covers recipients without an address or without consent.
    """

    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"
    SKIPPED = "skipped", "Skipped"


# =============================================================================
# Models
# =============================================================================


class Notification(UUIDPrimaryKeyMixin, BaseModel):
    """
    One outbound email.

    Fields:
        practice: Tenant the message was sent for
        recipient_email: Address it was sent to (blank when skipped)
        category: NotificationCategory
        subject / body: Rendered content (plain text)
        status: DeliveryStatus
        failure_reason: Backend error or skip reason
        reference_type / reference_id: Object the message is about
        sent_at: When the mail backend accepted the message
    """

    practice = models.ForeignKey(
        "practices.Practice",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="notifications",
    )
    recipient_email = models.EmailField(blank=True, default="")
    category = models.CharField(
        max_length=30,
        choices=NotificationCategory.choices,
        db_index=True,
    )
    subject = models.CharField(max_length=255)
    body = models.TextField(blank=True, default="")
    status = models.CharField(
        max_length=20,
        choices=DeliveryStatus.choices,
        db_index=True,
    )
    failure_reason = models.TextField(blank=True, default="")
    reference_type = models.CharField(max_length=50, blank=True, default="")
    reference_id = models.UUIDField(null=True, blank=True, db_index=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["category", "created_at"], name="notification_category_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="notification_reference_idx"),
        ]

    def __str__(self) -> str:
        return f"Notification({self.category}, {self.recipient_email or '-'}, {self.status})"

    @property
    def was_sent(self) -> bool:
        return self.status == DeliveryStatus.SENT
