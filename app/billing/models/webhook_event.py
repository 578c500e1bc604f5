"""
WebhookEvent model for processor webhook tracking.

Stores every verified webhook event for idempotent processing and audit.
The (processor, event_id) unique constraint is the idempotency key: the
same processor event is applied at most once, whatever the number of
deliveries.

Usage:
    from billing.models import WebhookEvent
    from billing.state_machines import WebhookEventStatus

    existing = WebhookEvent.objects.filter(
        processor="stripe", event_id="evt_123"
    ).first()
    if existing and existing.is_processed:
        # Re-delivery - skip
        ...
"""

from __future__ import annotations

from datetime import timedelta

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import (
    ProcessorType,
    WebhookEventKind,
    WebhookEventStatus,
)


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks processor webhook events for idempotent processing.

    Processing Flow:
        1. Webhook arrives, gateway verifies the signature
        2. Look up WebhookEvent by (processor, event_id)
        3. If PROCESSED -> skipped
        4. If PROCESSING and recently touched -> skipped (in flight)
        5. Otherwise write/refresh the PROCESSING marker
        6. Dispatch to the handler for the event kind
        7. Mark PROCESSED in the same transaction as the handler's writes,
           or FAILED (outside it) if the handler raised

    Fields:
        processor: Processor that sent the event
        event_id: Processor's event identifier
        event_type: Processor's raw event type string
        event_kind: Normalized kind used for dispatch
        payload: Full verified JSON body
        status: Processing status
        delivery_count: Number of deliveries that reached processing
        actions: Action log written by the handler
        processed_at: When the event was applied
        error_message: Error details if processing failed
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    processor = models.CharField(max_length=20, choices=ProcessorType.choices)
    event_id = models.CharField(
        max_length=255,
        help_text="Processor event id - unique per processor for idempotency",
    )
    event_type = models.CharField(max_length=100, db_index=True)
    event_kind = models.CharField(
        max_length=30,
        choices=WebhookEventKind.choices,
        default=WebhookEventKind.IGNORED,
    )

    # ==========================================================================
    # Payload
    # ==========================================================================

    payload = models.JSONField(default=dict)

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PROCESSING,
        db_index=True,
    )
    delivery_count = models.PositiveSmallIntegerField(default=0)
    actions = models.JSONField(default=list, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="webhook_status_created_idx"),
            models.Index(fields=["event_type", "created_at"], name="webhook_type_created_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["processor", "event_id"],
                name="unique_webhook_event_per_processor",
            ),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.processor}:{self.event_id}, {self.event_type})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    def is_in_flight(self, stale_after_seconds: int) -> bool:
        """
        Whether another delivery is processing this event right now.

        A PROCESSING marker older than stale_after_seconds is treated as
        abandoned (the worker crashed) and may be taken over.
        """
        if self.status != WebhookEventStatus.PROCESSING:
            return False
        return self.updated_at > timezone.now() - timedelta(seconds=stale_after_seconds)

    def mark_processing(self) -> None:
        """
        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.PROCESSING
        self.delivery_count += 1
        self.error_message = None

    def mark_processed(self, actions: list[dict]) -> None:
        """
        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.PROCESSED
        self.actions = actions
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        """
        Note: Does not save - caller must save after calling.
        """
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message
