"""
Webhook ingestion.

WebhookIngestionService takes a raw request body and signature and applies
the event exactly once:

    1. Resolve the gateway for the processor (default: primary processor)
    2. Verify the signature and parse the event (nothing is written on failure)
    3. Check the WebhookEvent marker for (processor, event_id):
       PROCESSED -> skip; PROCESSING and fresh -> skip (in flight);
       FAILED or stale PROCESSING -> take over
    4. Act: write or claim the PROCESSING marker
    5. Dispatch by kind and mark PROCESSED in one database transaction
    6. Handler failure marks the event FAILED and reports processed=False

Duplicate-write races are tolerated rather than prevented: two deliveries
racing to create the marker resolve through the unique constraint (the
loser skips), and two racing to take over a FAILED marker resolve through
a conditional UPDATE (the loser skips). Handler writes are idempotent in
any case (PAID-is-terminal, ledger idempotency keys).

Usage:
    service = WebhookIngestionService(get_billing_config())
    gateway = service.gateway_for(request.GET.get("processor"))
    result = service.ingest(request.body, gateway.signature_from_headers(request.headers))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from core.services import BaseService

from billing.exceptions import BillingError
from billing.gateways import get_gateway
from billing.models import WebhookEvent
from billing.notifications import BillingNotifier
from billing.state_machines import WebhookEventStatus
from billing.webhooks.handlers import HandlerContext, dispatch_event

if TYPE_CHECKING:
    from typing import Any

    from billing.conf import BillingConfig
    from billing.gateways.base import GatewayEvent, PaymentGateway


@dataclass
class WebhookIngestionResult:
    """
    Outcome of one webhook delivery.

    Attributes:
        processed: The event was applied by this delivery
        skipped: The event was already applied or is being applied
        skip_reason: already_processed, in_flight or duplicate_delivery
        event_id / event_type: From the verified event
        actions: Handler action log
        errors: Non-fatal follow-up failures (notifications)
        error: Fatal processing error; the sender should redeliver
    """

    processor: str
    event_id: str
    event_type: str
    received: bool = True
    processed: bool = False
    skipped: bool = False
    skip_reason: str | None = None
    actions: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return not self.processed and not self.skipped

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "received": self.received,
            "processed": self.processed,
            "skipped": self.skipped,
            "eventId": self.event_id,
            "eventType": self.event_type,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


class WebhookIngestionService(BaseService):
    """
    Verifies, deduplicates and applies processor webhooks.

    Args:
        config: Billing configuration
        notifier: Email notifier (default: BillingNotifier from config)
    """

    def __init__(self, config: BillingConfig, notifier: BillingNotifier | None = None) -> None:
        self.config = config
        self.notifier = notifier or BillingNotifier(staff_alert_email=config.job.staff_alert_email)
        self._gateways: dict[str, PaymentGateway] = {}

    def gateway_for(self, processor: str | None = None) -> PaymentGateway:
        """
        Gateway for a processor name (default: the primary processor).

        Raises:
            UnknownProcessorError: No gateway for the name
        """
        name = (processor or self.config.primary_processor).lower()
        if name not in self._gateways:
            self._gateways[name] = get_gateway(name, self.config)
        return self._gateways[name]

    def ingest(
        self,
        payload: bytes,
        signature: str | None,
        processor: str | None = None,
    ) -> WebhookIngestionResult:
        """
        Apply one webhook delivery.

        Raises:
            WebhookSignatureError: Missing or invalid signature
            WebhookPayloadError: Body is not a well-formed event
            UnknownProcessorError: No gateway for the processor
        """
        logger = self.get_logger()
        gateway = self.gateway_for(processor)
        event = gateway.parse_webhook(payload, signature)

        result = WebhookIngestionResult(
            processor=gateway.processor,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        log_context = {
            "processor": gateway.processor,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "event_kind": event.kind,
        }
        logger.info("Webhook received", extra=log_context)

        webhook_event, skip_reason = self._claim(gateway.processor, event)
        if webhook_event is None:
            logger.info(f"Webhook skipped: {skip_reason}", extra=log_context)
            result.skipped = True
            result.skip_reason = skip_reason
            return result

        ctx = HandlerContext(
            event=event,
            processor=gateway.processor,
            config=self.config,
            notifier=self.notifier,
        )
        try:
            with transaction.atomic():
                handler_result = dispatch_event(ctx)
                if not handler_result.success:
                    raise BillingError(
                        handler_result.error or "Webhook handler failed",
                        error_code=handler_result.error_code,
                    )
                webhook_event.mark_processed(ctx.actions)
                webhook_event.save(
                    update_fields=["status", "actions", "processed_at", "error_message", "updated_at"]
                )
        except Exception as e:
            failure = self.handle_exception(e, f"Webhook {event.event_id} processing failed")
            webhook_event.mark_failed(failure.error or str(e))
            webhook_event.save(update_fields=["status", "error_message", "updated_at"])
            result.error = failure.error
            return result

        result.processed = True
        result.actions = ctx.actions
        result.errors = ctx.run_deferred()
        logger.info(
            "Webhook processed",
            extra={**log_context, "actions": len(ctx.actions), "errors": len(result.errors)},
        )
        return result

    def _claim(
        self,
        processor: str,
        event: GatewayEvent,
    ) -> tuple[WebhookEvent | None, str | None]:
        """
        Check-then-act on the (processor, event_id) marker.

        Returns:
            (marker, None) when this delivery should process the event,
            (None, reason) when it should skip
        """
        existing = WebhookEvent.objects.filter(processor=processor, event_id=event.event_id).first()

        if existing is None:
            webhook_event = WebhookEvent(
                processor=processor,
                event_id=event.event_id,
                event_type=event.event_type,
                event_kind=event.kind,
                payload=event.payload,
            )
            webhook_event.mark_processing()
            try:
                with transaction.atomic():
                    webhook_event.save(force_insert=True)
            except IntegrityError:
                return None, "duplicate_delivery"
            return webhook_event, None

        if existing.is_processed:
            return None, "already_processed"
        if existing.is_in_flight(self.config.stale_processing_seconds):
            return None, "in_flight"

        # FAILED or abandoned PROCESSING: take over only if nobody else has
        claimed = WebhookEvent.objects.filter(
            pk=existing.pk,
            status=existing.status,
            updated_at=existing.updated_at,
        ).update(
            status=WebhookEventStatus.PROCESSING,
            delivery_count=F("delivery_count") + 1,
            error_message=None,
            updated_at=timezone.now(),
        )
        if not claimed:
            return None, "in_flight"
        existing.refresh_from_db()
        return existing, None
