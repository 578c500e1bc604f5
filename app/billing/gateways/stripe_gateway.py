"""
Stripe gateway.

Charges stored cards with off-session PaymentIntents and verifies
`stripe-signature` webhook headers with the Stripe SDK.

Features:
- Idempotency key on every charge (safe to resubmit after a timeout)
- Stripe SDK errors translated to billing exceptions
- Structured logging with timing metrics

Event mapping:
    payment_intent.succeeded        -> payment_succeeded
    payment_intent.payment_failed   -> payment_failed
    charge.refunded                 -> refunded
    charge.dispute.*                -> dispute
    payment_method.attached/detached -> payment_method
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any

import stripe

from billing.exceptions import (
    GatewayAuthenticationError,
    GatewayError,
    GatewayRequestError,
    GatewayUnavailableError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from billing.gateways.base import (
    ChargeRequest,
    ChargeResult,
    GatewayEvent,
    PaymentGateway,
    unknown_event,
)
from billing.state_machines import ProcessorType, WebhookEventKind

if TYPE_CHECKING:
    from billing.conf import StripeSettings


class StripeGateway(PaymentGateway):
    """
    Gateway backed by the Stripe API.

    Usage:
        gateway = StripeGateway(config.stripe)
        result = gateway.charge(ChargeRequest(
            amount_cents=15000,
            currency="usd",
            payment_token="pm_123",
            customer_id="cus_123",
            idempotency_key=key,
        ))
    """

    processor = ProcessorType.STRIPE
    signature_header = "stripe-signature"

    def __init__(self, settings: StripeSettings) -> None:
        self.settings = settings
        self._configure_stripe()

    def _configure_stripe(self) -> None:
        """Configure SDK-wide network retries."""
        stripe.max_network_retries = self.settings.max_network_retries

    # =========================================================================
    # Charges
    # =========================================================================

    def charge(self, request: ChargeRequest) -> ChargeResult:
        logger = self.get_logger()
        log_context = {
            "operation": "charge",
            "processor": self.processor,
            "amount_cents": request.amount_cents,
            "currency": request.currency,
            "idempotency_key": request.idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            intent = stripe.PaymentIntent.create(
                amount=request.amount_cents,
                currency=request.currency,
                customer=request.customer_id,
                payment_method=request.payment_token,
                off_session=True,
                confirm=True,
                description=request.description or None,
                metadata=request.metadata,
                idempotency_key=request.idempotency_key,
                api_key=self.settings.secret_key,
            )
        except stripe.CardError as e:
            duration_ms = (time.time() - start_time) * 1000
            decline_code = getattr(e, "decline_code", None)
            logger.warning(
                "Card declined by Stripe",
                extra={**log_context, "decline_code": decline_code, "duration_ms": duration_ms},
            )
            return ChargeResult.declined(
                error_code=e.code or "card_declined",
                error_message=str(e.user_message or e),
                decline_code=decline_code,
                transaction_id=self._declined_intent_id(e),
            )
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise  # Never reached

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": duration_ms,
            },
        )

        raw = {"id": intent.id, "status": intent.status, "amount": intent.amount}
        if intent.status == "succeeded":
            return ChargeResult(
                success=True,
                transaction_id=intent.id,
                status=intent.status,
                raw_response=raw,
            )
        if intent.status == "processing":
            return ChargeResult(
                success=False,
                pending=True,
                transaction_id=intent.id,
                status=intent.status,
                raw_response=raw,
            )
        # requires_action / requires_payment_method: the patient must step in
        return ChargeResult.declined(
            error_code="authentication_required",
            error_message="The card requires customer authentication",
            transaction_id=intent.id,
            raw_response=raw,
        )

    @staticmethod
    def _declined_intent_id(error: stripe.CardError) -> str | None:
        body = getattr(error, "json_body", None) or {}
        intent = body.get("error", {}).get("payment_intent") or {}
        return intent.get("id") if isinstance(intent, dict) else None

    def _handle_stripe_error(
        self,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to billing exceptions.

        Raises:
            GatewayUnavailableError: Rate limits, connection and server errors
            GatewayAuthenticationError: Invalid API key
            GatewayRequestError: Invalid parameters
            GatewayError: Anything else from the SDK
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayUnavailableError(
                "Stripe rate limit exceeded",
                processor=self.processor,
                processor_code="rate_limit",
            )
        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Could not connect to Stripe",
                processor=self.processor,
                processor_code="api_connection_error",
            )
        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise GatewayAuthenticationError(
                "Stripe rejected the API key",
                processor=self.processor,
                processor_code="authentication_error",
            )
        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise GatewayRequestError(
                str(error),
                processor=self.processor,
                processor_code=error.code,
            )
        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error",
                processor=self.processor,
                processor_code="api_error",
            )

        logger.error("Unexpected Stripe error", extra=log_context, exc_info=True)
        raise GatewayError(str(error), processor=self.processor)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_signature(self, payload: bytes, signature: str) -> None:
        if not self.settings.webhook_secret:
            raise WebhookSignatureError(
                "Stripe webhook secret is not configured",
                details={"processor": self.processor},
            )
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.settings.webhook_secret,
                tolerance=self.settings.webhook_tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise WebhookSignatureError(
                "Invalid webhook signature",
                details={"processor": self.processor, "error": str(e)},
            )

    def extract_event(self, payload: bytes) -> GatewayEvent:
        try:
            body = json.loads(payload)
            event_id = body["id"]
            event_type = body["type"]
            obj = body["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookPayloadError(
                "Malformed Stripe event",
                details={"processor": self.processor, "error": str(e)},
            )

        if event_type == "payment_intent.succeeded":
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.PAYMENT_SUCCEEDED,
                payment_id=obj.get("id"),
                amount_cents=obj.get("amount_received") or obj.get("amount"),
                currency=obj.get("currency"),
                payload=body,
            )

        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.PAYMENT_FAILED,
                payment_id=obj.get("id"),
                amount_cents=obj.get("amount"),
                currency=obj.get("currency"),
                failure_code=last_error.get("code"),
                failure_message=last_error.get("message"),
                decline_code=last_error.get("decline_code"),
                payload=body,
            )

        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.REFUNDED,
                payment_id=obj.get("payment_intent"),
                amount_cents=obj.get("amount"),
                currency=obj.get("currency"),
                refunded_amount_cents=obj.get("amount_refunded"),
                refund_id=refunds[0].get("id") if refunds else None,
                payload=body,
            )

        if event_type.startswith("charge.dispute."):
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.DISPUTE,
                payment_id=obj.get("payment_intent"),
                amount_cents=obj.get("amount"),
                currency=obj.get("currency"),
                dispute_status=obj.get("status"),
                dispute_reason=obj.get("reason"),
                payload=body,
            )

        if event_type in ("payment_method.attached", "payment_method.detached"):
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.PAYMENT_METHOD,
                payload=body,
            )

        return unknown_event(event_id, event_type, body)
