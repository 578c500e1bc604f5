"""
Mock gateway for development and tests.

Charges resolve deterministically from the last four characters of the
payment token, mirroring the processor test-card conventions:

    ...0002  generic decline
    ...9995  insufficient funds
    ...9987  lost card
    ...9979  stolen card
    ...0127  incorrect CVC
    ...0119  processing error (raises GatewayUnavailableError)
    ...0341  accepted, confirmation pending
    anything else succeeds

Webhooks are signed with hex HMAC-SHA256 of the raw body in
`x-mock-signature`. Event body:

    {
        "id": "evt_mock_123",
        "type": "payment.succeeded",
        "data": {"payment_id": "mock_ch_...", "amount": 15000, ...}
    }
"""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from typing import TYPE_CHECKING, Any

from billing.exceptions import (
    GatewayUnavailableError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from billing.gateways.base import (
    ChargeRequest,
    ChargeResult,
    GatewayEvent,
    PaymentGateway,
    signatures_match,
    unknown_event,
)
from billing.state_machines import ProcessorType, WebhookEventKind

if TYPE_CHECKING:
    from billing.conf import MockSettings


DECLINE_SCENARIOS = {
    "0002": ("card_declined", "generic_decline", "Your card was declined."),
    "9995": ("card_declined", "insufficient_funds", "Your card has insufficient funds."),
    "9987": ("card_declined", "lost_card", "Your card was declined."),
    "9979": ("card_declined", "stolen_card", "Your card was declined."),
    "0127": ("incorrect_cvc", "incorrect_cvc", "Your card's security code is incorrect."),
}
PROCESSING_ERROR_SUFFIX = "0119"
PENDING_SUFFIX = "0341"

EVENT_KINDS = {
    "payment.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment.failed": WebhookEventKind.PAYMENT_FAILED,
    "payment_intent.payment_failed": WebhookEventKind.PAYMENT_FAILED,
    "payment.refunded": WebhookEventKind.REFUNDED,
    "charge.refunded": WebhookEventKind.REFUNDED,
    "dispute.created": WebhookEventKind.DISPUTE,
    "charge.dispute.created": WebhookEventKind.DISPUTE,
    "payment_method.attached": WebhookEventKind.PAYMENT_METHOD,
    "payment_method.detached": WebhookEventKind.PAYMENT_METHOD,
}


class MockGateway(PaymentGateway):
    """
    In-process gateway with scripted outcomes.

    Every successful charge returns a fresh "mock_ch_" id and records
    the request in `charges` for inspection.
    """

    processor = ProcessorType.MOCK
    signature_header = "x-mock-signature"

    def __init__(self, settings: MockSettings) -> None:
        self.settings = settings
        self.charges: list[ChargeRequest] = []

    def charge(self, request: ChargeRequest) -> ChargeResult:
        logger = self.get_logger()
        self.charges.append(request)
        suffix = request.payment_token[-4:]
        transaction_id = f"mock_ch_{uuid.uuid4().hex}"

        if suffix == PROCESSING_ERROR_SUFFIX:
            logger.warning(
                "Mock processing error",
                extra={"idempotency_key": request.idempotency_key},
            )
            raise GatewayUnavailableError(
                "An error occurred while processing the card",
                processor=self.processor,
                processor_code="processing_error",
            )

        if suffix in DECLINE_SCENARIOS:
            error_code, decline_code, message = DECLINE_SCENARIOS[suffix]
            logger.info(
                "Mock charge declined",
                extra={"idempotency_key": request.idempotency_key, "decline_code": decline_code},
            )
            return ChargeResult.declined(
                error_code=error_code,
                error_message=message,
                decline_code=decline_code,
                transaction_id=transaction_id,
            )

        if suffix == PENDING_SUFFIX:
            return ChargeResult(
                success=False,
                pending=True,
                transaction_id=transaction_id,
                status="processing",
            )

        logger.info(
            "Mock charge succeeded",
            extra={"idempotency_key": request.idempotency_key, "amount_cents": request.amount_cents},
        )
        return ChargeResult(
            success=True,
            transaction_id=transaction_id,
            status="succeeded",
            raw_response={"id": transaction_id, "amount": request.amount_cents},
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def sign(self, payload: bytes) -> str:
        """Signature a sender would put in x-mock-signature."""
        return hmac.new(
            self.settings.webhook_secret.encode("utf-8"),
            payload,
            hashlib.sha256,
        ).hexdigest()

    def verify_signature(self, payload: bytes, signature: str) -> None:
        if not self.settings.webhook_secret:
            raise WebhookSignatureError(
                "Mock webhook secret is not configured",
                details={"processor": self.processor},
            )
        if not signatures_match(self.sign(payload), signature):
            raise WebhookSignatureError(
                "Invalid webhook signature",
                details={"processor": self.processor},
            )

    def extract_event(self, payload: bytes) -> GatewayEvent:
        try:
            body = json.loads(payload)
            event_id = body["id"]
            event_type = body["type"]
            data: dict[str, Any] = body.get("data") or {}
        except (ValueError, KeyError, TypeError) as e:
            raise WebhookPayloadError(
                "Malformed mock event",
                details={"processor": self.processor, "error": str(e)},
            )
        if not isinstance(data, dict):
            raise WebhookPayloadError(
                "Mock event data must be an object",
                details={"processor": self.processor},
            )

        kind = EVENT_KINDS.get(event_type)
        if kind is None:
            return unknown_event(event_id, event_type, body)

        return GatewayEvent(
            event_id=event_id,
            event_type=event_type,
            kind=kind,
            payment_id=data.get("payment_id"),
            amount_cents=data.get("amount"),
            currency=data.get("currency"),
            refunded_amount_cents=data.get("amount_refunded"),
            refund_amount_cents=data.get("refund_amount"),
            refund_id=data.get("refund_id"),
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
            decline_code=data.get("decline_code"),
            dispute_status=data.get("dispute_status"),
            dispute_reason=data.get("reason"),
            payload=body,
        )
