"""
Square gateway.

Charges cards on file through the Square Payments API over httpx and
verifies Square webhook signatures.

Signature scheme:
    base64(HMAC(signature_key, notification_url + raw_body))
    - x-square-hmacsha256-signature: HMAC-SHA256 (current)
    - x-square-signature: HMAC-SHA1 (legacy)
    Either header is accepted; comparison is constant-time.

Event mapping:
    payment.created/updated (COMPLETED)        -> payment_succeeded
    payment.created/updated (FAILED/CANCELED)  -> payment_failed
    refund.created/updated (COMPLETED)         -> refunded
    dispute.created / dispute.state.updated    -> dispute
    card.created/disabled                      -> payment_method
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import TYPE_CHECKING, Any

import httpx

from billing.exceptions import (
    GatewayAuthenticationError,
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
    get_header,
    signatures_match,
    unknown_event,
)
from billing.state_machines import ProcessorType, WebhookEventKind

if TYPE_CHECKING:
    from collections.abc import Mapping

    from billing.conf import SquareSettings

SHA256_HEADER = "x-square-hmacsha256-signature"
LEGACY_HEADER = "x-square-signature"

# Square rejects idempotency keys longer than 45 characters
SQUARE_IDEMPOTENCY_KEY_LENGTH = 45

DECLINE_CATEGORIES = ("PAYMENT_METHOD_ERROR",)


class SquareGateway(PaymentGateway):
    """
    Gateway backed by the Square Payments API.

    Usage:
        gateway = SquareGateway(config.square)
        result = gateway.charge(request)
    """

    processor = ProcessorType.SQUARE
    signature_header = LEGACY_HEADER

    def __init__(self, settings: SquareSettings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout_seconds,
                headers={
                    "Square-Version": self.settings.api_version,
                    "Authorization": f"Bearer {self.settings.access_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    # =========================================================================
    # Charges
    # =========================================================================

    @staticmethod
    def _square_idempotency_key(key: str) -> str:
        if len(key) <= SQUARE_IDEMPOTENCY_KEY_LENGTH:
            return key
        return hashlib.sha256(key.encode()).hexdigest()[:SQUARE_IDEMPOTENCY_KEY_LENGTH]

    def charge(self, request: ChargeRequest) -> ChargeResult:
        logger = self.get_logger()
        log_context = {
            "operation": "charge",
            "processor": self.processor,
            "amount_cents": request.amount_cents,
            "currency": request.currency,
            "idempotency_key": request.idempotency_key,
        }
        body: dict[str, Any] = {
            "source_id": request.payment_token,
            "idempotency_key": self._square_idempotency_key(request.idempotency_key),
            "amount_money": {
                "amount": request.amount_cents,
                "currency": request.currency.upper(),
            },
            "autocomplete": True,
        }
        if request.customer_id:
            body["customer_id"] = request.customer_id
        if self.settings.location_id:
            body["location_id"] = self.settings.location_id
        if request.description:
            body["note"] = request.description[:500]
        reference = request.metadata.get("installment_id")
        if reference:
            body["reference_id"] = reference[:40]

        start_time = time.time()
        logger.info("Starting Square operation", extra=log_context)

        try:
            response = self._get_client().post("/v2/payments", json=body)
        except httpx.HTTPError as e:
            logger.error(
                "Connection error to Square",
                extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
                exc_info=True,
            )
            raise GatewayUnavailableError(
                "Could not connect to Square",
                processor=self.processor,
                processor_code=e.__class__.__name__,
            )

        duration_ms = (time.time() - start_time) * 1000
        log_context = {**log_context, "status_code": response.status_code, "duration_ms": duration_ms}

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Square unavailable", extra=log_context)
            raise GatewayUnavailableError(
                f"Square returned HTTP {response.status_code}",
                processor=self.processor,
                processor_code=str(response.status_code),
            )
        if response.status_code == 401:
            logger.critical("Square authentication failed - check access token", extra=log_context)
            raise GatewayAuthenticationError(
                "Square rejected the access token",
                processor=self.processor,
                processor_code="UNAUTHORIZED",
            )

        payment = data.get("payment") or {}
        errors = data.get("errors") or []

        if response.is_success:
            status = payment.get("status", "")
            logger.info(
                "Square operation completed",
                extra={**log_context, "payment_id": payment.get("id"), "status": status},
            )
            raw = {"id": payment.get("id"), "status": status}
            if status == "COMPLETED":
                return ChargeResult(
                    success=True,
                    transaction_id=payment.get("id"),
                    status=status,
                    raw_response=raw,
                )
            if status in ("APPROVED", "PENDING"):
                return ChargeResult(
                    success=False,
                    pending=True,
                    transaction_id=payment.get("id"),
                    status=status,
                    raw_response=raw,
                )
            return ChargeResult.declined(
                error_code=status or "UNKNOWN_STATUS",
                error_message=f"Square payment status {status}",
                transaction_id=payment.get("id"),
                raw_response=raw,
            )

        first_error = errors[0] if errors else {}
        if first_error.get("category") in DECLINE_CATEGORIES:
            logger.warning(
                "Card declined by Square",
                extra={**log_context, "decline_code": first_error.get("code")},
            )
            return ChargeResult.declined(
                error_code=first_error.get("code", "CARD_DECLINED"),
                error_message=first_error.get("detail", "Card declined"),
                decline_code=first_error.get("code"),
                transaction_id=payment.get("id"),
                raw_response={"errors": errors},
            )

        logger.error("Invalid request to Square", extra={**log_context, "errors": errors})
        raise GatewayRequestError(
            first_error.get("detail", f"Square returned HTTP {response.status_code}"),
            processor=self.processor,
            processor_code=first_error.get("code"),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def signature_from_headers(self, headers: Mapping[str, str]) -> str | None:
        return get_header(headers, SHA256_HEADER) or get_header(headers, LEGACY_HEADER)

    def _expected_signatures(self, payload: bytes) -> list[str]:
        key = self.settings.webhook_signature_key.encode("utf-8")
        message = self.settings.notification_url.encode("utf-8") + payload
        return [
            base64.b64encode(hmac.new(key, message, digestmod).digest()).decode("utf-8")
            for digestmod in (hashlib.sha256, hashlib.sha1)
        ]

    def verify_signature(self, payload: bytes, signature: str) -> None:
        if not self.settings.webhook_signature_key or not self.settings.notification_url:
            raise WebhookSignatureError(
                "Square webhook signature key is not configured",
                details={"processor": self.processor},
            )
        matched = False
        for expected in self._expected_signatures(payload):
            # Evaluate both digests so timing does not reveal which one matched
            matched = signatures_match(expected, signature) or matched
        if not matched:
            raise WebhookSignatureError(
                "Invalid webhook signature",
                details={"processor": self.processor},
            )

    def extract_event(self, payload: bytes) -> GatewayEvent:
        try:
            body = json.loads(payload)
            event_id = body["event_id"]
            event_type = body["type"]
            obj = (body.get("data") or {}).get("object") or {}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise WebhookPayloadError(
                "Malformed Square event",
                details={"processor": self.processor, "error": str(e)},
            )

        if event_type in ("payment.created", "payment.updated"):
            payment = obj.get("payment") or {}
            status = payment.get("status")
            money = payment.get("amount_money") or {}
            common = {
                "event_id": event_id,
                "event_type": event_type,
                "payment_id": payment.get("id"),
                "amount_cents": money.get("amount"),
                "currency": (money.get("currency") or "").lower() or None,
                "payload": body,
            }
            if status == "COMPLETED":
                return GatewayEvent(kind=WebhookEventKind.PAYMENT_SUCCEEDED, **common)
            if status in ("FAILED", "CANCELED"):
                return GatewayEvent(
                    kind=WebhookEventKind.PAYMENT_FAILED,
                    failure_code=status,
                    failure_message=f"Square payment {status.lower()}",
                    **common,
                )
            return unknown_event(event_id, event_type, body)

        if event_type in ("refund.created", "refund.updated"):
            refund = obj.get("refund") or {}
            if refund.get("status") != "COMPLETED":
                return unknown_event(event_id, event_type, body)
            money = refund.get("amount_money") or {}
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.REFUNDED,
                payment_id=refund.get("payment_id"),
                refund_id=refund.get("id"),
                refund_amount_cents=money.get("amount"),
                currency=(money.get("currency") or "").lower() or None,
                payload=body,
            )

        if event_type in ("dispute.created", "dispute.state.updated", "dispute.state.changed"):
            dispute = obj.get("dispute") or {}
            disputed = dispute.get("disputed_payment") or {}
            money = dispute.get("amount_money") or {}
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.DISPUTE,
                payment_id=disputed.get("payment_id") or dispute.get("payment_id"),
                amount_cents=money.get("amount"),
                dispute_status=(dispute.get("state") or "").lower() or None,
                dispute_reason=(dispute.get("reason") or "").lower() or None,
                payload=body,
            )

        if event_type in ("card.created", "card.disabled", "card.updated"):
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                kind=WebhookEventKind.PAYMENT_METHOD,
                payload=body,
            )

        return unknown_event(event_id, event_type, body)
