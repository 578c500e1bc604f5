"""
Payment gateway interface.

Every processor backend implements PaymentGateway. The billing job only
calls charge(); webhook ingestion only calls parse_webhook(). Neither
branches on which processor is behind the interface.

Data types:
    ChargeRequest: What to charge and with which stored token
    ChargeResult: Outcome of a charge (declines are results, not exceptions)
    GatewayEvent: A verified webhook event, normalized to a WebhookEventKind

Usage:
    from billing.gateways import get_gateway

    gateway = get_gateway(config.primary_processor, config)
    result = gateway.charge(ChargeRequest(...))
    event = gateway.parse_webhook(request.body, signature)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from billing.exceptions import GatewayError, WebhookSignatureError
from billing.state_machines import WebhookEventKind

if TYPE_CHECKING:
    from collections.abc import Mapping


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class ChargeRequest:
    """
    Parameters for charging a stored payment method.

    Attributes:
        amount_cents: Amount in the smallest currency unit
        currency: ISO 4217 currency code
        payment_token: Processor's reusable token for the stored method
        idempotency_key: Unique per attempt; resubmitting the same key
            never charges twice
        customer_id: Processor customer id, when the processor needs one
        description: Statement/receipt description
        metadata: Key-value pairs attached to the processor payment
    """

    amount_cents: int
    currency: str
    payment_token: str
    idempotency_key: str
    customer_id: str | None = None
    description: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if not self.payment_token:
            raise ValueError("payment_token is required")


@dataclass
class ChargeResult:
    """
    Outcome of a charge request.

    Attributes:
        success: Funds confirmed
        pending: Accepted but not yet confirmed; a webhook will settle it
        transaction_id: Processor payment id, when one was created
        status: Processor's raw status string
        error_code / error_message / decline_code: Failure details
        retryable: Whether the failure may clear on a later attempt
        raw_response: Trimmed processor response for audit
    """

    success: bool
    pending: bool = False
    transaction_id: str | None = None
    status: str = ""
    error_code: str | None = None
    error_message: str | None = None
    decline_code: str | None = None
    retryable: bool = False
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def declined(
        cls,
        error_code: str,
        error_message: str,
        decline_code: str | None = None,
        transaction_id: str | None = None,
        raw_response: dict[str, Any] | None = None,
    ) -> ChargeResult:
        return cls(
            success=False,
            transaction_id=transaction_id,
            status="declined",
            error_code=error_code,
            error_message=error_message,
            decline_code=decline_code,
            raw_response=raw_response or {},
        )

    @classmethod
    def from_error(cls, error: GatewayError) -> ChargeResult:
        """Record a gateway exception as a failed attempt."""
        return cls(
            success=False,
            status="error",
            error_code=error.error_code,
            error_message=error.message,
            retryable=error.is_retryable,
        )

    @property
    def failure_reason(self) -> str:
        return self.error_message or self.error_code or "Payment failed"


@dataclass
class GatewayEvent:
    """
    A verified webhook event in processor-neutral form.

    Attributes:
        event_id: Processor event id (idempotency key with the processor)
        event_type: Processor's raw event type
        kind: Normalized kind used for dispatch
        payment_id: Processor payment id the event refers to
        amount_cents: Payment amount, when present
        refunded_amount_cents: Cumulative refunded amount (refund events)
        refund_amount_cents: Amount of this single refund, when the processor
            does not report a cumulative total
        refund_id: Processor refund id (refund events)
        failure_code / failure_message / decline_code: Failure details
        dispute_status / dispute_reason: Dispute details
        payload: The full verified body
    """

    event_id: str
    event_type: str
    kind: str
    payment_id: str | None = None
    amount_cents: int | None = None
    currency: str | None = None
    refunded_amount_cents: int | None = None
    refund_amount_cents: int | None = None
    refund_id: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    decline_code: str | None = None
    dispute_status: str | None = None
    dispute_reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Helpers
# =============================================================================


def charge_idempotency_key(installment_id: uuid.UUID | str, attempt: int, secret: str = "") -> str:
    """
    Idempotency key for one charge attempt of an installment.

    Format: "installment-charge:{installment_id}:{attempt}:{hash}"

    The same attempt of the same installment always produces the same
    key, so a resubmitted request after a timeout cannot double charge.
    """
    entity_str = str(installment_id)
    hash_input = f"installment-charge:{entity_str}:{attempt}:{secret}"
    short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
    return f"installment-charge:{entity_str}:{attempt}:{short_hash}"


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup (Django's request.headers already is)."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


# =============================================================================
# Gateway Interface
# =============================================================================


class PaymentGateway(ABC):
    """
    Capability interface for a payment processor.

    Subclasses set `processor` and `signature_header` and implement
    charge(), verify_signature() and extract_event().
    """

    processor: str
    signature_header: str

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @abstractmethod
    def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Charge a stored payment method.

        Returns an unsuccessful ChargeResult for declines.

        Raises:
            GatewayUnavailableError: Outcome unknown (timeout, 5xx, rate limit)
            GatewayAuthenticationError: Our credentials were rejected
            GatewayRequestError: The processor rejected the parameters
        """

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str) -> None:
        """
        Verify the webhook signature over the exact raw body.

        Raises:
            WebhookSignatureError: Signature missing or mismatched
        """

    @abstractmethod
    def extract_event(self, payload: bytes) -> GatewayEvent:
        """
        Parse a verified body into a GatewayEvent.

        Raises:
            WebhookPayloadError: Body is not a well-formed event
        """

    def signature_from_headers(self, headers: Mapping[str, str]) -> str | None:
        """Pick this processor's signature header out of the request headers."""
        return get_header(headers, self.signature_header)

    def parse_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        """
        Verify then extract.

        Nothing is parsed before the signature checks out.
        """
        if not signature:
            raise WebhookSignatureError(
                f"Missing {self.signature_header} header",
                details={"processor": self.processor},
            )
        self.verify_signature(payload, signature)
        return self.extract_event(payload)


def unknown_event(event_id: str, event_type: str, payload: dict[str, Any]) -> GatewayEvent:
    """An event we accept and acknowledge but have no handler for."""
    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        kind=WebhookEventKind.IGNORED,
        payload=payload,
    )


def signatures_match(expected: str, presented: str) -> bool:
    """
    Constant-time comparison of a computed signature with a header value.

    Compared as bytes: header values may carry any characters, and
    hmac.compare_digest refuses non-ASCII str.
    """
    return hmac.compare_digest(
        expected.encode("utf-8"),
        presented.encode("utf-8", "surrogateescape"),
    )
