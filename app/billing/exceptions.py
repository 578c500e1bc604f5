"""
Billing-specific exceptions.

Exception Hierarchy:
    BillingError (base for billing domain)
    ├── BillingConfigurationError - Invalid or missing billing configuration
    ├── GatewayError - Base for processor gateway failures
    │   ├── GatewayUnavailableError - Timeouts, 5xx, rate limits (transient)
    │   ├── GatewayAuthenticationError - Bad credentials (permanent)
    │   └── GatewayRequestError - Rejected request parameters (permanent)
    ├── WebhookVerificationError - Base for inbound webhook rejections
    │   ├── WebhookSignatureError - Missing or mismatched signature
    │   └── WebhookPayloadError - Body is not a well-formed event
    └── UnknownProcessorError - No gateway registered for a processor

    LockAcquisitionError - Run lease already held (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from billing.exceptions import GatewayError, WebhookSignatureError

    try:
        event = gateway.parse_webhook(body, signature)
    except WebhookVerificationError as e:
        return JsonResponse({"error": e.message}, status=400)

Card declines are not exceptions: gateways report them as unsuccessful
ChargeResult values. Exceptions are reserved for failures where the
outcome of the processor call is unknown or the request was malformed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Billing Domain Exceptions
# =============================================================================


class BillingError(BaseApplicationError):
    """
    Base exception for all billing operations.

    Example:
        try:
            PaymentPlanService.cancel_plan(plan, reason)
        except BillingError as e:
            logger.error(f"Billing operation failed: {e}")
    """

    default_error_code: str = "BILLING_ERROR"


class BillingConfigurationError(BillingError):
    """
    Raised when billing configuration values are invalid.

    Covers both settings-derived values at startup and per-invocation
    overrides passed to the billing job.
    """

    default_error_code: str = "BILLING_CONFIGURATION_ERROR"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(BillingError):
    """
    Base exception for processor gateway failures.

    Attributes:
        processor: Processor that raised (stripe, square, mock)
        processor_code: The processor's own error code, if any
        is_retryable: Whether a later attempt may succeed without changes
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        processor: str | None = None,
        processor_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if processor:
            details["processor"] = processor
        if processor_code:
            details["processor_code"] = processor_code
        super().__init__(message, error_code=error_code, details=details)
        self.processor = processor
        self.processor_code = processor_code


class GatewayUnavailableError(GatewayError):
    """
    Raised on timeouts, connection failures, 5xx responses and rate limits.

    The charge may or may not have reached the processor. Retrying with the
    same idempotency key is safe.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayAuthenticationError(GatewayError):
    """Raised when the processor rejects our API credentials."""

    default_error_code: str = "GATEWAY_AUTHENTICATION_FAILED"


class GatewayRequestError(GatewayError):
    """Raised when the processor rejects the request parameters."""

    default_error_code: str = "GATEWAY_INVALID_REQUEST"


# =============================================================================
# Webhook Exceptions
# =============================================================================


class WebhookVerificationError(BillingError):
    """
    Base exception for inbound webhooks rejected before any processing.

    These are structural failures, never retried internally, and map to
    HTTP 400 at the endpoint.
    """

    default_error_code: str = "WEBHOOK_REJECTED"


class WebhookSignatureError(WebhookVerificationError):
    """Raised when the signature header is missing or does not match."""

    default_error_code: str = "INVALID_SIGNATURE"


class WebhookPayloadError(WebhookVerificationError):
    """Raised when a verified body cannot be parsed into an event."""

    default_error_code: str = "INVALID_PAYLOAD"


class UnknownProcessorError(BillingError):
    """Raised when no gateway is registered for the requested processor."""

    default_error_code: str = "UNKNOWN_PROCESSOR"


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    The billing job raises this when another run already holds the lease.

    Example:
        try:
            with RunLease("billing:installment-job", ttl=1800):
                scheduler.run()
        except LockAcquisitionError:
            logger.info("Billing job already running, skipping this tick")
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django_fsm.TransitionNotAllowed with billing context.

    Example:
        try:
            installment.mark_paid()
        except TransitionNotAllowed:
            raise InvalidStateTransitionError(
                f"Cannot mark installment paid from '{installment.status}'",
                details={"current_state": installment.status, "target_state": "paid"},
            )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"
