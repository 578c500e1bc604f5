"""
Payment processor gateways.

Public API:
    get_gateway - Build the gateway for a processor name
    PaymentGateway - Capability interface every processor implements
    ChargeRequest / ChargeResult / GatewayEvent - Processor-neutral types
    charge_idempotency_key - Per-attempt idempotency key for installments
"""

from billing.gateways.base import (
    ChargeRequest,
    ChargeResult,
    GatewayEvent,
    PaymentGateway,
    charge_idempotency_key,
)
from billing.gateways.mock_gateway import MockGateway
from billing.gateways.registry import get_gateway
from billing.gateways.square_gateway import SquareGateway
from billing.gateways.stripe_gateway import StripeGateway

__all__ = [
    "ChargeRequest",
    "ChargeResult",
    "GatewayEvent",
    "MockGateway",
    "PaymentGateway",
    "SquareGateway",
    "StripeGateway",
    "charge_idempotency_key",
    "get_gateway",
]
