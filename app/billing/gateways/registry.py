"""
Gateway selection.

Maps a processor name to its gateway class. Callers pass the processor
from config (billing job) or from the request (webhook endpoint) and get
back a PaymentGateway; nothing downstream branches on the processor.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from billing.exceptions import UnknownProcessorError
from billing.gateways.mock_gateway import MockGateway
from billing.gateways.square_gateway import SquareGateway
from billing.gateways.stripe_gateway import StripeGateway
from billing.state_machines import ProcessorType

if TYPE_CHECKING:
    from billing.conf import BillingConfig
    from billing.gateways.base import PaymentGateway


def get_gateway(processor: str | None = None, config: BillingConfig | None = None) -> PaymentGateway:
    """
    Build the gateway for a processor.

    Args:
        processor: stripe, square or mock (default: config.primary_processor)
        config: Billing configuration (default: get_billing_config())

    Raises:
        UnknownProcessorError: No gateway for the processor name
    """
    if config is None:
        from billing.conf import get_billing_config

        config = get_billing_config()

    processor = (processor or config.primary_processor).lower()

    if processor == ProcessorType.STRIPE:
        return StripeGateway(config.stripe)
    if processor == ProcessorType.SQUARE:
        return SquareGateway(config.square)
    if processor == ProcessorType.MOCK:
        return MockGateway(config.mock)

    raise UnknownProcessorError(
        f"Unknown payment processor '{processor}'",
        details={"processor": processor, "supported": list(ProcessorType.values)},
    )
