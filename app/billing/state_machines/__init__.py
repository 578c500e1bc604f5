"""
State machine definitions for billing models.

Usage:
    from billing.state_machines import InstallmentStatus, PaymentPlanStatus

    if installment.status == InstallmentStatus.PAID:
        ...
"""

from billing.state_machines.states import (
    CHARGEABLE_INSTALLMENT_STATUSES,
    InstallmentStatus,
    InvoiceStatus,
    PaymentPlanStatus,
    PaymentTransactionStatus,
    PlanFrequency,
    ProcessorType,
    WebhookEventKind,
    WebhookEventStatus,
)

__all__ = [
    "CHARGEABLE_INSTALLMENT_STATUSES",
    "InstallmentStatus",
    "InvoiceStatus",
    "PaymentPlanStatus",
    "PaymentTransactionStatus",
    "PlanFrequency",
    "ProcessorType",
    "WebhookEventKind",
    "WebhookEventStatus",
]
