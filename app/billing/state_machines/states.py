"""
State enums for billing models.

This module defines the state enums used by billing models with django-fsm,
plus the plain status/type choices for records without transitions.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

PaymentPlan States:
    active → completed (every installment paid)
    active → defaulted (an installment exhausted its retries)
    active → cancelled (staff action)

Installment States:
    pending → due → paid
    pending/due → retrying → paid
    pending/due/retrying → failed → paid (late confirmation from processor)
    paid is terminal
"""

from django.db import models


class PaymentPlanStatus(models.TextChoices):
    """
    States for the PaymentPlan lifecycle.

    Terminal states: COMPLETED, DEFAULTED, CANCELLED
    """

    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    DEFAULTED = "defaulted", "Defaulted"
    CANCELLED = "cancelled", "Cancelled"


class InstallmentStatus(models.TextChoices):
    """
    States for a single scheduled installment.

    PENDING: Scheduled, due date not yet reached or not yet picked up
    DUE: Picked up by the billing job, first attempt pending
    RETRYING: At least one attempt failed and retries remain
    FAILED: Retries exhausted
    PAID: Collected (terminal, never mutated again)
    """

    PENDING = "pending", "Pending"
    DUE = "due", "Due"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    RETRYING = "retrying", "Retrying"


# Statuses the billing job may still attempt to charge
CHARGEABLE_INSTALLMENT_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.DUE,
    InstallmentStatus.RETRYING,
)


class PlanFrequency(models.TextChoices):
    """Spacing between installment due dates."""

    WEEKLY = "weekly", "Weekly"
    BIWEEKLY = "biweekly", "Every Two Weeks"
    MONTHLY = "monthly", "Monthly"


class InvoiceStatus(models.TextChoices):
    """Invoice status, derived from the ledger balance except VOID."""

    OPEN = "open", "Open"
    PAID = "paid", "Paid"
    VOID = "void", "Void"


class PaymentTransactionStatus(models.TextChoices):
    """
    Status of a single processor interaction.

    PENDING: Charge submitted, outcome not yet confirmed
    COMPLETED: Processor confirmed the funds
    FAILED: Declined or errored
    REFUNDED / PARTIALLY_REFUNDED: Money returned after completion
    """

    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status of an inbound webhook event.

    PROCESSING: Marker written, dispatch in progress
    PROCESSED: Dispatch committed (re-deliveries are skipped)
    FAILED: Dispatch raised (a re-delivery reprocesses it)
    """

    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"


class ProcessorType(models.TextChoices):
    """Payment processors with a registered gateway."""

    STRIPE = "stripe", "Stripe"
    SQUARE = "square", "Square"
    MOCK = "mock", "Mock"


class WebhookEventKind(models.TextChoices):
    """
    Processor-neutral classification of inbound events.

    Each gateway maps its own event types onto these kinds so the
    handlers never look at processor-specific type strings.
    """

    PAYMENT_SUCCEEDED = "payment_succeeded", "Payment Succeeded"
    PAYMENT_FAILED = "payment_failed", "Payment Failed"
    REFUNDED = "refunded", "Refunded"
    DISPUTE = "dispute", "Dispute"
    PAYMENT_METHOD = "payment_method", "Payment Method Changed"
    IGNORED = "ignored", "Ignored"
