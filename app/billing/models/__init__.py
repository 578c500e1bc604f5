"""
Billing domain models.

This module contains all billing models:
- PaymentPlan: Agreement to collect a total across installments
- Installment: One scheduled charge within a plan
- Invoice: A bill whose balance is derived from the ledger
- PaymentTransaction: One processor charge attempt or confirmed payment
- WebhookEvent: Processor webhook tracking for idempotent processing

LedgerEntry lives in billing.ledger.models.
"""

from billing.models.invoice import Invoice
from billing.models.payment_plan import Installment, PaymentPlan
from billing.models.transaction import PaymentTransaction
from billing.models.webhook_event import WebhookEvent
from billing.ledger.models import EntryType, LedgerEntry

__all__ = [
    "EntryType",
    "Installment",
    "Invoice",
    "LedgerEntry",
    "PaymentPlan",
    "PaymentTransaction",
    "WebhookEvent",
]
