"""
Billing services.

Services:
    InstallmentReconciler - Shared charge-outcome rules (job and webhooks)
    InvoiceService - Invoice creation with ledger charge
    PaymentPlanService - Plan enrollment, cancellation, installment reset
"""

from billing.services.invoice_service import InvoiceService
from billing.services.plan_service import PaymentPlanService
from billing.services.reconciliation import (
    FailureOutcome,
    InstallmentReconciler,
    SettlementOutcome,
    installment_credit_key,
)

__all__ = [
    "FailureOutcome",
    "InstallmentReconciler",
    "InvoiceService",
    "PaymentPlanService",
    "SettlementOutcome",
    "installment_credit_key",
]
