"""
Background billing workers.

Modules:
    billing_scheduler: Reminders, retry selection and installment charging
"""

from billing.workers.billing_scheduler import (
    BillingJobOutcome,
    BillingJobResult,
    BillingScheduler,
    run_billing_job,
)

__all__ = [
    "BillingJobOutcome",
    "BillingJobResult",
    "BillingScheduler",
    "run_billing_job",
]
