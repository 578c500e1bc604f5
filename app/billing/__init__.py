"""
Billing app for practice payment collection.

This app handles:
- Payment plans and their scheduled installments
- Invoices and the append-only patient ledger
- Processor gateways (Stripe, Square, mock) behind one interface
- Webhook ingestion with event-level idempotency
- The periodic billing retry job and its cron endpoint

Related apps:
    - practices: Practice, Patient and stored payment methods
    - notifications: Outbound email delivery records

Usage:
    from billing.conf import get_billing_config
    from billing.workers.billing_scheduler import run_billing_job

    outcome = run_billing_job(get_billing_config().job)
"""
