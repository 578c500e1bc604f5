"""
Webhook event handlers.

Handlers are registered per normalized event kind, so the same handler
serves Stripe, Square and mock events. Each handler receives a
HandlerContext, performs its database writes (inside the ingestion
transaction), records what it did with ctx.action(), and queues
notifications with ctx.defer() to run after commit.

Usage:
    from billing.webhooks.handlers import dispatch_event, register_handler

    @register_handler(WebhookEventKind.DISPUTE)
    def handle_dispute(ctx: HandlerContext) -> ServiceResult:
        ...

    result = dispatch_event(ctx)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from core.services import ServiceResult

from billing.ledger import LedgerEntry, LedgerService
from billing.models import PaymentTransaction
from billing.services.reconciliation import InstallmentReconciler
from billing.state_machines import PaymentTransactionStatus, WebhookEventKind

if TYPE_CHECKING:
    from typing import Any

    from billing.conf import BillingConfig
    from billing.gateways.base import GatewayEvent
    from billing.notifications import BillingNotifier


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Context
# =============================================================================


@dataclass
class HandlerContext:
    """
    Everything a handler needs, plus its action log.

    Attributes:
        event: The verified, normalized event
        processor: Processor that sent it
        config: Billing configuration
        notifier: Sends patient/staff email
        actions: What the handler did, stored on the WebhookEvent
        deferred: Notification callables run after commit
    """

    event: GatewayEvent
    processor: str
    config: BillingConfig
    notifier: BillingNotifier
    actions: list[dict[str, Any]] = field(default_factory=list)
    deferred: list[tuple[str, Callable[[], ServiceResult]]] = field(default_factory=list)

    def action(self, name: str, **details: Any) -> None:
        entry = {"action": name}
        entry.update({key: str(value) if value is not None else None for key, value in details.items()})
        self.actions.append(entry)

    def defer(self, description: str, func: Callable[[], ServiceResult]) -> None:
        self.deferred.append((description, func))

    def run_deferred(self) -> list[str]:
        """
        Run queued notifications.

        Returns:
            Non-fatal error descriptions
        """
        errors: list[str] = []
        for description, func in self.deferred:
            try:
                result = func()
            except Exception as e:
                logger.exception(
                    f"Webhook follow-up failed: {description}",
                    extra={"event_id": self.event.event_id},
                )
                errors.append(f"{description}: {e}")
                continue
            if not result.success and result.error_code != "EMAIL_SKIPPED":
                errors.append(f"{description}: {result.error}")
        return errors


# =============================================================================
# Handler Registry
# =============================================================================


# Maps event kinds to handler functions
WEBHOOK_HANDLERS: dict[str, Callable[[HandlerContext], ServiceResult]] = {}


def register_handler(kind: str) -> Callable:
    """
    Decorator to register a handler for a normalized event kind.

    Args:
        kind: A WebhookEventKind value
    """

    def decorator(func: Callable[[HandlerContext], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[kind] = func
        logger.debug(f"Registered webhook handler for {kind}")
        return func

    return decorator


def dispatch_event(ctx: HandlerContext) -> ServiceResult:
    """
    Dispatch an event to the handler for its kind.

    Kinds without a handler are acknowledged and logged.
    """
    handler = WEBHOOK_HANDLERS.get(ctx.event.kind)

    if not handler:
        logger.info(
            f"No handler registered for event kind: {ctx.event.kind}",
            extra={"event_id": ctx.event.event_id, "event_type": ctx.event.event_type},
        )
        ctx.action("no_handler", kind=ctx.event.kind)
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {ctx.event.event_type} to {handler.__name__}",
        extra={"event_id": ctx.event.event_id, "processor": ctx.processor},
    )
    return handler(ctx)


def _find_transaction(ctx: HandlerContext) -> PaymentTransaction | None:
    payment_id = ctx.event.payment_id
    if not payment_id:
        ctx.action("missing_payment_reference")
        return None

    txn = (
        PaymentTransaction.objects.select_for_update(of=("self",))
        .select_related("installment__plan", "invoice", "patient__practice", "practice")
        .filter(processor=ctx.processor, external_transaction_id=payment_id)
        .first()
    )
    if txn is None:
        logger.info(
            "Webhook references an unknown payment",
            extra={"event_id": ctx.event.event_id, "payment_id": payment_id},
        )
        ctx.action("unmatched_payment", payment_id=payment_id)
    return txn


# =============================================================================
# Payment Handlers
# =============================================================================


@register_handler(WebhookEventKind.PAYMENT_SUCCEEDED)
def handle_payment_succeeded(ctx: HandlerContext) -> ServiceResult:
    """
    Apply a processor's payment confirmation.

    Installment payments settle through InstallmentReconciler, which makes
    a replay for an already-PAID installment a no-op. Invoice payments are
    credited once per transaction.
    """
    txn = _find_transaction(ctx)
    if txn is None:
        return ServiceResult.success(None)

    if not txn.is_completed:
        txn.mark_completed()
        txn.save()
        ctx.action("transaction_completed", transaction_id=txn.id)

    if txn.installment_id:
        outcome = InstallmentReconciler.settle(txn.installment, txn, source="webhook")
        installment = outcome.installment
        if not outcome.newly_paid:
            ctx.action("installment_already_paid", installment_id=installment.id)
            return ServiceResult.success(None)

        ctx.action("installment_paid", installment_id=installment.id)
        ctx.defer(
            "payment confirmation",
            lambda: ctx.notifier.send_payment_confirmation(txn, installment),
        )
        if outcome.plan_completed:
            plan = installment.plan
            ctx.action("plan_completed", plan_id=plan.id)
            ctx.defer("plan completion notice", lambda: ctx.notifier.send_plan_completed(plan))
        return ServiceResult.success(None)

    if txn.invoice_id:
        key = f"transaction-payment:{txn.id}"
        if LedgerEntry.objects.filter(idempotency_key=key).exists():
            ctx.action("payment_already_recorded", transaction_id=txn.id)
            return ServiceResult.success(None)

        invoice = txn.invoice
        LedgerService.post_payment(
            patient_id=txn.patient_id,
            invoice_id=invoice.id,
            amount_cents=txn.amount_cents,
            idempotency_key=key,
            currency=txn.currency,
            reference_type="payment_transaction",
            reference_id=txn.id,
            description=f"Payment on invoice {invoice.number}",
            created_by="webhook",
        )
        if invoice.refresh_status():
            invoice.save(update_fields=["status", "updated_at"])
        ctx.action("invoice_payment_recorded", invoice_id=invoice.id)
        ctx.defer("payment confirmation", lambda: ctx.notifier.send_payment_confirmation(txn))
        return ServiceResult.success(None)

    ctx.action("transaction_unlinked", transaction_id=txn.id)
    return ServiceResult.success(None)


@register_handler(WebhookEventKind.PAYMENT_FAILED)
def handle_payment_failed(ctx: HandlerContext) -> ServiceResult:
    """
    Apply a processor's payment failure.

    A completed transaction is never regressed, and a failure the billing
    job already recorded is not applied twice. The installment's attempt
    count is left alone: the attempt was counted when the job made it.
    """
    event = ctx.event
    txn = _find_transaction(ctx)
    if txn is None:
        return ServiceResult.success(None)

    if txn.is_completed:
        ctx.action("failure_ignored_completed", transaction_id=txn.id)
        return ServiceResult.success(None)
    if txn.status == PaymentTransactionStatus.FAILED:
        ctx.action("failure_already_recorded", transaction_id=txn.id)
        return ServiceResult.success(None)

    failure_code = event.failure_code or "payment_failed"
    failure_reason = event.failure_message or "The payment was declined"
    txn.mark_failed(
        error_code=failure_code,
        error_message=failure_reason,
        decline_code=event.decline_code or "",
    )
    txn.save()
    ctx.action("transaction_failed", transaction_id=txn.id, failure_code=failure_code)

    if not txn.installment_id:
        return ServiceResult.success(None)

    job_config = ctx.config.job.for_practice(txn.practice)
    outcome = InstallmentReconciler.apply_failure_confirmation(
        txn.installment,
        failure_code=failure_code,
        failure_reason=failure_reason,
        config=job_config,
    )
    installment = outcome.installment
    if not outcome.changed:
        ctx.action("installment_unchanged", installment_id=installment.id, status=installment.status)
        return ServiceResult.success(None)

    ctx.action(f"installment_{installment.status}", installment_id=installment.id)
    ctx.defer(
        "payment failure notice",
        lambda: ctx.notifier.send_payment_failed(installment, final=outcome.exhausted),
    )
    if outcome.plan_defaulted:
        ctx.action("plan_defaulted", plan_id=installment.plan_id)
    if outcome.exhausted and job_config.alert_staff_on_failure:
        ctx.defer(
            "staff failure alert",
            lambda: ctx.notifier.alert_staff_failure(installment, plan_defaulted=outcome.plan_defaulted),
        )
    return ServiceResult.success(None)


# =============================================================================
# Refund Handlers
# =============================================================================


@register_handler(WebhookEventKind.REFUNDED)
def handle_refund(ctx: HandlerContext) -> ServiceResult:
    """
    Post an offsetting REFUND ledger entry for the newly refunded amount.

    Processors that report a cumulative refunded total (Stripe) are keyed
    by that total, so each partial refund posts exactly its delta.
    Processors that report single refunds (Square) are keyed by refund id.
    """
    event = ctx.event
    txn = _find_transaction(ctx)
    if txn is None:
        return ServiceResult.success(None)

    if event.refunded_amount_cents is not None:
        cumulative = event.refunded_amount_cents
        delta = cumulative - txn.refunded_amount_cents
        key = f"refund:{txn.id}:{cumulative}"
    else:
        delta = event.refund_amount_cents or 0
        cumulative = txn.refunded_amount_cents + delta
        key = f"refund:{txn.id}:{event.refund_id or event.event_id}"

    if delta <= 0 or LedgerEntry.objects.filter(idempotency_key=key).exists():
        ctx.action("refund_already_recorded", transaction_id=txn.id)
        return ServiceResult.success(None)

    invoice = txn.resolve_invoice()
    LedgerService.post_refund(
        patient_id=txn.patient_id,
        invoice_id=invoice.id if invoice else None,
        amount_cents=delta,
        idempotency_key=key,
        currency=txn.currency,
        reference_type="payment_transaction",
        reference_id=txn.id,
        description=f"Refund of {txn.external_transaction_id}",
        metadata={"refund_id": event.refund_id, "event_id": event.event_id},
        created_by="webhook",
    )
    txn.apply_refund_total(min(cumulative, txn.amount_cents))
    txn.save()
    ctx.action("refund_recorded", transaction_id=txn.id, amount_cents=delta)

    if invoice is not None and invoice.refresh_status():
        invoice.save(update_fields=["status", "updated_at"])

    ctx.defer("refund notice", lambda: ctx.notifier.send_refund_processed(txn, delta))
    return ServiceResult.success(None)


# =============================================================================
# Dispute Handlers
# =============================================================================


@register_handler(WebhookEventKind.DISPUTE)
def handle_dispute(ctx: HandlerContext) -> ServiceResult:
    """Flag the invoice for manual review and alert staff."""
    event = ctx.event
    txn = _find_transaction(ctx)
    if txn is None:
        return ServiceResult.success(None)

    txn.dispute_status = event.dispute_status or "opened"
    txn.save(update_fields=["dispute_status", "updated_at"])

    invoice = txn.resolve_invoice()
    if invoice is not None:
        reason = event.dispute_reason or "unspecified"
        invoice.flag_for_review(f"Payment {txn.external_transaction_id} disputed ({reason})")
        invoice.save(update_fields=["needs_review", "review_reason", "flagged_at", "updated_at"])
        ctx.action("invoice_flagged", invoice_id=invoice.id)

    ctx.action("dispute_recorded", transaction_id=txn.id, dispute_status=txn.dispute_status)
    ctx.defer("staff dispute alert", lambda: ctx.notifier.alert_staff_dispute(txn, invoice, event))
    return ServiceResult.success(None)


# =============================================================================
# Informational Events
# =============================================================================


@register_handler(WebhookEventKind.PAYMENT_METHOD)
def handle_payment_method(ctx: HandlerContext) -> ServiceResult:
    """Stored cards are managed in the practice UI; the event is only logged."""
    ctx.action("payment_method_event_logged", event_type=ctx.event.event_type)
    return ServiceResult.success(None)


@register_handler(WebhookEventKind.IGNORED)
def handle_ignored(ctx: HandlerContext) -> ServiceResult:
    ctx.action("ignored", event_type=ctx.event.event_type)
    return ServiceResult.success(None)
