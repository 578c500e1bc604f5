"""
PaymentTransaction model.

One row per processor interaction: every charge attempt the billing job
makes, and every payment reported to us that we can tie to a patient.
The eager attempt row is written before the gateway call so the async
confirmation always has something to reconcile against.
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import PaymentTransactionStatus, ProcessorType


class PaymentTransaction(UUIDPrimaryKeyMixin, BaseModel):
    """
    A single charge against a processor.

    Fields:
        practice / patient: Tenant and payer
        installment: Installment this attempt was for (plan billing)
        invoice: Invoice this payment applies to (one-off payments)
        payment_method: Card that was charged
        processor: Gateway that handled the charge
        external_transaction_id: Processor payment id (pi_xxx, Square id)
        amount_cents / currency: Amount attempted
        status: Outcome of the charge
        attempt_number: Which attempt of the installment this was
        refunded_amount_cents: Cumulative refunds reported by the processor
        error_code / error_message / decline_code: Failure details
        dispute_status: Latest dispute status, if disputed
        processor_response: Trimmed processor payload for audit
        processed_at: When the outcome became known
    """

    practice = models.ForeignKey(
        "practices.Practice",
        on_delete=models.PROTECT,
        related_name="payment_transactions",
    )
    patient = models.ForeignKey(
        "practices.Patient",
        on_delete=models.PROTECT,
        related_name="payment_transactions",
    )
    installment = models.ForeignKey(
        "billing.Installment",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    invoice = models.ForeignKey(
        "billing.Invoice",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    payment_method = models.ForeignKey(
        "practices.StoredPaymentMethod",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
    )

    processor = models.CharField(max_length=20, choices=ProcessorType.choices)
    external_transaction_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor payment id, unique per processor once known",
    )
    amount_cents = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="usd")
    status = models.CharField(
        max_length=20,
        choices=PaymentTransactionStatus.choices,
        default=PaymentTransactionStatus.PENDING,
        db_index=True,
    )
    attempt_number = models.PositiveSmallIntegerField(default=1)
    refunded_amount_cents = models.PositiveBigIntegerField(default=0)

    error_code = models.CharField(max_length=100, blank=True, default="")
    error_message = models.TextField(blank=True, default="")
    decline_code = models.CharField(max_length=100, blank=True, default="")
    dispute_status = models.CharField(max_length=50, blank=True, default="")
    processor_response = models.JSONField(default=dict, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["installment", "status"], name="txn_installment_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["processor", "external_transaction_id"],
                condition=Q(external_transaction_id__isnull=False),
                name="unique_external_transaction_per_processor",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentTransaction({self.processor}, {self.external_transaction_id}, {self.status})"

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    @property
    def is_completed(self) -> bool:
        return self.status in (
            PaymentTransactionStatus.COMPLETED,
            PaymentTransactionStatus.REFUNDED,
            PaymentTransactionStatus.PARTIALLY_REFUNDED,
        )

    def resolve_invoice(self):
        """Invoice this money applies to, directly or through the plan."""
        if self.invoice_id:
            return self.invoice
        if self.installment_id:
            return self.installment.plan.invoice
        return None

    def mark_completed(self, external_transaction_id: str | None = None) -> None:
        """
        Note: Does not save - caller must save after calling.
        """
        self.status = PaymentTransactionStatus.COMPLETED
        if external_transaction_id:
            self.external_transaction_id = external_transaction_id
        self.error_code = ""
        self.error_message = ""
        self.decline_code = ""
        self.processed_at = timezone.now()

    def mark_failed(
        self,
        error_code: str = "",
        error_message: str = "",
        decline_code: str = "",
    ) -> None:
        """
        Note: Does not save - caller must save after calling.
        """
        self.status = PaymentTransactionStatus.FAILED
        self.error_code = error_code or ""
        self.error_message = error_message or ""
        self.decline_code = decline_code or ""
        self.processed_at = timezone.now()

    def apply_refund_total(self, refunded_total_cents: int) -> None:
        """
        Record the processor's cumulative refunded amount.

        Note: Does not save - caller must save after calling.
        """
        self.refunded_amount_cents = refunded_total_cents
        if refunded_total_cents >= self.amount_cents:
            self.status = PaymentTransactionStatus.REFUNDED
        else:
            self.status = PaymentTransactionStatus.PARTIALLY_REFUNDED
