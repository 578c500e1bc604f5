"""
Invoice model.

An invoice's outstanding balance is never stored: it is the sum of its
ledger entries. The status field only caches OPEN/PAID for listing and is
refreshed from the ledger after every posting.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import InvoiceStatus


class Invoice(UUIDPrimaryKeyMixin, BaseModel):
    """
    A bill issued to a patient.

    Fields:
        practice / patient: Tenant and payer
        number: Practice-scoped invoice number
        description: Line summary shown to the patient
        status: OPEN/PAID (from the ledger) or VOID
        needs_review: Flagged for staff, e.g. after a dispute
        review_reason / flagged_at: Why and when it was flagged
    """

    practice = models.ForeignKey(
        "practices.Practice",
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    patient = models.ForeignKey(
        "practices.Patient",
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    number = models.CharField(max_length=50)
    description = models.CharField(max_length=255, blank=True, default="")
    currency = models.CharField(max_length=3, default="usd")
    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.OPEN,
        db_index=True,
    )
    needs_review = models.BooleanField(default=False, db_index=True)
    review_reason = models.TextField(blank=True, default="")
    flagged_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["practice", "number"],
                name="unique_invoice_number_per_practice",
            ),
        ]

    def __str__(self) -> str:
        return f"Invoice {self.number}"

    @property
    def balance_cents(self) -> int:
        """Outstanding balance: sum of this invoice's ledger entries."""
        from billing.ledger.services import LedgerService

        return LedgerService.get_invoice_balance(self.id).cents

    def flag_for_review(self, reason: str) -> None:
        """
        Mark the invoice for manual staff review.

        Note: Does not save - caller must save after calling.
        """
        self.needs_review = True
        self.review_reason = reason
        self.flagged_at = timezone.now()

    def refresh_status(self) -> bool:
        """
        Recompute OPEN/PAID from the ledger balance.

        VOID invoices are left alone. Returns True if the status changed.

        Note: Does not save - caller must save after calling.
        """
        if self.status == InvoiceStatus.VOID:
            return False
        new_status = InvoiceStatus.PAID if self.balance_cents <= 0 else InvoiceStatus.OPEN
        changed = new_status != self.status
        self.status = new_status
        return changed
