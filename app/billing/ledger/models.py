"""
Ledger models for patient account postings.

This module defines the append-only ledger:
- EntryType: Categories of postings (charge, payment, refund, adjustment)
- LedgerEntry: A single signed posting against a patient, optionally
  tied to an invoice

Balances are never stored. The balance of an invoice (or a patient) is
the sum of amount_cents over its entries:
    CHARGE      +amount  (patient owes more)
    PAYMENT     -amount  (patient owes less)
    REFUND      +amount  (money returned, owed again)
    ADJUSTMENT  ±amount  (corrections and write-offs)

Usage:
    from billing.ledger.models import EntryType, LedgerEntry

    LedgerEntry.objects.filter(invoice=invoice).aggregate(Sum("amount_cents"))
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q

from core.model_mixins import UUIDPrimaryKeyMixin

from .exceptions import LedgerImmutableError


class EntryType(models.TextChoices):
    """
    Types of ledger entries.

    The sign of amount_cents follows from the type for every type except
    ADJUSTMENT, which carries its own sign.
    """

    CHARGE = "charge", "Charge"
    PAYMENT = "payment", "Payment"
    REFUND = "refund", "Refund"
    ADJUSTMENT = "adjustment", "Adjustment"


class LedgerEntryQuerySet(models.QuerySet):
    """QuerySet that refuses bulk mutation of posted entries."""

    def update(self, **kwargs):
        raise LedgerImmutableError("Ledger entries cannot be updated")

    def delete(self):
        raise LedgerImmutableError("Ledger entries cannot be deleted")


class LedgerEntry(UUIDPrimaryKeyMixin, models.Model):
    """
    An immutable monetary posting.

    Fields:
        id: UUID primary key (from UUIDPrimaryKeyMixin)
        created_at: Timestamp when entry was recorded
        patient: Patient whose balance this affects
        invoice: Invoice this applies to (null for unapplied patient credit)
        entry_type: Category of this entry
        amount_cents: Signed balance effect in cents (never zero)
        currency: ISO 4217 currency code
        reference_type / reference_id: Related business entity
        description: Human-readable description
        metadata: Arbitrary JSON data
        created_by: Identifier of service that created this
        idempotency_key: Unique key to prevent duplicate entries

    Constraints:
        - amount_cents must be non-zero
        - idempotency_key must be unique
    """

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this entry was recorded",
    )

    patient = models.ForeignKey(
        "practices.Patient",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
    )
    invoice = models.ForeignKey(
        "billing.Invoice",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )

    entry_type = models.CharField(max_length=20, choices=EntryType.choices)
    amount_cents = models.BigIntegerField(
        help_text="Signed balance effect in cents",
    )
    currency = models.CharField(max_length=3, default="usd")

    reference_type = models.CharField(max_length=50, null=True, blank=True)
    reference_id = models.UUIDField(null=True, blank=True)
    description = models.TextField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_by = models.CharField(max_length=255, null=True, blank=True)
    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Unique key to prevent duplicate entries",
    )

    objects = LedgerEntryQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "Ledger entries"
        indexes = [
            models.Index(fields=["reference_type", "reference_id"], name="ledger_reference_idx"),
            models.Index(fields=["patient", "created_at"], name="ledger_patient_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(amount_cents=0),
                name="ledger_entry_amount_cents_nonzero",
            )
        ]

    def __str__(self) -> str:
        return f"{self.get_entry_type_display()}: {self.amount_cents} cents"

    def save(self, *args, **kwargs):
        """Insert only. Posted entries are never rewritten."""
        if not self._state.adding:
            raise LedgerImmutableError(
                f"Ledger entry {self.pk} is immutable; post an offsetting entry instead",
                details={"entry_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError(
            f"Ledger entry {self.pk} cannot be deleted",
            details={"entry_id": str(self.pk)},
        )
