"""
Ledger service layer.

All ledger writes go through LedgerService so every posting gets the same
idempotency check, sign rules and audit fields.

Usage:
    from billing.ledger.services import ledger
    from billing.ledger.types import RecordEntryParams

    entry = ledger.post_payment(
        patient_id=patient.id,
        invoice_id=invoice.id,
        amount_cents=15000,
        idempotency_key=f"installment-payment:{installment.id}",
    )
    balance = ledger.get_invoice_balance(invoice.id)
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import Sum

from .exceptions import InvalidLedgerEntry
from .models import EntryType, LedgerEntry
from .types import Money, RecordEntryParams

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

# Balance effect of each non-adjustment entry type
ENTRY_SIGNS = {
    EntryType.CHARGE: 1,
    EntryType.PAYMENT: -1,
    EntryType.REFUND: 1,
}


class LedgerService:
    """
    Service class for ledger operations.

    Key features:
    - Idempotency via unique keys (safe to retry, safe to replay webhooks)
    - Sign rules applied from the entry type
    - Atomic multi-entry posting

    All methods are static - no instance state is maintained.
    """

    @staticmethod
    def _signed_amount(params: RecordEntryParams) -> int:
        if params.entry_type == EntryType.ADJUSTMENT:
            return params.amount_cents
        if params.entry_type not in ENTRY_SIGNS:
            raise InvalidLedgerEntry(
                f"Unknown entry type '{params.entry_type}'",
                details={"entry_type": params.entry_type},
            )
        if params.amount_cents < 0:
            raise InvalidLedgerEntry(
                f"{params.entry_type} entries take a positive amount",
                details={"amount_cents": params.amount_cents},
            )
        return ENTRY_SIGNS[params.entry_type] * params.amount_cents

    @staticmethod
    def record_entry(params: RecordEntryParams) -> LedgerEntry:
        """
        Record a single ledger entry.

        Idempotent - safe to call multiple times with the same idempotency_key.
        If an entry with the same key already exists, returns that entry
        unchanged (even if the new params differ).

        Raises:
            InvalidLedgerEntry: If the amount's sign is wrong for the type
        """
        return LedgerService.record_entries([params])[0]

    @staticmethod
    def record_entries(entries: list[RecordEntryParams]) -> list[LedgerEntry]:
        """
        Record multiple ledger entries atomically.

        All entries succeed or all fail. Existing entries (by idempotency
        key) are returned without modification.
        """
        if not entries:
            return []

        results: list[LedgerEntry] = []

        with transaction.atomic():
            for params in entries:
                # Check idempotency first so a replay never re-validates
                existing = LedgerEntry.objects.filter(
                    idempotency_key=params.idempotency_key
                ).first()
                if existing is not None:
                    logger.debug(
                        "Ledger entry already recorded",
                        extra={"idempotency_key": params.idempotency_key},
                    )
                    results.append(existing)
                    continue

                signed_amount = LedgerService._signed_amount(params)

                # A concurrent writer may insert the same key between our
                # check and create. The savepoint keeps the outer
                # transaction usable after the IntegrityError.
                try:
                    with transaction.atomic():
                        entry = LedgerEntry.objects.create(
                            idempotency_key=params.idempotency_key,
                            patient_id=params.patient_id,
                            invoice_id=params.invoice_id,
                            entry_type=params.entry_type,
                            amount_cents=signed_amount,
                            currency=params.currency,
                            reference_type=params.reference_type,
                            reference_id=params.reference_id,
                            description=params.description,
                            metadata=params.metadata or {},
                            created_by=params.created_by,
                        )
                except IntegrityError:
                    entry = LedgerEntry.objects.get(idempotency_key=params.idempotency_key)

                logger.info(
                    f"Ledger {entry.entry_type} recorded: {entry.amount_cents} cents",
                    extra={
                        "entry_id": str(entry.id),
                        "patient_id": str(params.patient_id),
                        "invoice_id": str(params.invoice_id) if params.invoice_id else None,
                        "idempotency_key": params.idempotency_key,
                    },
                )
                results.append(entry)

        return results

    # ==========================================================================
    # Typed posting helpers
    # ==========================================================================

    @staticmethod
    def post_charge(
        patient_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        invoice_id: uuid.UUID | None = None,
        **extra: Any,
    ) -> LedgerEntry:
        return LedgerService.record_entry(
            RecordEntryParams(
                patient_id=patient_id,
                invoice_id=invoice_id,
                entry_type=EntryType.CHARGE,
                amount_cents=amount_cents,
                idempotency_key=idempotency_key,
                **extra,
            )
        )

    @staticmethod
    def post_payment(
        patient_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        invoice_id: uuid.UUID | None = None,
        **extra: Any,
    ) -> LedgerEntry:
        return LedgerService.record_entry(
            RecordEntryParams(
                patient_id=patient_id,
                invoice_id=invoice_id,
                entry_type=EntryType.PAYMENT,
                amount_cents=amount_cents,
                idempotency_key=idempotency_key,
                **extra,
            )
        )

    @staticmethod
    def post_refund(
        patient_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        invoice_id: uuid.UUID | None = None,
        **extra: Any,
    ) -> LedgerEntry:
        return LedgerService.record_entry(
            RecordEntryParams(
                patient_id=patient_id,
                invoice_id=invoice_id,
                entry_type=EntryType.REFUND,
                amount_cents=amount_cents,
                idempotency_key=idempotency_key,
                **extra,
            )
        )

    @staticmethod
    def post_adjustment(
        patient_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        invoice_id: uuid.UUID | None = None,
        **extra: Any,
    ) -> LedgerEntry:
        """Post a signed correction (negative lowers the balance)."""
        return LedgerService.record_entry(
            RecordEntryParams(
                patient_id=patient_id,
                invoice_id=invoice_id,
                entry_type=EntryType.ADJUSTMENT,
                amount_cents=amount_cents,
                idempotency_key=idempotency_key,
                **extra,
            )
        )

    @staticmethod
    def reverse_entry(
        entry: LedgerEntry,
        idempotency_key: str,
        reason: str,
        created_by: str | None = None,
    ) -> LedgerEntry:
        """
        Cancel an entry's effect with an offsetting ADJUSTMENT.

        The original entry is left untouched.
        """
        return LedgerService.post_adjustment(
            patient_id=entry.patient_id,
            invoice_id=entry.invoice_id,
            amount_cents=-entry.amount_cents,
            idempotency_key=idempotency_key,
            currency=entry.currency,
            reference_type="ledger_entry",
            reference_id=entry.id,
            description=reason,
            created_by=created_by,
        )

    # ==========================================================================
    # Queries
    # ==========================================================================

    @staticmethod
    def get_invoice_balance(invoice_id: uuid.UUID, currency: str = "usd") -> Money:
        """Outstanding balance of an invoice (sum of its entries)."""
        total = LedgerEntry.objects.filter(invoice_id=invoice_id).aggregate(
            total=Sum("amount_cents")
        )["total"]
        return Money(cents=total or 0, currency=currency)

    @staticmethod
    def get_patient_balance(patient_id: uuid.UUID, currency: str = "usd") -> Money:
        """Patient's overall balance across invoices and unapplied credits."""
        total = LedgerEntry.objects.filter(patient_id=patient_id).aggregate(
            total=Sum("amount_cents")
        )["total"]
        return Money(cents=total or 0, currency=currency)

    @staticmethod
    def get_entries_by_reference(
        reference_type: str,
        reference_id: uuid.UUID,
    ) -> list[LedgerEntry]:
        """All entries for a business entity, oldest first."""
        return list(
            LedgerEntry.objects.filter(
                reference_type=reference_type,
                reference_id=reference_id,
            ).order_by("created_at")
        )


# Singleton instance for convenient access
ledger = LedgerService()
