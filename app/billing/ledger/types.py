"""
Data types for ledger operations.

Types:
    Money: Represents a monetary amount in cents with currency
    RecordEntryParams: Parameters for recording a ledger entry

Usage:
    from billing.ledger.types import Money, RecordEntryParams

    amount = Money(cents=15000, currency="usd")
    print(amount)  # "$150.00 USD"

    params = RecordEntryParams(
        patient_id=patient.id,
        invoice_id=invoice.id,
        entry_type=EntryType.PAYMENT,
        amount_cents=15000,
        idempotency_key=f"installment-payment:{installment.id}",
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Money:
    """
    Represents a monetary amount.

    All amounts are stored in cents (smallest currency unit) to avoid
    floating-point precision issues.

    Attributes:
        cents: Amount in the smallest currency unit (may be negative)
        currency: ISO 4217 currency code (default: 'usd')
    """

    cents: int
    currency: str = "usd"

    def __str__(self) -> str:
        """Format as currency string (e.g., '$50.00 USD')."""
        return f"${self.cents / 100:.2f} {self.currency.upper()}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot add Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot subtract Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )
        return Money(cents=self.cents - other.cents, currency=self.currency)


@dataclass
class RecordEntryParams:
    """
    Parameters for recording a ledger entry.

    amount_cents is the magnitude for CHARGE, PAYMENT and REFUND entries;
    the service applies the sign from the entry type. ADJUSTMENT entries
    take a signed amount (positive raises the balance, negative lowers it).

    Required Attributes:
        patient_id: Patient whose balance the entry affects
        entry_type: One of EntryType
        amount_cents: Magnitude (or signed amount for ADJUSTMENT)
        idempotency_key: Unique key to prevent duplicate entries

    Optional Attributes:
        invoice_id: Invoice the entry applies to
        currency: ISO 4217 code
        reference_type / reference_id: Related business entity
        description: Human-readable description
        metadata: Arbitrary JSON-serializable data
        created_by: Identifier of the service creating the entry
    """

    patient_id: uuid.UUID
    entry_type: str
    amount_cents: int
    idempotency_key: str

    invoice_id: uuid.UUID | None = None
    currency: str = "usd"
    reference_type: str | None = None
    reference_id: uuid.UUID | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = field(default_factory=dict)
    created_by: str | None = None

    def __post_init__(self) -> None:
        if self.amount_cents == 0:
            raise ValueError("amount_cents cannot be zero")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
