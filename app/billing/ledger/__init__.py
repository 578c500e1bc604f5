"""
Append-only patient ledger.

Every monetary event (charge, payment, refund, adjustment) is a posting.
Balances are sums of postings; nothing is ever updated in place.

Public API:
    Models:
        EntryType - Categories of postings
        LedgerEntry - Immutable signed posting

    Services:
        LedgerService - Posting and balance queries
        ledger - Singleton instance of LedgerService

    Types:
        Money - Amount in cents with currency
        RecordEntryParams - Parameters for recording an entry

    Exceptions:
        LedgerError - Base exception
        LedgerImmutableError - Update/delete of a posted entry
        InvalidLedgerEntry - Entry breaks posting rules

Usage:
    from billing.ledger import ledger

    ledger.post_charge(patient.id, 45000, f"invoice-charge:{invoice.id}", invoice_id=invoice.id)
"""

from .exceptions import InvalidLedgerEntry, LedgerError, LedgerImmutableError
from .models import EntryType, LedgerEntry
from .services import LedgerService, ledger
from .types import Money, RecordEntryParams

__all__ = [
    "EntryType",
    "InvalidLedgerEntry",
    "LedgerEntry",
    "LedgerError",
    "LedgerImmutableError",
    "LedgerService",
    "Money",
    "RecordEntryParams",
    "ledger",
]
