"""
Ledger-specific exceptions.

Exception Hierarchy:
    LedgerError (base)
    ├── LedgerImmutableError - Attempt to modify or delete a posted entry
    └── InvalidLedgerEntry - Entry parameters violate posting rules

Usage:
    from billing.ledger.exceptions import LedgerImmutableError

    try:
        entry.save()
    except LedgerImmutableError:
        # Post an offsetting entry instead
        LedgerService.reverse_entry(entry, idempotency_key, reason)
"""

from __future__ import annotations

from core.exceptions import BaseApplicationError


class LedgerError(BaseApplicationError):
    """
    Base exception for all ledger operations.

    Example:
        try:
            LedgerService.record_entry(params)
        except LedgerError as e:
            logger.error(f"Ledger operation failed: {e}")
    """

    default_error_code: str = "LEDGER_ERROR"


class LedgerImmutableError(LedgerError):
    """
    Raised when code tries to update or delete a posted entry.

    Entries are append-only. Corrections are new offsetting entries.
    """

    default_error_code: str = "LEDGER_ENTRY_IMMUTABLE"


class InvalidLedgerEntry(LedgerError):
    """Raised when entry parameters break posting rules (zero amount, wrong sign)."""

    default_error_code: str = "INVALID_LEDGER_ENTRY"
