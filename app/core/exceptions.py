"""
Base exception classes for application-wide error handling.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── NotFoundError - Row or resource not found
    └── ConflictError - State conflicts (held leases, illegal transitions)

Domain apps derive their own families from these (billing.exceptions,
billing.ledger.exceptions).

Usage:
    from core.exceptions import NotFoundError

    raise NotFoundError(
        f"Installment {installment_id} not found",
        error_code="INSTALLMENT_NOT_FOUND",
        details={"pk": str(installment_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=400)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (processor codes, ids, etc.)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Invalid webhook signature",
                "error_code": "INVALID_SIGNATURE",
                "details": {"processor": "stripe"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class NotFoundError(BaseApplicationError):
    """
    Raised when a row that must exist is missing.

    Use for single-row lookups where existence is expected (row locks,
    webhook events pointing at an installment). List queries return empty
    results instead.
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current state.

    Use for:
    - A run lease already held by another billing job
    - State machine transitions that are not allowed

    HTTP 409 Conflict is the matching status.
    """

    default_error_code: str = "CONFLICT"
