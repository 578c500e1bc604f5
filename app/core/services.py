"""
Base service layer patterns.

- ServiceResult: Result wrapper for expected failures
- BaseService: Logging, transactions and exception conversion for services

Pattern Comparison:
    - ServiceResult: Expected failures (validation, business rules,
      undeliverable email)
    - Exceptions: Unexpected failures and failures the caller must not
      ignore (gateway outages, bad signatures, database errors)

Usage:
    from core.services import BaseService, ServiceResult

    class PaymentPlanService(BaseService):
        @classmethod
        def cancel_plan(cls, plan, reason) -> ServiceResult[PaymentPlan]:
            if plan.status != PaymentPlanStatus.ACTIVE:
                return ServiceResult.failure("Plan is not active", "PLAN_NOT_ACTIVE")
            with cls.atomic():
                plan.cancel(reason=reason)
                plan.save()
            return ServiceResult.success(plan)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful
        error: Error message if failed
        error_code: Machine-readable error code
        errors: Field-level errors for validation failures

    Usage:
        result = PaymentPlanService.create_plan(...)
        if result.success:
            plan = result.data
        else:
            logger.warning(f"{result.error_code}: {result.error}")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Example:
            return ServiceResult.failure(
                "Invalid payment plan",
                error_code="VALIDATION_ERROR",
                errors={"installment_count": ["Must be at least 1."]},
            )
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
        )

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Create a failed result from an exception.

        Application errors keep their own error code.
        """
        code = error_code or getattr(exc, "error_code", None) or exc.__class__.__name__.upper()
        message = getattr(exc, "message", None) or str(exc)
        return cls(success=False, error=message, error_code=code)

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Design Notes:
        - Use @staticmethod or @classmethod (no instance state)
        - Use ServiceResult for expected failures
        - Raise exceptions for unexpected failures
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named after the service class."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Run the block in a database transaction.

        Nested use creates a savepoint (Django's transaction.atomic()).
        """
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Log an exception and convert it to a failed ServiceResult.

        Example:
            try:
                gateway.charge(request)
            except GatewayError as e:
                return cls.handle_exception(e, "installment charge")
        """
        message = f"{context}: {exc}" if context else str(exc)
        cls.get_logger().log(log_level, message, exc_info=True)
        return ServiceResult.from_exception(exc)

    @classmethod
    def validate_required(cls, **kwargs: Any) -> ServiceResult | None:
        """
        Return a failure if any field is None or blank, else None.

        Example:
            validation = cls.validate_required(patient=patient, number=number)
            if validation is not None:
                return validation
        """
        errors = {}
        for field_name, value in kwargs.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                errors[field_name] = ["This field is required."]

        if errors:
            return ServiceResult.failure(
                "Required fields missing",
                error_code="VALIDATION_ERROR",
                errors=errors,
            )
        return None
