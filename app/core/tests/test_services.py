"""
Tests for the service layer base classes.
"""

import logging

import pytest

from core.exceptions import ConflictError
from core.services import BaseService, ServiceResult


class TestServiceResult:
    def test_success_carries_data(self):
        result = ServiceResult.success({"id": 1})

        assert result.success is True
        assert result.data == {"id": 1}
        assert bool(result) is True

    def test_failure_carries_error(self):
        result = ServiceResult.failure(
            "Invalid payment plan",
            error_code="VALIDATION_ERROR",
            errors={"installment_count": ["Must be at least 1."]},
        )

        assert result.success is False
        assert bool(result) is False
        assert result.error_code == "VALIDATION_ERROR"
        assert result.errors == {"installment_count": ["Must be at least 1."]}

    def test_from_application_exception_keeps_code(self):
        result = ServiceResult.from_exception(ConflictError("Lease held", error_code="LOCK_ACQUISITION_FAILED"))

        assert result.error == "Lease held"
        assert result.error_code == "LOCK_ACQUISITION_FAILED"

    def test_from_plain_exception_uses_class_name(self):
        result = ServiceResult.from_exception(RuntimeError("boom"))

        assert result.error == "boom"
        assert result.error_code == "RUNTIMEERROR"


class TestBaseService:
    def test_handle_exception_logs_and_fails(self, caplog):
        with caplog.at_level(logging.ERROR):
            result = BaseService.handle_exception(ValueError("bad"), "webhook evt_1")

        assert result.success is False
        assert "webhook evt_1: bad" in caplog.text

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_validate_required_rejects_blank(self, value):
        result = BaseService.validate_required(number=value)

        assert result.error_code == "VALIDATION_ERROR"
        assert "number" in result.errors

    def test_validate_required_accepts_falsy_non_blank(self):
        assert BaseService.validate_required(amount_cents=0, active=False) is None


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy(self, client):
        response = client.get("/health/")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "connected", "cache": "connected"}
