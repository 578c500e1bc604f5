"""
Invoice service.

Issues invoices and posts their CHARGE ledger entries.

Usage:
    from billing.services import InvoiceService

    result = InvoiceService.create_invoice(patient, 45000, "Initial treatment package")
    if result.success:
        invoice = result.data
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.utils import timezone

from core.services import BaseService, ServiceResult

from billing.ledger import LedgerService
from billing.models import Invoice

if TYPE_CHECKING:
    from practices.models import Patient


class InvoiceService(BaseService):
    """Invoice creation."""

    @staticmethod
    def generate_number() -> str:
        return f"INV-{timezone.now():%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"

    @classmethod
    def create_invoice(
        cls,
        patient: Patient,
        amount_cents: int,
        description: str = "",
        number: str | None = None,
        currency: str = "usd",
    ) -> ServiceResult[Invoice]:
        """
        Create an invoice and charge its amount to the patient's ledger.

        The charge entry is keyed "invoice-charge:<invoice id>".
        """
        validation = cls.validate_required(patient=patient)
        if validation is not None:
            return validation
        if amount_cents <= 0:
            return ServiceResult.failure(
                "Invoice amount must be positive",
                error_code="VALIDATION_ERROR",
                errors={"amount_cents": ["Must be greater than zero."]},
            )

        number = number or cls.generate_number()
        if Invoice.objects.filter(practice_id=patient.practice_id, number=number).exists():
            return ServiceResult.failure(
                f"Invoice number {number} already exists",
                error_code="INVOICE_NUMBER_EXISTS",
            )

        with cls.atomic():
            invoice = Invoice.objects.create(
                practice_id=patient.practice_id,
                patient=patient,
                number=number,
                description=description,
                currency=currency,
            )
            LedgerService.post_charge(
                patient_id=patient.id,
                invoice_id=invoice.id,
                amount_cents=amount_cents,
                idempotency_key=f"invoice-charge:{invoice.id}",
                currency=currency,
                reference_type="invoice",
                reference_id=invoice.id,
                description=description or f"Invoice {number}",
                created_by="invoice_service",
            )

        cls.get_logger().info(
            f"Created invoice {number}",
            extra={"invoice_id": str(invoice.id), "amount_cents": amount_cents},
        )
        return ServiceResult.success(invoice)
