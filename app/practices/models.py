"""
Tenant and patient models.

Every billing record hangs off a Practice, directly or through a Patient,
so queries are always scoped to one tenant.
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import ProcessorType


class Practice(UUIDPrimaryKeyMixin, BaseModel):
    """
    A chiropractic practice.

    Fields:
        name: Display name used in patient emails
        slug: Unique short identifier
        contact_email: General practice inbox
        billing_alert_email: Where staff billing alerts are sent
        billing_settings: Per-practice billing job preferences
            (camelCase keys, see billing.conf.PRACTICE_OVERRIDE_KEYS)
        is_active: Inactive practices are skipped by the billing job
    """

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=100, unique=True)
    contact_email = models.EmailField(blank=True, default="")
    billing_alert_email = models.EmailField(blank=True, default="")
    billing_settings = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-practice overrides for the billing job",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name

    @property
    def staff_alert_email(self) -> str | None:
        """Billing alert address, falling back to the contact address."""
        return self.billing_alert_email or self.contact_email or None


class Patient(UUIDPrimaryKeyMixin, BaseModel):
    """
    A patient of a single practice.

    Fields:
        practice: Owning tenant
        first_name / last_name: Patient name
        email: Contact address for billing emails
        allow_email: Communication consent; no billing email is sent without it
        processor_customer_id: Customer id at the processor (cus_xxx, Square id)
    """

    practice = models.ForeignKey(
        Practice,
        on_delete=models.CASCADE,
        related_name="patients",
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    email = models.EmailField(blank=True, default="")
    allow_email = models.BooleanField(default=True)
    processor_customer_id = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["last_name", "first_name"]
        indexes = [
            models.Index(fields=["practice", "last_name"], name="patient_practice_last_name_idx"),
        ]

    def __str__(self) -> str:
        return self.full_name

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def can_receive_email(self) -> bool:
        return bool(self.email) and self.allow_email

    def default_payment_method(self) -> StoredPaymentMethod | None:
        """
        Return the card to charge for scheduled payments.

        Prefers the method flagged default; otherwise the newest active one.
        """
        active = self.payment_methods.filter(is_active=True)
        return active.filter(is_default=True).first() or active.order_by("-created_at").first()


class StoredPaymentMethod(UUIDPrimaryKeyMixin, BaseModel):
    """
    A tokenized payment method on file.

    The token is the processor's reusable reference (pm_xxx for Stripe,
    ccof:xxx for Square card-on-file). Card numbers are never stored.
    """

    patient = models.ForeignKey(
        Patient,
        on_delete=models.CASCADE,
        related_name="payment_methods",
    )
    processor = models.CharField(
        max_length=20,
        choices=ProcessorType.choices,
        default=ProcessorType.STRIPE,
    )
    payment_token = models.CharField(max_length=255)
    card_brand = models.CharField(max_length=30, blank=True, default="")
    last4 = models.CharField(max_length=4, blank=True, default="")
    exp_month = models.PositiveSmallIntegerField(null=True, blank=True)
    exp_year = models.PositiveSmallIntegerField(null=True, blank=True)
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["patient"],
                condition=Q(is_default=True, is_active=True),
                name="one_active_default_payment_method_per_patient",
            ),
        ]

    def __str__(self) -> str:
        brand = self.card_brand or "card"
        return f"{brand} ending {self.last4}" if self.last4 else brand
