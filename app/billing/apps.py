"""
Billing app configuration.
"""

from django.apps import AppConfig


class BillingAppConfig(AppConfig):
    """Configuration for the billing application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Billing"
