"""
Practices app configuration.
"""

from django.apps import AppConfig


class PracticesConfig(AppConfig):
    """Configuration for the practices application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "practices"
    verbose_name = "Practices"
