"""
Billing configuration objects.

Settings are read from django.conf.settings exactly once, at the process
boundary, and turned into frozen dataclasses. Views and Celery tasks call
get_billing_config() and hand the result (or parts of it) to the webhook
ingestion service, the billing scheduler and the gateways. Nothing below
the boundary imports django.conf.settings.

Usage:
    from billing.conf import get_billing_config

    config = get_billing_config()
    job_config = config.job.with_overrides(max_retry_attempts=1)
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING

from billing.exceptions import BillingConfigurationError
from billing.state_machines import ProcessorType

if TYPE_CHECKING:
    from typing import Any

    from practices.models import Practice


logger = logging.getLogger(__name__)

# Keys accepted in Practice.billing_settings, mapped to BillingJobConfig fields
PRACTICE_OVERRIDE_KEYS = {
    "maxRetryAttempts": "max_retry_attempts",
    "retryIntervalDays": "retry_interval_days",
    "reminderDaysBeforeDue": "reminder_days_before_due",
    "sendReminders": "send_reminders",
    "alertStaffOnFailure": "alert_staff_on_failure",
    "defaultPlanOnFailure": "default_plan_on_failure",
}

BOOLEAN_OVERRIDES = {"send_reminders", "alert_staff_on_failure", "default_plan_on_failure"}


@dataclass(frozen=True)
class BillingJobConfig:
    """
    Policy for one billing job run.

    Every field may be overridden per invocation (cron endpoint query
    parameters, task kwargs) through with_overrides().

    Attributes:
        max_retry_attempts: Charge attempts allowed per installment
        retry_interval_days: Days between a failed attempt and the next one
        reminder_days_before_due: Width of the reminder window
        send_reminders: Whether the job sends upcoming-payment reminders
        alert_staff_on_failure: Whether exhausted installments alert staff
        default_plan_on_failure: Whether exhausted installments default the plan
        staff_alert_email: Fallback address when a practice has none
        max_reported_errors: Cap on per-item errors kept in the job result
        use_run_lock: Guard the run with a Redis lease
        lock_timeout_seconds: Lease expiry, longer than any expected run
    """

    max_retry_attempts: int = 3
    retry_interval_days: int = 3
    reminder_days_before_due: int = 3
    send_reminders: bool = True
    alert_staff_on_failure: bool = True
    default_plan_on_failure: bool = True
    staff_alert_email: str | None = None
    max_reported_errors: int = 50
    use_run_lock: bool = True
    lock_timeout_seconds: int = 1800

    def __post_init__(self) -> None:
        if self.max_retry_attempts < 1:
            raise BillingConfigurationError(
                "max_retry_attempts must be at least 1",
                details={"max_retry_attempts": self.max_retry_attempts},
            )
        if self.retry_interval_days < 0:
            raise BillingConfigurationError(
                "retry_interval_days cannot be negative",
                details={"retry_interval_days": self.retry_interval_days},
            )
        if self.reminder_days_before_due < 0:
            raise BillingConfigurationError(
                "reminder_days_before_due cannot be negative",
                details={"reminder_days_before_due": self.reminder_days_before_due},
            )
        if self.max_reported_errors < 0:
            raise BillingConfigurationError(
                "max_reported_errors cannot be negative",
                details={"max_reported_errors": self.max_reported_errors},
            )

    def with_overrides(self, **overrides: Any) -> BillingJobConfig:
        """
        Return a copy with the given fields replaced.

        None values are ignored so callers can pass optional query
        parameters straight through. Unknown field names raise.
        """
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise BillingConfigurationError(
                f"Unknown billing job options: {', '.join(sorted(unknown))}",
                details={"unknown": sorted(unknown)},
            )
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return dataclasses.replace(self, **changes)

    def for_practice(self, practice: Practice) -> BillingJobConfig:
        """
        Layer a practice's stored billing preferences over this config.

        Practices keep camelCase keys in billing_settings (as edited from
        the practice settings screen). Unknown keys are ignored, and so are
        values of the wrong type or out of range: one practice's bad
        preference falls back to the job default instead of failing the run.
        """
        stored = practice.billing_settings
        if not isinstance(stored, dict):
            stored = {}
        config = self
        for key, attr in PRACTICE_OVERRIDE_KEYS.items():
            if key not in stored or stored[key] is None:
                continue
            value = stored[key]
            expected = bool if attr in BOOLEAN_OVERRIDES else int
            # bool is an int subclass; reject it for numeric settings
            if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                logger.warning(
                    "Ignoring practice billing setting with wrong type",
                    extra={"practice_id": str(practice.pk), "setting": key, "value": repr(value)},
                )
                continue
            try:
                config = config.with_overrides(**{attr: value})
            except BillingConfigurationError as e:
                logger.warning(
                    "Ignoring invalid practice billing setting",
                    extra={"practice_id": str(practice.pk), "setting": key, "error": e.message},
                )
        return config


@dataclass(frozen=True)
class StripeSettings:
    """Credentials for the Stripe gateway."""

    secret_key: str = ""
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    max_network_retries: int = 2


@dataclass(frozen=True)
class SquareSettings:
    """Credentials and endpoint details for the Square gateway."""

    access_token: str = ""
    webhook_signature_key: str = ""
    notification_url: str = ""
    location_id: str = ""
    environment: str = "sandbox"
    api_version: str = "2024-12-18"
    timeout_seconds: float = 10.0

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"


@dataclass(frozen=True)
class MockSettings:
    """Shared secret for the mock gateway's webhook signatures."""

    webhook_secret: str = "mock-webhook-secret"


@dataclass(frozen=True)
class BillingConfig:
    """
    Process-wide billing configuration.

    Built once by get_billing_config() and passed by reference into the
    webhook ingestion service and the billing scheduler.
    """

    primary_processor: str = ProcessorType.STRIPE
    stripe: StripeSettings = field(default_factory=StripeSettings)
    square: SquareSettings = field(default_factory=SquareSettings)
    mock: MockSettings = field(default_factory=MockSettings)
    cron_secret: str = ""
    require_cron_secret: bool = True
    stale_processing_seconds: int = 300
    webhook_retention_days: int = 90
    job: BillingJobConfig = field(default_factory=BillingJobConfig)

    def __post_init__(self) -> None:
        if self.primary_processor not in ProcessorType.values:
            raise BillingConfigurationError(
                f"Unknown primary processor '{self.primary_processor}'",
                details={"primary_processor": self.primary_processor},
            )

    @classmethod
    def from_settings(cls, settings: Any) -> BillingConfig:
        """
        Build the configuration from a Django settings object.

        The cron secret is mandatory outside DEBUG; the endpoint rejects
        every request when it is missing.
        """
        return cls(
            primary_processor=settings.PAYMENT_PRIMARY_PROCESSOR,
            stripe=StripeSettings(
                secret_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                webhook_tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
                max_network_retries=settings.STRIPE_MAX_RETRIES,
            ),
            square=SquareSettings(
                access_token=settings.SQUARE_ACCESS_TOKEN,
                webhook_signature_key=settings.SQUARE_WEBHOOK_SIGNATURE_KEY,
                notification_url=settings.SQUARE_NOTIFICATION_URL,
                location_id=settings.SQUARE_LOCATION_ID,
                environment=settings.SQUARE_ENVIRONMENT,
                timeout_seconds=settings.SQUARE_API_TIMEOUT_SECONDS,
            ),
            mock=MockSettings(webhook_secret=settings.MOCK_WEBHOOK_SECRET),
            cron_secret=settings.BILLING_CRON_SECRET,
            require_cron_secret=not settings.DEBUG,
            stale_processing_seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS,
            webhook_retention_days=settings.WEBHOOK_EVENT_RETENTION_DAYS,
            job=BillingJobConfig(
                max_retry_attempts=settings.BILLING_MAX_RETRY_ATTEMPTS,
                retry_interval_days=settings.BILLING_RETRY_INTERVAL_DAYS,
                reminder_days_before_due=settings.BILLING_REMINDER_DAYS_BEFORE_DUE,
                send_reminders=settings.BILLING_SEND_REMINDERS,
                alert_staff_on_failure=settings.BILLING_ALERT_STAFF_ON_FAILURE,
                default_plan_on_failure=settings.BILLING_DEFAULT_PLAN_ON_FAILURE,
                staff_alert_email=settings.BILLING_STAFF_ALERT_EMAIL or None,
                lock_timeout_seconds=settings.BILLING_JOB_LOCK_TIMEOUT_SECONDS,
            ),
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    """Return the process-wide BillingConfig, building it on first use."""
    from django.conf import settings

    return BillingConfig.from_settings(settings)
