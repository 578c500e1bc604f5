"""
Serializers for the billing job endpoint.

Query parameters arrive camelCase (the scheduler's convention) and are
exposed as BillingJobConfig field names by `to_overrides()`.
"""

from rest_framework import serializers

from billing.workers.billing_scheduler import MAX_REMINDER_WINDOW_DAYS


class BillingJobParamsSerializer(serializers.Serializer):
    """
    Optional per-invocation overrides of the job configuration.

    Omitted parameters fall back to practice preferences and settings.
    """

    maxRetryAttempts = serializers.IntegerField(
        required=False,
        min_value=1,
        max_value=10,
        source="max_retry_attempts",
    )
    retryIntervalDays = serializers.IntegerField(
        required=False,
        min_value=0,
        max_value=30,
        source="retry_interval_days",
    )
    reminderDaysBeforeDue = serializers.IntegerField(
        required=False,
        min_value=0,
        max_value=MAX_REMINDER_WINDOW_DAYS,
        source="reminder_days_before_due",
    )
    sendReminders = serializers.BooleanField(required=False, source="send_reminders")
    alertStaffOnFailure = serializers.BooleanField(required=False, source="alert_staff_on_failure")

    def to_overrides(self) -> dict:
        return dict(self.validated_data)
