"""Django admin configuration for notification records."""

from django.contrib import admin

from notifications.models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    """
    Admin configuration for Notification.

    Read-only: records are written by NotificationService only.
    """

    list_display = [
        "id",
        "category",
        "recipient_email",
        "status",
        "practice",
        "created_at",
    ]
    list_filter = ["status", "category"]
    search_fields = ["recipient_email", "subject", "reference_id"]
    readonly_fields = [
        "id",
        "practice",
        "recipient_email",
        "category",
        "subject",
        "body",
        "status",
        "failure_reason",
        "reference_type",
        "reference_id",
        "sent_at",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]

    def has_add_permission(self, request):
        return False
