"""
Add celery-beat schedules for billing.

Creates:
- A daily run of the installment billing job at 09:00 UTC
- A weekly purge of old processed webhook markers
"""

from django.db import migrations

BILLING_JOB_TASK_NAME = "Process Due Installments"
WEBHOOK_CLEANUP_TASK_NAME = "Clean Up Billing Webhook Events"


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for billing."""
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    # Daily at 9 AM UTC
    crontab_daily_9am, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="9",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
    )

    # Weekly on Sunday at 4 AM UTC
    crontab_weekly_sun_4am, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="4",
        day_of_week="0",
        day_of_month="*",
        month_of_year="*",
    )

    PeriodicTask.objects.get_or_create(
        name=BILLING_JOB_TASK_NAME,
        defaults={
            "task": "billing.tasks.process_due_installments",
            "crontab": crontab_daily_9am,
            "enabled": True,
            "description": (
                "Sends upcoming-payment reminders and charges due payment-plan "
                "installments, retrying failed ones after the retry interval."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name=WEBHOOK_CLEANUP_TASK_NAME,
        defaults={
            "task": "billing.tasks.cleanup_webhook_events",
            "crontab": crontab_weekly_sun_4am,
            "enabled": True,
            "description": "Deletes processed webhook markers past the retention window.",
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[BILLING_JOB_TASK_NAME, WEBHOOK_CLEANUP_TASK_NAME],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
