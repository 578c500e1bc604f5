"""
Create the notification log table.
"""

import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("practices", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Notification",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("recipient_email", models.EmailField(blank=True, default="", max_length=254)),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("payment_reminder", "Payment Reminder"),
                            ("payment_confirmation", "Payment Confirmation"),
                            ("payment_failed", "Payment Failed"),
                            ("plan_completed", "Plan Completed"),
                            ("refund_processed", "Refund Processed"),
                            ("staff_alert", "Staff Alert"),
                        ],
                        db_index=True,
                        max_length=30,
                    ),
                ),
                ("subject", models.CharField(max_length=255)),
                ("body", models.TextField(blank=True, default="")),
                (
                    "status",
                    models.CharField(
                        choices=[("sent", "Sent"), ("failed", "Failed"), ("skipped", "Skipped")],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("reference_type", models.CharField(blank=True, default="", max_length=50)),
                ("reference_id", models.UUIDField(blank=True, db_index=True, null=True)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                (
                    "practice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="notifications",
                        to="practices.practice",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["category", "created_at"], name="notification_category_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="notification_reference_idx"),
                ],
            },
        ),
    ]
