"""
Celery configuration for the billing service.

Celery runs the scheduled billing work:
- The daily installment billing job (billing.tasks.process_due_installments)
- Webhook marker cleanup (billing.tasks.cleanup_webhook_events)

Schedules live in the database (django-celery-beat) and are created by
billing migrations; edit them in the admin.

Usage:
    celery -A config worker -l info
    celery -A config beat -l info

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks from all registered Django apps
app.autodiscover_tasks()
