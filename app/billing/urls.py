"""
URL configuration for the billing app.

Routes:
    - GET/POST /jobs/process-installments/ - Cron-triggered billing job
    - POST /webhooks/ - Processor webhooks (?processor=stripe|square|mock)

All routes are prefixed with /api/v1/billing/ when included in the main URLconf.
"""

from django.urls import path

from billing.views import BillingJobView
from billing.webhooks.views import payment_webhook

app_name = "billing"

urlpatterns = [
    path("jobs/process-installments/", BillingJobView.as_view(), name="process_installments"),
    path("webhooks/", payment_webhook, name="payment_webhook"),
]
