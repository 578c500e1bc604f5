"""
Tests for the billing job endpoint.

GET/POST /api/v1/billing/jobs/process-installments/
"""

import datetime

import pytest
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from billing.state_machines import InstallmentStatus
from billing.tests.factories import InstallmentFactory, PaymentPlanFactory


CRON_SECRET = "test-cron-secret"


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def url():
    return reverse("billing:process_installments")


@pytest.fixture
def cron_client(api_client):
    """Client presenting the configured cron secret as a bearer token."""
    api_client.credentials(HTTP_AUTHORIZATION=f"Bearer {CRON_SECRET}")
    return api_client


@pytest.mark.django_db
class TestCronAuthentication:
    """Tests for the shared-secret check."""

    def test_missing_secret_returns_401(self, api_client, url, mock_redis):
        response = api_client.get(url)

        assert response.status_code == 401
        mock_redis.set.assert_not_called()

    def test_wrong_secret_returns_401(self, api_client, url, mock_redis):
        api_client.credentials(HTTP_AUTHORIZATION="Bearer not-the-secret")

        response = api_client.get(url)

        assert response.status_code == 401
        mock_redis.set.assert_not_called()

    def test_bearer_secret_accepted(self, cron_client, url, mock_redis):
        response = cron_client.get(url)

        assert response.status_code == 200

    def test_header_secret_accepted(self, api_client, url, mock_redis):
        response = api_client.post(url, HTTP_X_CRON_SECRET=CRON_SECRET)

        assert response.status_code == 200

    def test_unconfigured_secret_rejects_outside_debug(self, cron_client, url, mock_redis, settings):
        settings.BILLING_CRON_SECRET = ""

        response = cron_client.get(url)

        assert response.status_code == 401

    def test_unconfigured_secret_allowed_in_debug(self, api_client, url, mock_redis, settings):
        settings.BILLING_CRON_SECRET = ""
        settings.DEBUG = True

        response = api_client.get(url)

        assert response.status_code == 200


@pytest.mark.django_db
class TestBillingJobEndpoint:
    """Tests for running the job over HTTP."""

    def test_runs_job_and_returns_counts(self, cron_client, url, mock_redis, card, due_installment):
        response = cron_client.post(url)

        due_installment.refresh_from_db()
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["processedInstallments"] == 1
        assert body["successfulPayments"] == 1
        assert body["failedPayments"] == 0
        assert body["errors"] == []
        assert "durationMs" in body
        assert due_installment.status == InstallmentStatus.PAID

    def test_get_and_post_are_equivalent(self, cron_client, url, mock_redis):
        assert cron_client.get(url).json().keys() == cron_client.post(url).json().keys()

    def test_query_overrides_apply(self, cron_client, url, mock_redis, declining_card, due_installment):
        response = cron_client.post(f"{url}?maxRetryAttempts=1&alertStaffOnFailure=false")

        due_installment.refresh_from_db()
        assert response.status_code == 200
        assert response.json()["defaultedPlans"] == 1
        assert due_installment.status == InstallmentStatus.FAILED

    def test_omitted_boolean_keeps_default(self, cron_client, url, mock_redis, patient, card):
        """Leaving sendReminders out must not switch reminders off."""
        plan = PaymentPlanFactory(patient=patient)
        InstallmentFactory(plan=plan, sequence_number=1, due_date=timezone.localdate() + datetime.timedelta(days=1))

        response = cron_client.post(f"{url}?maxRetryAttempts=2")

        assert response.json()["remindersSent"] == 1

    @pytest.mark.parametrize(
        "query",
        [
            "maxRetryAttempts=0",
            "maxRetryAttempts=11",
            "maxRetryAttempts=three",
            "retryIntervalDays=-1",
            "reminderDaysBeforeDue=31",
            "sendReminders=maybe",
        ],
    )
    def test_invalid_parameters_return_400(self, cron_client, url, mock_redis, query):
        response = cron_client.post(f"{url}?{query}")

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["error"] == "Invalid parameters"
        mock_redis.set.assert_not_called()

    def test_concurrent_run_returns_409(self, cron_client, url, mock_redis):
        mock_redis.set.return_value = False

        response = cron_client.post(url)

        assert response.status_code == 409
        assert response.json()["skipped"] is True
        assert response.json()["error"] == "Billing job already running"

    def test_failed_run_returns_500(self, cron_client, url, mock_redis, mocker):
        mocker.patch(
            "billing.workers.billing_scheduler.BillingScheduler.run",
            side_effect=RuntimeError("database went away"),
        )

        response = cron_client.post(url)

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert response.json()["error"] == "Internal error during billing job"
