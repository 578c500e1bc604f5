"""
Pytest fixtures for billing tests.

This module provides fixtures for practices, patients, payment plans and the
billing configuration. Redis is patched so the run lease works without a
server; the mock gateway stands in for Stripe and Square.

Usage:
    def test_charge_due_installment(due_installment, run_scheduler):
        result = run_scheduler()
        assert result.successful == 1
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

from billing.conf import BillingConfig, BillingJobConfig, MockSettings, get_billing_config
from billing.gateways import MockGateway
from billing.notifications import BillingNotifier
from billing.state_machines import ProcessorType
from billing.tests.factories import (
    InstallmentFactory,
    PatientFactory,
    PaymentPlanFactory,
    PracticeFactory,
    StoredPaymentMethodFactory,
)
from billing.workers import BillingScheduler


MOCK_WEBHOOK_SECRET = "test-mock-webhook-secret"


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_billing_config_cache():
    """get_billing_config() is cached per process; reset around each test."""
    get_billing_config.cache_clear()
    yield
    get_billing_config.cache_clear()


@pytest.fixture
def job_config():
    """Default job policy: 3 attempts, 3 days apart, 3-day reminder window."""
    return BillingJobConfig(staff_alert_email="billing-alerts@test.example.com")


@pytest.fixture
def billing_config(job_config):
    """Billing configuration using the mock processor."""
    return BillingConfig(
        primary_processor=ProcessorType.MOCK,
        mock=MockSettings(webhook_secret=MOCK_WEBHOOK_SECRET),
        cron_secret="test-cron-secret",
        job=job_config,
    )


@pytest.fixture
def mock_redis():
    """Mock Redis connection for run-lease tests."""
    with patch("billing.locks.get_redis_connection") as mock_get_conn:
        mock_conn = MagicMock()
        mock_conn.set.return_value = True
        mock_conn.eval.return_value = 1
        mock_get_conn.return_value = mock_conn
        yield mock_conn


# =============================================================================
# Gateway and Notifier Fixtures
# =============================================================================


@pytest.fixture
def mock_gateway(billing_config):
    """Mock gateway; inspect .charges for the requests it received."""
    return MockGateway(billing_config.mock)


@pytest.fixture
def notifier(job_config):
    return BillingNotifier(staff_alert_email=job_config.staff_alert_email)


@pytest.fixture
def run_scheduler(job_config, mock_gateway, notifier):
    """
    Run the scheduler once at the current (possibly frozen) time.

    Accepts a job config to replace the default and invocation overrides.
    """

    def _run(config=None, overrides=None):
        scheduler = BillingScheduler(
            config or job_config,
            mock_gateway,
            notifier,
            now=timezone.now(),
            overrides=overrides,
        )
        return scheduler.run()

    return _run


@pytest.fixture
def sign_mock_event():
    """
    Build a signed mock webhook delivery.

    Returns (body_bytes, signature) for an event id, type and data dict.
    """

    def _sign(event_id, event_type, **data):
        body = json.dumps({"id": event_id, "type": event_type, "data": data}).encode()
        gateway = MockGateway(MockSettings(webhook_secret=MOCK_WEBHOOK_SECRET))
        return body, gateway.sign(body)

    return _sign


# =============================================================================
# Practice and Patient Fixtures
# =============================================================================


@pytest.fixture
def practice(db):
    return PracticeFactory(billing_alert_email="billing@practice.example.com")


@pytest.fixture
def patient(db, practice):
    """Patient with email consent."""
    return PatientFactory(practice=practice, first_name="Jane", last_name="Doe")


@pytest.fixture
def card(db, patient):
    """Default card that the mock gateway always charges successfully."""
    return StoredPaymentMethodFactory(patient=patient, payment_token="pm_card_4242")


@pytest.fixture
def declining_card(db, patient):
    """Default card that the mock gateway declines for insufficient funds."""
    return StoredPaymentMethodFactory(patient=patient, payment_token="pm_card_9995")


# =============================================================================
# Plan Fixtures
# =============================================================================


@pytest.fixture
def plan(db, patient):
    """ACTIVE single-installment plan for $150.00."""
    return PaymentPlanFactory(
        patient=patient,
        name="Adjustment package",
        total_amount_cents=15000,
        installment_count=1,
        installment_amount_cents=15000,
    )


@pytest.fixture
def due_installment(db, plan):
    """The plan's only installment, due today."""
    return InstallmentFactory(
        plan=plan,
        sequence_number=1,
        due_date=timezone.localdate(),
        amount_cents=15000,
    )
