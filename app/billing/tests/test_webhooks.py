"""
Tests for processor webhook ingestion.

Covers the check-then-act marker (duplicates, in-flight, stale and failed
takeover), each event handler's ledger and installment effects, and the
HTTP endpoint's status codes.
"""

import datetime
import json
from unittest.mock import patch

import pytest
from django.core import mail
from django.urls import reverse
from django.utils import timezone

from billing.exceptions import WebhookPayloadError, WebhookSignatureError
from billing.ledger import LedgerService
from billing.models import LedgerEntry, WebhookEvent
from billing.services import installment_credit_key
from billing.services.reconciliation import InstallmentReconciler
from billing.state_machines import (
    InstallmentStatus,
    InvoiceStatus,
    PaymentPlanStatus,
    PaymentTransactionStatus,
    WebhookEventKind,
    WebhookEventStatus,
)
from billing.tests.factories import (
    InstallmentFactory,
    InvoiceFactory,
    PaymentPlanFactory,
    PaymentTransactionFactory,
    WebhookEventFactory,
)
from billing.webhooks.ingestion import WebhookIngestionService


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def service(billing_config, notifier):
    return WebhookIngestionService(billing_config, notifier=notifier)


@pytest.fixture
def invoice(db, patient):
    """$150.00 invoice with its ledger charge."""
    invoice = InvoiceFactory(patient=patient, number="INV-1001")
    LedgerService.post_charge(
        patient_id=patient.id,
        invoice_id=invoice.id,
        amount_cents=15000,
        idempotency_key=f"invoice-charge:{invoice.id}",
    )
    return invoice


@pytest.fixture
def attempted_installment(db, patient, invoice):
    """Installment the billing job has made one attempt on."""
    plan = PaymentPlanFactory(
        patient=patient,
        invoice=invoice,
        name="Adjustment package",
        total_amount_cents=15000,
        installment_count=1,
        installment_amount_cents=15000,
    )
    return InstallmentFactory(
        plan=plan,
        sequence_number=1,
        due_date=timezone.localdate(),
        status=InstallmentStatus.DUE,
        attempt_count=1,
        last_attempted_at=timezone.now(),
    )


@pytest.fixture
def pending_charge(db, attempted_installment, invoice):
    """PENDING transaction awaiting the processor's confirmation."""
    return PaymentTransactionFactory(
        installment=attempted_installment,
        invoice=invoice,
        external_transaction_id="mock_ch_pending_1",
    )


@pytest.fixture
def completed_charge(db, patient, invoice):
    """Completed one-off invoice payment (no installment)."""
    return PaymentTransactionFactory(
        installment=None,
        invoice=invoice,
        patient=patient,
        practice=patient.practice,
        amount_cents=15000,
        status=PaymentTransactionStatus.COMPLETED,
        external_transaction_id="mock_ch_completed_1",
    )


def _actions(result):
    return [action["action"] for action in result.actions]


# =============================================================================
# Verification
# =============================================================================


@pytest.mark.django_db
class TestVerification:
    """Tests that nothing is written before the signature checks out."""

    def test_invalid_signature_raises(self, service, sign_mock_event):
        body, _ = sign_mock_event("evt_1", "payment.succeeded", payment_id="mock_ch_1")

        with pytest.raises(WebhookSignatureError):
            service.ingest(body, "0" * 64)

        assert WebhookEvent.objects.count() == 0

    def test_missing_signature_raises(self, service, sign_mock_event):
        body, _ = sign_mock_event("evt_1", "payment.succeeded", payment_id="mock_ch_1")

        with pytest.raises(WebhookSignatureError):
            service.ingest(body, None)

    def test_tampered_body_raises(self, service, sign_mock_event):
        body, signature = sign_mock_event("evt_1", "payment.succeeded", amount=15000)
        tampered = body.replace(b"15000", b"1")

        with pytest.raises(WebhookSignatureError):
            service.ingest(tampered, signature)

    def test_malformed_body_raises(self, service, mock_gateway):
        body = b'{"type": "payment.succeeded"}'

        with pytest.raises(WebhookPayloadError):
            service.ingest(body, mock_gateway.sign(body))


# =============================================================================
# Idempotency
# =============================================================================


@pytest.mark.django_db
class TestIdempotency:
    """Tests for the (processor, event_id) marker."""

    def test_first_delivery_is_processed(self, service, sign_mock_event):
        body, signature = sign_mock_event("evt_new", "payment_method.attached")

        result = service.ingest(body, signature)

        event = WebhookEvent.objects.get(event_id="evt_new")
        assert result.processed is True
        assert result.skipped is False
        assert event.status == WebhookEventStatus.PROCESSED
        assert event.event_kind == WebhookEventKind.PAYMENT_METHOD
        assert event.delivery_count == 1
        assert event.processed_at is not None

    def test_redelivery_is_skipped(self, service, sign_mock_event):
        body, signature = sign_mock_event("evt_dup", "payment_method.attached")
        service.ingest(body, signature)

        result = service.ingest(body, signature)

        assert result.processed is False
        assert result.skipped is True
        assert result.skip_reason == "already_processed"
        assert WebhookEvent.objects.filter(event_id="evt_dup").count() == 1

    def test_in_flight_delivery_is_skipped(self, service, sign_mock_event):
        WebhookEventFactory(event_id="evt_busy", status=WebhookEventStatus.PROCESSING)
        body, signature = sign_mock_event("evt_busy", "payment_method.attached")

        result = service.ingest(body, signature)

        assert result.skipped is True
        assert result.skip_reason == "in_flight"

    def test_stale_processing_marker_is_taken_over(self, service, sign_mock_event):
        marker = WebhookEventFactory(event_id="evt_stale", status=WebhookEventStatus.PROCESSING)
        WebhookEvent.objects.filter(pk=marker.pk).update(
            updated_at=timezone.now() - datetime.timedelta(minutes=10)
        )
        body, signature = sign_mock_event("evt_stale", "payment_method.attached")

        result = service.ingest(body, signature)

        marker.refresh_from_db()
        assert result.processed is True
        assert marker.status == WebhookEventStatus.PROCESSED
        assert marker.delivery_count == 2

    def test_failed_event_is_retried_on_redelivery(self, service, sign_mock_event):
        marker = WebhookEventFactory(
            event_id="evt_failed",
            status=WebhookEventStatus.FAILED,
            error_message="database unavailable",
        )
        body, signature = sign_mock_event("evt_failed", "payment_method.attached")

        result = service.ingest(body, signature)

        marker.refresh_from_db()
        assert result.processed is True
        assert marker.status == WebhookEventStatus.PROCESSED
        assert marker.error_message is None

    def test_handler_error_marks_event_failed(self, service, sign_mock_event):
        body, signature = sign_mock_event("evt_boom", "payment_method.attached")

        with patch(
            "billing.webhooks.ingestion.dispatch_event",
            side_effect=RuntimeError("handler exploded"),
        ):
            result = service.ingest(body, signature)

        marker = WebhookEvent.objects.get(event_id="evt_boom")
        assert result.failed is True
        assert result.error
        assert marker.status == WebhookEventStatus.FAILED
        assert "handler exploded" in marker.error_message

    def test_handler_error_rolls_back_writes(self, service, sign_mock_event, pending_charge):
        """A failing handler leaves no partial ledger writes behind."""
        body, signature = sign_mock_event("evt_rollback", "payment.succeeded", payment_id="mock_ch_pending_1")

        with patch(
            "billing.webhooks.ingestion.WebhookEvent.mark_processed",
            side_effect=RuntimeError("write failed"),
        ):
            result = service.ingest(body, signature)

        pending_charge.refresh_from_db()
        assert result.failed is True
        assert pending_charge.status == PaymentTransactionStatus.PENDING
        assert not LedgerEntry.objects.filter(
            idempotency_key=installment_credit_key(pending_charge.installment_id)
        ).exists()

    def test_same_event_id_from_different_processors_are_distinct(self, service, sign_mock_event):
        WebhookEventFactory(processor="stripe", event_id="evt_shared")
        body, signature = sign_mock_event("evt_shared", "payment_method.attached")

        result = service.ingest(body, signature)

        assert result.processed is True
        assert WebhookEvent.objects.filter(event_id="evt_shared").count() == 2


# =============================================================================
# Payment succeeded
# =============================================================================


@pytest.mark.django_db
class TestPaymentSucceeded:
    """Tests for payment confirmations."""

    def test_settles_pending_installment(self, service, sign_mock_event, pending_charge):
        body, signature = sign_mock_event("evt_ok", "payment.succeeded", payment_id="mock_ch_pending_1")

        result = service.ingest(body, signature)

        pending_charge.refresh_from_db()
        installment = pending_charge.installment
        installment.refresh_from_db()
        assert _actions(result) == ["transaction_completed", "installment_paid", "plan_completed"]
        assert pending_charge.status == PaymentTransactionStatus.COMPLETED
        assert installment.status == InstallmentStatus.PAID
        assert installment.attempt_count == 1
        assert installment.plan.status == PaymentPlanStatus.COMPLETED

    def test_pays_down_invoice(self, service, sign_mock_event, pending_charge, invoice):
        body, signature = sign_mock_event("evt_ok", "payment.succeeded", payment_id="mock_ch_pending_1")

        service.ingest(body, signature)

        invoice.refresh_from_db()
        assert invoice.balance_cents == 0
        assert invoice.status == InvoiceStatus.PAID

    def test_sends_confirmation_after_commit(self, service, sign_mock_event, pending_charge):
        body, signature = sign_mock_event("evt_ok", "payment.succeeded", payment_id="mock_ch_pending_1")

        service.ingest(body, signature)

        assert "Payment received" in [m.subject for m in mail.outbox]

    def test_confirmation_for_installment_the_job_already_settled(
        self, service, sign_mock_event, pending_charge
    ):
        """The job and the webhook converge on one PAID installment and one credit."""
        InstallmentReconciler.settle(pending_charge.installment, pending_charge)
        body, signature = sign_mock_event("evt_late", "payment.succeeded", payment_id="mock_ch_pending_1")

        result = service.ingest(body, signature)

        assert "installment_already_paid" in _actions(result)
        credits = LedgerEntry.objects.filter(
            idempotency_key=installment_credit_key(pending_charge.installment_id)
        )
        assert credits.count() == 1

    def test_distinct_events_for_same_payment_credit_once(self, service, sign_mock_event, pending_charge):
        for event_id in ("evt_a", "evt_b"):
            body, signature = sign_mock_event(event_id, "payment.succeeded", payment_id="mock_ch_pending_1")
            service.ingest(body, signature)

        assert LedgerEntry.objects.filter(reference_id=pending_charge.installment_id).count() == 1

    def test_invoice_payment_without_installment(self, service, sign_mock_event, patient, invoice):
        txn = PaymentTransactionFactory(
            installment=None,
            invoice=invoice,
            patient=patient,
            practice=patient.practice,
            amount_cents=15000,
            external_transaction_id="mock_ch_invoice_1",
        )
        body, signature = sign_mock_event("evt_inv", "payment.succeeded", payment_id="mock_ch_invoice_1")

        result = service.ingest(body, signature)

        invoice.refresh_from_db()
        assert "invoice_payment_recorded" in _actions(result)
        assert LedgerEntry.objects.filter(idempotency_key=f"transaction-payment:{txn.id}").count() == 1
        assert invoice.status == InvoiceStatus.PAID

    def test_unknown_payment_is_acknowledged(self, service, sign_mock_event):
        body, signature = sign_mock_event("evt_orphan", "payment.succeeded", payment_id="mock_ch_unknown")

        result = service.ingest(body, signature)

        assert result.processed is True
        assert _actions(result) == ["unmatched_payment"]


# =============================================================================
# Payment failed
# =============================================================================


@pytest.mark.django_db
class TestPaymentFailed:
    """Tests for asynchronous failure reports."""

    def test_moves_installment_to_retrying_without_counting(self, service, sign_mock_event, pending_charge):
        body, signature = sign_mock_event(
            "evt_fail",
            "payment.failed",
            payment_id="mock_ch_pending_1",
            failure_code="card_declined",
            failure_message="Your card was declined.",
            decline_code="insufficient_funds",
        )

        result = service.ingest(body, signature)

        pending_charge.refresh_from_db()
        installment = pending_charge.installment
        installment.refresh_from_db()
        assert "installment_retrying" in _actions(result)
        assert pending_charge.status == PaymentTransactionStatus.FAILED
        assert pending_charge.decline_code == "insufficient_funds"
        assert installment.status == InstallmentStatus.RETRYING
        assert installment.attempt_count == 1
        assert installment.failure_reason == "Your card was declined."

    def test_failure_on_last_attempt_exhausts_installment(self, service, sign_mock_event, pending_charge):
        installment = pending_charge.installment
        installment.attempt_count = 3
        installment.save(update_fields=["attempt_count"])
        body, signature = sign_mock_event("evt_fail", "payment.failed", payment_id="mock_ch_pending_1")

        result = service.ingest(body, signature)

        installment.refresh_from_db()
        assert "installment_failed" in _actions(result)
        assert "plan_defaulted" in _actions(result)
        assert installment.status == InstallmentStatus.FAILED
        assert any(m.subject.startswith("Payment failed:") for m in mail.outbox)

    def test_failure_never_regresses_completed_payment(self, service, sign_mock_event, completed_charge):
        body, signature = sign_mock_event("evt_fail", "payment.failed", payment_id="mock_ch_completed_1")

        result = service.ingest(body, signature)

        completed_charge.refresh_from_db()
        assert _actions(result) == ["failure_ignored_completed"]
        assert completed_charge.status == PaymentTransactionStatus.COMPLETED

    def test_failure_already_recorded_by_job(self, service, sign_mock_event, pending_charge):
        pending_charge.mark_failed(error_code="card_declined")
        pending_charge.save()
        body, signature = sign_mock_event("evt_fail", "payment.failed", payment_id="mock_ch_pending_1")

        result = service.ingest(body, signature)

        assert _actions(result) == ["failure_already_recorded"]

    def test_failure_for_paid_installment_is_ignored(self, service, sign_mock_event, pending_charge):
        InstallmentReconciler.settle(pending_charge.installment)
        body, signature = sign_mock_event("evt_fail", "payment.failed", payment_id="mock_ch_pending_1")

        result = service.ingest(body, signature)

        installment = pending_charge.installment
        installment.refresh_from_db()
        assert "installment_unchanged" in _actions(result)
        assert installment.status == InstallmentStatus.PAID


# =============================================================================
# Refunds
# =============================================================================


@pytest.mark.django_db
class TestRefunds:
    """Tests for refund events and their ledger entries."""

    def test_partial_then_full_refund_posts_deltas(self, service, sign_mock_event, completed_charge, invoice):
        LedgerService.post_payment(
            patient_id=completed_charge.patient_id,
            invoice_id=invoice.id,
            amount_cents=15000,
            idempotency_key=f"transaction-payment:{completed_charge.id}",
        )

        body, signature = sign_mock_event(
            "evt_r1", "payment.refunded", payment_id="mock_ch_completed_1", amount_refunded=5000
        )
        service.ingest(body, signature)
        completed_charge.refresh_from_db()
        assert completed_charge.status == PaymentTransactionStatus.PARTIALLY_REFUNDED
        assert completed_charge.refunded_amount_cents == 5000

        body, signature = sign_mock_event(
            "evt_r2", "payment.refunded", payment_id="mock_ch_completed_1", amount_refunded=15000
        )
        service.ingest(body, signature)
        completed_charge.refresh_from_db()

        refunds = LedgerEntry.objects.filter(reference_id=completed_charge.id, entry_type="refund")
        assert sorted(refunds.values_list("amount_cents", flat=True)) == [5000, 10000]
        assert completed_charge.status == PaymentTransactionStatus.REFUNDED
        assert invoice.balance_cents == 15000

    def test_repeated_cumulative_total_is_not_posted_twice(self, service, sign_mock_event, completed_charge):
        for event_id in ("evt_r1", "evt_r1_again"):
            body, signature = sign_mock_event(
                event_id, "payment.refunded", payment_id="mock_ch_completed_1", amount_refunded=5000
            )
            result = service.ingest(body, signature)

        assert _actions(result) == ["refund_already_recorded"]
        assert LedgerEntry.objects.filter(reference_id=completed_charge.id, entry_type="refund").count() == 1

    def test_single_refund_keyed_by_refund_id(self, service, sign_mock_event, completed_charge):
        """Processors reporting individual refunds are keyed by refund id."""
        for event_id, refund_id in (("evt_s1", "rf_1"), ("evt_s2", "rf_2"), ("evt_s3", "rf_2")):
            body, signature = sign_mock_event(
                event_id,
                "payment.refunded",
                payment_id="mock_ch_completed_1",
                refund_amount=2500,
                refund_id=refund_id,
            )
            service.ingest(body, signature)

        completed_charge.refresh_from_db()
        refunds = LedgerEntry.objects.filter(reference_id=completed_charge.id, entry_type="refund")
        assert refunds.count() == 2
        assert completed_charge.refunded_amount_cents == 5000

    def test_refund_notifies_patient(self, service, sign_mock_event, completed_charge):
        body, signature = sign_mock_event(
            "evt_r1", "payment.refunded", payment_id="mock_ch_completed_1", amount_refunded=5000
        )

        service.ingest(body, signature)

        assert [m.subject for m in mail.outbox] == ["Refund issued"]


# =============================================================================
# Disputes
# =============================================================================


@pytest.mark.django_db
class TestDisputes:
    """Tests for dispute events."""

    def test_flags_invoice_and_alerts_staff(self, service, sign_mock_event, completed_charge, invoice):
        body, signature = sign_mock_event(
            "evt_d1",
            "dispute.created",
            payment_id="mock_ch_completed_1",
            dispute_status="needs_response",
            reason="fraudulent",
            amount=15000,
        )

        result = service.ingest(body, signature)

        invoice.refresh_from_db()
        completed_charge.refresh_from_db()
        assert _actions(result) == ["invoice_flagged", "dispute_recorded"]
        assert invoice.needs_review is True
        assert "fraudulent" in invoice.review_reason
        assert completed_charge.dispute_status == "needs_response"
        assert mail.outbox[0].subject == "Payment disputed: Jane Doe"
        assert mail.outbox[0].to == ["billing@practice.example.com"]

    def test_dispute_does_not_touch_ledger(self, service, sign_mock_event, completed_charge):
        before = LedgerEntry.objects.count()
        body, signature = sign_mock_event("evt_d1", "dispute.created", payment_id="mock_ch_completed_1")

        service.ingest(body, signature)

        assert LedgerEntry.objects.count() == before


# =============================================================================
# Other events
# =============================================================================


@pytest.mark.django_db
class TestOtherEvents:
    def test_unknown_type_is_acknowledged(self, service, sign_mock_event):
        body, signature = sign_mock_event("evt_x", "customer.updated")

        result = service.ingest(body, signature)

        event = WebhookEvent.objects.get(event_id="evt_x")
        assert result.processed is True
        assert _actions(result) == ["ignored"]
        assert event.event_kind == WebhookEventKind.IGNORED

    def test_notification_failure_is_non_fatal(self, service, sign_mock_event, pending_charge):
        body, signature = sign_mock_event("evt_ok", "payment.succeeded", payment_id="mock_ch_pending_1")

        with patch.object(
            service.notifier,
            "send_payment_confirmation",
            side_effect=RuntimeError("smtp down"),
        ):
            result = service.ingest(body, signature)

        assert result.processed is True
        assert any("smtp down" in error for error in result.errors)
        assert WebhookEvent.objects.get(event_id="evt_ok").status == WebhookEventStatus.PROCESSED


# =============================================================================
# Endpoint
# =============================================================================


@pytest.mark.django_db
class TestWebhookEndpoint:
    """Tests for POST /api/v1/billing/webhooks/."""

    @pytest.fixture
    def url(self):
        return reverse("billing:payment_webhook")

    def _post(self, client, url, body, signature=None, processor=None):
        headers = {"x-mock-signature": signature} if signature else {}
        target = f"{url}?processor={processor}" if processor else url
        return client.post(target, data=body, content_type="application/json", headers=headers)

    def test_valid_event_returns_200(self, client, url, sign_mock_event):
        body, signature = sign_mock_event("evt_http", "payment_method.attached")

        response = self._post(client, url, body, signature)

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "processed": True,
            "skipped": False,
            "eventId": "evt_http",
            "eventType": "payment_method.attached",
        }

    def test_duplicate_returns_200_skipped(self, client, url, sign_mock_event):
        body, signature = sign_mock_event("evt_http", "payment_method.attached")
        self._post(client, url, body, signature)

        response = self._post(client, url, body, signature)

        assert response.status_code == 200
        assert response.json()["skipped"] is True
        assert response.json()["processed"] is False

    def test_invalid_signature_returns_400(self, client, url, sign_mock_event):
        body, _ = sign_mock_event("evt_http", "payment_method.attached")

        response = self._post(client, url, body, "f" * 64)

        assert response.status_code == 400
        assert WebhookEvent.objects.count() == 0

    def test_non_ascii_signature_returns_400(self, client, url, sign_mock_event):
        body, _ = sign_mock_event("evt_http", "payment_method.attached")

        response = self._post(client, url, body, "caf\u00e9")

        assert response.status_code == 400
        assert WebhookEvent.objects.count() == 0

    def test_missing_signature_returns_400(self, client, url, sign_mock_event):
        body, _ = sign_mock_event("evt_http", "payment_method.attached")

        response = self._post(client, url, body)

        assert response.status_code == 400
        assert "x-mock-signature" in response.json()["error"]

    def test_unknown_processor_returns_400(self, client, url, sign_mock_event):
        body, signature = sign_mock_event("evt_http", "payment_method.attached")

        response = self._post(client, url, body, signature, processor="paypal")

        assert response.status_code == 400

    def test_processing_failure_returns_500(self, client, url, sign_mock_event):
        body, signature = sign_mock_event("evt_http", "payment_method.attached")

        with patch(
            "billing.webhooks.ingestion.dispatch_event",
            side_effect=RuntimeError("handler exploded"),
        ):
            response = self._post(client, url, body, signature)

        assert response.status_code == 500
        assert response.json()["processed"] is False

    def test_get_not_allowed(self, client, url):
        response = client.get(url)

        assert response.status_code == 405

    def test_malformed_json_returns_400(self, client, url, mock_gateway):
        body = b"not json"

        response = self._post(client, url, body, mock_gateway.sign(body))

        assert response.status_code == 400
        assert json.loads(response.content)["error"]
