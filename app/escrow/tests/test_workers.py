"""
Tests for escrow Celery workers and webhook maintenance tasks.

Tests cover:
- release_completed_holds selection rules
- release_single_payment outcomes
- retry_pending_disbursements queueing and stuck alerts
- execute_single_disbursement outcomes
- Webhook retry and stuck-event cleanup
"""

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from deliveries.models import DeliveryStatus
from escrow.exceptions import StripeInvalidAccountError, StripeTimeoutError
from escrow.models import Disbursement, Payment, WebhookEvent
from escrow.state_machines import (
    DisbursementState,
    PaymentState,
    PayoutStatus,
    ReleaseCondition,
    WebhookEventStatus,
)
from escrow.tasks import (
    cleanup_stuck_webhooks,
    process_webhook_event,
    retry_failed_webhooks,
)
from escrow.tests.factories import (
    DisbursementFactory,
    HeldPaymentFactory,
    WebhookEventFactory,
)
from escrow.workers import (
    execute_single_disbursement,
    release_completed_holds,
    release_single_payment,
    retry_pending_disbursements,
)


# =============================================================================
# Hold Manager
# =============================================================================


def completed_hold(hours_ago, **kwargs):
    return HeldPaymentFactory(
        delivery__status=DeliveryStatus.DELIVERED,
        delivery__completed_at=timezone.now() - timedelta(hours=hours_ago),
        **kwargs,
    )


@pytest.mark.django_db
class TestReleaseCompletedHolds:
    """Tests for the auto-release scan."""

    @pytest.fixture
    def mock_delay(self, mocker):
        return mocker.patch("escrow.workers.hold_manager.release_single_payment.delay")

    def test_queues_holds_past_the_window(self, mock_delay):
        due = completed_hold(hours_ago=25)

        result = release_completed_holds()

        assert result == {"queued_count": 1}
        mock_delay.assert_called_once_with(str(due.pk))

    def test_skips_recent_completions(self, mock_delay):
        completed_hold(hours_ago=2)

        result = release_completed_holds()

        assert result == {"queued_count": 0}
        mock_delay.assert_not_called()

    def test_skips_unreconciled_disputed_and_undelivered(self, mock_delay):
        completed_hold(hours_ago=48, needs_reconciliation=True, confirmed_amount_cents=9_999)
        completed_hold(hours_ago=48, state=PaymentState.DISPUTED)
        HeldPaymentFactory(
            delivery__status=DeliveryStatus.IN_TRANSIT,
            delivery__completed_at=timezone.now() - timedelta(hours=48),
        )

        result = release_completed_holds()

        assert result == {"queued_count": 0}

    def test_window_follows_setting(self, mock_delay, settings):
        settings.ESCROW_AUTO_RELEASE_HOURS = 1
        completed_hold(hours_ago=2)

        assert release_completed_holds() == {"queued_count": 1}

    def test_queueing_failure_does_not_stop_scan(self, mock_delay):
        completed_hold(hours_ago=30)
        completed_hold(hours_ago=40)
        mock_delay.side_effect = [ConnectionError("broker down"), None]

        result = release_completed_holds()

        assert result == {"queued_count": 1}


@pytest.mark.django_db
class TestReleaseSinglePayment:
    def test_releases_with_auto_release_condition(self, held_delivered_payment):
        result = release_single_payment(str(held_delivered_payment.pk))

        assert result["status"] == "released"
        assert result["payout_status"] == PayoutStatus.COMPLETED
        payment = Payment.objects.get(pk=held_delivered_payment.pk)
        assert payment.release_condition == ReleaseCondition.AUTO_RELEASE

    def test_second_run_reports_already_settled(self, held_delivered_payment):
        release_single_payment(str(held_delivered_payment.pk))

        result = release_single_payment(str(held_delivered_payment.pk))

        assert result["status"] == "already_settled"

    def test_rejected_payment(self, held_payment):
        result = release_single_payment(str(held_payment.pk))

        assert result["status"] == "rejected"
        assert result["error_code"] == "DELIVERY_NOT_SETTLEABLE"


# =============================================================================
# Disbursement Executor
# =============================================================================


@pytest.fixture
def pending_transfer(db):
    payment = HeldPaymentFactory(state=PaymentState.RELEASED, payout_status=PayoutStatus.PENDING)
    return DisbursementFactory(payment=payment)


@pytest.mark.django_db
class TestRetryPendingDisbursements:
    @pytest.fixture
    def mock_delay(self, mocker):
        return mocker.patch(
            "escrow.workers.disbursement_executor.execute_single_disbursement.delay"
        )

    def test_queues_never_attempted(self, pending_transfer, mock_delay):
        result = retry_pending_disbursements()

        assert result == {"queued_count": 1, "alerted_count": 0}
        mock_delay.assert_called_once_with(str(pending_transfer.pk))

    def test_skips_recent_attempts(self, pending_transfer, mock_delay):
        Disbursement.objects.filter(pk=pending_transfer.pk).update(
            attempt_count=1,
            last_attempt_at=timezone.now() - timedelta(seconds=10),
        )

        result = retry_pending_disbursements()

        assert result["queued_count"] == 0
        mock_delay.assert_not_called()

    def test_requeues_after_interval(self, pending_transfer, mock_delay):
        Disbursement.objects.filter(pk=pending_transfer.pk).update(
            attempt_count=1,
            last_attempt_at=timezone.now() - timedelta(minutes=5),
        )

        assert retry_pending_disbursements()["queued_count"] == 1

    def test_exhausted_attempts_raise_alert(self, pending_transfer, mock_delay, settings):
        settings.ESCROW_DISBURSEMENT_MAX_ATTEMPTS = 3
        Disbursement.objects.filter(pk=pending_transfer.pk).update(
            attempt_count=3,
            last_attempt_at=timezone.now() - timedelta(minutes=5),
        )

        result = retry_pending_disbursements()

        assert result == {"queued_count": 0, "alerted_count": 1}
        mock_delay.assert_not_called()
        assert Disbursement.objects.get(pk=pending_transfer.pk).alerted_at is not None

        # Alerted rows are left for the operator
        assert retry_pending_disbursements() == {"queued_count": 0, "alerted_count": 0}

    def test_ignores_completed_and_failed(self, db, mock_delay):
        DisbursementFactory(state=DisbursementState.COMPLETED, stripe_object_id="tr_done")
        DisbursementFactory(state=DisbursementState.FAILED)

        assert retry_pending_disbursements() == {"queued_count": 0, "alerted_count": 0}


@pytest.mark.django_db
class TestExecuteSingleDisbursement:
    def test_completed(self, pending_transfer):
        result = execute_single_disbursement(str(pending_transfer.pk))

        assert result["status"] == "completed"
        assert result["stripe_object_id"].startswith("tr_test_")

    def test_transient_failure_left_pending(self, pending_transfer, mock_stripe_adapter):
        mock_stripe_adapter.create_transfer_side_effect = StripeTimeoutError("timed out")

        result = execute_single_disbursement(str(pending_transfer.pk))

        assert result["status"] == "pending"
        assert result["error_code"] == "STRIPE_TIMEOUT"

    def test_permanent_failure(self, pending_transfer, mock_stripe_adapter):
        mock_stripe_adapter.create_transfer_side_effect = StripeInvalidAccountError("gone")

        result = execute_single_disbursement(str(pending_transfer.pk))

        assert result["status"] == "failed"
        assert Disbursement.objects.get(pk=pending_transfer.pk).state == DisbursementState.FAILED


# =============================================================================
# Webhook Tasks
# =============================================================================


@pytest.mark.django_db
class TestProcessWebhookEvent:
    def test_applies_stored_event(self, pending_payment):
        event = WebhookEventFactory(
            payload={
                "id": "evt_stored",
                "type": "payment_intent.succeeded",
                "data": {
                    "object": {
                        "id": pending_payment.stripe_payment_intent_id,
                        "amount_received": 10_000,
                        "currency": "usd",
                    }
                },
            },
            stripe_event_id="evt_stored",
        )

        result = process_webhook_event(str(event.pk))

        assert result["status"] == "processed"
        assert Payment.objects.get(pk=pending_payment.pk).state == PaymentState.HELD

    def test_already_processed(self, db):
        event = WebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        assert process_webhook_event(str(event.pk))["status"] == "already_processed"

    def test_missing_event(self, db):
        assert process_webhook_event(str(uuid.uuid4()))["status"] == "not_found"


@pytest.mark.django_db
class TestRetryFailedWebhooks:
    def test_queues_retryable_failures(self, mocker):
        mock_delay = mocker.patch("escrow.tasks.process_webhook_event.delay")
        retryable = WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=1)
        WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=5)
        WebhookEventFactory(status=WebhookEventStatus.PROCESSED)

        result = retry_failed_webhooks()

        assert result == {"queued_count": 1}
        mock_delay.assert_called_once_with(str(retryable.pk))


@pytest.mark.django_db
class TestCleanupStuckWebhooks:
    def test_resets_stale_processing_events(self):
        with freeze_time("2026-01-01 10:00:00"):
            stale = WebhookEventFactory(status=WebhookEventStatus.PROCESSING)
        fresh = WebhookEventFactory(status=WebhookEventStatus.PROCESSING)

        with freeze_time("2026-01-01 11:00:00"):
            WebhookEvent.objects.filter(pk=fresh.pk).update(updated_at=timezone.now())
            result = cleanup_stuck_webhooks()

        assert result == {"reset_count": 1}
        stale = WebhookEvent.objects.get(pk=stale.pk)
        assert stale.status == WebhookEventStatus.FAILED
        assert stale.error_message == "Processing timed out"
        assert WebhookEvent.objects.get(pk=fresh.pk).status == WebhookEventStatus.PROCESSING
