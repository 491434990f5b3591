"""
Tests for escrow models.

Tests cover:
- Split balance and escrow details on Payment
- Database constraints on Payment and Disbursement
- WebhookEvent retry bookkeeping
"""

from datetime import datetime, timezone as dt_timezone

import pytest
from django.db import IntegrityError, transaction

from escrow.models import EscrowDetails
from escrow.state_machines import (
    DisbursementKind,
    PaymentState,
    PayoutStatus,
    WebhookEventStatus,
)
from escrow.tests.factories import (
    DisbursementFactory,
    HeldPaymentFactory,
    PaymentFactory,
    WebhookEventFactory,
)


@pytest.mark.django_db
class TestPayment:
    def test_str(self):
        payment = PaymentFactory()

        assert str(payment) == f"Payment({payment.id}, pending, 100.00 USD)"

    def test_split_is_balanced(self):
        payment = PaymentFactory()

        assert payment.has_split
        assert payment.split_is_balanced

    def test_split_with_driver_share_and_refund(self):
        payment = PaymentFactory(
            platform_fee_cents=600,
            company_amount_cents=4_400,
            driver_amount_cents=1_000,
            refunded_amount_cents=4_000,
        )

        assert payment.split_is_balanced

    def test_unbalanced_split(self):
        payment = PaymentFactory(platform_fee_cents=1_000, company_amount_cents=8_000)

        assert not payment.split_is_balanced

    def test_missing_split_is_not_balanced(self):
        payment = PaymentFactory(platform_fee_cents=None, company_amount_cents=None)

        assert not payment.has_split
        assert not payment.split_is_balanced

    def test_total_must_be_positive(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            PaymentFactory(total_amount_cents=0, platform_fee_cents=0, company_amount_cents=0)

    def test_escrow_details(self):
        held_at = datetime(2026, 3, 1, 12, 0, tzinfo=dt_timezone.utc)
        payment = HeldPaymentFactory(held_at=held_at)

        details = payment.escrow_details

        assert isinstance(details, EscrowDetails)
        assert details.to_dict() == {
            "schema_version": 1,
            "state": PaymentState.HELD,
            "payout_status": payment.payout_status,
            "release_condition": payment.release_condition,
            "held_at": "2026-03-01T12:00:00+00:00",
            "released_at": None,
            "refunded_at": None,
            "settled_at": None,
            "transfer_id": "",
            "needs_reconciliation": False,
        }

    def test_pending_transfer_flag(self):
        payment = HeldPaymentFactory(state=PaymentState.RELEASED, payout_status=PayoutStatus.PENDING)

        assert payment.is_pending_transfer
        assert not payment.is_settled


@pytest.mark.django_db
class TestDisbursement:
    def test_one_disbursement_per_kind(self):
        transfer = DisbursementFactory()

        with pytest.raises(IntegrityError), transaction.atomic():
            DisbursementFactory(
                payment=transfer.payment,
                idempotency_key="settlement_transfer:other",
            )

    def test_transfer_and_refund_can_coexist(self):
        transfer = DisbursementFactory(amount_cents=6_000)

        refund = DisbursementFactory(
            payment=transfer.payment,
            kind=DisbursementKind.REFUND,
            amount_cents=4_000,
            destination_account="",
            operation="dispute_refund",
        )

        assert transfer.payment.disbursements.count() == 2
        assert refund.idempotency_key != transfer.idempotency_key

    def test_record_attempt(self):
        disbursement = DisbursementFactory()

        disbursement.record_attempt()

        assert disbursement.attempt_count == 1
        assert disbursement.last_attempt_at is not None

    def test_str(self):
        disbursement = DisbursementFactory(amount_cents=9_000)

        assert str(disbursement) == "Disbursement(transfer, pending, 9000)"


@pytest.mark.django_db
class TestWebhookEvent:
    def test_can_retry_failed_until_limit(self):
        event = WebhookEventFactory(status=WebhookEventStatus.FAILED, retry_count=4)

        assert event.can_retry

        event.retry_count = 5
        assert not event.can_retry

    def test_pending_event_is_not_retried(self):
        assert not WebhookEventFactory().can_retry

    def test_processing_lifecycle(self):
        event = WebhookEventFactory()

        event.mark_processing()
        assert event.status == WebhookEventStatus.PROCESSING
        assert event.retry_count == 1

        event.mark_failed("boom")
        assert event.error_message == "boom"

        event.mark_processed()
        assert event.is_processed
        assert event.error_message == ""
        assert event.processed_at is not None

    def test_data_object(self):
        event = WebhookEventFactory()

        assert event.get_object_id() == "pi_unknown"
        assert event.data_object["amount_received"] == 10_000

    def test_data_object_missing(self):
        event = WebhookEventFactory(payload={})

        assert event.data_object == {}
        assert event.get_object_id() is None
