"""
Tests for PaymentService.

Tests cover:
- Payment initiation (card and cash) and its idempotency
- Polling verification of the charge outcome
- Cash collection and cash settlement
- Staff reconciliation of amount mismatches
"""

import uuid

import pytest
from django.utils import timezone

from deliveries.models import Delivery, DeliveryStatus
from deliveries.tests.factories import DeliveryFactory
from escrow.adapters import IdempotencyKeyGenerator, PaymentIntentResult
from escrow.exceptions import StripeAPIUnavailableError
from escrow.models import Payment, PaymentAuditEntry
from escrow.services import PaymentService, SettlementService
from escrow.state_machines import AuditAction, PaymentMethod, PaymentState, PayoutStatus
from escrow.tests.factories import CashPaymentFactory, HeldPaymentFactory
from escrow.tests.helpers import audit_actions


# =============================================================================
# Initiation
# =============================================================================


@pytest.mark.django_db
class TestInitiatePayment:
    """Tests for PaymentService.initiate_payment()."""

    def test_card_payment_created_with_split(self, mock_stripe_adapter):
        delivery = DeliveryFactory(price_cents=10_000)

        result = PaymentService.initiate_payment(delivery.id, customer=delivery.customer)

        assert result.success is True
        payment = result.data.payment
        assert payment.state == PaymentState.PENDING
        assert payment.total_amount_cents == 10_000
        assert payment.platform_fee_cents == 1_000
        assert payment.company_amount_cents == 9_000
        assert payment.company == delivery.company
        assert result.data.payment_intent_id == payment.stripe_payment_intent_id
        assert result.data.client_secret == payment.client_secret != ""

        params = mock_stripe_adapter.calls["create_payment_intent"][0]["params"]
        assert params.amount_cents == 10_000
        assert params.idempotency_key == IdempotencyKeyGenerator.generate(
            "create_intent", payment.pk
        )
        assert params.metadata["payment_id"] == str(payment.pk)

        assert audit_actions(payment) == [AuditAction.PAYMENT_INITIATED]
        assert Delivery.objects.get(pk=delivery.pk).payment_status == PaymentState.PENDING

    def test_repeat_returns_same_checkout_reference(self, mock_stripe_adapter):
        delivery = DeliveryFactory()

        first = PaymentService.initiate_payment(delivery.id, customer=delivery.customer)
        second = PaymentService.initiate_payment(delivery.id, customer=delivery.customer)

        assert second.data.payment.pk == first.data.payment.pk
        assert second.data.client_secret == first.data.client_secret
        assert len(mock_stripe_adapter.calls["create_payment_intent"]) == 1
        assert Payment.objects.filter(delivery=delivery).count() == 1

    def test_processor_failure_can_be_retried_with_same_key(self, mock_stripe_adapter):
        delivery = DeliveryFactory()
        mock_stripe_adapter.create_payment_intent_side_effect = StripeAPIUnavailableError(
            "Stripe is down"
        )

        failed = PaymentService.initiate_payment(delivery.id, customer=delivery.customer)

        assert failed.success is False
        assert failed.error_code == "STRIPE_UNAVAILABLE"
        assert failed.http_status == 502
        payment = Payment.objects.get(delivery=delivery)
        assert payment.state == PaymentState.PENDING
        assert payment.stripe_payment_intent_id is None

        mock_stripe_adapter.create_payment_intent_side_effect = None
        retried = PaymentService.initiate_payment(delivery.id, customer=delivery.customer)

        assert retried.success is True
        keys = [c["params"].idempotency_key for c in mock_stripe_adapter.calls["create_payment_intent"]]
        assert keys[0] == keys[1]

    def test_cash_payment_skips_processor(self, mock_stripe_adapter):
        delivery = DeliveryFactory()

        result = PaymentService.initiate_payment(
            delivery.id, customer=delivery.customer, payment_method=PaymentMethod.CASH
        )

        assert result.success is True
        assert result.data.payment.payment_method == PaymentMethod.CASH
        assert result.data.client_secret == ""
        assert "create_payment_intent" not in mock_stripe_adapter.calls

    def test_only_customer_can_pay(self, stranger):
        delivery = DeliveryFactory()

        result = PaymentService.initiate_payment(delivery.id, customer=stranger)

        assert result.error_code == "PERMISSION_DENIED"
        assert result.http_status == 403
        assert not Payment.objects.filter(delivery=delivery).exists()

    def test_unknown_delivery(self, stranger):
        result = PaymentService.initiate_payment(uuid.uuid4(), customer=stranger)

        assert result.error_code == "NOT_FOUND"
        assert result.http_status == 404

    def test_cancelled_delivery_rejected(self):
        delivery = DeliveryFactory(status=DeliveryStatus.CANCELLED)

        result = PaymentService.initiate_payment(delivery.id, customer=delivery.customer)

        assert result.error_code == "ESCROW_VALIDATION_ERROR"

    def test_unsupported_method_rejected(self):
        delivery = DeliveryFactory()

        result = PaymentService.initiate_payment(
            delivery.id, customer=delivery.customer, payment_method="bitcoin"
        )

        assert result.error_code == "ESCROW_VALIDATION_ERROR"

    def test_delivery_with_held_payment_conflicts(self, held_payment):
        result = PaymentService.initiate_payment(
            held_payment.delivery_id, customer=held_payment.customer
        )

        assert result.error_code == "CONFLICT"
        assert result.http_status == 409


# =============================================================================
# Verification
# =============================================================================


def intent_result(payment, status, amount_received=None, failure_message=None):
    return PaymentIntentResult(
        id=payment.stripe_payment_intent_id,
        status=status,
        amount_cents=payment.total_amount_cents,
        amount_received_cents=(
            payment.total_amount_cents if amount_received is None else amount_received
        ),
        currency=payment.currency,
        failure_message=failure_message,
    )


@pytest.mark.django_db
class TestVerifyPayment:
    """Tests for the polling fallback."""

    def test_succeeded_moves_to_held(self, pending_payment, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_payment_intent_response = intent_result(
            pending_payment, "succeeded"
        )

        result = PaymentService.verify_payment(pending_payment.pk)

        assert result.success is True
        assert result.data.changed is True
        assert result.data.processor_status == "succeeded"
        assert result.data.payment.state == PaymentState.HELD

        entry = PaymentAuditEntry.objects.get(payment=pending_payment)
        assert entry.details["source"] == "verification"

    def test_declined_moves_to_failed_with_reason(self, pending_payment, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_payment_intent_response = intent_result(
            pending_payment,
            "requires_payment_method",
            amount_received=0,
            failure_message="Your card was declined.",
        )

        result = PaymentService.verify_payment(pending_payment.pk)

        payment = result.data.payment
        assert payment.state == PaymentState.FAILED
        assert payment.failure_reason == "Your card was declined."

    def test_canceled_moves_to_failed(self, pending_payment, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_payment_intent_response = intent_result(
            pending_payment, "canceled", amount_received=0
        )

        result = PaymentService.verify_payment(pending_payment.pk)

        assert result.data.payment.state == PaymentState.FAILED

    def test_processing_changes_nothing(self, pending_payment, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_payment_intent_response = intent_result(
            pending_payment, "processing", amount_received=0
        )

        result = PaymentService.verify_payment(pending_payment.pk)

        assert result.data.changed is False
        assert result.data.payment.state == PaymentState.PENDING

    def test_settled_payment_is_not_polled(self, held_payment, mock_stripe_adapter):
        result = PaymentService.verify_payment(held_payment.pk)

        assert result.success is True
        assert result.data.changed is False
        assert "retrieve_payment_intent" not in mock_stripe_adapter.calls

    def test_cash_payment_not_verifiable(self, pending_cash_payment):
        result = PaymentService.verify_payment(pending_cash_payment.pk)

        assert result.error_code == "NOT_VERIFIABLE"

    def test_unknown_payment(self):
        result = PaymentService.verify_payment(uuid.uuid4())

        assert result.error_code == "PAYMENT_NOT_FOUND"
        assert result.http_status == 404

    def test_processor_error_reported(self, pending_payment, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_payment_intent_side_effect = StripeAPIUnavailableError("down")

        result = PaymentService.verify_payment(pending_payment.pk)

        assert result.success is False
        assert result.http_status == 502
        assert Payment.objects.get(pk=pending_payment.pk).state == PaymentState.PENDING


# =============================================================================
# Cash
# =============================================================================


@pytest.mark.django_db
class TestCashCollection:
    """Tests for PaymentService.record_cash_collection()."""

    def test_driver_collects_cash(self, pending_cash_payment):
        driver_user = pending_cash_payment.driver.user

        result = PaymentService.record_cash_collection(
            pending_cash_payment.pk, collected_by=driver_user
        )

        assert result.success is True
        payment = Payment.objects.get(pk=pending_cash_payment.pk)
        assert payment.state == PaymentState.HELD
        assert payment.confirmed_amount_cents == payment.total_amount_cents
        entry = PaymentAuditEntry.objects.get(payment=payment)
        assert entry.details["source"] == "cash"
        assert entry.actor == f"user:{driver_user.pk}"

    def test_stranger_cannot_collect(self, pending_cash_payment, stranger):
        result = PaymentService.record_cash_collection(pending_cash_payment.pk, collected_by=stranger)

        assert result.error_code == "PERMISSION_DENIED"
        assert Payment.objects.get(pk=pending_cash_payment.pk).state == PaymentState.PENDING

    def test_card_payment_rejected(self, pending_payment, staff_user):
        result = PaymentService.record_cash_collection(pending_payment.pk, collected_by=staff_user)

        assert result.error_code == "ESCROW_VALIDATION_ERROR"

    def test_second_collection_rejected_and_audited(self, pending_cash_payment):
        driver_user = pending_cash_payment.driver.user
        PaymentService.record_cash_collection(pending_cash_payment.pk, collected_by=driver_user)

        result = PaymentService.record_cash_collection(
            pending_cash_payment.pk, collected_by=driver_user
        )

        assert result.error_code == "INVALID_STATE_TRANSITION"
        assert audit_actions(pending_cash_payment) == [
            AuditAction.PAYMENT_HELD,
            AuditAction.TRANSITION_REJECTED,
        ]


@pytest.mark.django_db
class TestCashSettlement:
    """Tests for PaymentService.mark_cash_settled()."""

    @pytest.fixture
    def released_cash_payment(self, db):
        now = timezone.now()
        return CashPaymentFactory(
            state=PaymentState.RELEASED,
            confirmed_amount_cents=10_000,
            payout_status=PayoutStatus.NOT_REQUIRED,
            held_at=now,
            released_at=now,
            settled_at=now,
        )

    def test_owner_confirms_cash_received(self, released_cash_payment):
        owner = released_cash_payment.company.owner

        result = PaymentService.mark_cash_settled(released_cash_payment.pk, confirmed_by=owner)

        assert result.success is True
        assert result.data.cash_settled_at is not None
        assert audit_actions(released_cash_payment) == [AuditAction.CASH_SETTLED]

    def test_repeat_is_a_noop(self, released_cash_payment):
        owner = released_cash_payment.company.owner
        first = PaymentService.mark_cash_settled(released_cash_payment.pk, confirmed_by=owner)

        second = PaymentService.mark_cash_settled(released_cash_payment.pk, confirmed_by=owner)

        assert second.success is True
        assert second.data.cash_settled_at == first.data.cash_settled_at
        assert audit_actions(released_cash_payment) == [AuditAction.CASH_SETTLED]

    def test_held_cash_cannot_be_settled(self, db):
        payment = CashPaymentFactory(state=PaymentState.HELD, confirmed_amount_cents=10_000)

        result = PaymentService.mark_cash_settled(payment.pk, confirmed_by=payment.company.owner)

        assert result.error_code == "CONFLICT"

    def test_stranger_rejected(self, released_cash_payment, stranger):
        result = PaymentService.mark_cash_settled(released_cash_payment.pk, confirmed_by=stranger)

        assert result.error_code == "PERMISSION_DENIED"

    def test_card_payment_rejected(self, db):
        payment = HeldPaymentFactory()

        result = PaymentService.mark_cash_settled(payment.pk, confirmed_by=payment.company.owner)

        assert result.error_code == "ESCROW_VALIDATION_ERROR"


# =============================================================================
# Reconciliation
# =============================================================================


@pytest.mark.django_db
class TestReconcilePayment:
    """Tests for PaymentService.reconcile_payment()."""

    @pytest.fixture
    def flagged_payment(self, db):
        return HeldPaymentFactory(
            delivery__status=DeliveryStatus.DELIVERED,
            confirmed_amount_cents=9_500,
            needs_reconciliation=True,
        )

    def test_staff_clears_flag(self, flagged_payment, staff_user):
        result = PaymentService.reconcile_payment(
            flagged_payment.pk, actor=staff_user, notes="Customer paid 95.00 by agreement"
        )

        assert result.success is True
        payment = Payment.objects.get(pk=flagged_payment.pk)
        assert payment.needs_reconciliation is False
        assert payment.state == PaymentState.HELD
        assert payment.confirmed_amount_cents == 9_500

        entry = PaymentAuditEntry.objects.get(payment=payment)
        assert entry.action == AuditAction.PAYMENT_RECONCILED
        assert entry.actor == f"user:{staff_user.pk}"
        assert entry.details == {
            "expected_amount_cents": 10_000,
            "confirmed_amount_cents": 9_500,
            "notes": "Customer paid 95.00 by agreement",
        }

    def test_reconciled_payment_can_settle(self, flagged_payment, staff_user, mock_stripe_adapter):
        PaymentService.reconcile_payment(flagged_payment.pk, actor=staff_user, notes="Checked")

        result = SettlementService.settle_payment(flagged_payment.pk)

        assert result.success is True
        assert result.data.state == PaymentState.RELEASED

    def test_non_staff_rejected(self, flagged_payment):
        result = PaymentService.reconcile_payment(
            flagged_payment.pk, actor=flagged_payment.company.owner, notes="Looks fine"
        )

        assert result.error_code == "PERMISSION_DENIED"
        assert Payment.objects.get(pk=flagged_payment.pk).needs_reconciliation is True
        assert audit_actions(flagged_payment) == []

    def test_notes_required(self, flagged_payment, staff_user):
        result = PaymentService.reconcile_payment(flagged_payment.pk, actor=staff_user, notes="  ")

        assert result.error_code == "ESCROW_VALIDATION_ERROR"
        assert Payment.objects.get(pk=flagged_payment.pk).needs_reconciliation is True

    def test_unflagged_payment_conflicts(self, held_payment, staff_user):
        result = PaymentService.reconcile_payment(held_payment.pk, actor=staff_user, notes="Checked")

        assert result.error_code == "NOT_FLAGGED_FOR_RECONCILIATION"
        assert audit_actions(held_payment) == []

    def test_unknown_payment(self, staff_user):
        result = PaymentService.reconcile_payment(uuid.uuid4(), actor=staff_user, notes="Checked")

        assert result.error_code == "PAYMENT_NOT_FOUND"
