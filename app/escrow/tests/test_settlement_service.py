"""
Tests for SettlementService.

Tests cover:
- Full settlement of a held card payment, including the transfer
- Exactly-once behaviour on repeated calls
- Transfers left pending after an unknown outcome, and permanent failures
- Guards: delivery status, reconciliation flag, payment state
- Refunds
"""

import uuid

import pytest

from deliveries.models import Company, Delivery, DeliveryStatus, Driver
from escrow.adapters import IdempotencyKeyGenerator
from escrow.exceptions import StripeInvalidAccountError, StripeTimeoutError
from escrow.models import Disbursement, Payment
from escrow.services import SettlementService
from escrow.state_machines import (
    AuditAction,
    DisbursementKind,
    DisbursementState,
    PaymentState,
    PayoutStatus,
    ReleaseCondition,
)
from escrow.tests.factories import CashPaymentFactory, HeldPaymentFactory, PaymentFactory
from escrow.tests.helpers import audit_actions


@pytest.mark.django_db
class TestSettlePayment:
    """Tests for SettlementService.settle_payment()."""

    def test_full_settlement(self, held_delivered_payment, mock_stripe_adapter):
        payment = held_delivered_payment

        result = SettlementService.settle_payment(payment.pk, actor_user=payment.customer)

        assert result.success is True
        settlement = result.data
        assert settlement.state == PaymentState.RELEASED
        assert settlement.platform_fee_cents == 1_000
        assert settlement.company_amount_cents == 9_000
        assert settlement.payout_status == PayoutStatus.COMPLETED
        assert settlement.transfer_id.startswith("tr_test_")
        assert settlement.settled_at is not None
        assert settlement.already_settled is False

        call = mock_stripe_adapter.calls["create_transfer"][0]
        assert call["amount_cents"] == 9_000
        assert call["destination_account"] == payment.company.stripe_account_id
        assert call["idempotency_key"] == IdempotencyKeyGenerator.generate(
            "settlement_transfer", payment.pk
        )

        refreshed = Payment.objects.get(pk=payment.pk)
        assert refreshed.release_condition == ReleaseCondition.DELIVERY_CONFIRMED
        assert refreshed.split_is_balanced
        assert Delivery.objects.get(pk=payment.delivery_id).payment_status == PaymentState.RELEASED

        company = Company.objects.get(pk=payment.company_id)
        assert company.total_earnings_cents == 9_000
        assert company.total_deliveries == 1
        assert Driver.objects.get(pk=payment.driver_id).total_deliveries == 1

        assert audit_actions(payment) == [
            AuditAction.PAYMENT_RELEASED,
            AuditAction.DISBURSEMENT_COMPLETED,
        ]

    def test_second_call_returns_earlier_result(self, held_delivered_payment, mock_stripe_adapter):
        first = SettlementService.settle_payment(held_delivered_payment.pk)

        second = SettlementService.settle_payment(held_delivered_payment.pk)

        assert second.success is True
        assert second.data.already_settled is True
        assert second.data.settled_at == first.data.settled_at
        assert second.data.transfer_id == first.data.transfer_id
        assert len(mock_stripe_adapter.calls["create_transfer"]) == 1
        assert Disbursement.objects.filter(payment=held_delivered_payment).count() == 1
        assert Company.objects.get(pk=held_delivered_payment.company_id).total_deliveries == 1

    def test_timeout_leaves_transfer_pending_then_retry_reuses_key(
        self, held_delivered_payment, mock_stripe_adapter
    ):
        mock_stripe_adapter.create_transfer_side_effect = [StripeTimeoutError("Request timed out")]

        first = SettlementService.settle_payment(held_delivered_payment.pk)

        assert first.success is True
        assert first.data.state == PaymentState.RELEASED
        assert first.data.payout_status == PayoutStatus.PENDING
        assert "Request timed out" in first.data.disbursement_error
        disbursement = Disbursement.objects.get(payment=held_delivered_payment)
        assert disbursement.state == DisbursementState.PENDING
        assert disbursement.attempt_count == 1

        second = SettlementService.settle_payment(held_delivered_payment.pk)

        assert second.data.already_settled is True
        assert second.data.payout_status == PayoutStatus.COMPLETED
        keys = [c["idempotency_key"] for c in mock_stripe_adapter.calls["create_transfer"]]
        assert len(keys) == 2
        assert keys[0] == keys[1]
        assert Company.objects.get(pk=held_delivered_payment.company_id).total_deliveries == 1

    def test_permanent_transfer_error_fails_and_alerts(
        self, held_delivered_payment, mock_stripe_adapter
    ):
        mock_stripe_adapter.create_transfer_side_effect = StripeInvalidAccountError(
            "No such destination"
        )

        result = SettlementService.settle_payment(held_delivered_payment.pk)

        assert result.success is True
        assert result.data.state == PaymentState.RELEASED
        assert result.data.payout_status == PayoutStatus.PENDING
        disbursement = Disbursement.objects.get(payment=held_delivered_payment)
        assert disbursement.state == DisbursementState.FAILED
        assert disbursement.alerted_at is not None
        assert audit_actions(held_delivered_payment) == [
            AuditAction.PAYMENT_RELEASED,
            AuditAction.DISBURSEMENT_FAILED,
            AuditAction.SETTLEMENT_STUCK,
        ]

    def test_undelivered_delivery_not_settleable(self, held_payment, mock_stripe_adapter):
        result = SettlementService.settle_payment(held_payment.pk)

        assert result.success is False
        assert result.error_code == "DELIVERY_NOT_SETTLEABLE"
        assert result.http_status == 409
        assert Payment.objects.get(pk=held_payment.pk).state == PaymentState.HELD
        assert "create_transfer" not in mock_stripe_adapter.calls

    def test_pending_payment_rejected_and_audited(self, db):
        payment = PaymentFactory(delivery__status=DeliveryStatus.DELIVERED)

        result = SettlementService.settle_payment(payment.pk)

        assert result.error_code == "INVALID_STATE_TRANSITION"
        assert audit_actions(payment) == [AuditAction.TRANSITION_REJECTED]
        assert not Disbursement.objects.filter(payment=payment).exists()

    def test_unreconciled_amount_blocks_settlement(self, db):
        payment = HeldPaymentFactory(
            delivery__status=DeliveryStatus.DELIVERED,
            confirmed_amount_cents=9_999,
            needs_reconciliation=True,
        )

        result = SettlementService.settle_payment(payment.pk)

        assert result.error_code == "AMOUNT_MISMATCH"
        assert Payment.objects.get(pk=payment.pk).state == PaymentState.HELD

    def test_disputed_payment_cannot_be_settled(self, db):
        payment = HeldPaymentFactory(
            state=PaymentState.DISPUTED,
            delivery__status=DeliveryStatus.DELIVERED,
        )

        result = SettlementService.settle_payment(payment.pk)

        assert result.error_code == "INVALID_STATE_TRANSITION"
        assert Payment.objects.get(pk=payment.pk).state == PaymentState.DISPUTED

    def test_missing_split_is_computed(self, db, settings, mock_stripe_adapter):
        settings.ESCROW_DRIVER_SHARE_PERCENT_CARD = 20
        payment = HeldPaymentFactory(
            delivery__status=DeliveryStatus.DELIVERED,
            platform_fee_cents=None,
            company_amount_cents=None,
        )

        result = SettlementService.settle_payment(payment.pk)

        assert result.data.platform_fee_cents == 1_000
        assert result.data.driver_amount_cents == 1_800
        assert result.data.company_amount_cents == 7_200
        assert mock_stripe_adapter.calls["create_transfer"][0]["amount_cents"] == 9_000
        assert Payment.objects.get(pk=payment.pk).split_is_balanced

    def test_cash_payment_needs_no_transfer(self, mock_stripe_adapter, db):
        payment = CashPaymentFactory(
            state=PaymentState.HELD,
            confirmed_amount_cents=10_000,
            delivery__status=DeliveryStatus.DELIVERED,
        )

        result = SettlementService.settle_payment(payment.pk)

        assert result.data.state == PaymentState.RELEASED
        assert result.data.payout_status == PayoutStatus.NOT_REQUIRED
        assert not Disbursement.objects.filter(payment=payment).exists()
        assert "create_transfer" not in mock_stripe_adapter.calls

    def test_unknown_payment(self):
        result = SettlementService.settle_payment(uuid.uuid4())

        assert result.error_code == "PAYMENT_NOT_FOUND"

    def test_notifier_failure_does_not_undo_settlement(self, held_delivered_payment, mocker):
        notifier = mocker.Mock()
        notifier.notify.side_effect = RuntimeError("push service down")
        mocker.patch("escrow.notifications.get_notifier", return_value=notifier)

        result = SettlementService.settle_payment(held_delivered_payment.pk)

        assert result.success is True
        assert notifier.notify.called
        assert Payment.objects.get(pk=held_delivered_payment.pk).state == PaymentState.RELEASED


@pytest.mark.django_db
class TestRefundPayment:
    """Tests for SettlementService.refund_payment()."""

    def test_owner_refunds_held_payment(self, held_payment, mock_stripe_adapter):
        result = SettlementService.refund_payment(
            held_payment.pk, actor_user=held_payment.company.owner, reason="Order cancelled"
        )

        assert result.success is True
        assert result.data.state == PaymentState.REFUNDED
        assert result.data.refunded_amount_cents == 10_000
        assert result.data.company_amount_cents == 0
        assert result.data.payout_status == PayoutStatus.COMPLETED

        call = mock_stripe_adapter.calls["create_refund"][0]
        assert call["payment_intent_id"] == held_payment.stripe_payment_intent_id
        assert call["amount_cents"] == 10_000
        assert call["idempotency_key"] == IdempotencyKeyGenerator.generate(
            "payment_refund", held_payment.pk
        )
        disbursement = Disbursement.objects.get(payment=held_payment)
        assert disbursement.kind == DisbursementKind.REFUND
        assert Payment.objects.get(pk=held_payment.pk).split_is_balanced

    def test_staff_can_refund(self, held_payment, staff_user):
        result = SettlementService.refund_payment(held_payment.pk, actor_user=staff_user)

        assert result.success is True

    def test_customer_cannot_refund(self, held_payment):
        result = SettlementService.refund_payment(held_payment.pk, actor_user=held_payment.customer)

        assert result.error_code == "PERMISSION_DENIED"
        assert Payment.objects.get(pk=held_payment.pk).state == PaymentState.HELD

    def test_released_payment_cannot_be_refunded(self, held_delivered_payment, staff_user):
        SettlementService.settle_payment(held_delivered_payment.pk)

        result = SettlementService.refund_payment(held_delivered_payment.pk, actor_user=staff_user)

        assert result.error_code == "INVALID_STATE_TRANSITION"
        assert Payment.objects.get(pk=held_delivered_payment.pk).state == PaymentState.RELEASED

    def test_repeat_refund_returns_earlier_result(self, held_payment, mock_stripe_adapter):
        owner = held_payment.company.owner
        first = SettlementService.refund_payment(held_payment.pk, actor_user=owner, reason="Order cancelled")

        second = SettlementService.refund_payment(held_payment.pk, actor_user=owner, reason="Order cancelled")

        assert second.success is True
        assert second.data.already_settled is True
        assert second.data.state == PaymentState.REFUNDED
        assert second.data.settled_at == first.data.settled_at
        assert second.data.refunded_amount_cents == 10_000
        assert len(mock_stripe_adapter.calls["create_refund"]) == 1
        assert Disbursement.objects.filter(payment=held_payment).count() == 1
        assert AuditAction.TRANSITION_REJECTED not in audit_actions(held_payment)

    def test_repeat_refund_still_checks_permission(self, held_payment):
        SettlementService.refund_payment(held_payment.pk, actor_user=held_payment.company.owner)

        result = SettlementService.refund_payment(held_payment.pk, actor_user=held_payment.customer)

        assert result.error_code == "PERMISSION_DENIED"
