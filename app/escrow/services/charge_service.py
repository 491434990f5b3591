"""
Charge confirmation: applies processor outcomes to pending payments.

Both the Stripe webhook handlers and the polling verification path call
into this service, so a charge outcome is applied the same way whichever
route reports it first. The second report finds the payment already in
the matching state and becomes a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from core.services import BaseService, ServiceResult
from escrow.audit import PROCESSOR_ACTOR, AmountMismatch, PaymentFailed, PaymentHeld, record_audit
from escrow.exceptions import InvalidStateTransitionError, PaymentNotFoundError
from escrow.models import Payment
from escrow.retry import run_atomic_with_retry
from escrow.state_machines import PaymentState
from escrow.state_machines.machine import (
    ensure_can_transition,
    record_rejected_transition,
    transition_payment,
)

logger = logging.getLogger(__name__)

# States that already reflect a successful charge
CHARGED_STATES = frozenset(
    {
        PaymentState.HELD,
        PaymentState.RELEASED,
        PaymentState.REFUNDED,
        PaymentState.DISPUTED,
    }
)


@dataclass
class ChargeOutcome:
    """
    Result of applying a charge outcome.

    Attributes:
        payment: Payment after the outcome was applied (or not)
        applied: True if this call changed the payment
        amount_mismatch: Confirmed amount differed from the expected total
        rejected_code: Error code when the outcome was discarded as
            out of order
    """

    payment: Payment
    applied: bool
    amount_mismatch: bool = False
    rejected_code: str | None = None


class ChargeService(BaseService):
    """Service for confirming or failing pending charges."""

    @classmethod
    def confirm_charge(
        cls,
        payment_intent_id: str,
        amount_received_cents: int,
        currency: str,
        source: str,
        event_id: str | None = None,
        payment_id: str | None = None,
    ) -> ServiceResult[ChargeOutcome]:
        """
        Apply a successful charge: PENDING -> HELD.

        An amount (or currency) mismatch still holds the funds but flags
        the payment for reconciliation and blocks settlement.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_received_cents: Amount Stripe actually captured
            currency: Currency reported by Stripe
            source: "webhook" or "verification"
            event_id: Stripe event ID, if any
            payment_id: Fallback lookup from the intent metadata
        """
        try:
            outcome = run_atomic_with_retry(
                cls._confirm_locked,
                payment_intent_id,
                amount_received_cents,
                currency,
                source,
                event_id,
                payment_id,
            )
        except PaymentNotFoundError as e:
            return cls.handle_exception(e, "Charge confirmation")
        except InvalidStateTransitionError as e:
            return cls._discard(payment_intent_id, payment_id, e, "charge_succeeded")

        if outcome.amount_mismatch:
            logger.critical(
                "Charge amount mismatch, payment flagged for reconciliation",
                extra={
                    "payment_id": str(outcome.payment.pk),
                    "expected_amount_cents": outcome.payment.total_amount_cents,
                    "confirmed_amount_cents": amount_received_cents,
                    "currency": currency,
                    "event_id": event_id,
                },
            )
        return ServiceResult.success(outcome)

    @classmethod
    def _confirm_locked(
        cls,
        payment_intent_id: str,
        amount_received_cents: int,
        currency: str,
        source: str,
        event_id: str | None,
        payment_id: str | None,
    ) -> ChargeOutcome:
        payment = cls._lock_by_reference(payment_intent_id, payment_id)

        if payment.state in CHARGED_STATES:
            cls.get_logger().info(
                "Charge already applied, ignoring duplicate",
                extra={"payment_id": str(payment.pk), "state": payment.state, "event_id": event_id},
            )
            return ChargeOutcome(payment=payment, applied=False)

        ensure_can_transition(payment, "hold")

        if not payment.stripe_payment_intent_id:
            payment.stripe_payment_intent_id = payment_intent_id

        transition_payment(
            payment,
            "hold",
            PaymentHeld(
                confirmed_amount_cents=amount_received_cents,
                source=source,
                event_id=event_id,
            ),
            actor=PROCESSOR_ACTOR,
            confirmed_amount_cents=amount_received_cents,
        )

        mismatch = payment.needs_reconciliation or currency.lower() != payment.currency.lower()
        if mismatch:
            if not payment.needs_reconciliation:
                payment.needs_reconciliation = True
                payment.save()
            record_audit(
                payment,
                AmountMismatch(
                    expected_amount_cents=payment.total_amount_cents,
                    confirmed_amount_cents=amount_received_cents,
                    event_id=event_id,
                ),
                actor=PROCESSOR_ACTOR,
            )
        return ChargeOutcome(payment=payment, applied=True, amount_mismatch=mismatch)

    @classmethod
    def fail_charge(
        cls,
        payment_intent_id: str,
        reason: str,
        source: str,
        event_id: str | None = None,
        payment_id: str | None = None,
    ) -> ServiceResult[ChargeOutcome]:
        """
        Apply a failed charge: PENDING -> FAILED.

        The processor's failure reason is stored verbatim.
        """
        try:
            outcome = run_atomic_with_retry(
                cls._fail_locked,
                payment_intent_id,
                reason,
                source,
                event_id,
                payment_id,
            )
        except PaymentNotFoundError as e:
            return cls.handle_exception(e, "Charge failure")
        except InvalidStateTransitionError as e:
            return cls._discard(payment_intent_id, payment_id, e, "charge_failed")
        return ServiceResult.success(outcome)

    @classmethod
    def _fail_locked(
        cls,
        payment_intent_id: str,
        reason: str,
        source: str,
        event_id: str | None,
        payment_id: str | None,
    ) -> ChargeOutcome:
        payment = cls._lock_by_reference(payment_intent_id, payment_id)

        if payment.state == PaymentState.FAILED:
            return ChargeOutcome(payment=payment, applied=False)

        ensure_can_transition(payment, "fail")
        transition_payment(
            payment,
            "fail",
            PaymentFailed(reason=reason, source=source, event_id=event_id),
            actor=PROCESSOR_ACTOR,
            reason=reason,
        )
        return ChargeOutcome(payment=payment, applied=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _lock_by_reference(payment_intent_id: str, payment_id: str | None) -> Payment:
        queryset = Payment.objects.select_for_update().select_related("delivery")
        payment = queryset.filter(stripe_payment_intent_id=payment_intent_id).first()
        if payment is None and payment_id:
            payment = queryset.filter(pk=payment_id).first()
        if payment is None:
            raise PaymentNotFoundError(
                "No payment matches the processor reference",
                details={"payment_intent_id": payment_intent_id},
            )
        return payment

    @classmethod
    def _discard(
        cls,
        payment_intent_id: str,
        payment_id: str | None,
        error: InvalidStateTransitionError,
        trigger: str,
    ) -> ServiceResult[ChargeOutcome]:
        """Acknowledge an out-of-order outcome without applying it."""
        payment = Payment.objects.filter(stripe_payment_intent_id=payment_intent_id).first()
        if payment is None and payment_id:
            payment = Payment.objects.filter(pk=payment_id).first()

        record_rejected_transition(payment.pk, error, trigger=trigger, actor=PROCESSOR_ACTOR)
        if trigger == "charge_succeeded":
            # Money was captured for a payment we already failed
            logger.critical(
                "Charge succeeded for a failed payment, manual refund required",
                extra={"payment_id": str(payment.pk), "payment_intent_id": payment_intent_id},
            )
        return ServiceResult.success(
            ChargeOutcome(payment=payment, applied=False, rejected_code=error.error_code)
        )
