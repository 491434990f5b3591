"""
Settlement service: releasing or refunding held payments.

Settlement is the one operation that must be exactly-once. It runs as a
single transactional unit under a row lock on the payment:

    1. Return the earlier result if the payment is already settled
    2. Check the delivery is settleable and the payment is reconciled
    3. Compute the split if it is missing
    4. HELD -> RELEASED, stamp settled_at, create the transfer disbursement
    5. Update the company and driver aggregates and the delivery mirror

Transient database conflicts roll the whole unit back and retry it with
backoff. The Stripe transfer runs after the unit commits (see
DisbursementService); until it completes the payment reports payout
status PENDING.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from django.utils import timezone

from core.exceptions import BaseApplicationError, PermissionDeniedError
from core.services import BaseService, ServiceResult
from escrow.audit import PaymentRefunded, PaymentReleased, actor_for
from escrow.exceptions import (
    AmountMismatchError,
    DeliveryNotSettleableError,
    InvalidStateTransitionError,
)
from escrow.locks import lock_payment
from escrow.models import Payment
from escrow.notifications import notify_safely
from escrow.retry import run_atomic_with_retry
from escrow.services.disbursement_service import DisbursementService
from escrow.split import split_for_payment_method
from escrow.state_machines import (
    DisbursementKind,
    PaymentState,
    PayoutStatus,
    ReleaseCondition,
)
from escrow.state_machines.machine import (
    ensure_can_transition,
    record_rejected_transition,
    transition_payment,
)

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class SettlementResult:
    """
    Outcome of a settlement or refund.

    Attributes:
        payment_id: Settled payment
        state: Final payment state
        platform_fee_cents / company_amount_cents / driver_amount_cents:
            The recorded split
        refunded_amount_cents: Amount returned to the customer
        payout_status: PENDING until Stripe confirms every disbursement
        transfer_id: Stripe transfer ID once known
        settled_at: When the settlement unit committed
        already_settled: True when this call found an earlier settlement
        disbursement_error: Last processor error, if the transfer is pending
    """

    payment_id: uuid.UUID
    state: str
    platform_fee_cents: int
    company_amount_cents: int
    driver_amount_cents: int | None
    refunded_amount_cents: int
    payout_status: str
    transfer_id: str
    settled_at: datetime | None
    already_settled: bool = False
    disbursement_error: str | None = None

    @classmethod
    def from_payment(cls, payment: Payment, **kwargs) -> SettlementResult:
        return cls(
            payment_id=payment.pk,
            state=payment.state,
            platform_fee_cents=payment.platform_fee_cents or 0,
            company_amount_cents=payment.company_amount_cents or 0,
            driver_amount_cents=payment.driver_amount_cents,
            refunded_amount_cents=payment.refunded_amount_cents,
            payout_status=payment.payout_status,
            transfer_id=payment.transfer_id,
            settled_at=payment.settled_at,
            **kwargs,
        )


class SettlementService(BaseService):
    """Service for releasing held funds to companies or back to customers."""

    @classmethod
    def settle_payment(
        cls,
        payment_id: uuid.UUID,
        actor_user: AbstractBaseUser | None = None,
        release_condition: str = ReleaseCondition.DELIVERY_CONFIRMED,
    ) -> ServiceResult[SettlementResult]:
        """
        Release a held payment to the company.

        Idempotent: running it again on a settled payment returns the
        earlier result and never moves money twice. If the earlier run left
        the transfer pending, the pending disbursement is retried with its
        original idempotency key.

        Args:
            payment_id: Payment to settle
            actor_user: User who triggered it, None for the auto-release worker
            release_condition: Why the funds are released

        Returns:
            ServiceResult with SettlementResult
        """
        actor = actor_for(actor_user)
        cls.get_logger().info(
            "Starting settlement",
            extra={"payment_id": str(payment_id), "release_condition": release_condition},
        )

        try:
            payment, newly_settled = run_atomic_with_retry(
                cls._settle_locked, payment_id, release_condition, actor, actor_user
            )
        except InvalidStateTransitionError as e:
            record_rejected_transition(payment_id, e, "settle", actor, actor_user)
            return cls.handle_exception(e, "Settlement")
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Settlement")

        result = cls.finish_settlement(payment, already_settled=not newly_settled)
        if newly_settled:
            cls._notify_released(payment)
        return result

    @classmethod
    def _settle_locked(
        cls,
        payment_id: uuid.UUID,
        release_condition: str,
        actor: str,
        actor_user: AbstractBaseUser | None,
    ) -> tuple[Payment, bool]:
        payment = lock_payment(payment_id)

        if payment.state == PaymentState.RELEASED and payment.is_settled:
            cls.get_logger().info(
                "Payment already settled, returning earlier result (idempotent)",
                extra={"payment_id": str(payment.pk)},
            )
            return payment, False

        delivery = payment.delivery
        if not delivery.is_settleable:
            raise DeliveryNotSettleableError(
                f"Delivery is {delivery.status}, not delivered",
                details={"payment_id": str(payment.pk), "delivery_status": delivery.status},
            )
        if payment.needs_reconciliation:
            raise AmountMismatchError(
                expected_amount_cents=payment.total_amount_cents,
                confirmed_amount_cents=payment.confirmed_amount_cents,
                details={"payment_id": str(payment.pk)},
            )

        ensure_can_transition(payment, "release")

        if not payment.has_split:
            split = split_for_payment_method(payment.total_amount_cents, payment.payment_method)
            payment.platform_fee_cents = split.platform_fee_cents
            payment.company_amount_cents = split.company_amount_cents
            payment.driver_amount_cents = split.driver_amount_cents

        payment.company = payment.company or delivery.company
        payment.driver = payment.driver or delivery.driver

        payout_status = PayoutStatus.NOT_REQUIRED if payment.is_cash else PayoutStatus.PENDING
        transition_payment(
            payment,
            "release",
            PaymentReleased(
                platform_fee_cents=payment.platform_fee_cents,
                company_amount_cents=payment.company_amount_cents,
                driver_amount_cents=payment.driver_amount_cents,
                release_condition=release_condition,
            ),
            actor=actor,
            actor_user=actor_user,
            release_condition=release_condition,
            payout_status=payout_status,
        )

        # The company pays its drivers, so the transfer carries both shares
        if not payment.is_cash:
            DisbursementService.create_disbursement(
                payment,
                DisbursementKind.TRANSFER,
                payment.company_amount_cents + (payment.driver_amount_cents or 0),
                operation="settlement_transfer",
            )

        cls.record_earnings(payment)
        return payment, True

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def refund_payment(
        cls,
        payment_id: uuid.UUID,
        actor_user: AbstractBaseUser,
        reason: str = "",
    ) -> ServiceResult[SettlementResult]:
        """
        Return a held payment to the customer in full: HELD -> REFUNDED.

        Args:
            payment_id: Payment to refund
            actor_user: Staff member or the company's owner
            reason: Free-text reason stored in the audit log
        """
        actor = actor_for(actor_user)
        try:
            payment, newly_refunded = run_atomic_with_retry(
                cls._refund_locked, payment_id, actor_user, actor, reason
            )
        except InvalidStateTransitionError as e:
            record_rejected_transition(payment_id, e, "refund", actor, actor_user)
            return cls.handle_exception(e, "Refund")
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Refund")

        result = cls.finish_settlement(payment, already_settled=not newly_refunded)
        if not newly_refunded:
            return result
        notify_safely(
            payment.customer_id,
            "Payment refunded",
            "Your payment has been refunded.",
            {"payment_id": str(payment.pk), "amount_cents": payment.refunded_amount_cents},
        )
        return result

    @classmethod
    def _refund_locked(cls, payment_id, actor_user, actor: str, reason: str) -> tuple[Payment, bool]:
        payment = lock_payment(payment_id)

        company = payment.company or payment.delivery.company
        is_owner = company is not None and company.owner_id == actor_user.pk
        if not (actor_user.is_staff or is_owner):
            raise PermissionDeniedError("Only staff or the company owner can refund a payment")

        if payment.state == PaymentState.REFUNDED and payment.is_settled:
            cls.get_logger().info(
                "Payment already refunded, returning earlier result (idempotent)",
                extra={"payment_id": str(payment.pk)},
            )
            return payment, False

        ensure_can_transition(payment, "refund")
        transition_payment(
            payment,
            "refund",
            PaymentRefunded(amount_cents=payment.total_amount_cents, reason=reason),
            actor=actor,
            actor_user=actor_user,
            payout_status=PayoutStatus.NOT_REQUIRED if payment.is_cash else PayoutStatus.PENDING,
        )
        if not payment.is_cash:
            DisbursementService.create_disbursement(
                payment,
                DisbursementKind.REFUND,
                payment.total_amount_cents,
                operation="payment_refund",
            )
        return payment, True

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def record_earnings(payment: Payment) -> None:
        """Update the company and driver aggregates inside the settlement unit."""
        now = payment.settled_at or timezone.now()
        if payment.company_id:
            payment.company.record_settlement(payment.company_amount_cents, at=now)
        if payment.driver_id:
            payment.driver.record_delivery(payment.driver_amount_cents, at=now)

    @classmethod
    def finish_settlement(cls, payment: Payment, already_settled: bool = False) -> ServiceResult:
        """Run pending disbursements and build the result from a fresh read."""
        disbursement_error = None
        if payment.is_pending_transfer:
            for outcome in DisbursementService.execute_pending_for_payment(payment.pk):
                if not outcome.success:
                    disbursement_error = outcome.error

        payment = Payment.objects.get(pk=payment.pk)
        cls.get_logger().info(
            "Settlement finished",
            extra={
                "payment_id": str(payment.pk),
                "state": payment.state,
                "payout_status": payment.payout_status,
                "already_settled": already_settled,
            },
        )
        return ServiceResult.success(
            SettlementResult.from_payment(
                payment,
                already_settled=already_settled,
                disbursement_error=disbursement_error,
            )
        )

    @staticmethod
    def _notify_released(payment: Payment) -> None:
        data = {"payment_id": str(payment.pk), "delivery_id": str(payment.delivery_id)}
        notify_safely(
            payment.customer_id,
            "Payment released",
            "Your delivery is complete and the payment has been released.",
            data,
        )
        if payment.company_id:
            notify_safely(
                payment.company.owner_id,
                "Payment received",
                f"{payment.company_amount_cents / 100:.2f} {payment.currency.upper()} released for delivery.",
                data,
            )
