"""
Disbursement service for moving settled money through Stripe.

Settlement and dispute resolution commit the ledger first and create a
PENDING Disbursement row in the same transaction. This service then
performs the external call in three phases:

1. Phase 1: Lock the disbursement row, count the attempt, commit
2. Phase 2: Call Stripe create_transfer / create_refund (outside any
   transaction) with the idempotency key stored on the row
3. Phase 3: Mark the disbursement COMPLETED, store the Stripe object ID on
   the payment and flip payout_status to COMPLETED once every disbursement
   of the payment has completed

If the Stripe call times out the outcome is unknown: the row stays PENDING
and the next attempt reuses the same key, so Stripe returns the original
transfer instead of creating a second one.

Usage:
    from escrow.services import DisbursementService

    result = DisbursementService.execute(disbursement_id)

    if result.success:
        print(result.data.stripe_object_id)
    elif (result.details or {}).get("retryable"):
        # Left PENDING, the retry worker picks it up
        ...
"""

from __future__ import annotations

import logging
import uuid

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.services import BaseService, ServiceResult
from escrow.adapters import IdempotencyKeyGenerator, StripeAdapter
from escrow.audit import (
    PROCESSOR_ACTOR,
    SYSTEM_ACTOR,
    DisbursementCompleted,
    DisbursementFailed,
    SettlementStuck,
    record_audit,
)
from escrow.exceptions import EscrowValidationError, LockAcquisitionError, StripeError
from escrow.locks import DistributedLock, lock_payment
from escrow.models import Disbursement, Payment
from escrow.state_machines import DisbursementKind, DisbursementState, PayoutStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Distributed lock TTL for one processor call (seconds)
DISBURSEMENT_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
DISBURSEMENT_LOCK_TIMEOUT = 10.0


class DisbursementService(BaseService):
    """
    Service for creating and executing disbursements.

    Error Handling:
        - Outcome unknown (timeout, connection error, Stripe 5xx): stays
          PENDING, same idempotency key on the next attempt
        - Rate limited: stays PENDING
        - Permanent errors (invalid account, invalid request): FAILED and
          a stuck-settlement alert, an operator re-arms it with rearm()
    """

    # Stripe adapter - can be injected for testing
    _stripe_adapter: type | None = None

    @classmethod
    def get_stripe_adapter(cls) -> type:
        """Get the Stripe adapter class."""
        return cls._stripe_adapter or StripeAdapter

    @classmethod
    def set_stripe_adapter(cls, adapter: type | None) -> None:
        """Set the Stripe adapter class (for testing)."""
        cls._stripe_adapter = adapter

    # =========================================================================
    # Creation (inside the caller's transaction)
    # =========================================================================

    @classmethod
    def create_disbursement(
        cls,
        payment: Payment,
        kind: DisbursementKind,
        amount_cents: int,
        operation: str,
    ) -> Disbursement:
        """
        Create a PENDING disbursement with its idempotency key.

        Must run inside the transaction that committed the ledger change.

        Args:
            payment: Payment being settled
            kind: TRANSFER or REFUND
            amount_cents: Positive amount to move
            operation: Idempotency key operation name

        Raises:
            EscrowValidationError: Transfer without a connected account
        """
        destination = ""
        if kind == DisbursementKind.TRANSFER:
            destination = payment.company.stripe_account_id if payment.company else ""
            if not destination:
                raise EscrowValidationError(
                    "Company has no connected account to receive transfers",
                    details={"payment_id": str(payment.pk)},
                )

        return Disbursement.objects.create(
            payment=payment,
            kind=kind,
            amount_cents=amount_cents,
            currency=payment.currency,
            destination_account=destination,
            operation=operation,
            idempotency_key=IdempotencyKeyGenerator.generate(operation, payment.pk),
        )

    # =========================================================================
    # Execution
    # =========================================================================

    @classmethod
    def execute(cls, disbursement_id: uuid.UUID) -> ServiceResult[Disbursement]:
        """
        Execute one disbursement against Stripe.

        Returns:
            ServiceResult with the Disbursement. A failed result carries
            details["retryable"] and details["outcome_unknown"].

        Raises:
            LockAcquisitionError: Another worker is executing it right now
        """
        cls.get_logger().info(
            "Starting disbursement execution",
            extra={"disbursement_id": str(disbursement_id)},
        )
        with DistributedLock(
            f"escrow:disbursement:{disbursement_id}",
            ttl=DISBURSEMENT_LOCK_TTL,
            timeout=DISBURSEMENT_LOCK_TIMEOUT,
        ):
            return cls._execute_with_lock(disbursement_id)

    @classmethod
    def execute_pending_for_payment(cls, payment_id: uuid.UUID) -> list[ServiceResult]:
        """Execute every PENDING disbursement of a payment, oldest first."""
        pending_ids = list(
            Disbursement.objects.filter(
                payment_id=payment_id,
                state=DisbursementState.PENDING,
            ).values_list("id", flat=True)
        )
        results = []
        for disbursement_id in pending_ids:
            try:
                results.append(cls.execute(disbursement_id))
            except LockAcquisitionError as e:
                # Another worker holds it; the retry worker will catch up
                results.append(ServiceResult.from_exception(e))
        return results

    @classmethod
    def _execute_with_lock(cls, disbursement_id: uuid.UUID) -> ServiceResult[Disbursement]:
        # Phase 1: count the attempt
        with transaction.atomic():
            disbursement = (
                Disbursement.objects.select_for_update()
                .select_related("payment")
                .filter(pk=disbursement_id)
                .first()
            )
            if disbursement is None:
                return ServiceResult.failure(
                    f"Disbursement {disbursement_id} not found",
                    error_code="DISBURSEMENT_NOT_FOUND",
                )

            if disbursement.state == DisbursementState.COMPLETED:
                cls.get_logger().info(
                    "Disbursement already completed, returning success (idempotent)",
                    extra={"disbursement_id": str(disbursement_id)},
                )
                return ServiceResult.success(disbursement)

            if disbursement.state == DisbursementState.FAILED:
                return ServiceResult.failure(
                    "Disbursement is FAILED. Use rearm() before executing.",
                    error_code="DISBURSEMENT_FAILED",
                    details={"disbursement_id": str(disbursement_id)},
                )

            disbursement.record_attempt()
            disbursement.save(update_fields=["attempt_count", "last_attempt_at", "updated_at"])

        # Phase 2: processor call (outside transaction)
        try:
            stripe_object_id = cls._call_processor(disbursement)
        except StripeError as e:
            return cls._record_failure(disbursement.pk, e)

        # Phase 3: record the outcome
        disbursement = cls.confirm(disbursement.pk, stripe_object_id)
        return ServiceResult.success(disbursement)

    @classmethod
    def _call_processor(cls, disbursement: Disbursement) -> str:
        adapter = cls.get_stripe_adapter()
        payment = disbursement.payment
        metadata = {
            "payment_id": str(payment.pk),
            "disbursement_id": str(disbursement.pk),
            "delivery_id": str(payment.delivery_id),
        }

        cls.get_logger().info(
            "Calling Stripe for disbursement",
            extra={
                "disbursement_id": str(disbursement.pk),
                "kind": disbursement.kind,
                "amount_cents": disbursement.amount_cents,
                "attempt": disbursement.attempt_count,
            },
        )

        if disbursement.kind == DisbursementKind.TRANSFER:
            result = adapter.create_transfer(
                amount_cents=disbursement.amount_cents,
                destination_account=disbursement.destination_account,
                idempotency_key=disbursement.idempotency_key,
                currency=disbursement.currency,
                metadata=metadata,
            )
        else:
            result = adapter.create_refund(
                payment_intent_id=payment.stripe_payment_intent_id,
                idempotency_key=disbursement.idempotency_key,
                amount_cents=disbursement.amount_cents,
                metadata=metadata,
            )
        return result.id

    @classmethod
    def confirm(cls, disbursement_id: uuid.UUID, stripe_object_id: str) -> Disbursement:
        """
        Mark a disbursement COMPLETED.

        Used after a successful call and by the transfer/refund webhooks.
        Safe to call more than once.
        """
        with transaction.atomic():
            disbursement = Disbursement.objects.get(pk=disbursement_id)
            payment = lock_payment(disbursement.payment_id)
            disbursement = Disbursement.objects.select_for_update().get(pk=disbursement_id)

            if disbursement.state != DisbursementState.PENDING:
                return disbursement

            disbursement.complete(stripe_object_id)
            disbursement.save()

            if disbursement.kind == DisbursementKind.TRANSFER:
                payment.transfer_id = stripe_object_id
            if not payment.disbursements.exclude(state=DisbursementState.COMPLETED).exists():
                payment.payout_status = PayoutStatus.COMPLETED
            payment.save()

            record_audit(
                payment,
                DisbursementCompleted(
                    kind=disbursement.kind,
                    amount_cents=disbursement.amount_cents,
                    stripe_object_id=stripe_object_id,
                    idempotency_key=disbursement.idempotency_key,
                ),
                actor=PROCESSOR_ACTOR,
            )

        cls.get_logger().info(
            "Disbursement completed",
            extra={
                "disbursement_id": str(disbursement_id),
                "payment_id": str(payment.pk),
                "stripe_object_id": stripe_object_id,
                "payout_status": payment.payout_status,
            },
        )
        return disbursement

    @classmethod
    def _record_failure(cls, disbursement_id: uuid.UUID, error: StripeError) -> ServiceResult:
        keep_pending = error.is_retryable or error.outcome_unknown

        with transaction.atomic():
            disbursement = Disbursement.objects.get(pk=disbursement_id)
            payment = lock_payment(disbursement.payment_id)
            disbursement = Disbursement.objects.select_for_update().get(pk=disbursement_id)

            if disbursement.state == DisbursementState.PENDING:
                if keep_pending:
                    disbursement.last_error = str(error)
                    disbursement.save(update_fields=["last_error", "updated_at"])
                else:
                    disbursement.fail(str(error))
                    disbursement.save()

            record_audit(
                payment,
                DisbursementFailed(
                    kind=disbursement.kind,
                    amount_cents=disbursement.amount_cents,
                    error=str(error),
                    idempotency_key=disbursement.idempotency_key,
                    outcome_unknown=error.outcome_unknown,
                ),
                actor=PROCESSOR_ACTOR,
            )

        if keep_pending:
            cls.get_logger().warning(
                f"Transient Stripe error, disbursement left pending: {type(error).__name__}",
                extra={
                    "disbursement_id": str(disbursement_id),
                    "error": str(error),
                    "outcome_unknown": error.outcome_unknown,
                },
            )
        else:
            cls.get_logger().error(
                f"Stripe rejected disbursement: {type(error).__name__}",
                extra={"disbursement_id": str(disbursement_id), "error": str(error)},
            )
            cls.raise_stuck_alert(disbursement_id)

        return ServiceResult.failure(
            str(error),
            error_code=error.error_code,
            details={
                "disbursement_id": str(disbursement_id),
                "retryable": keep_pending,
                "outcome_unknown": error.outcome_unknown,
            },
        )

    # =========================================================================
    # Processor Events
    # =========================================================================

    @classmethod
    def mark_reversed(
        cls,
        stripe_transfer_id: str,
        reason: str = "transfer reversed",
    ) -> Disbursement | None:
        """
        Record that Stripe reversed a completed transfer.

        The payment goes back to payout PENDING and an operator is alerted.
        The disbursement is not re-sent automatically.
        """
        disbursement = Disbursement.objects.filter(stripe_object_id=stripe_transfer_id).first()
        if disbursement is None:
            return None

        with transaction.atomic():
            payment = lock_payment(disbursement.payment_id)
            disbursement = Disbursement.objects.select_for_update().get(pk=disbursement.pk)
            if disbursement.state == DisbursementState.FAILED:
                return disbursement

            disbursement.fail(reason)
            disbursement.save()
            payment.payout_status = PayoutStatus.PENDING
            payment.save()
            record_audit(
                payment,
                DisbursementFailed(
                    kind=disbursement.kind,
                    amount_cents=disbursement.amount_cents,
                    error=reason,
                    idempotency_key=disbursement.idempotency_key,
                    outcome_unknown=False,
                ),
                actor=PROCESSOR_ACTOR,
            )

        cls.raise_stuck_alert(disbursement.pk)
        return disbursement

    # =========================================================================
    # Operator Actions
    # =========================================================================

    @classmethod
    def rearm(cls, disbursement_id: uuid.UUID) -> ServiceResult[Disbursement]:
        """
        Put a FAILED disbursement back to PENDING with a new idempotency key.

        Only FAILED rows can be re-armed. Stripe definitively rejected (or
        reversed) the previous attempt, so a new key is required to make a
        new request instead of replaying the cached error.
        """
        with transaction.atomic():
            disbursement = Disbursement.objects.select_for_update().get(pk=disbursement_id)
            if disbursement.state != DisbursementState.FAILED:
                return ServiceResult.failure(
                    f"Cannot re-arm disbursement in state: {disbursement.state}",
                    error_code="INVALID_STATE",
                )

            payment = disbursement.payment
            if disbursement.kind == DisbursementKind.TRANSFER and payment.company:
                disbursement.destination_account = payment.company.stripe_account_id
            disbursement.key_attempt += 1
            disbursement.idempotency_key = IdempotencyKeyGenerator.generate(
                disbursement.operation, payment.pk, attempt=disbursement.key_attempt
            )
            disbursement.attempt_count = 0
            disbursement.alerted_at = None
            disbursement.stripe_object_id = ""
            disbursement.retry()
            disbursement.save()

        cls.get_logger().info(
            "Disbursement re-armed",
            extra={
                "disbursement_id": str(disbursement_id),
                "key_attempt": disbursement.key_attempt,
            },
        )
        return ServiceResult.success(disbursement)

    @classmethod
    def raise_stuck_alert(cls, disbursement_id: uuid.UUID) -> bool:
        """
        Alert operators about a disbursement that cannot complete on its own.

        Raised once per disbursement; alerted_at guards against repeats.

        Returns:
            True if a new alert was raised
        """
        with transaction.atomic():
            disbursement = Disbursement.objects.get(pk=disbursement_id)
            payment = lock_payment(disbursement.payment_id)
            disbursement = Disbursement.objects.select_for_update().get(pk=disbursement_id)
            if disbursement.alerted_at is not None:
                return False

            disbursement.alerted_at = timezone.now()
            disbursement.save(update_fields=["alerted_at", "updated_at"])
            record_audit(
                payment,
                SettlementStuck(
                    disbursement_id=str(disbursement.pk),
                    kind=disbursement.kind,
                    attempts=disbursement.attempt_count,
                    last_error=disbursement.last_error,
                ),
                actor=SYSTEM_ACTOR,
            )

        logger.critical(
            "Settlement stuck: disbursement needs operator attention",
            extra={
                "disbursement_id": str(disbursement_id),
                "payment_id": str(payment.pk),
                "kind": disbursement.kind,
                "amount_cents": disbursement.amount_cents,
                "attempts": disbursement.attempt_count,
                "last_error": disbursement.last_error,
                "max_attempts": settings.ESCROW_DISBURSEMENT_MAX_ATTEMPTS,
            },
        )
        return True
