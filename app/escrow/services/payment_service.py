"""
Payment service: creating escrow payments and confirming them.

Card payments get a Stripe PaymentIntent whose client_secret is the
hosted-checkout reference returned to the customer. Cash payments skip
the processor entirely: the driver records the collection, which moves
the payment to HELD the same way a confirmed card charge does.

Usage:
    from escrow.services import PaymentService

    result = PaymentService.initiate_payment(delivery_id, customer=request.user)
    if result.success:
        return {"client_secret": result.data.client_secret}
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
)
from core.services import BaseService, ServiceResult
from deliveries.models import Delivery, DeliveryStatus
from escrow.adapters import CreatePaymentIntentParams, IdempotencyKeyGenerator, StripeAdapter
from escrow.audit import (
    CashSettled,
    PaymentHeld,
    PaymentInitiated,
    PaymentReconciled,
    actor_for,
    record_audit,
)
from escrow.exceptions import (
    EscrowValidationError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
    StripeError,
)
from escrow.locks import lock_payment
from escrow.models import Payment
from escrow.retry import run_atomic_with_retry
from escrow.services.charge_service import ChargeService
from escrow.split import split_for_payment_method
from escrow.state_machines import PaymentMethod, PaymentState
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
class InitiatedPayment:
    """
    Result of payment initiation.

    Attributes:
        payment: The created (or resumed) Payment
        client_secret: Hosted checkout reference, empty for cash
        payment_intent_id: Stripe PaymentIntent ID, empty for cash
    """

    payment: Payment
    client_secret: str = ""
    payment_intent_id: str = ""


@dataclass
class VerificationResult:
    """
    Result of polling the processor for a payment's status.

    Attributes:
        payment: Payment after any update
        processor_status: PaymentIntent status reported by Stripe
        changed: True if the poll moved the payment
    """

    payment: Payment
    processor_status: str | None
    changed: bool


class PaymentService(BaseService):
    """Service for payment initiation, verification and cash handling."""

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
    # Initiation
    # =========================================================================

    @classmethod
    def initiate_payment(
        cls,
        delivery_id: uuid.UUID,
        customer: AbstractBaseUser,
        payment_method: str = PaymentMethod.CARD,
    ) -> ServiceResult[InitiatedPayment]:
        """
        Create the escrow payment for a delivery.

        Calling this again for a delivery whose card payment is still
        PENDING returns the same checkout reference; the PaymentIntent is
        created with a deterministic idempotency key.

        Args:
            delivery_id: Delivery being paid for
            customer: Paying user, must be the delivery's customer
            payment_method: card or cash

        Returns:
            ServiceResult with InitiatedPayment
        """
        try:
            payment = cls._create_or_resume(delivery_id, customer, payment_method)
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Payment initiation")

        if payment.is_cash:
            return ServiceResult.success(InitiatedPayment(payment=payment))

        if payment.stripe_payment_intent_id:
            return ServiceResult.success(
                InitiatedPayment(
                    payment=payment,
                    client_secret=payment.client_secret,
                    payment_intent_id=payment.stripe_payment_intent_id,
                )
            )

        # Processor call happens after the payment row is committed
        try:
            intent = cls.get_stripe_adapter().create_payment_intent(
                CreatePaymentIntentParams(
                    amount_cents=payment.total_amount_cents,
                    currency=payment.currency,
                    idempotency_key=IdempotencyKeyGenerator.generate("create_intent", payment.pk),
                    metadata={
                        "payment_id": str(payment.pk),
                        "delivery_id": str(payment.delivery_id),
                        "platform_fee_cents": str(payment.platform_fee_cents),
                        "company_amount_cents": str(payment.company_amount_cents),
                    },
                    customer_email=getattr(customer, "email", None) or None,
                )
            )
        except StripeError as e:
            cls.get_logger().error(
                f"Failed to create PaymentIntent: {type(e).__name__}",
                extra={"payment_id": str(payment.pk), "error": str(e)},
            )
            return ServiceResult.from_exception(e)

        payment.stripe_payment_intent_id = intent.id
        payment.client_secret = intent.client_secret or ""
        payment.save(
            update_fields=["stripe_payment_intent_id", "client_secret", "version", "updated_at"]
        )

        cls.get_logger().info(
            "Payment initiated",
            extra={
                "payment_id": str(payment.pk),
                "delivery_id": str(payment.delivery_id),
                "payment_intent_id": intent.id,
                "amount_cents": payment.total_amount_cents,
            },
        )
        return ServiceResult.success(
            InitiatedPayment(
                payment=payment,
                client_secret=payment.client_secret,
                payment_intent_id=intent.id,
            )
        )

    @classmethod
    def _create_or_resume(
        cls,
        delivery_id: uuid.UUID,
        customer: AbstractBaseUser,
        payment_method: str,
    ) -> Payment:
        if payment_method not in PaymentMethod.values:
            raise EscrowValidationError(
                f"Unsupported payment method: {payment_method}",
                details={"payment_method": payment_method},
            )

        with transaction.atomic():
            delivery = (
                Delivery.objects.select_for_update(of=("self",))
                .select_related("company", "driver")
                .filter(pk=delivery_id)
                .first()
            )
            if delivery is None:
                raise NotFoundError(
                    f"Delivery {delivery_id} not found",
                    details={"delivery_id": str(delivery_id)},
                )
            if delivery.customer_id != customer.pk:
                raise PermissionDeniedError("Only the delivery's customer can pay for it")
            if delivery.status == DeliveryStatus.CANCELLED:
                raise EscrowValidationError(
                    "Cannot pay for a cancelled delivery",
                    details={"delivery_id": str(delivery_id)},
                )

            existing = Payment.objects.filter(delivery=delivery).first()
            if existing is not None:
                if existing.state == PaymentState.PENDING and existing.payment_method == payment_method:
                    return existing
                raise ConflictError(
                    "Delivery already has a payment",
                    details={"payment_id": str(existing.pk), "state": existing.state},
                )

            split = split_for_payment_method(delivery.price_cents, payment_method)
            payment = Payment.objects.create(
                delivery=delivery,
                customer=customer,
                company=delivery.company,
                driver=delivery.driver,
                payment_method=payment_method,
                currency=delivery.currency,
                total_amount_cents=delivery.price_cents,
                platform_fee_cents=split.platform_fee_cents,
                company_amount_cents=split.company_amount_cents,
                driver_amount_cents=split.driver_amount_cents,
            )
            record_audit(
                payment,
                PaymentInitiated(
                    total_amount_cents=payment.total_amount_cents,
                    platform_fee_cents=split.platform_fee_cents,
                    company_amount_cents=split.company_amount_cents,
                    driver_amount_cents=split.driver_amount_cents,
                    payment_method=payment_method,
                    currency=payment.currency,
                ),
                actor=actor_for(customer),
                actor_user=customer,
            )
            delivery.mirror_payment_status(payment.state)
        return payment

    # =========================================================================
    # Verification (polling)
    # =========================================================================

    @classmethod
    def verify_payment(cls, payment_id: uuid.UUID) -> ServiceResult[VerificationResult]:
        """
        Ask Stripe for the PaymentIntent status and apply it.

        Produces the same outcome as the matching webhook would. Calling
        it on a payment that already left PENDING changes nothing.
        """
        payment = Payment.objects.filter(pk=payment_id).first()
        if payment is None:
            return cls.handle_exception(
                PaymentNotFoundError(
                    f"Payment {payment_id} not found",
                    details={"payment_id": str(payment_id)},
                ),
                "Payment verification",
            )
        if payment.is_cash or not payment.stripe_payment_intent_id:
            return ServiceResult.failure(
                "Payment has no processor reference to verify",
                error_code="NOT_VERIFIABLE",
            )
        if payment.state != PaymentState.PENDING:
            return ServiceResult.success(
                VerificationResult(payment=payment, processor_status=None, changed=False)
            )

        try:
            intent = cls.get_stripe_adapter().retrieve_payment_intent(
                payment.stripe_payment_intent_id
            )
        except StripeError as e:
            return cls.handle_exception(e, "Payment verification")

        result = None
        if intent.status == "succeeded":
            result = ChargeService.confirm_charge(
                payment_intent_id=intent.id,
                amount_received_cents=intent.amount_received_cents,
                currency=intent.currency,
                source="verification",
            )
        elif intent.status == "canceled" or (
            intent.status == "requires_payment_method" and intent.failure_message
        ):
            result = ChargeService.fail_charge(
                payment_intent_id=intent.id,
                reason=intent.failure_message or intent.status,
                source="verification",
            )

        if result is not None and not result.success:
            return result

        changed = bool(result and result.data.applied)
        return ServiceResult.success(
            VerificationResult(
                payment=Payment.objects.get(pk=payment.pk),
                processor_status=intent.status,
                changed=changed,
            )
        )

    # =========================================================================
    # Cash
    # =========================================================================

    @classmethod
    def record_cash_collection(
        cls,
        payment_id: uuid.UUID,
        collected_by: AbstractBaseUser,
    ) -> ServiceResult[Payment]:
        """
        Driver confirms the cash was collected: PENDING -> HELD.

        Args:
            payment_id: Cash payment
            collected_by: The assigned driver's user (or staff)
        """
        actor = actor_for(collected_by)
        try:
            payment = run_atomic_with_retry(cls._collect_cash_locked, payment_id, collected_by, actor)
        except InvalidStateTransitionError as e:
            record_rejected_transition(payment_id, e, "cash_collected", actor, collected_by)
            return cls.handle_exception(e, "Cash collection")
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Cash collection")
        return ServiceResult.success(payment)

    @classmethod
    def _collect_cash_locked(cls, payment_id, collected_by, actor: str) -> Payment:
        payment = lock_payment(payment_id)
        if not payment.is_cash:
            raise EscrowValidationError("Payment is not a cash payment")

        driver = payment.driver or payment.delivery.driver
        is_driver = driver is not None and driver.user_id == collected_by.pk
        if not (is_driver or collected_by.is_staff):
            raise PermissionDeniedError("Only the assigned driver can record cash collection")

        ensure_can_transition(payment, "hold")
        if payment.driver_id is None:
            payment.driver = driver
        transition_payment(
            payment,
            "hold",
            PaymentHeld(confirmed_amount_cents=payment.total_amount_cents, source="cash"),
            actor=actor,
            actor_user=collected_by,
            confirmed_amount_cents=payment.total_amount_cents,
        )
        return payment

    @classmethod
    def mark_cash_settled(
        cls,
        payment_id: uuid.UUID,
        confirmed_by: AbstractBaseUser,
    ) -> ServiceResult[Payment]:
        """
        Company confirms the driver handed over the cash.

        Only valid for RELEASED cash payments. Repeating it is a no-op.
        """
        try:
            payment = run_atomic_with_retry(cls._settle_cash_locked, payment_id, confirmed_by)
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Cash settlement")
        return ServiceResult.success(payment)

    @classmethod
    def _settle_cash_locked(cls, payment_id, confirmed_by) -> Payment:
        payment = lock_payment(payment_id)
        if not payment.is_cash:
            raise EscrowValidationError("Payment is not a cash payment")
        if payment.cash_settled_at is not None:
            return payment
        if payment.state != PaymentState.RELEASED:
            raise ConflictError(
                "Cash can only be settled after the payment is released",
                details={"payment_id": str(payment.pk), "state": payment.state},
            )

        company = payment.company
        is_owner = company is not None and company.owner_id == confirmed_by.pk
        if not (is_owner or confirmed_by.is_staff):
            raise PermissionDeniedError("Only the company owner can confirm cash settlement")

        payment.cash_settled_at = timezone.now()
        payment.save()
        record_audit(
            payment,
            CashSettled(amount_cents=payment.total_amount_cents),
            actor=actor_for(confirmed_by),
            actor_user=confirmed_by,
        )
        logger.info(
            "Cash payment settled with company",
            extra={"payment_id": str(payment.pk), "amount_cents": payment.total_amount_cents},
        )
        return payment

    # =========================================================================
    # Reconciliation
    # =========================================================================

    @classmethod
    def reconcile_payment(
        cls,
        payment_id: uuid.UUID,
        actor: AbstractBaseUser,
        notes: str,
    ) -> ServiceResult[Payment]:
        """
        Staff sign-off on a charge whose confirmed amount did not match.

        Clears needs_reconciliation so the payment can settle again. The
        confirmed amount is left as reported by the processor.

        Args:
            payment_id: Payment flagged by an amount mismatch
            actor: Staff user signing off
            notes: What was checked and agreed, kept in the audit log
        """
        try:
            payment = run_atomic_with_retry(cls._reconcile_locked, payment_id, actor, notes)
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Reconciliation")
        return ServiceResult.success(payment)

    @classmethod
    def _reconcile_locked(cls, payment_id, actor, notes: str) -> Payment:
        if not actor.is_staff:
            raise PermissionDeniedError("Only staff can reconcile a payment")
        if not notes.strip():
            raise EscrowValidationError("Reconciliation notes are required")

        payment = lock_payment(payment_id)
        if not payment.needs_reconciliation:
            raise ConflictError(
                "Payment is not flagged for reconciliation",
                error_code="NOT_FLAGGED_FOR_RECONCILIATION",
                details={"payment_id": str(payment.pk)},
            )

        payment.needs_reconciliation = False
        payment.save()
        record_audit(
            payment,
            PaymentReconciled(
                expected_amount_cents=payment.total_amount_cents,
                confirmed_amount_cents=payment.confirmed_amount_cents,
                notes=notes.strip(),
            ),
            actor=actor_for(actor),
            actor_user=actor,
        )
        logger.info(
            "Payment reconciled",
            extra={
                "payment_id": str(payment.pk),
                "confirmed_amount_cents": payment.confirmed_amount_cents,
            },
        )
        return payment
