"""
Dispute service: freezing held funds and resolving them.

A party to the delivery (customer, driver or the company's owner) can
dispute a HELD payment. The funds stay frozen until staff resolve it by
refunding the customer, releasing to the company, or splitting the total
between the two. The platform fee is charged on the released part only.

Resolution amounts are validated before anything is mutated.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.exceptions import BaseApplicationError, ConflictError, PermissionDeniedError
from core.services import BaseService, ServiceResult
from escrow.audit import DisputeRaised, DisputeResolved, EvidenceAdded, actor_for, record_audit
from escrow.exceptions import (
    EscrowValidationError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
)
from escrow.locks import lock_payment
from escrow.models import DisputeEvidence, DisputeRecord, Payment
from escrow.notifications import notify_safely
from escrow.retry import run_atomic_with_retry
from escrow.services.disbursement_service import DisbursementService
from escrow.services.settlement_service import SettlementResult, SettlementService
from escrow.split import calculate_split, driver_share_percent_for, validate_resolution_split
from escrow.state_machines import (
    DisbursementKind,
    DisputeDecision,
    DisputeParty,
    PaymentState,
    PayoutStatus,
)
from escrow.state_machines.machine import (
    ensure_can_transition,
    record_rejected_transition,
    transition_payment,
)

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvidenceItem:
    description: str
    url: str = ""


class DisputeService(BaseService):
    """Service for raising, documenting and resolving payment disputes."""

    # =========================================================================
    # Raising
    # =========================================================================

    @classmethod
    def raise_dispute(
        cls,
        payment_id: uuid.UUID,
        raised_by: AbstractBaseUser,
        reason: str,
        description: str = "",
        evidence: list[EvidenceItem] | None = None,
    ) -> ServiceResult[DisputeRecord]:
        """
        Dispute a held payment: HELD -> DISPUTED.

        Args:
            payment_id: Payment to dispute
            raised_by: Customer, assigned driver or company owner
            reason: Short reason, required
            description: Longer explanation
            evidence: Initial evidence items
        """
        actor = actor_for(raised_by)
        if not reason or not reason.strip():
            return cls.handle_exception(
                EscrowValidationError("A dispute reason is required"),
                "Dispute",
            )

        try:
            dispute = run_atomic_with_retry(
                cls._raise_locked,
                payment_id,
                raised_by,
                actor,
                reason.strip(),
                description,
                evidence or [],
            )
        except InvalidStateTransitionError as e:
            record_rejected_transition(payment_id, e, "dispute", actor, raised_by)
            return cls.handle_exception(e, "Dispute")
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Dispute")

        logger.info(
            "Dispute raised",
            extra={
                "payment_id": str(payment_id),
                "dispute_id": str(dispute.pk),
                "raised_by_role": dispute.raised_by_role,
            },
        )
        return ServiceResult.success(dispute)

    @classmethod
    def _raise_locked(
        cls,
        payment_id,
        raised_by,
        actor: str,
        reason: str,
        description: str,
        evidence: list[EvidenceItem],
    ) -> DisputeRecord:
        payment = lock_payment(payment_id)
        role = cls._party_role(payment, raised_by)
        if role is None:
            raise PermissionDeniedError("Only a party to the delivery can raise a dispute")

        ensure_can_transition(payment, "open_dispute")

        dispute = DisputeRecord.objects.create(
            payment=payment,
            reason=reason,
            description=description,
            raised_by=raised_by,
            raised_by_role=role,
        )
        DisputeEvidence.objects.bulk_create(
            [
                DisputeEvidence(
                    dispute=dispute,
                    description=item.description,
                    url=item.url,
                    submitted_by=raised_by,
                )
                for item in evidence
            ]
        )
        transition_payment(
            payment,
            "open_dispute",
            DisputeRaised(reason=reason, raised_by_role=role, evidence_count=len(evidence)),
            actor=actor,
            actor_user=raised_by,
        )
        return dispute

    # =========================================================================
    # Evidence
    # =========================================================================

    @classmethod
    def add_evidence(
        cls,
        payment_id: uuid.UUID,
        submitted_by: AbstractBaseUser,
        description: str,
        url: str = "",
    ) -> ServiceResult[DisputeEvidence]:
        """Attach evidence to an open dispute."""
        if not description or not description.strip():
            return cls.handle_exception(
                EscrowValidationError("Evidence description is required"),
                "Dispute evidence",
            )
        try:
            evidence = run_atomic_with_retry(
                cls._add_evidence_locked, payment_id, submitted_by, description.strip(), url
            )
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Dispute evidence")
        return ServiceResult.success(evidence)

    @classmethod
    def _add_evidence_locked(cls, payment_id, submitted_by, description: str, url: str):
        payment = lock_payment(payment_id)
        dispute = DisputeRecord.objects.filter(payment=payment).first()
        if dispute is None or payment.state != PaymentState.DISPUTED or dispute.is_resolved:
            raise ConflictError(
                "Payment has no open dispute",
                details={"payment_id": str(payment.pk), "state": payment.state},
            )
        if not submitted_by.is_staff and cls._party_role(payment, submitted_by) is None:
            raise PermissionDeniedError("Only a party to the dispute can add evidence")

        evidence = DisputeEvidence.objects.create(
            dispute=dispute,
            description=description,
            url=url,
            submitted_by=submitted_by,
        )
        record_audit(
            payment,
            EvidenceAdded(description=description, url=url),
            actor=actor_for(submitted_by),
            actor_user=submitted_by,
        )
        return evidence

    # =========================================================================
    # Resolution
    # =========================================================================

    @classmethod
    def resolve_dispute(
        cls,
        payment_id: uuid.UUID,
        resolved_by: AbstractBaseUser,
        decision: str,
        customer_amount_cents: int | None = None,
        company_amount_cents: int | None = None,
        notes: str = "",
    ) -> ServiceResult[SettlementResult]:
        """
        Resolve a dispute: DISPUTED -> REFUNDED or RELEASED.

        Args:
            payment_id: Disputed payment
            resolved_by: Staff member
            decision: refund_customer, release_company or split
            customer_amount_cents / company_amount_cents: Required for a
                split; must be non-negative and sum to the total
            notes: Resolution notes

        Returns:
            ServiceResult with SettlementResult
        """
        actor = actor_for(resolved_by)
        try:
            if not resolved_by.is_staff:
                raise PermissionDeniedError("Only staff can resolve disputes")
            payment = Payment.objects.filter(pk=payment_id).first()
            if payment is None:
                raise PaymentNotFoundError(
                    f"Payment {payment_id} not found",
                    details={"payment_id": str(payment_id)},
                )
            customer_part, company_part = cls._resolution_amounts(
                payment.total_amount_cents, decision, customer_amount_cents, company_amount_cents
            )
            payment, newly_resolved = run_atomic_with_retry(
                cls._resolve_locked,
                payment_id,
                resolved_by,
                actor,
                decision,
                customer_part,
                company_part,
                notes,
            )
        except InvalidStateTransitionError as e:
            record_rejected_transition(payment_id, e, "resolve_dispute", actor, resolved_by)
            return cls.handle_exception(e, "Dispute resolution")
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Dispute resolution")

        if not newly_resolved:
            return SettlementService.finish_settlement(payment, already_settled=True)

        logger.info(
            "Dispute resolved",
            extra={
                "payment_id": str(payment.pk),
                "decision": decision,
                "customer_amount_cents": customer_part,
                "company_amount_cents": company_part,
            },
        )
        result = SettlementService.finish_settlement(payment)
        cls._notify_resolved(payment, decision)
        return result

    @staticmethod
    def _resolution_amounts(
        total: int,
        decision: str,
        customer_amount_cents: int | None,
        company_amount_cents: int | None,
    ) -> tuple[int, int]:
        """Translate a decision into (customer part, company part)."""
        if decision == DisputeDecision.REFUND_CUSTOMER:
            return total, 0
        if decision == DisputeDecision.RELEASE_COMPANY:
            return 0, total
        if decision == DisputeDecision.SPLIT:
            if customer_amount_cents is None or company_amount_cents is None:
                raise EscrowValidationError(
                    "A split resolution needs both customer and company amounts",
                )
            validate_resolution_split(total, customer_amount_cents, company_amount_cents)
            return customer_amount_cents, company_amount_cents
        raise EscrowValidationError(
            f"Unknown dispute decision: {decision}",
            details={"decision": decision},
        )

    @classmethod
    def _resolve_locked(
        cls,
        payment_id,
        resolved_by,
        actor: str,
        decision: str,
        customer_part: int,
        company_part: int,
        notes: str,
    ) -> tuple[Payment, bool]:
        payment = lock_payment(payment_id)
        dispute = DisputeRecord.objects.select_for_update().filter(payment=payment).first()

        if dispute is not None and dispute.is_resolved and payment.is_settled:
            same_outcome = (
                dispute.decision == decision
                and dispute.customer_amount_cents == customer_part
                and dispute.company_amount_cents == company_part
            )
            if not same_outcome:
                raise ConflictError(
                    "Dispute was already resolved with a different outcome",
                    error_code="DISPUTE_ALREADY_RESOLVED",
                    details={"payment_id": str(payment.pk), "decision": dispute.decision},
                )
            logger.info(
                "Dispute already resolved, returning earlier result (idempotent)",
                extra={"payment_id": str(payment.pk)},
            )
            return payment, False

        transition_name = "resolve_release" if company_part else "resolve_refund"
        ensure_can_transition(payment, transition_name)
        if dispute is None or dispute.is_resolved:
            raise ConflictError(
                "Payment has no open dispute",
                details={"payment_id": str(payment.pk)},
            )

        payout_status = PayoutStatus.NOT_REQUIRED if payment.is_cash else PayoutStatus.PENDING
        event = DisputeResolved(
            decision=decision,
            customer_amount_cents=customer_part,
            company_amount_cents=company_part,
            notes=notes,
        )

        if company_part:
            payment.company = payment.company or payment.delivery.company
            payment.driver = payment.driver or payment.delivery.driver
            # Platform fee is charged on the released part only
            split = calculate_split(
                company_part,
                platform_fee_percent=settings.PLATFORM_FEE_PERCENT,
                driver_share_percent=driver_share_percent_for(payment.payment_method),
            )
            transition_payment(
                payment,
                "resolve_release",
                event,
                actor=actor,
                actor_user=resolved_by,
                platform_fee_cents=split.platform_fee_cents,
                company_amount_cents=split.company_amount_cents,
                driver_amount_cents=split.driver_amount_cents,
                refunded_amount_cents=customer_part,
                payout_status=payout_status,
            )
            if not payment.is_cash:
                DisbursementService.create_disbursement(
                    payment,
                    DisbursementKind.TRANSFER,
                    split.company_amount_cents + (split.driver_amount_cents or 0),
                    operation="dispute_transfer",
                )
            SettlementService.record_earnings(payment)
        else:
            transition_payment(
                payment,
                "resolve_refund",
                event,
                actor=actor,
                actor_user=resolved_by,
                payout_status=payout_status,
            )

        if customer_part and not payment.is_cash:
            DisbursementService.create_disbursement(
                payment,
                DisbursementKind.REFUND,
                customer_part,
                operation="dispute_refund",
            )

        dispute.decision = decision
        dispute.customer_amount_cents = customer_part
        dispute.company_amount_cents = company_part
        dispute.resolved_by = resolved_by
        dispute.resolution_notes = notes
        dispute.resolved_at = timezone.now()
        dispute.save()
        return payment, True

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _party_role(payment: Payment, user) -> str | None:
        """Return the user's role in the payment's delivery, if any."""
        if payment.customer_id == user.pk:
            return DisputeParty.CUSTOMER
        driver = payment.driver or payment.delivery.driver
        if driver is not None and driver.user_id == user.pk:
            return DisputeParty.DRIVER
        company = payment.company or payment.delivery.company
        if company is not None and company.owner_id == user.pk:
            return DisputeParty.COMPANY
        return None

    @staticmethod
    def _notify_resolved(payment: Payment, decision: str) -> None:
        data = {"payment_id": str(payment.pk), "decision": decision}
        notify_safely(payment.customer_id, "Dispute resolved", "Your dispute has been resolved.", data)
        if payment.company_id:
            notify_safely(
                payment.company.owner_id,
                "Dispute resolved",
                "A dispute on one of your deliveries has been resolved.",
                data,
            )
