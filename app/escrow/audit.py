"""
Typed audit log variants.

Each AuditAction has exactly one frozen dataclass describing its payload.
Entries are written with record_audit() and read back with
event_from_entry(), so consumers can handle the closed set of variants
exhaustively instead of poking at loose JSON.

Usage:
    from escrow.audit import PaymentHeld, record_audit

    record_audit(
        payment,
        PaymentHeld(confirmed_amount_cents=10_000, source="webhook", event_id="evt_1"),
        actor=PROCESSOR_ACTOR,
    )
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from django.db.models import Max

from escrow.models import PaymentAuditEntry
from escrow.state_machines import AuditAction

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

    from escrow.models import Payment


SYSTEM_ACTOR = "system"
PROCESSOR_ACTOR = "processor"


def actor_for(user: AbstractBaseUser | None) -> str:
    """Audit label for a user, or the system actor when there is none."""
    if user is None:
        return SYSTEM_ACTOR
    return f"user:{user.pk}"


# =============================================================================
# Variants
# =============================================================================


@dataclass(frozen=True)
class AuditEvent:
    action: ClassVar[AuditAction]

    def to_details(self) -> dict:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class PaymentInitiated(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PAYMENT_INITIATED

    total_amount_cents: int
    platform_fee_cents: int
    company_amount_cents: int
    driver_amount_cents: int | None
    payment_method: str
    currency: str


@dataclass(frozen=True)
class PaymentHeld(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PAYMENT_HELD

    confirmed_amount_cents: int
    source: str
    event_id: str | None = None


@dataclass(frozen=True)
class PaymentFailed(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PAYMENT_FAILED

    reason: str
    source: str
    event_id: str | None = None


@dataclass(frozen=True)
class PaymentReleased(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PAYMENT_RELEASED

    platform_fee_cents: int
    company_amount_cents: int
    driver_amount_cents: int | None
    release_condition: str


@dataclass(frozen=True)
class PaymentRefunded(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PAYMENT_REFUNDED

    amount_cents: int
    reason: str


@dataclass(frozen=True)
class DisputeRaised(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.DISPUTE_RAISED

    reason: str
    raised_by_role: str
    evidence_count: int


@dataclass(frozen=True)
class EvidenceAdded(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.EVIDENCE_ADDED

    description: str
    url: str


@dataclass(frozen=True)
class DisputeResolved(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.DISPUTE_RESOLVED

    decision: str
    customer_amount_cents: int
    company_amount_cents: int
    notes: str


@dataclass(frozen=True)
class AmountMismatch(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.AMOUNT_MISMATCH

    expected_amount_cents: int
    confirmed_amount_cents: int
    event_id: str | None = None


@dataclass(frozen=True)
class PaymentReconciled(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.PAYMENT_RECONCILED

    expected_amount_cents: int
    confirmed_amount_cents: int
    notes: str


@dataclass(frozen=True)
class TransitionRejected(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.TRANSITION_REJECTED

    current_state: str
    target_state: str
    trigger: str


@dataclass(frozen=True)
class DisbursementCompleted(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.DISBURSEMENT_COMPLETED

    kind: str
    amount_cents: int
    stripe_object_id: str
    idempotency_key: str


@dataclass(frozen=True)
class DisbursementFailed(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.DISBURSEMENT_FAILED

    kind: str
    amount_cents: int
    error: str
    idempotency_key: str
    outcome_unknown: bool


@dataclass(frozen=True)
class SettlementStuck(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.SETTLEMENT_STUCK

    disbursement_id: str
    kind: str
    attempts: int
    last_error: str


@dataclass(frozen=True)
class CashSettled(AuditEvent):
    action: ClassVar[AuditAction] = AuditAction.CASH_SETTLED

    amount_cents: int


VARIANTS: dict[str, type[AuditEvent]] = {
    variant.action.value: variant
    for variant in (
        PaymentInitiated,
        PaymentHeld,
        PaymentFailed,
        PaymentReleased,
        PaymentRefunded,
        DisputeRaised,
        EvidenceAdded,
        DisputeResolved,
        AmountMismatch,
        PaymentReconciled,
        TransitionRejected,
        DisbursementCompleted,
        DisbursementFailed,
        SettlementStuck,
        CashSettled,
    )
}


# =============================================================================
# Reading and Writing
# =============================================================================


def record_audit(
    payment: Payment,
    event: AuditEvent,
    actor: str = SYSTEM_ACTOR,
    actor_user: AbstractBaseUser | None = None,
) -> PaymentAuditEntry:
    """
    Append one entry to a payment's audit log.

    Call inside the same transaction as the change being audited. The
    payment row should already be locked so sequence numbers cannot race.
    """
    last = PaymentAuditEntry.objects.filter(payment_id=payment.pk).aggregate(
        last=Max("sequence")
    )["last"]
    return PaymentAuditEntry.objects.create(
        payment_id=payment.pk,
        sequence=(last or 0) + 1,
        action=event.action,
        actor=actor,
        actor_user=actor_user,
        details=event.to_details(),
    )


def event_from_entry(entry: PaymentAuditEntry) -> AuditEvent:
    """Rebuild the typed variant stored in an audit entry."""
    variant = VARIANTS[entry.action]
    field_names = {f.name for f in dataclasses.fields(variant)}
    return variant(**{k: v for k, v in entry.details.items() if k in field_names})
