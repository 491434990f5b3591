"""
Single entry point for Payment state changes.

Nothing else calls the Payment @transition methods or saves a new state.
transition_payment() checks the source state, applies the transition,
saves it as a conditional write on the previous state, mirrors the new
state onto the delivery and appends exactly one audit entry, all inside
one atomic block.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction
from django_fsm import ConcurrentTransition, can_proceed

from escrow.audit import SYSTEM_ACTOR, TransitionRejected, record_audit
from escrow.exceptions import InvalidStateTransitionError, StaleRecordError
from escrow.models import Payment, PaymentAuditEntry
from escrow.state_machines.states import PaymentState

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

    from escrow.audit import AuditEvent

logger = logging.getLogger(__name__)


TRANSITION_TARGETS: dict[str, PaymentState] = {
    "hold": PaymentState.HELD,
    "fail": PaymentState.FAILED,
    "release": PaymentState.RELEASED,
    "refund": PaymentState.REFUNDED,
    "open_dispute": PaymentState.DISPUTED,
    "resolve_release": PaymentState.RELEASED,
    "resolve_refund": PaymentState.REFUNDED,
}


def ensure_can_transition(payment: Payment, transition_name: str) -> None:
    """
    Raise InvalidStateTransitionError unless the transition is legal now.

    Raises:
        InvalidStateTransitionError: Current state is not a valid source
    """
    target = TRANSITION_TARGETS[transition_name]
    if not can_proceed(getattr(payment, transition_name)):
        raise InvalidStateTransitionError(
            current_state=payment.state,
            target_state=target,
            transition=transition_name,
            details={"payment_id": str(payment.pk)},
        )


def transition_payment(
    payment: Payment,
    transition_name: str,
    event: AuditEvent,
    actor: str = SYSTEM_ACTOR,
    actor_user: AbstractBaseUser | None = None,
    **transition_kwargs,
) -> PaymentAuditEntry:
    """
    Apply a Payment transition and record it.

    Args:
        payment: Payment loaded (ideally with select_for_update) by the caller
        transition_name: One of TRANSITION_TARGETS
        event: Audit variant describing the transition
        actor: Audit actor label
        actor_user: Acting user, if any
        **transition_kwargs: Passed to the @transition method

    Returns:
        The audit entry appended for the transition

    Raises:
        InvalidStateTransitionError: Current state is not a valid source
        StaleRecordError: Another writer changed the state first
    """
    ensure_can_transition(payment, transition_name)
    previous_state = payment.state

    with transaction.atomic():
        getattr(payment, transition_name)(**transition_kwargs)
        try:
            payment.save()
        except ConcurrentTransition as e:
            logger.warning(
                "Concurrent payment transition detected",
                extra={
                    "payment_id": str(payment.pk),
                    "transition": transition_name,
                    "from_state": previous_state,
                },
            )
            raise StaleRecordError(
                f"Payment {payment.pk} changed state concurrently",
                details={
                    "payment_id": str(payment.pk),
                    "expected_state": previous_state,
                },
            ) from e

        payment.delivery.mirror_payment_status(payment.state)
        entry = record_audit(payment, event, actor=actor, actor_user=actor_user)

    logger.info(
        "Payment transitioned",
        extra={
            "payment_id": str(payment.pk),
            "transition": transition_name,
            "from_state": previous_state,
            "to_state": payment.state,
            "actor": actor,
        },
    )
    return entry


def record_rejected_transition(
    payment_id,
    error: InvalidStateTransitionError,
    trigger: str,
    actor: str = SYSTEM_ACTOR,
    actor_user: AbstractBaseUser | None = None,
) -> None:
    """
    Leave a forensic trail for a rejected transition.

    Call after the rejected unit of work has rolled back, so the entry is
    committed on its own.
    """
    logger.warning(
        "Payment transition rejected",
        extra={
            "payment_id": str(payment_id),
            "current_state": error.current_state,
            "target_state": error.target_state,
            "trigger": trigger,
        },
    )
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment_id)
        record_audit(
            payment,
            TransitionRejected(
                current_state=error.current_state,
                target_state=error.target_state,
                trigger=trigger,
            ),
            actor=actor,
            actor_user=actor_user,
        )
