"""
State machine enums for escrow models.

The transition choke point lives in escrow.state_machines.machine and is
imported from there directly, since it depends on the models.
"""

from escrow.state_machines.states import (
    TERMINAL_PAYMENT_STATES,
    AuditAction,
    DisbursementKind,
    DisbursementState,
    DisputeDecision,
    DisputeParty,
    PaymentMethod,
    PaymentState,
    PayoutStatus,
    ReleaseCondition,
    WebhookEventStatus,
)

__all__ = [
    "TERMINAL_PAYMENT_STATES",
    "AuditAction",
    "DisbursementKind",
    "DisbursementState",
    "DisputeDecision",
    "DisputeParty",
    "PaymentMethod",
    "PaymentState",
    "PayoutStatus",
    "ReleaseCondition",
    "WebhookEventStatus",
]
