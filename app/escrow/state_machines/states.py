"""
State enums for escrow models.

These are Django TextChoices for database storage and admin integration.

State Machines Overview:

Payment States:
    pending → held → released
    pending → failed
    held → refunded
    held → disputed → released | refunded

Disbursement States:
    pending → completed
    pending → failed → pending (retry with the same idempotency key)
"""

from django.db import models


class PaymentState(models.TextChoices):
    """
    States for the Payment model lifecycle.

    Terminal states: RELEASED, REFUNDED, FAILED

    State Flow:
        PENDING → HELD (charge confirmed or cash collected)
        PENDING → FAILED (charge failed)
        HELD → RELEASED (delivery verified)
        HELD → REFUNDED (cancellation)
        HELD → DISPUTED (dispute raised)
        DISPUTED → RELEASED (full release or split)
        DISPUTED → REFUNDED (full refund)
    """

    PENDING = "pending", "Pending"
    HELD = "held", "Held"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"
    DISPUTED = "disputed", "Disputed"
    FAILED = "failed", "Failed"


TERMINAL_PAYMENT_STATES = frozenset(
    {PaymentState.RELEASED, PaymentState.REFUNDED, PaymentState.FAILED}
)


class PayoutStatus(models.TextChoices):
    """
    Progress of the external money movement that follows a terminal state.

    A RELEASED payment with PENDING payout status is
    released-pending-transfer: the ledger is final but the processor has
    not yet confirmed every transfer/refund.
    """

    NOT_REQUIRED = "not_required", "Not Required"
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"


class DisbursementKind(models.TextChoices):
    """Direction of an external money movement."""

    TRANSFER = "transfer", "Transfer to Company"
    REFUND = "refund", "Refund to Customer"


class DisbursementState(models.TextChoices):
    """
    States for the Disbursement model lifecycle.

    State Flow:
        PENDING → COMPLETED
        PENDING → FAILED → PENDING (retry)
        COMPLETED → FAILED (processor reversed the transfer)
    """

    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class PaymentMethod(models.TextChoices):
    """How the customer pays for the delivery."""

    CARD = "card", "Card"
    CASH = "cash", "Cash"


class ReleaseCondition(models.TextChoices):
    """What triggered the release of held funds."""

    DELIVERY_CONFIRMED = "delivery_confirmed", "Delivery Confirmed"
    AUTO_RELEASE = "auto_release", "Automatic Release"
    MANUAL_RELEASE = "manual_release", "Manual Release"
    DISPUTE_RESOLUTION = "dispute_resolution", "Dispute Resolution"


class DisputeParty(models.TextChoices):
    """Who raised a dispute."""

    CUSTOMER = "customer", "Customer"
    DRIVER = "driver", "Driver"
    COMPANY = "company", "Company"


class DisputeDecision(models.TextChoices):
    """Outcome chosen by the resolver of a dispute."""

    REFUND_CUSTOMER = "refund_customer", "Full Refund to Customer"
    RELEASE_COMPANY = "release_company", "Full Release to Company"
    SPLIT = "split", "Split"


class AuditAction(models.TextChoices):
    """
    Closed set of audit log actions.

    Each value has exactly one payload variant in escrow.audit.
    """

    PAYMENT_INITIATED = "payment_initiated", "Payment Initiated"
    PAYMENT_HELD = "payment_held", "Payment Held"
    PAYMENT_FAILED = "payment_failed", "Payment Failed"
    PAYMENT_RELEASED = "payment_released", "Payment Released"
    PAYMENT_REFUNDED = "payment_refunded", "Payment Refunded"
    DISPUTE_RAISED = "dispute_raised", "Dispute Raised"
    EVIDENCE_ADDED = "evidence_added", "Evidence Added"
    DISPUTE_RESOLVED = "dispute_resolved", "Dispute Resolved"
    AMOUNT_MISMATCH = "amount_mismatch", "Amount Mismatch"
    PAYMENT_RECONCILED = "payment_reconciled", "Payment Reconciled"
    TRANSITION_REJECTED = "transition_rejected", "Transition Rejected"
    DISBURSEMENT_COMPLETED = "disbursement_completed", "Disbursement Completed"
    DISBURSEMENT_FAILED = "disbursement_failed", "Disbursement Failed"
    SETTLEMENT_STUCK = "settlement_stuck", "Settlement Stuck"
    CASH_SETTLED = "cash_settled", "Cash Settled"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for webhook events.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED → PROCESSING (retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
