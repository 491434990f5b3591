"""
Escrow models.

Models:
    Payment: Ledger entry for one delivery's money flow
    DisputeRecord / DisputeEvidence: Dispute sub-record
    Disbursement: External transfer or refund
    PaymentAuditEntry: Append-only audit log
    WebhookEvent: Stored processor event
"""

from escrow.models.audit import AppendOnlyError, PaymentAuditEntry
from escrow.models.disbursement import Disbursement
from escrow.models.dispute import DisputeEvidence, DisputeRecord
from escrow.models.payment import EscrowDetails, Payment
from escrow.models.webhook_event import MAX_WEBHOOK_RETRIES, WebhookEvent

__all__ = [
    "AppendOnlyError",
    "Disbursement",
    "DisputeEvidence",
    "DisputeRecord",
    "EscrowDetails",
    "MAX_WEBHOOK_RETRIES",
    "Payment",
    "PaymentAuditEntry",
    "WebhookEvent",
]
