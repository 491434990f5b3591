"""
Workers for async escrow processing.

This module contains Celery tasks for background escrow operations:
- HoldManager: Auto-releases held payments of completed deliveries
- DisbursementExecutor: Retries pending transfers and refunds

Usage:
    from escrow.workers import (
        release_completed_holds,
        retry_pending_disbursements,
    )

    release_completed_holds.delay()
"""

from escrow.workers.disbursement_executor import (
    execute_single_disbursement,
    retry_pending_disbursements,
)
from escrow.workers.hold_manager import (
    release_completed_holds,
    release_single_payment,
)

__all__ = [
    # Hold Manager
    "release_completed_holds",
    "release_single_payment",
    # Disbursement Executor
    "execute_single_disbursement",
    "retry_pending_disbursements",
]
