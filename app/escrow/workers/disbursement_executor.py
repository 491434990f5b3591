"""
Disbursement executor worker for retrying pending transfers and refunds.

Settlement tries the Stripe call right after committing. Anything left
PENDING (timeout, rate limit, Stripe outage, lock contention) is picked
up here and re-sent with its stored idempotency key. After
ESCROW_DISBURSEMENT_MAX_ATTEMPTS the disbursement is reported as a stuck
settlement instead of being retried forever.

Tasks:
- retry_pending_disbursements: Periodic scan that queues executions
- execute_single_disbursement: Executes one disbursement
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from escrow.exceptions import LockAcquisitionError
from escrow.models import Disbursement
from escrow.state_machines import DisbursementState

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum disbursements to process per batch (prevents memory issues)
BATCH_SIZE = 100

# Minimum time between two attempts of the same disbursement
RETRY_INTERVAL = timedelta(minutes=1)


# =============================================================================
# Periodic Task: Scan for Pending Disbursements
# =============================================================================


@shared_task(bind=True)
def retry_pending_disbursements(self) -> dict:
    """
    Re-attempt PENDING disbursements and alert on exhausted ones.

    Returns:
        Dict with:
        - queued_count: Disbursements queued for another attempt
        - alerted_count: New stuck-settlement alerts raised
    """
    from escrow.services import DisbursementService

    max_attempts = settings.ESCROW_DISBURSEMENT_MAX_ATTEMPTS
    retry_before = timezone.now() - RETRY_INTERVAL

    candidates = (
        Disbursement.objects.filter(
            state=DisbursementState.PENDING,
            alerted_at__isnull=True,
        )
        .filter(Q(last_attempt_at__isnull=True) | Q(last_attempt_at__lte=retry_before))
        .order_by("created_at")[:BATCH_SIZE]
    )

    queued_count = 0
    alerted_count = 0
    for disbursement in candidates:
        if disbursement.attempt_count >= max_attempts:
            if DisbursementService.raise_stuck_alert(disbursement.pk):
                alerted_count += 1
            continue

        try:
            execute_single_disbursement.delay(str(disbursement.pk))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue disbursement: {e}",
                extra={"disbursement_id": str(disbursement.pk)},
            )

    logger.info(
        f"Pending disbursement scan complete: queued {queued_count}, alerted {alerted_count}",
        extra={"queued_count": queued_count, "alerted_count": alerted_count},
    )
    return {"queued_count": queued_count, "alerted_count": alerted_count}


# =============================================================================
# Individual Execution Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(LockAcquisitionError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def execute_single_disbursement(self, disbursement_id: str) -> dict:
    """
    Execute one disbursement.

    Transient Stripe failures leave the row PENDING for the next scan
    rather than retrying here, so attempt_count stays the single source
    of truth for the alert threshold.

    Returns:
        Dict with status "completed", "pending" or "failed"
    """
    from escrow.services import DisbursementService

    logger.info(
        "Processing disbursement execution",
        extra={
            "disbursement_id": disbursement_id,
            "celery_retries": self.request.retries,
        },
    )

    result = DisbursementService.execute(disbursement_id)
    if result.success:
        return {
            "status": "completed",
            "disbursement_id": disbursement_id,
            "stripe_object_id": result.data.stripe_object_id,
        }

    return {
        "status": "pending" if (result.details or {}).get("retryable") else "failed",
        "disbursement_id": disbursement_id,
        "error": result.error,
        "error_code": result.error_code,
    }
