"""
Hold manager worker for auto-releasing completed deliveries.

Held payments whose delivery was completed more than
ESCROW_AUTO_RELEASE_HOURS ago, and that have not been disputed or
flagged for reconciliation, are released to the company.

Tasks:
- release_completed_holds: Periodic task that scans and queues releases
- release_single_payment: Settles one payment with release condition
  AUTO_RELEASE

Usage:
    # Typically called via celery-beat schedule
    from escrow.workers import release_completed_holds

    release_completed_holds.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from deliveries.models import SETTLEABLE_DELIVERY_STATUSES
from escrow.models import Payment
from escrow.state_machines import PaymentState, ReleaseCondition

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum payments to process per batch (prevents memory issues)
BATCH_SIZE = 100


# =============================================================================
# Periodic Task: Scan for Completed Holds
# =============================================================================


@shared_task(bind=True)
def release_completed_holds(self) -> dict:
    """
    Scan for held payments that are due for automatic release.

    Returns:
        Dict with:
        - queued_count: Number of payments queued for release

    Note:
        Idempotent. Settlement itself detects payments that were already
        released, so queueing one twice never moves money twice.
    """
    cutoff = timezone.now() - timedelta(hours=settings.ESCROW_AUTO_RELEASE_HOURS)
    logger.info("Starting auto-release scan", extra={"cutoff": cutoff.isoformat()})

    due_ids = list(
        Payment.objects.filter(
            state=PaymentState.HELD,
            needs_reconciliation=False,
            delivery__status__in=SETTLEABLE_DELIVERY_STATUSES,
            delivery__completed_at__lte=cutoff,
        )
        .order_by("held_at")
        .values_list("id", flat=True)[:BATCH_SIZE]
    )

    queued_count = 0
    for payment_id in due_ids:
        try:
            release_single_payment.delay(str(payment_id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue payment for auto-release: {e}",
                extra={"payment_id": str(payment_id)},
            )

    logger.info(
        f"Auto-release scan complete: queued {queued_count} payments",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


# =============================================================================
# Individual Release Task
# =============================================================================


@shared_task(bind=True, acks_late=True)
def release_single_payment(self, payment_id: str) -> dict:
    """
    Auto-release one held payment.

    Returns:
        Dict with status "released", "already_settled" or "rejected"
    """
    from escrow.services import SettlementService

    result = SettlementService.settle_payment(
        payment_id,
        release_condition=ReleaseCondition.AUTO_RELEASE,
    )

    if not result.success:
        return {
            "status": "rejected",
            "payment_id": payment_id,
            "error_code": result.error_code,
        }

    return {
        "status": "already_settled" if result.data.already_settled else "released",
        "payment_id": payment_id,
        "payout_status": result.data.payout_status,
    }
