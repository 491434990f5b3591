"""
Celery entry points for the escrow app.

Webhook maintenance tasks are defined here. The auto-release and
disbursement workers live in escrow.workers and are imported below so
that Celery autodiscovery, which only looks at <app>.tasks, registers
them too.

Beat schedule (seeded by migration 0002):
    release_completed_holds       every 15 minutes
    retry_pending_disbursements   every 5 minutes
    retry_failed_webhooks         every 10 minutes
    cleanup_stuck_webhooks        every 30 minutes
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

from escrow.models import MAX_WEBHOOK_RETRIES, WebhookEvent
from escrow.state_machines import WebhookEventStatus
from escrow.webhooks.handlers import process_webhook
from escrow.workers import (
    execute_single_disbursement,
    release_completed_holds,
    release_single_payment,
    retry_pending_disbursements,
)

logger = logging.getLogger(__name__)

# An event left in PROCESSING this long belonged to a worker that died
STUCK_PROCESSING_THRESHOLD_MINUTES = 30
RETRY_BATCH_SIZE = 100


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, webhook_event_id: str) -> dict:
    """
    Re-apply a stored webhook event.

    Handler rejections come back as "handler_failed" and the event stays
    FAILED for the next sweep; unexpected exceptions go to Celery's
    autoretry.
    """
    event = WebhookEvent.objects.filter(pk=webhook_event_id).first()
    if event is None:
        logger.error("WebhookEvent not found", extra={"webhook_event_id": webhook_event_id})
        return {"status": "not_found", "webhook_event_id": webhook_event_id}

    if event.is_processed:
        return {"status": "already_processed", "webhook_event_id": webhook_event_id}

    result = process_webhook(event)
    if not result:
        return {"status": "handler_failed", "webhook_event_id": webhook_event_id, "error": result.error}

    return {
        "status": "processed",
        "webhook_event_id": webhook_event_id,
        "stripe_event_id": event.stripe_event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """Queue FAILED events that still have retries left, oldest first."""
    retryable = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        retry_count__lt=MAX_WEBHOOK_RETRIES,
    ).order_by("created_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for event in retryable:
        try:
            process_webhook_event.delay(str(event.pk))
        except Exception:
            logger.exception("Could not queue webhook retry", extra={"webhook_event_id": str(event.pk)})
            continue
        queued_count += 1

    if queued_count:
        logger.info(f"Queued {queued_count} webhook events for retry", extra={"queued_count": queued_count})
    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """Flip stale PROCESSING events to FAILED so retry_failed_webhooks picks them up."""
    cutoff = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)
    reset_count = WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=cutoff,
    ).update(status=WebhookEventStatus.FAILED, error_message="Processing timed out")

    if reset_count:
        logger.warning(f"Reset {reset_count} stuck webhook events", extra={"reset_count": reset_count})
    return {"reset_count": reset_count}


__all__ = [
    "cleanup_stuck_webhooks",
    "execute_single_disbursement",
    "process_webhook_event",
    "release_completed_holds",
    "release_single_payment",
    "retry_failed_webhooks",
    "retry_pending_disbursements",
]
