"""
Stripe webhook endpoint.

A plain Django view rather than a DRF one: Stripe authenticates with a
signature over the raw body, not a JWT, and must not be throttled. The
event is stored under its Stripe id before it is applied, so a
redelivery finds the earlier row instead of applying twice.
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from escrow.adapters import StripeAdapter
from escrow.exceptions import EscrowValidationError, WebhookAuthenticationError
from escrow.models import WebhookEvent
from escrow.state_machines import WebhookEventStatus
from escrow.webhooks.handlers import process_webhook

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive and apply Stripe webhook events.

    Idempotency:
    - WebhookEvent.stripe_event_id is unique
    - A redelivered event that was already processed returns 200 without
      touching the ledger
    - Charge events that arrive after the payment moved on are discarded
      by the state machine and still acknowledged

    Returns:
        HttpResponse with status:
        - 200: Event applied, duplicate, ignored or discarded
        - 400: Unparseable payload
        - 401: Missing or invalid signature
        - 500: Processing failed; Stripe will redeliver
    """
    payload = request.body
    signature = request.headers.get("Stripe-Signature")

    try:
        event_data = StripeAdapter.verify_webhook_signature(payload, signature)
    except WebhookAuthenticationError as e:
        logger.warning(
            "Rejected webhook with bad signature",
            extra={"error": str(e)},
        )
        return HttpResponse("Invalid signature", status=401)
    except EscrowValidationError as e:
        logger.warning("Webhook payload could not be parsed", extra={"error": str(e)})
        return HttpResponse("Invalid payload", status=400)

    stripe_event_id = event_data.get("id")
    event_type = event_data.get("type")

    if not stripe_event_id or not event_type:
        logger.warning("Webhook missing required fields")
        return HttpResponse("Invalid event", status=400)

    logger.info(
        f"Received Stripe webhook: {event_type}",
        extra={"stripe_event_id": stripe_event_id, "event_type": event_type},
    )

    # Unique on stripe_event_id; a redelivery lands on the existing row
    webhook_event, created = WebhookEvent.objects.get_or_create(
        stripe_event_id=stripe_event_id,
        defaults={
            "event_type": event_type,
            "payload": event_data,
            "status": WebhookEventStatus.PENDING,
        },
    )

    if not created and webhook_event.is_processed:
        logger.info(
            "Duplicate webhook delivery acknowledged",
            extra={"stripe_event_id": stripe_event_id},
        )
        return HttpResponse("Already processed", status=200)

    try:
        result = process_webhook(webhook_event)
    except Exception:
        logger.exception(
            "Webhook processing raised, Stripe will redeliver",
            extra={"stripe_event_id": stripe_event_id, "event_type": event_type},
        )
        return HttpResponse("Processing failed", status=500)

    if not result.success:
        # Left FAILED; Stripe redelivers and retry_failed_webhooks is the backstop
        return HttpResponse("Processing failed", status=500)

    return HttpResponse("OK", status=200)
