"""
Handlers for the Stripe events the escrow engine reacts to.

process_webhook() applies one stored WebhookEvent and records the outcome
on it. Both the HTTP endpoint and the Celery retry task go through it.

Charge outcomes use ChargeService, the same path as the polling
verification, so a webhook and a poll that race converge on one state.
Transfer and refund events confirm or fail the matching Disbursement.
Events that reference objects this platform did not create are
acknowledged and ignored.
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult
from escrow.models import Disbursement, Payment, WebhookEvent
from escrow.services import ChargeService, DisbursementService
from escrow.state_machines import DisbursementKind, DisbursementState

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent], ServiceResult]

# event type -> handler, filled by @register_handler
WEBHOOK_HANDLERS: dict[str, Handler] = {}


def register_handler(event_type: str) -> Callable[[Handler], Handler]:
    def decorator(func: Handler) -> Handler:
        WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """Run the registered handler; event types without one succeed as no-ops."""
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)
    log_extra = {"stripe_event_id": webhook_event.stripe_event_id, "event_type": webhook_event.event_type}

    if handler is None:
        logger.info("Ignoring unhandled webhook event type", extra=log_extra)
        return ServiceResult.success(None)

    logger.info(f"Handling {webhook_event.event_type}", extra=log_extra)
    return handler(webhook_event)


def process_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Apply a stored event once and persist its status.

    A handler failure leaves the event FAILED for the retry sweep. An
    unexpected exception also marks it FAILED and is re-raised, so the
    endpoint answers 500 and Stripe redelivers.
    """
    if webhook_event.is_processed:
        logger.info("Webhook event already processed", extra={"stripe_event_id": webhook_event.stripe_event_id})
        return ServiceResult.success(None)

    webhook_event.mark_processing()
    webhook_event.save(update_fields=["status", "retry_count", "updated_at"])

    try:
        result = dispatch_webhook(webhook_event)
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        raise

    if not result:
        webhook_event.mark_failed(result.error or "Handler returned failure")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        logger.warning(
            f"Webhook handler failed: {result.error}",
            extra={"stripe_event_id": webhook_event.stripe_event_id, "error_code": result.error_code},
        )
        return result

    webhook_event.mark_processed()
    webhook_event.save(update_fields=["status", "processed_at", "error_message", "updated_at"])
    return result


# =============================================================================
# PaymentIntent events
# =============================================================================


def _missing_object_id(kind: str) -> ServiceResult:
    return ServiceResult.failure(f"Webhook carries no {kind} id", error_code="INVALID_WEBHOOK_PAYLOAD")


def _charge_outcome(webhook_event: WebhookEvent, apply: Callable[..., ServiceResult], **kwargs) -> ServiceResult:
    """
    Feed a PaymentIntent event to a ChargeService entry point.

    PAYMENT_NOT_FOUND is downgraded to success: the intent belongs to
    something other than an escrow payment.
    """
    intent = webhook_event.data_object
    if not intent.get("id"):
        return _missing_object_id("payment_intent")

    result = apply(
        payment_intent_id=intent["id"],
        source="webhook",
        event_id=webhook_event.stripe_event_id,
        payment_id=(intent.get("metadata") or {}).get("payment_id"),
        **kwargs,
    )
    if not result and result.error_code == "PAYMENT_NOT_FOUND":
        logger.warning(
            "Webhook references an unknown payment, ignoring",
            extra={"stripe_event_id": webhook_event.stripe_event_id, "payment_intent_id": intent["id"]},
        )
        return ServiceResult.success(None)
    return result


@register_handler("payment_intent.succeeded")
def handle_payment_intent_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
    """Funds captured: PENDING -> HELD, or flagged when the amount differs."""
    intent = webhook_event.data_object
    return _charge_outcome(
        webhook_event,
        ChargeService.confirm_charge,
        amount_received_cents=intent.get("amount_received", intent.get("amount", 0)),
        currency=intent.get("currency", ""),
    )


@register_handler("payment_intent.payment_failed")
def handle_payment_intent_failed(webhook_event: WebhookEvent) -> ServiceResult:
    last_error = webhook_event.data_object.get("last_payment_error") or {}
    return _charge_outcome(
        webhook_event,
        ChargeService.fail_charge,
        reason=last_error.get("message") or "Payment failed",
    )


@register_handler("payment_intent.canceled")
def handle_payment_intent_canceled(webhook_event: WebhookEvent) -> ServiceResult:
    reason = webhook_event.data_object.get("cancellation_reason") or "unspecified"
    return _charge_outcome(webhook_event, ChargeService.fail_charge, reason=f"canceled: {reason}")


# =============================================================================
# Transfer events
# =============================================================================


@register_handler("transfer.created")
def handle_transfer_created(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Confirm a transfer disbursement.

    Normally a no-op: the executor already stored the transfer ID. It
    matters when the executor's write-back was lost after Stripe created
    the transfer.
    """
    transfer = webhook_event.data_object
    disbursement_id = (transfer.get("metadata") or {}).get("disbursement_id")
    if not disbursement_id or not transfer.get("id"):
        logger.info(
            "transfer.created without escrow metadata, ignoring",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    if not Disbursement.objects.filter(pk=disbursement_id).exists():
        logger.warning(
            "transfer.created for unknown disbursement",
            extra={
                "stripe_event_id": webhook_event.stripe_event_id,
                "disbursement_id": disbursement_id,
            },
        )
        return ServiceResult.success(None)

    disbursement = DisbursementService.confirm(disbursement_id, transfer["id"])
    return ServiceResult.success(disbursement)


@register_handler("transfer.reversed")
def handle_transfer_reversed(webhook_event: WebhookEvent) -> ServiceResult:
    """A completed transfer was reversed: fail it and alert an operator."""
    transfer_id = webhook_event.get_object_id()
    if not transfer_id:
        return _missing_object_id("transfer")

    disbursement = DisbursementService.mark_reversed(transfer_id)
    if disbursement is None:
        logger.warning(
            "transfer.reversed for unknown transfer",
            extra={"stripe_event_id": webhook_event.stripe_event_id, "transfer_id": transfer_id},
        )
    return ServiceResult.success(disbursement)


# =============================================================================
# Refund events
# =============================================================================


@register_handler("charge.refunded")
def handle_charge_refunded(webhook_event: WebhookEvent) -> ServiceResult:
    """Confirm the pending refund disbursement of the charged payment."""
    charge = webhook_event.data_object
    payment_intent_id = charge.get("payment_intent")
    payment = Payment.objects.filter(stripe_payment_intent_id=payment_intent_id).first()
    if not payment_intent_id or payment is None:
        logger.info(
            "charge.refunded for unknown payment, ignoring",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    disbursement = Disbursement.objects.filter(
        payment=payment,
        kind=DisbursementKind.REFUND,
        state=DisbursementState.PENDING,
    ).first()
    if disbursement is None:
        return ServiceResult.success(None)

    if charge.get("amount_refunded", 0) < disbursement.amount_cents:
        logger.info(
            "Charge only partially refunded so far, waiting",
            extra={
                "payment_id": str(payment.pk),
                "amount_refunded": charge.get("amount_refunded", 0),
                "expected_cents": disbursement.amount_cents,
            },
        )
        return ServiceResult.success(None)

    refunds = (charge.get("refunds") or {}).get("data") or []
    refund_id = refunds[0].get("id") if refunds else charge.get("id")
    return ServiceResult.success(DisbursementService.confirm(disbursement.pk, refund_id))


__all__ = [
    "WEBHOOK_HANDLERS",
    "dispatch_webhook",
    "process_webhook",
    "register_handler",
]
