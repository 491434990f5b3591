"""
Shared helpers for escrow tests: signed Stripe webhook payloads and
audit trail inspection.
"""

import hashlib
import hmac
import time
import uuid

from django.conf import settings

from escrow.models import PaymentAuditEntry


def sign_payload(payload: str, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, data_object: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_test_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }


def audit_actions(payment) -> list[str]:
    """Audit actions recorded for a payment, in sequence order."""
    return list(
        PaymentAuditEntry.objects.filter(payment_id=payment.pk)
        .order_by("sequence")
        .values_list("action", flat=True)
    )
