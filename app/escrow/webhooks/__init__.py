"""
Stripe webhook ingestion for the escrow engine.

- views.stripe_webhook: HTTP endpoint (signature check, dedupe, apply)
- handlers: event registry and per-event handlers
"""

from escrow.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    process_webhook,
    register_handler,
)

__all__ = [
    "WEBHOOK_HANDLERS",
    "dispatch_webhook",
    "process_webhook",
    "register_handler",
]
