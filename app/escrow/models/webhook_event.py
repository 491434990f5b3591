"""
WebhookEvent model for Stripe webhook event tracking.

Every verified event is stored before it is applied. The unique
stripe_event_id makes redelivered events detectable, and a stored event
lets the endpoint acknowledge quickly and retry processing later.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import WebhookEventStatus

MAX_WEBHOOK_RETRIES = 5


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Inbound processor event.

    Fields:
        stripe_event_id: Stripe Event ID (evt_xxx), unique
        event_type: e.g. payment_intent.succeeded
        payload: Full event body
        status: PENDING, PROCESSING, PROCESSED or FAILED
        processed_at: When processing succeeded
        error_message: Last processing error
        retry_count: Number of processing attempts
    """

    stripe_event_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency",
    )

    event_type = models.CharField(max_length=100, db_index=True)

    payload = models.JSONField()

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(blank=True, default="")

    retry_count = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "retry_count"], name="webhook_status_retry_idx"),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.stripe_event_id}, {self.event_type})"

    @property
    def is_processed(self) -> bool:
        return self.status == WebhookEventStatus.PROCESSED

    @property
    def can_retry(self) -> bool:
        return (
            self.status == WebhookEventStatus.FAILED
            and self.retry_count < MAX_WEBHOOK_RETRIES
        )

    def mark_processing(self) -> None:
        """Mark event as being processed. Caller saves."""
        self.status = WebhookEventStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        """Mark event as successfully processed. Caller saves."""
        self.status = WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = ""

    def mark_failed(self, error: str) -> None:
        """Mark event as failed. Caller saves."""
        self.status = WebhookEventStatus.FAILED
        self.error_message = error

    @property
    def data_object(self) -> dict:
        """The event's data.object payload (PaymentIntent, Transfer, ...)."""
        return (self.payload or {}).get("data", {}).get("object", {}) or {}

    def get_object_id(self) -> str | None:
        return self.data_object.get("id")
