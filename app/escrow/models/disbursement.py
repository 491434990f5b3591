"""
Disbursement model: one external money movement for a payment.

A released payment gets a TRANSFER to the company's connected account, a
refunded one a REFUND to the customer, and a split dispute resolution
both. The idempotency key is generated once when the row is created and
is reused for every attempt, so a retry after a timeout can never move
the money twice.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import DisbursementKind, DisbursementState


class Disbursement(UUIDPrimaryKeyMixin, BaseModel):
    """
    Transfer or refund requested from the processor.

    State Flow:
        PENDING -> COMPLETED
        PENDING -> FAILED -> PENDING (retry)
        COMPLETED -> FAILED (transfer reversed by the processor)

    Fields:
        payment: Payment this disbursement settles
        kind: TRANSFER (company) or REFUND (customer)
        amount_cents: Amount to move
        destination_account: Connect account for transfers
        operation / key_attempt: Inputs of the idempotency key
        idempotency_key: Stored key reused on every attempt
        stripe_object_id: tr_xxx / re_xxx once known
        attempt_count: Number of processor calls made
        last_error: Last error message from the processor
        alerted_at: When the stuck-settlement alert was raised
    """

    payment = models.ForeignKey(
        "escrow.Payment",
        on_delete=models.PROTECT,
        related_name="disbursements",
    )

    kind = models.CharField(max_length=10, choices=DisbursementKind.choices)

    amount_cents = models.PositiveBigIntegerField()

    currency = models.CharField(max_length=3, default="usd")

    destination_account = models.CharField(max_length=255, blank=True, default="")

    operation = models.CharField(
        max_length=50,
        help_text="Idempotency key operation name (settlement_transfer, dispute_refund, ...)",
    )

    key_attempt = models.PositiveSmallIntegerField(
        default=1,
        help_text="Bumped only when a definitively failed disbursement is re-armed",
    )

    idempotency_key = models.CharField(max_length=255, unique=True)

    state = FSMField(
        default=DisbursementState.PENDING,
        choices=DisbursementState.choices,
        db_index=True,
        protected=True,
    )

    stripe_object_id = models.CharField(max_length=255, blank=True, default="")

    attempt_count = models.PositiveSmallIntegerField(default=0)

    last_error = models.TextField(blank=True, default="")

    last_attempt_at = models.DateTimeField(null=True, blank=True)

    completed_at = models.DateTimeField(null=True, blank=True)

    alerted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["state", "last_attempt_at"], name="disbursement_state_retry_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="disbursement_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["payment", "kind"],
                name="one_disbursement_per_kind",
            ),
        ]

    def __str__(self) -> str:
        return f"Disbursement({self.kind}, {self.state}, {self.amount_cents})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=state, source=DisbursementState.PENDING, target=DisbursementState.COMPLETED)
    def complete(self, stripe_object_id: str):
        self.stripe_object_id = stripe_object_id
        self.completed_at = timezone.now()
        self.last_error = ""

    @transition(
        field=state,
        source=[DisbursementState.PENDING, DisbursementState.COMPLETED],
        target=DisbursementState.FAILED,
    )
    def fail(self, error: str):
        self.last_error = error

    @transition(field=state, source=DisbursementState.FAILED, target=DisbursementState.PENDING)
    def retry(self):
        """Re-arm a failed disbursement."""
        pass

    def record_attempt(self) -> None:
        self.attempt_count += 1
        self.last_attempt_at = timezone.now()

    @property
    def is_complete(self) -> bool:
        return self.state == DisbursementState.COMPLETED
