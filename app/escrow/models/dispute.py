"""
Dispute sub-record of a Payment.

A dispute is raised once per payment, collects evidence while the
payment is DISPUTED, and is closed by exactly one resolution.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import DisputeDecision, DisputeParty


class DisputeRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Dispute raised against a held payment.

    Fields:
        payment: The disputed payment (1:1)
        reason: Short reason code or title
        description: Free text from the raiser
        raised_by / raised_by_role: Who opened the dispute
        decision: Resolution outcome, empty while open
        customer_amount_cents / company_amount_cents: Resolution amounts,
            always summing to the payment total
        resolved_by / resolved_at / resolution_notes: Resolver identity
    """

    payment = models.OneToOneField(
        "escrow.Payment",
        on_delete=models.PROTECT,
        related_name="dispute",
    )

    reason = models.CharField(max_length=255)

    description = models.TextField(blank=True, default="")

    raised_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="raised_disputes",
    )

    raised_by_role = models.CharField(
        max_length=20,
        choices=DisputeParty.choices,
    )

    # ==========================================================================
    # Resolution
    # ==========================================================================

    decision = models.CharField(
        max_length=20,
        choices=DisputeDecision.choices,
        blank=True,
        default="",
    )

    customer_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)

    company_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)

    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="resolved_disputes",
    )

    resolution_notes = models.TextField(blank=True, default="")

    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Dispute"
        verbose_name_plural = "Disputes"

    def __str__(self) -> str:
        return f"DisputeRecord({self.payment_id}, {self.decision or 'open'})"

    @property
    def is_resolved(self) -> bool:
        return bool(self.decision)


class DisputeEvidence(BaseModel):
    """A piece of evidence attached to a dispute."""

    dispute = models.ForeignKey(
        DisputeRecord,
        on_delete=models.CASCADE,
        related_name="evidence",
    )
    description = models.TextField()
    url = models.URLField(max_length=500, blank=True, default="")
    submitted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="dispute_evidence",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name_plural = "Dispute evidence"
