"""
Append-only audit trail for payments.

Entries are ordered by a per-payment sequence number and are never
updated or deleted. The action is one of the closed AuditAction values
and its details follow the matching variant in escrow.audit.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from escrow.state_machines import AuditAction


class AppendOnlyError(Exception):
    """Raised on an attempt to modify or delete an audit entry."""


class PaymentAuditEntry(models.Model):
    """
    One audit log entry.

    Fields:
        payment: Payment the entry belongs to
        sequence: 1-based position within the payment's log
        action: Closed action kind
        actor: Label of who caused it ("system", "processor", "user:<id>")
        actor_user: Acting user, when there is one
        details: Variant payload (see escrow.audit)
        created_at: When the entry was written
    """

    payment = models.ForeignKey(
        "escrow.Payment",
        on_delete=models.PROTECT,
        related_name="audit_entries",
    )
    sequence = models.PositiveIntegerField()
    action = models.CharField(max_length=40, choices=AuditAction.choices, db_index=True)
    actor = models.CharField(max_length=100)
    actor_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["payment", "sequence"]
        verbose_name = "Payment audit entry"
        verbose_name_plural = "Payment audit entries"
        constraints = [
            models.UniqueConstraint(
                fields=["payment", "sequence"],
                name="audit_sequence_unique_per_payment",
            ),
        ]

    def __str__(self) -> str:
        return f"#{self.sequence} {self.action} by {self.actor}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError("Audit entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Audit entries cannot be deleted")
