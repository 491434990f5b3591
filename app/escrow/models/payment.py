"""
Payment model: the local ledger entry for one delivery's money flow.

The state field is a protected django-fsm FSMField. It can only change
through the @transition methods below, and those are only called by
escrow.state_machines.machine.transition_payment. ConcurrentTransitionMixin
turns every save into a conditional write on the previously loaded state,
so a concurrent writer that moved the row first makes the save fail with
ConcurrentTransition instead of silently overwriting it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import ConcurrentTransitionMixin, FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import (
    PaymentMethod,
    PaymentState,
    PayoutStatus,
    ReleaseCondition,
)


@dataclass(frozen=True)
class EscrowDetails:
    """
    Read-only view of a payment's escrow and settlement metadata.

    Version 1 of the structure; bump SCHEMA_VERSION when fields change.
    """

    SCHEMA_VERSION = 1

    state: str
    payout_status: str
    release_condition: str
    held_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    settled_at: datetime | None
    transfer_id: str
    needs_reconciliation: bool

    def to_dict(self) -> dict:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "state": self.state,
            "payout_status": self.payout_status,
            "release_condition": self.release_condition,
            "held_at": self.held_at.isoformat() if self.held_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
            "transfer_id": self.transfer_id,
            "needs_reconciliation": self.needs_reconciliation,
        }


class Payment(ConcurrentTransitionMixin, UUIDPrimaryKeyMixin, BaseModel):
    """
    Escrowed payment for exactly one delivery.

    State Flow:
        PENDING -> HELD -> RELEASED
        PENDING -> FAILED
        HELD -> REFUNDED
        HELD -> DISPUTED -> RELEASED | REFUNDED

    Amounts are integers in the smallest currency unit. Once the split
    has been computed:

        platform_fee + company_amount + (driver_amount or 0)
            + refunded_amount == total_amount

    Fields:
        delivery: The delivery being paid for (1:1)
        customer: Paying user
        company / driver: Set progressively as the delivery is assigned
        payment_method: card (escrowed with Stripe) or cash
        stripe_payment_intent_id: Processor reference (pi_xxx)
        client_secret: Hosted checkout reference handed to the client
        total_amount_cents: Amount requested from the customer
        confirmed_amount_cents: Amount the processor reported as received
        platform_fee_cents / company_amount_cents / driver_amount_cents:
            Split Calculator output, immutable except during dispute resolution
        refunded_amount_cents: Part of the total returned to the customer
        state: Current FSM state
        payout_status: Whether external transfers/refunds are still pending
        needs_reconciliation: Confirmed amount differed from the total
        version: Incremented on every save
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    delivery = models.OneToOneField(
        "deliveries.Delivery",
        on_delete=models.PROTECT,
        related_name="payment",
    )

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_payments",
    )

    company = models.ForeignKey(
        "deliveries.Company",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )

    driver = models.ForeignKey(
        "deliveries.Driver",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )

    # ==========================================================================
    # Processor Reference
    # ==========================================================================

    payment_method = models.CharField(
        max_length=10,
        choices=PaymentMethod.choices,
        default=PaymentMethod.CARD,
    )

    stripe_payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe PaymentIntent ID (pi_xxx), used to match webhooks",
    )

    client_secret = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Client secret for the hosted checkout",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    total_amount_cents = models.PositiveBigIntegerField(
        help_text="Total amount in smallest currency unit",
    )

    confirmed_amount_cents = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Amount confirmed by the processor",
    )

    platform_fee_cents = models.PositiveBigIntegerField(null=True, blank=True)

    company_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)

    driver_amount_cents = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Driver share, set only when the payment method's policy tracks it",
    )

    refunded_amount_cents = models.PositiveBigIntegerField(default=0)

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=PaymentState.PENDING,
        choices=PaymentState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payment (managed by FSM)",
    )

    payout_status = models.CharField(
        max_length=20,
        choices=PayoutStatus.choices,
        default=PayoutStatus.NOT_REQUIRED,
        db_index=True,
    )

    release_condition = models.CharField(
        max_length=30,
        choices=ReleaseCondition.choices,
        blank=True,
        default="",
    )

    needs_reconciliation = models.BooleanField(
        default=False,
        help_text="Processor amount differed from the expected total",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    held_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    settled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the settlement unit committed; set exactly once",
    )
    cash_settled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the company confirmed receipt of cash from the driver",
    )

    # ==========================================================================
    # Settlement Metadata
    # ==========================================================================

    transfer_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe Transfer ID (tr_xxx) of the company transfer",
    )

    failure_reason = models.TextField(
        blank=True,
        default="",
        help_text="Processor failure reason, stored verbatim",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment"
        verbose_name_plural = "Payments"
        indexes = [
            models.Index(fields=["state", "held_at"], name="payment_state_held_idx"),
            models.Index(fields=["state", "payout_status"], name="payment_state_payout_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount_cents__gt=0),
                name="payment_total_positive",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.total_amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Payment({self.id}, {self.state}, {amount_display})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment.

        The new counter is read back with a values query: refresh_from_db
        would also reload the protected state field and be rejected.
        """
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.version = type(self).objects.values_list("version", flat=True).get(pk=self.pk)

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=state, source=PaymentState.PENDING, target=PaymentState.HELD)
    def hold(self, confirmed_amount_cents: int):
        """
        Funds are held by the processor (or cash collected by the driver).

        Transition: PENDING -> HELD
        """
        self.confirmed_amount_cents = confirmed_amount_cents
        self.needs_reconciliation = confirmed_amount_cents != self.total_amount_cents
        self.held_at = timezone.now()

    @transition(field=state, source=PaymentState.PENDING, target=PaymentState.FAILED)
    def fail(self, reason: str = ""):
        """
        The charge failed.

        Transition: PENDING -> FAILED
        """
        self.failure_reason = reason
        self.failed_at = timezone.now()

    @transition(field=state, source=PaymentState.HELD, target=PaymentState.RELEASED)
    def release(self, release_condition: str, payout_status: str):
        """
        Release held funds to the company.

        Transition: HELD -> RELEASED
        """
        now = timezone.now()
        self.release_condition = release_condition
        self.payout_status = payout_status
        self.released_at = now
        self.settled_at = now

    @transition(field=state, source=PaymentState.HELD, target=PaymentState.REFUNDED)
    def refund(self, payout_status: str):
        """
        Return the whole amount to the customer.

        Transition: HELD -> REFUNDED
        """
        self.platform_fee_cents = 0
        self.company_amount_cents = 0
        self.driver_amount_cents = None
        self.refunded_amount_cents = self.total_amount_cents
        self.payout_status = payout_status
        self.refunded_at = timezone.now()
        self.settled_at = self.refunded_at

    @transition(field=state, source=PaymentState.HELD, target=PaymentState.DISPUTED)
    def open_dispute(self):
        """
        Freeze the held funds while a dispute is investigated.

        Transition: HELD -> DISPUTED
        """
        self.disputed_at = timezone.now()

    @transition(field=state, source=PaymentState.DISPUTED, target=PaymentState.RELEASED)
    def resolve_release(
        self,
        platform_fee_cents: int,
        company_amount_cents: int,
        driver_amount_cents: int | None,
        refunded_amount_cents: int,
        payout_status: str,
    ):
        """
        Resolve a dispute by releasing all or part of the funds.

        Transition: DISPUTED -> RELEASED

        A split resolution records the refunded part alongside the
        released part.
        """
        now = timezone.now()
        self.platform_fee_cents = platform_fee_cents
        self.company_amount_cents = company_amount_cents
        self.driver_amount_cents = driver_amount_cents
        self.refunded_amount_cents = refunded_amount_cents
        self.release_condition = ReleaseCondition.DISPUTE_RESOLUTION
        self.payout_status = payout_status
        self.released_at = now
        self.settled_at = now
        if refunded_amount_cents:
            self.refunded_at = now

    @transition(field=state, source=PaymentState.DISPUTED, target=PaymentState.REFUNDED)
    def resolve_refund(self, payout_status: str):
        """
        Resolve a dispute with a full refund to the customer.

        Transition: DISPUTED -> REFUNDED
        """
        self.platform_fee_cents = 0
        self.company_amount_cents = 0
        self.driver_amount_cents = None
        self.refunded_amount_cents = self.total_amount_cents
        self.payout_status = payout_status
        self.refunded_at = timezone.now()
        self.settled_at = self.refunded_at

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def has_split(self) -> bool:
        return self.platform_fee_cents is not None and self.company_amount_cents is not None

    @property
    def split_is_balanced(self) -> bool:
        """Check that the recorded shares add back to the total."""
        if not self.has_split:
            return False
        return (
            self.platform_fee_cents
            + self.company_amount_cents
            + (self.driver_amount_cents or 0)
            + self.refunded_amount_cents
            == self.total_amount_cents
        )

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None

    @property
    def is_pending_transfer(self) -> bool:
        """Released or refunded locally but not yet confirmed by the processor."""
        return self.payout_status == PayoutStatus.PENDING

    @property
    def is_cash(self) -> bool:
        return self.payment_method == PaymentMethod.CASH

    @property
    def escrow_details(self) -> EscrowDetails:
        return EscrowDetails(
            state=self.state,
            payout_status=self.payout_status,
            release_condition=self.release_condition,
            held_at=self.held_at,
            released_at=self.released_at,
            refunded_at=self.refunded_at,
            settled_at=self.settled_at,
            transfer_id=self.transfer_id,
            needs_reconciliation=self.needs_reconciliation,
        )
