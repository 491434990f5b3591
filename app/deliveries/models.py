"""
Delivery, Company and Driver models.

Counters are updated with F() expressions so concurrent settlements for
different payments of the same company never lose an increment.
"""

from __future__ import annotations

from datetime import datetime

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import PaymentState


class DeliveryStatus(models.TextChoices):
    """
    Delivery lifecycle, owned by the dispatch side of the marketplace.

    Only DELIVERED and COMPLETED allow the escrowed payment to be settled.
    """

    PENDING = "pending", "Pending"
    ASSIGNED = "assigned", "Assigned"
    PICKED_UP = "picked_up", "Picked Up"
    IN_TRANSIT = "in_transit", "In Transit"
    DELIVERED = "delivered", "Delivered"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


SETTLEABLE_DELIVERY_STATUSES = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.COMPLETED}
)


class Company(UUIDPrimaryKeyMixin, BaseModel):
    """
    A logistics company receiving released funds.

    Fields:
        owner: User managing the company
        name: Display name
        stripe_account_id: Connected account receiving transfers (acct_xxx)
        total_earnings_cents: Running total of released company amounts
        total_deliveries: Number of settled deliveries
        last_payment_received_at: When the last settlement was credited
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="companies",
    )
    name = models.CharField(max_length=200)
    stripe_account_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe Connect account ID (acct_xxx)",
    )
    total_earnings_cents = models.PositiveBigIntegerField(default=0)
    total_deliveries = models.PositiveIntegerField(default=0)
    last_payment_received_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "Companies"

    def __str__(self) -> str:
        return self.name

    def record_settlement(self, amount_cents: int, at: datetime | None = None) -> None:
        """Credit a released company amount and count the delivery."""
        Company.objects.filter(pk=self.pk).update(
            total_earnings_cents=F("total_earnings_cents") + amount_cents,
            total_deliveries=F("total_deliveries") + 1,
            last_payment_received_at=at or timezone.now(),
        )


class Driver(UUIDPrimaryKeyMixin, BaseModel):
    """
    A driver performing deliveries, usually employed by a company.

    Fields:
        user: Account of the driver
        company: Employing company (nullable for independents)
        total_deliveries: Number of settled deliveries
        total_earnings_cents: Running total of driver shares
        last_delivery_at: When the last settled delivery happened
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="driver_profile",
    )
    company = models.ForeignKey(
        Company,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="drivers",
    )
    total_deliveries = models.PositiveIntegerField(default=0)
    total_earnings_cents = models.PositiveBigIntegerField(default=0)
    last_delivery_at = models.DateTimeField(null=True, blank=True)

    def __str__(self) -> str:
        return f"Driver({self.user_id})"

    def record_delivery(self, amount_cents: int | None, at: datetime | None = None) -> None:
        """Count a settled delivery and credit the driver share, if any."""
        Driver.objects.filter(pk=self.pk).update(
            total_deliveries=F("total_deliveries") + 1,
            total_earnings_cents=F("total_earnings_cents") + (amount_cents or 0),
            last_delivery_at=at or timezone.now(),
        )


class Delivery(UUIDPrimaryKeyMixin, BaseModel):
    """
    A delivery ordered by a customer.

    Fields:
        customer: User paying for the delivery
        company: Company fulfilling it (set when assigned)
        driver: Driver carrying it (set when assigned)
        price_cents: Amount to escrow, produced by the pricing service
        currency: ISO 4217 code (lowercase)
        status: Delivery lifecycle status
        payment_status: Mirror of the linked Payment state
        completed_at: When the delivery reached DELIVERED/COMPLETED
    """

    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="deliveries",
    )
    company = models.ForeignKey(
        Company,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="deliveries",
    )
    driver = models.ForeignKey(
        Driver,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="deliveries",
    )
    price_cents = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="usd")
    status = models.CharField(
        max_length=20,
        choices=DeliveryStatus.choices,
        default=DeliveryStatus.PENDING,
        db_index=True,
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentState.choices,
        blank=True,
        default="",
        help_text="Mirror of the escrow Payment state, written by the engine",
    )
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "Deliveries"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(price_cents__gt=0),
                name="delivery_price_positive",
            ),
        ]

    @property
    def is_settleable(self) -> bool:
        """Whether the delivery has reached a status that allows settlement."""
        return self.status in SETTLEABLE_DELIVERY_STATUSES

    def mirror_payment_status(self, payment_state: str) -> None:
        """Write the payment state back onto the delivery."""
        Delivery.objects.filter(pk=self.pk).update(payment_status=payment_state)
        self.payment_status = payment_state
