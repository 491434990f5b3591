import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models

PAYMENT_STATE_CHOICES = [
    ("pending", "Pending"),
    ("held", "Held"),
    ("released", "Released"),
    ("refunded", "Refunded"),
    ("disputed", "Disputed"),
    ("failed", "Failed"),
]


def timestamp_fields():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
            ),
        ),
    ]


def uuid_pk():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier (UUID)",
            primary_key=True,
            serialize=False,
        ),
    )


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("deliveries", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                *timestamp_fields(),
                uuid_pk(),
                (
                    "payment_method",
                    models.CharField(
                        choices=[("card", "Card"), ("cash", "Cash")],
                        default="card",
                        max_length=10,
                    ),
                ),
                (
                    "stripe_payment_intent_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe PaymentIntent ID (pi_xxx), used to match webhooks",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "client_secret",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Client secret for the hosted checkout",
                        max_length=255,
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "total_amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Total amount in smallest currency unit",
                    ),
                ),
                (
                    "confirmed_amount_cents",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Amount confirmed by the processor",
                        null=True,
                    ),
                ),
                ("platform_fee_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                ("company_amount_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                (
                    "driver_amount_cents",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Driver share, set only when the payment method's policy tracks it",
                        null=True,
                    ),
                ),
                ("refunded_amount_cents", models.PositiveBigIntegerField(default=0)),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=PAYMENT_STATE_CHOICES,
                        db_index=True,
                        default="pending",
                        help_text="Current state of the payment (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "payout_status",
                    models.CharField(
                        choices=[
                            ("not_required", "Not Required"),
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                        ],
                        db_index=True,
                        default="not_required",
                        max_length=20,
                    ),
                ),
                (
                    "release_condition",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("delivery_confirmed", "Delivery Confirmed"),
                            ("auto_release", "Automatic Release"),
                            ("manual_release", "Manual Release"),
                            ("dispute_resolution", "Dispute Resolution"),
                        ],
                        default="",
                        max_length=30,
                    ),
                ),
                (
                    "needs_reconciliation",
                    models.BooleanField(
                        default=False,
                        help_text="Processor amount differed from the expected total",
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                ("held_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "settled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the settlement unit committed; set exactly once",
                        null=True,
                    ),
                ),
                (
                    "cash_settled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the company confirmed receipt of cash from the driver",
                        null=True,
                    ),
                ),
                (
                    "transfer_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Stripe Transfer ID (tr_xxx) of the company transfer",
                        max_length=255,
                    ),
                ),
                (
                    "failure_reason",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Processor failure reason, stored verbatim",
                    ),
                ),
                (
                    "company",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="deliveries.company",
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_payments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "delivery",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment",
                        to="deliveries.delivery",
                    ),
                ),
                (
                    "driver",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments",
                        to="deliveries.driver",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment",
                "verbose_name_plural": "Payments",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["state", "held_at"], name="payment_state_held_idx"),
                    models.Index(
                        fields=["state", "payout_status"], name="payment_state_payout_idx"
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("total_amount_cents__gt", 0)),
                        name="payment_total_positive",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Disbursement",
            fields=[
                *timestamp_fields(),
                uuid_pk(),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("transfer", "Transfer to Company"),
                            ("refund", "Refund to Customer"),
                        ],
                        max_length=10,
                    ),
                ),
                ("amount_cents", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="usd", max_length=3)),
                (
                    "destination_account",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                (
                    "operation",
                    models.CharField(
                        help_text=(
                            "Idempotency key operation name "
                            "(settlement_transfer, dispute_refund, ...)"
                        ),
                        max_length=50,
                    ),
                ),
                (
                    "key_attempt",
                    models.PositiveSmallIntegerField(
                        default=1,
                        help_text="Bumped only when a definitively failed disbursement is re-armed",
                    ),
                ),
                ("idempotency_key", models.CharField(max_length=255, unique=True)),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "stripe_object_id",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                ("attempt_count", models.PositiveSmallIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, default="")),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("alerted_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="disbursements",
                        to="escrow.payment",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(
                        fields=["state", "last_attempt_at"],
                        name="disbursement_state_retry_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="disbursement_amount_positive",
                    ),
                    models.UniqueConstraint(
                        fields=("payment", "kind"),
                        name="one_disbursement_per_kind",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DisputeRecord",
            fields=[
                *timestamp_fields(),
                uuid_pk(),
                ("reason", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "raised_by_role",
                    models.CharField(
                        choices=[
                            ("customer", "Customer"),
                            ("driver", "Driver"),
                            ("company", "Company"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "decision",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("refund_customer", "Full Refund to Customer"),
                            ("release_company", "Full Release to Company"),
                            ("split", "Split"),
                        ],
                        default="",
                        max_length=20,
                    ),
                ),
                ("customer_amount_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                ("company_amount_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                ("resolution_notes", models.TextField(blank=True, default="")),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dispute",
                        to="escrow.payment",
                    ),
                ),
                (
                    "raised_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="raised_disputes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "resolved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="resolved_disputes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Dispute",
                "verbose_name_plural": "Disputes",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="DisputeEvidence",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                *timestamp_fields(),
                ("description", models.TextField()),
                ("url", models.URLField(blank=True, default="", max_length=500)),
                (
                    "dispute",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="evidence",
                        to="escrow.disputerecord",
                    ),
                ),
                (
                    "submitted_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dispute_evidence",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Dispute evidence",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="PaymentAuditEntry",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("sequence", models.PositiveIntegerField()),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("payment_initiated", "Payment Initiated"),
                            ("payment_held", "Payment Held"),
                            ("payment_failed", "Payment Failed"),
                            ("payment_released", "Payment Released"),
                            ("payment_refunded", "Payment Refunded"),
                            ("dispute_raised", "Dispute Raised"),
                            ("evidence_added", "Evidence Added"),
                            ("dispute_resolved", "Dispute Resolved"),
                            ("amount_mismatch", "Amount Mismatch"),
                            ("transition_rejected", "Transition Rejected"),
                            ("disbursement_completed", "Disbursement Completed"),
                            ("disbursement_failed", "Disbursement Failed"),
                            ("settlement_stuck", "Settlement Stuck"),
                            ("cash_settled", "Cash Settled"),
                        ],
                        db_index=True,
                        max_length=40,
                    ),
                ),
                ("actor", models.CharField(max_length=100)),
                ("details", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor_user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="audit_entries",
                        to="escrow.payment",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment audit entry",
                "verbose_name_plural": "Payment audit entries",
                "ordering": ["payment", "sequence"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("payment", "sequence"),
                        name="audit_sequence_unique_per_payment",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                *timestamp_fields(),
                uuid_pk(),
                (
                    "stripe_event_id",
                    models.CharField(
                        help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("event_type", models.CharField(db_index=True, max_length=100)),
                ("payload", models.JSONField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, default="")),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "retry_count"], name="webhook_status_retry_idx"
                    ),
                ],
            },
        ),
    ]
