"""
Escrow admin configuration.

Every escrow record is read-only in the admin. State only changes through
the service layer. The operator actions are re-arming a failed
disbursement and signing off a payment flagged by an amount mismatch.
"""

from django.contrib import admin, messages

from escrow.models import Disbursement, Payment, PaymentAuditEntry, WebhookEvent
from escrow.services import DisbursementService, PaymentService
from escrow.state_machines import DisbursementState


class ReadOnlyAdminMixin:
    """Disable add, change and delete for ledger records."""

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


class PaymentAuditEntryInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = PaymentAuditEntry
    extra = 0
    fields = ["sequence", "action", "actor", "details", "created_at"]
    readonly_fields = fields
    ordering = ["sequence"]


class DisbursementInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = Disbursement
    extra = 0
    fields = ["kind", "amount_cents", "state", "attempt_count", "stripe_object_id", "last_error"]
    readonly_fields = fields
    show_change_link = True


@admin.register(Payment)
class PaymentAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for Payment.

    Shows the split, settlement metadata and the audit trail inline.
    """

    list_display = [
        "id",
        "delivery",
        "payment_method",
        "amount_display",
        "state",
        "payout_status",
        "needs_reconciliation",
        "created_at",
    ]
    list_filter = ["state", "payout_status", "payment_method", "needs_reconciliation"]
    search_fields = ["id", "stripe_payment_intent_id", "transfer_id", "customer__email"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [DisbursementInline, PaymentAuditEntryInline]
    actions = ["reconcile_flagged"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "delivery", "customer", "company", "driver", "payment_method"),
            },
        ),
        (
            "Amounts",
            {
                "fields": (
                    "currency",
                    "total_amount_cents",
                    "confirmed_amount_cents",
                    "platform_fee_cents",
                    "company_amount_cents",
                    "driver_amount_cents",
                    "refunded_amount_cents",
                ),
            },
        ),
        (
            "Status",
            {
                "fields": (
                    "state",
                    "payout_status",
                    "release_condition",
                    "needs_reconciliation",
                    "failure_reason",
                ),
            },
        ),
        (
            "Stripe",
            {
                "fields": ("stripe_payment_intent_id", "transfer_id"),
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "held_at",
                    "released_at",
                    "refunded_at",
                    "disputed_at",
                    "failed_at",
                    "settled_at",
                    "cash_settled_at",
                    "created_at",
                    "updated_at",
                ),
            },
        ),
    )

    def amount_display(self, obj: Payment) -> str:
        return f"{obj.total_amount_cents / 100:.2f} {obj.currency.upper()}"

    amount_display.short_description = "Amount"

    def has_reconcile_permission(self, request) -> bool:
        return request.user.is_active and request.user.is_staff

    @admin.action(description="Mark selected mismatched payments as reconciled", permissions=["reconcile"])
    def reconcile_flagged(self, request, queryset):
        notes = f"Confirmed amount accepted in admin by {request.user.get_username()}"
        reconciled = 0
        for payment in queryset.filter(needs_reconciliation=True):
            result = PaymentService.reconcile_payment(payment.pk, actor=request.user, notes=notes)
            if result.success:
                reconciled += 1
            else:
                self.message_user(
                    request,
                    f"Could not reconcile {payment.pk}: {result.error}",
                    level=messages.WARNING,
                )
        self.message_user(request, f"Reconciled {reconciled} payments.")


@admin.register(PaymentAuditEntry)
class PaymentAuditEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["payment", "sequence", "action", "actor", "created_at"]
    list_filter = ["action"]
    search_fields = ["payment__id", "actor"]
    ordering = ["-created_at"]


@admin.register(Disbursement)
class DisbursementAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for Disbursement.

    Failed disbursements can be re-armed, which issues a new idempotency
    key; the retry worker then picks them up.
    """

    list_display = [
        "id",
        "payment",
        "kind",
        "amount_cents",
        "state",
        "attempt_count",
        "alerted_at",
        "created_at",
    ]
    list_filter = ["state", "kind"]
    search_fields = ["id", "payment__id", "stripe_object_id", "idempotency_key"]
    ordering = ["-created_at"]
    actions = ["rearm_failed"]

    @admin.action(description="Re-arm selected failed disbursements")
    def rearm_failed(self, request, queryset):
        rearmed = 0
        for disbursement in queryset.filter(state=DisbursementState.FAILED):
            result = DisbursementService.rearm(disbursement.pk)
            if result.success:
                rearmed += 1
            else:
                self.message_user(
                    request,
                    f"Could not re-arm {disbursement.pk}: {result.error}",
                    level=messages.WARNING,
                )
        self.message_user(request, f"Re-armed {rearmed} disbursements.")


@admin.register(WebhookEvent)
class WebhookEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["stripe_event_id", "event_type", "status", "retry_count", "created_at"]
    list_filter = ["status", "event_type"]
    search_fields = ["stripe_event_id"]
    ordering = ["-created_at"]
