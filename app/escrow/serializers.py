"""
DRF serializers for the escrow API.

Read serializers expose the ledger (payment, split, disbursements,
dispute, audit trail). Request serializers validate input shape only;
business rules live in the services.

Related files:
    - views.py: Escrow API views
    - services/: PaymentService, SettlementService, DisputeService
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiExample, extend_schema_serializer
from rest_framework import serializers

from escrow.models import (
    Disbursement,
    DisputeEvidence,
    DisputeRecord,
    Payment,
    PaymentAuditEntry,
)
from escrow.state_machines import DisputeDecision, PaymentMethod


# =============================================================================
# Read Serializers
# =============================================================================


class PaymentAuditEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentAuditEntry
        fields = ["sequence", "action", "actor", "details", "created_at"]
        read_only_fields = fields


class DisbursementSerializer(serializers.ModelSerializer):
    class Meta:
        model = Disbursement
        fields = [
            "id",
            "kind",
            "amount_cents",
            "currency",
            "state",
            "stripe_object_id",
            "attempt_count",
            "last_error",
            "completed_at",
        ]
        read_only_fields = fields


class DisputeEvidenceSerializer(serializers.ModelSerializer):
    class Meta:
        model = DisputeEvidence
        fields = ["id", "description", "url", "submitted_by", "created_at"]
        read_only_fields = fields


class DisputeSerializer(serializers.ModelSerializer):
    evidence = DisputeEvidenceSerializer(many=True, read_only=True)

    class Meta:
        model = DisputeRecord
        fields = [
            "id",
            "reason",
            "description",
            "raised_by",
            "raised_by_role",
            "evidence",
            "decision",
            "customer_amount_cents",
            "company_amount_cents",
            "resolved_by",
            "resolution_notes",
            "resolved_at",
            "created_at",
        ]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    """
    Payment with its split, settlement metadata and related records.

    The client_secret is only included for the paying customer while the
    payment is pending.
    """

    disbursements = DisbursementSerializer(many=True, read_only=True)
    dispute = serializers.SerializerMethodField()
    audit_trail = serializers.SerializerMethodField()
    client_secret = serializers.SerializerMethodField()

    class Meta:
        model = Payment
        fields = [
            "id",
            "delivery",
            "customer",
            "company",
            "driver",
            "payment_method",
            "currency",
            "stripe_payment_intent_id",
            "client_secret",
            "total_amount_cents",
            "confirmed_amount_cents",
            "platform_fee_cents",
            "company_amount_cents",
            "driver_amount_cents",
            "refunded_amount_cents",
            "state",
            "payout_status",
            "release_condition",
            "needs_reconciliation",
            "transfer_id",
            "failure_reason",
            "held_at",
            "released_at",
            "refunded_at",
            "disputed_at",
            "failed_at",
            "settled_at",
            "cash_settled_at",
            "created_at",
            "disbursements",
            "dispute",
            "audit_trail",
        ]
        read_only_fields = fields

    def get_dispute(self, obj: Payment) -> dict | None:
        dispute = DisputeRecord.objects.filter(payment=obj).first()
        if dispute is None:
            return None
        return DisputeSerializer(dispute).data

    def get_audit_trail(self, obj: Payment) -> list[dict]:
        entries = obj.audit_entries.order_by("sequence")
        return PaymentAuditEntrySerializer(entries, many=True).data

    def get_client_secret(self, obj: Payment) -> str:
        request = self.context.get("request")
        if request is None or request.user.pk != obj.customer_id:
            return ""
        if obj.state != "pending":
            return ""
        return obj.client_secret


# =============================================================================
# Request Serializers
# =============================================================================


@extend_schema_serializer(
    examples=[
        OpenApiExample(
            "Card payment",
            value={"delivery_id": "7f0c0a4e-2f64-4d47-9b7a-0b1f3a6f6c11", "payment_method": "card"},
            request_only=True,
        ),
    ]
)
class InitiatePaymentSerializer(serializers.Serializer):
    delivery_id = serializers.UUIDField()
    payment_method = serializers.ChoiceField(
        choices=PaymentMethod.choices,
        default=PaymentMethod.CARD,
    )


class RefundRequestSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class EvidenceItemSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=2000)
    url = serializers.URLField(max_length=500, required=False, allow_blank=True, default="")


class RaiseDisputeSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    evidence = EvidenceItemSerializer(many=True, required=False, default=list)


@extend_schema_serializer(
    examples=[
        OpenApiExample(
            "Split resolution",
            value={
                "decision": "split",
                "customer_amount_cents": 4000,
                "company_amount_cents": 6000,
                "notes": "Partial delivery",
            },
            request_only=True,
        ),
    ]
)
class ResolveDisputeSerializer(serializers.Serializer):
    """
    Dispute resolution request.

    Amounts are only accepted for a split; refund_customer and
    release_company derive them from the payment total.
    """

    decision = serializers.ChoiceField(choices=DisputeDecision.choices)
    customer_amount_cents = serializers.IntegerField(required=False, min_value=0)
    company_amount_cents = serializers.IntegerField(required=False, min_value=0)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs: dict) -> dict:
        if attrs["decision"] == DisputeDecision.SPLIT:
            missing = [
                name
                for name in ("customer_amount_cents", "company_amount_cents")
                if attrs.get(name) is None
            ]
            if missing:
                raise serializers.ValidationError(
                    {name: ["Required for a split resolution."] for name in missing}
                )
        return attrs


# =============================================================================
# Service Result Serializers
# =============================================================================


class InitiatedPaymentSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField(source="payment.pk")
    state = serializers.CharField(source="payment.state")
    payment_method = serializers.CharField(source="payment.payment_method")
    total_amount_cents = serializers.IntegerField(source="payment.total_amount_cents")
    currency = serializers.CharField(source="payment.currency")
    client_secret = serializers.CharField()
    payment_intent_id = serializers.CharField()


class VerificationResultSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField(source="payment.pk")
    state = serializers.CharField(source="payment.state")
    processor_status = serializers.CharField(allow_null=True)
    changed = serializers.BooleanField()


class SettlementResultSerializer(serializers.Serializer):
    payment_id = serializers.UUIDField()
    state = serializers.CharField()
    platform_fee_cents = serializers.IntegerField()
    company_amount_cents = serializers.IntegerField()
    driver_amount_cents = serializers.IntegerField(allow_null=True)
    refunded_amount_cents = serializers.IntegerField()
    payout_status = serializers.CharField()
    transfer_id = serializers.CharField()
    settled_at = serializers.DateTimeField(allow_null=True)
    already_settled = serializers.BooleanField()
    disbursement_error = serializers.CharField(allow_null=True)
