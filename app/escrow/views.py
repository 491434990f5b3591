"""
API views for the escrow payment engine.

Provides:
- InitiatePaymentView: Create the escrow payment for a delivery
- PaymentDetailView: Payment with split, disbursements and audit trail
- VerifyPaymentView: Polling fallback for the charge outcome
- SettlePaymentView: Release held funds to the company
- RefundPaymentView: Return held funds to the customer
- RaiseDisputeView / AddEvidenceView / ResolveDisputeView: Disputes
- CashCollectedView / CashSettledView: Cash payment flow

The Stripe webhook endpoint lives in escrow.webhooks.views.
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.services import ServiceResult
from escrow.models import Payment
from escrow.serializers import (
    DisputeEvidenceSerializer,
    DisputeSerializer,
    EvidenceItemSerializer,
    InitiatedPaymentSerializer,
    InitiatePaymentSerializer,
    PaymentSerializer,
    RaiseDisputeSerializer,
    RefundRequestSerializer,
    ResolveDisputeSerializer,
    SettlementResultSerializer,
    VerificationResultSerializer,
)
from escrow.services import (
    DisputeService,
    EvidenceItem,
    PaymentService,
    SettlementService,
)
from escrow.state_machines import ReleaseCondition


def failure_response(result: ServiceResult) -> Response:
    """Translate a failed ServiceResult into an error response."""
    return Response(
        result.to_response(),
        status=result.http_status or status.HTTP_400_BAD_REQUEST,
    )


def get_visible_payment(user, payment_id) -> Payment | None:
    """
    Return the payment if the user may see it.

    Staff see every payment; otherwise only the customer, the assigned
    driver and the company owner do.
    """
    payment = (
        Payment.objects.select_related("delivery", "company", "driver")
        .filter(pk=payment_id)
        .first()
    )
    if payment is None:
        return None
    if user.is_staff or payment.customer_id == user.pk:
        return payment
    driver = payment.driver or payment.delivery.driver
    if driver is not None and driver.user_id == user.pk:
        return payment
    company = payment.company or payment.delivery.company
    if company is not None and company.owner_id == user.pk:
        return payment
    return None


def not_found() -> Response:
    return Response(
        {"success": False, "error": "Payment not found", "error_code": "PAYMENT_NOT_FOUND"},
        status=status.HTTP_404_NOT_FOUND,
    )


# =============================================================================
# Payments
# =============================================================================


class InitiatePaymentView(APIView):
    """
    Create the escrow payment for a delivery.

    POST /api/v1/escrow/payments/

    Response:
        201 Created: Payment created (card payments include client_secret)
        400 Bad Request: Validation error
        403 Forbidden: Not the delivery's customer
        409 Conflict: Delivery already has a payment
        502 Bad Gateway: Stripe rejected the PaymentIntent
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="initiate_escrow_payment",
        summary="Initiate payment",
        description=(
            "Create the escrow payment for a delivery with the platform fee split "
            "computed up front. Card payments return the PaymentIntent client secret "
            "for checkout. Repeating the call while the payment is pending returns "
            "the same checkout reference."
        ),
        request=InitiatePaymentSerializer,
        responses={
            201: OpenApiResponse(response=InitiatedPaymentSerializer, description="Payment created"),
            400: OpenApiResponse(description="Validation error"),
            403: OpenApiResponse(description="Not the delivery's customer"),
            409: OpenApiResponse(description="Delivery already has a payment"),
        },
        tags=["Escrow - Payments"],
    )
    def post(self, request):
        serializer = InitiatePaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = PaymentService.initiate_payment(
            delivery_id=serializer.validated_data["delivery_id"],
            customer=request.user,
            payment_method=serializer.validated_data["payment_method"],
        )
        if not result.success:
            return failure_response(result)

        return Response(
            InitiatedPaymentSerializer(result.data).data,
            status=status.HTTP_201_CREATED,
        )


class PaymentDetailView(APIView):
    """
    GET /api/v1/escrow/payments/{payment_id}/

    Visible to the customer, the driver, the company owner and staff.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_escrow_payment",
        summary="Get payment",
        description="Payment state, split, disbursements, dispute and full audit trail.",
        responses={
            200: OpenApiResponse(response=PaymentSerializer, description="Payment details"),
            404: OpenApiResponse(description="Payment not found or not visible"),
        },
        tags=["Escrow - Payments"],
    )
    def get(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()
        return Response(PaymentSerializer(payment, context={"request": request}).data)


class VerifyPaymentView(APIView):
    """
    POST /api/v1/escrow/payments/{payment_id}/verify/

    Ask Stripe for the charge outcome when a webhook has not arrived.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="verify_escrow_payment",
        summary="Verify payment",
        description=(
            "Retrieve the PaymentIntent from Stripe and apply its outcome through the "
            "same code path as the webhook. A payment that already left pending is "
            "returned unchanged."
        ),
        request=None,
        responses={
            200: OpenApiResponse(response=VerificationResultSerializer, description="Verified"),
            404: OpenApiResponse(description="Payment not found"),
        },
        tags=["Escrow - Payments"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        result = PaymentService.verify_payment(payment.pk)
        if not result.success:
            return failure_response(result)
        return Response(VerificationResultSerializer(result.data).data)


class SettlePaymentView(APIView):
    """
    POST /api/v1/escrow/payments/{payment_id}/settle/

    The customer confirms the delivery, or staff release manually.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="settle_escrow_payment",
        summary="Settle payment",
        description=(
            "Release a held payment to the company once the delivery is completed. "
            "Idempotent: settling again returns the earlier result without moving "
            "money twice."
        ),
        request=None,
        responses={
            200: OpenApiResponse(response=SettlementResultSerializer, description="Settled"),
            403: OpenApiResponse(description="Only the customer or staff can settle"),
            404: OpenApiResponse(description="Payment not found"),
            409: OpenApiResponse(description="Illegal transition, delivery not completed, or amount mismatch"),
        },
        tags=["Escrow - Settlement"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        if request.user.is_staff:
            release_condition = ReleaseCondition.MANUAL_RELEASE
        elif payment.customer_id == request.user.pk:
            release_condition = ReleaseCondition.DELIVERY_CONFIRMED
        else:
            return Response(
                {"success": False, "error": "Only the customer or staff can settle a payment"},
                status=status.HTTP_403_FORBIDDEN,
            )

        result = SettlementService.settle_payment(
            payment.pk,
            actor_user=request.user,
            release_condition=release_condition,
        )
        if not result.success:
            return failure_response(result)
        return Response(SettlementResultSerializer(result.data).data)


class RefundPaymentView(APIView):
    """POST /api/v1/escrow/payments/{payment_id}/refund/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="refund_escrow_payment",
        summary="Refund payment",
        description="Return a held payment to the customer in full. Staff or the company owner only.",
        request=RefundRequestSerializer,
        responses={
            200: OpenApiResponse(response=SettlementResultSerializer, description="Refunded"),
            403: OpenApiResponse(description="Permission denied"),
            409: OpenApiResponse(description="Illegal transition"),
        },
        tags=["Escrow - Settlement"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        serializer = RefundRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = SettlementService.refund_payment(
            payment.pk,
            actor_user=request.user,
            reason=serializer.validated_data["reason"],
        )
        if not result.success:
            return failure_response(result)
        return Response(SettlementResultSerializer(result.data).data)


# =============================================================================
# Disputes
# =============================================================================


class RaiseDisputeView(APIView):
    """POST /api/v1/escrow/payments/{payment_id}/dispute/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="raise_escrow_dispute",
        summary="Raise dispute",
        description="Freeze a held payment until staff resolve the dispute.",
        request=RaiseDisputeSerializer,
        responses={
            201: OpenApiResponse(response=DisputeSerializer, description="Dispute raised"),
            403: OpenApiResponse(description="Not a party to the delivery"),
            409: OpenApiResponse(description="Payment is not held"),
        },
        tags=["Escrow - Disputes"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        serializer = RaiseDisputeSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        result = DisputeService.raise_dispute(
            payment.pk,
            raised_by=request.user,
            reason=data["reason"],
            description=data["description"],
            evidence=[EvidenceItem(**item) for item in data["evidence"]],
        )
        if not result.success:
            return failure_response(result)
        return Response(DisputeSerializer(result.data).data, status=status.HTTP_201_CREATED)


class AddEvidenceView(APIView):
    """POST /api/v1/escrow/payments/{payment_id}/dispute/evidence/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="add_escrow_dispute_evidence",
        summary="Add dispute evidence",
        request=EvidenceItemSerializer,
        responses={
            201: OpenApiResponse(response=DisputeEvidenceSerializer, description="Evidence added"),
            409: OpenApiResponse(description="No open dispute"),
        },
        tags=["Escrow - Disputes"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        serializer = EvidenceItemSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = DisputeService.add_evidence(
            payment.pk,
            submitted_by=request.user,
            description=serializer.validated_data["description"],
            url=serializer.validated_data["url"],
        )
        if not result.success:
            return failure_response(result)
        return Response(
            DisputeEvidenceSerializer(result.data).data,
            status=status.HTTP_201_CREATED,
        )


class ResolveDisputeView(APIView):
    """
    POST /api/v1/escrow/payments/{payment_id}/dispute/resolve/

    Staff only.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="resolve_escrow_dispute",
        summary="Resolve dispute",
        description=(
            "Refund the customer, release to the company, or split the total. "
            "Split amounts must be non-negative and sum to the payment total. "
            "The platform fee applies to the released part only."
        ),
        request=ResolveDisputeSerializer,
        responses={
            200: OpenApiResponse(response=SettlementResultSerializer, description="Resolved"),
            400: OpenApiResponse(description="Invalid resolution amounts"),
            409: OpenApiResponse(description="Payment is not disputed"),
        },
        tags=["Escrow - Disputes"],
    )
    def post(self, request, payment_id):
        serializer = ResolveDisputeSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        result = DisputeService.resolve_dispute(
            payment_id,
            resolved_by=request.user,
            decision=data["decision"],
            customer_amount_cents=data.get("customer_amount_cents"),
            company_amount_cents=data.get("company_amount_cents"),
            notes=data["notes"],
        )
        if not result.success:
            return failure_response(result)
        return Response(SettlementResultSerializer(result.data).data)


# =============================================================================
# Cash
# =============================================================================


class CashCollectedView(APIView):
    """POST /api/v1/escrow/payments/{payment_id}/cash/collected/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="record_escrow_cash_collection",
        summary="Record cash collection",
        description="The assigned driver confirms the customer paid in cash.",
        request=None,
        responses={
            200: OpenApiResponse(response=PaymentSerializer, description="Cash held"),
            403: OpenApiResponse(description="Not the assigned driver"),
            409: OpenApiResponse(description="Payment is not pending"),
        },
        tags=["Escrow - Cash"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        result = PaymentService.record_cash_collection(payment.pk, collected_by=request.user)
        if not result.success:
            return failure_response(result)
        return Response(PaymentSerializer(result.data, context={"request": request}).data)


class CashSettledView(APIView):
    """POST /api/v1/escrow/payments/{payment_id}/cash/settled/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="mark_escrow_cash_settled",
        summary="Mark cash settled",
        description="The company confirms the driver handed over the collected cash.",
        request=None,
        responses={
            200: OpenApiResponse(response=PaymentSerializer, description="Cash settled"),
            403: OpenApiResponse(description="Not the company owner"),
            409: OpenApiResponse(description="Payment is not released"),
        },
        tags=["Escrow - Cash"],
    )
    def post(self, request, payment_id):
        payment = get_visible_payment(request.user, payment_id)
        if payment is None:
            return not_found()

        result = PaymentService.mark_cash_settled(payment.pk, confirmed_by=request.user)
        if not result.success:
            return failure_response(result)
        return Response(PaymentSerializer(result.data, context={"request": request}).data)
