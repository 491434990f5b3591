"""
URL configuration for escrow app.

API Documentation Groups (following [App Name] - [Group Name] pattern):

Escrow - Payments:
    POST /payments/                                   - Initiate payment
    GET /payments/{id}/                               - Payment with audit trail
    POST /payments/{id}/verify/                       - Poll Stripe for the charge outcome

Escrow - Settlement:
    POST /payments/{id}/settle/                       - Release held funds
    POST /payments/{id}/refund/                       - Refund held funds

Escrow - Disputes:
    POST /payments/{id}/dispute/                      - Raise dispute
    POST /payments/{id}/dispute/evidence/             - Add evidence
    POST /payments/{id}/dispute/resolve/              - Resolve dispute (staff)

Escrow - Cash:
    POST /payments/{id}/cash/collected/               - Driver collected cash
    POST /payments/{id}/cash/settled/                 - Company received cash

Webhooks:
    POST /webhooks/stripe/                            - Stripe webhook endpoint
"""

from django.urls import path

from escrow.views import (
    AddEvidenceView,
    CashCollectedView,
    CashSettledView,
    InitiatePaymentView,
    PaymentDetailView,
    RaiseDisputeView,
    RefundPaymentView,
    ResolveDisputeView,
    SettlePaymentView,
    VerifyPaymentView,
)
from escrow.webhooks.views import stripe_webhook

app_name = "escrow"

urlpatterns = [
    # Payments
    path("payments/", InitiatePaymentView.as_view(), name="payment-initiate"),
    path("payments/<uuid:payment_id>/", PaymentDetailView.as_view(), name="payment-detail"),
    path(
        "payments/<uuid:payment_id>/verify/",
        VerifyPaymentView.as_view(),
        name="payment-verify",
    ),
    # Settlement
    path(
        "payments/<uuid:payment_id>/settle/",
        SettlePaymentView.as_view(),
        name="payment-settle",
    ),
    path(
        "payments/<uuid:payment_id>/refund/",
        RefundPaymentView.as_view(),
        name="payment-refund",
    ),
    # Disputes
    path(
        "payments/<uuid:payment_id>/dispute/",
        RaiseDisputeView.as_view(),
        name="dispute-raise",
    ),
    path(
        "payments/<uuid:payment_id>/dispute/evidence/",
        AddEvidenceView.as_view(),
        name="dispute-evidence",
    ),
    path(
        "payments/<uuid:payment_id>/dispute/resolve/",
        ResolveDisputeView.as_view(),
        name="dispute-resolve",
    ),
    # Cash
    path(
        "payments/<uuid:payment_id>/cash/collected/",
        CashCollectedView.as_view(),
        name="cash-collected",
    ),
    path(
        "payments/<uuid:payment_id>/cash/settled/",
        CashSettledView.as_view(),
        name="cash-settled",
    ),
    # Stripe webhooks (signature-verified, no session auth)
    path("webhooks/stripe/", stripe_webhook, name="stripe-webhook"),
]
