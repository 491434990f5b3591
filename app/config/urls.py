"""
Root URLs.

    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/auth/token/            - Obtain JWT pair
    /api/v1/auth/token/refresh/    - Refresh JWT access token
    /api/v1/escrow/                - Escrow endpoints
        payments/                  - Initiate payment
        payments/{id}/             - Payment with audit trail
        payments/{id}/verify/      - Poll Stripe for the charge outcome
        payments/{id}/settle/      - Release held funds
        payments/{id}/refund/      - Refund held funds
        payments/{id}/dispute/     - Raise dispute
        payments/{id}/dispute/evidence/ - Add dispute evidence
        payments/{id}/dispute/resolve/  - Resolve dispute (staff)
        payments/{id}/cash/collected/   - Driver collected cash
        payments/{id}/cash/settled/     - Company received cash
        webhooks/stripe/           - Stripe webhook endpoint (POST)
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from core.views import health_check

api_v1_patterns = [
    # Authentication (simplejwt)
    path("auth/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    # Escrow
    path("escrow/", include("escrow.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Load balancer probe
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

admin.site.site_header = "Escrow Admin"
admin.site.site_title = "Escrow Admin Portal"
admin.site.index_title = "Payments, disbursements and disputes"
