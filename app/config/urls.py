"""
URL configuration for the event payments backend.

URL Structure:
    /                                   - ReDoc API documentation
    /admin/                             - Django admin interface
    /health/                            - Health check endpoint
    /schema/                            - OpenAPI schema (YAML)
    /api/v1/auth/token/                 - JWT obtain / refresh
    /api/v1/payments/                   - Payment endpoints
        checkout/                       - Create a gateway checkout session
        plans/                          - Create an installment plan
        plans/{id}/                     - Plan summary
        plans/{id}/cancel/              - Cancel a plan
        installments/{id}/checkout/     - Checkout for one installment
        records/{id}/                   - Payment record (status/, refund/)
        reconciliation/reports/         - List reconciliation reports
        reconciliation/reports/{id}/    - Report detail
        reconciliation/stats/           - Aggregated match rates
        reconciliation/run/             - Trigger reconciliation (admin)
        webhooks/{provider}/{event_id}/ - Gateway webhook endpoint (POST)
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("auth/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("payments/", include("payments.urls")),
]

urlpatterns = [
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    path("admin/", admin.site.urls),
    path("health/", health_check, name="health_check"),
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Event Payments Admin"
admin.site.site_title = "Payments Admin"
admin.site.index_title = "Payments, plans and reconciliation"
