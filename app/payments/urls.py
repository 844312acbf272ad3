"""
URL configuration for the payments app.

Routes:
    - POST checkout/                              - Create checkout session
    - POST plans/                                 - Create installment plan
    - GET  plans/<id>/                            - Plan with summary
    - POST plans/<id>/cancel/                     - Cancel plan
    - POST installments/<id>/checkout/            - Pay one installment
    - GET  records/<id>/                          - Payment record
    - GET  records/<id>/status/                   - Live gateway status
    - POST records/<id>/refund/                   - Refund payment
    - GET  reconciliation/reports/                - List reports
    - GET  reconciliation/reports/<id>/           - Report detail
    - GET  reconciliation/stats/                  - Aggregated match rates
    - POST reconciliation/run/                    - Reconcile a day
    - POST webhooks/<provider>/<event_id>/        - Gateway webhook endpoint

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.
"""

from django.urls import path

from payments import views
from payments.webhooks.views import provider_webhook

app_name = "payments"

urlpatterns = [
    # Checkout
    path("checkout/", views.CreateCheckoutView.as_view(), name="checkout"),
    path(
        "installments/<uuid:installment_id>/checkout/",
        views.InstallmentCheckoutView.as_view(),
        name="installment_checkout",
    ),
    # Payment plans
    path("plans/", views.CreatePaymentPlanView.as_view(), name="plan_create"),
    path("plans/<uuid:plan_id>/", views.PaymentPlanDetailView.as_view(), name="plan_detail"),
    path(
        "plans/<uuid:plan_id>/cancel/",
        views.CancelPaymentPlanView.as_view(),
        name="plan_cancel",
    ),
    # Payment records
    path(
        "records/<uuid:payment_id>/",
        views.PaymentRecordDetailView.as_view(),
        name="record_detail",
    ),
    path(
        "records/<uuid:payment_id>/status/",
        views.PaymentStatusView.as_view(),
        name="record_status",
    ),
    path(
        "records/<uuid:payment_id>/refund/",
        views.RefundPaymentView.as_view(),
        name="record_refund",
    ),
    # Reconciliation
    path(
        "reconciliation/reports/",
        views.ReconciliationReportListView.as_view(),
        name="reconciliation_reports",
    ),
    path(
        "reconciliation/reports/<uuid:report_id>/",
        views.ReconciliationReportDetailView.as_view(),
        name="reconciliation_report_detail",
    ),
    path(
        "reconciliation/stats/",
        views.ReconciliationStatsView.as_view(),
        name="reconciliation_stats",
    ),
    path(
        "reconciliation/run/",
        views.RunReconciliationView.as_view(),
        name="reconciliation_run",
    ),
    # Webhook endpoints
    path(
        "webhooks/<str:provider>/<uuid:event_id>/",
        provider_webhook,
        name="provider_webhook",
    ),
]
