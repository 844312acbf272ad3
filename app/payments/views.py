"""
DRF views for payments app.

This module provides API views for:
- Checkout creation for a registration or a single installment
- Payment plan creation, summary and cancellation
- Refunds and gateway status lookups
- Reconciliation reports and on-demand runs (admin)

Related files:
    - services/: CheckoutService, PaymentPlanService, ReconciliationService
    - serializers.py: Request/response serializers
    - urls.py: URL routing
    - webhooks/views.py: Gateway webhook endpoint

Endpoints:
    POST /api/v1/payments/checkout/ - Create checkout session
    POST /api/v1/payments/plans/ - Create installment plan
    GET  /api/v1/payments/plans/{id}/ - Plan with installments and summary
    POST /api/v1/payments/plans/{id}/cancel/ - Cancel plan
    POST /api/v1/payments/installments/{id}/checkout/ - Pay one installment
    GET  /api/v1/payments/records/{id}/ - Payment record
    GET  /api/v1/payments/records/{id}/status/ - Live gateway status
    POST /api/v1/payments/records/{id}/refund/ - Refund payment
    GET  /api/v1/payments/reconciliation/reports/ - List reports
    GET  /api/v1/payments/reconciliation/reports/{id}/ - Report detail
    GET  /api/v1/payments/reconciliation/stats/ - Aggregated match rates
    POST /api/v1/payments/reconciliation/run/ - Reconcile a day (admin)

Security:
    - All endpoints require authentication
    - Reconciliation endpoints require staff
    - Domain errors are returned as {"error", "error_code", "details"} with
      the status their exception class declares
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.generics import ListAPIView, RetrieveAPIView
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError
from payments.models import Installment, PaymentRecord, ReconciliationReport
from payments.serializers import (
    CancelPaymentPlanSerializer,
    CheckoutResponseSerializer,
    CreateCheckoutSerializer,
    CreatePaymentPlanSerializer,
    InstallmentCheckoutSerializer,
    PaymentPlanSerializer,
    PaymentRecordSerializer,
    ReconciliationReportListSerializer,
    ReconciliationReportSerializer,
    RefundResponseSerializer,
    RefundSerializer,
    RunReconciliationSerializer,
)
from payments.services import (
    CheckoutService,
    PaymentPlanService,
    ReconciliationService,
)

logger = logging.getLogger(__name__)


def error_response(exc: BaseApplicationError) -> Response:
    return Response(exc.to_dict(), status=exc.http_status)


def checkout_payload(checkout) -> dict:
    return CheckoutResponseSerializer(
        {
            "url": checkout.url,
            "payment_id": checkout.payment_id,
            "provider_payment_id": checkout.provider_payment_id,
            "amount_cents": checkout.amount_cents,
            "currency": checkout.currency,
            "status": checkout.status,
            "extra": checkout.extra,
        }
    ).data


# =============================================================================
# Checkout
# =============================================================================


class CreateCheckoutView(APIView):
    """
    Create a hosted checkout for a registration.

    POST /api/v1/payments/checkout/

    Request body:
        {
            "registration": "<uuid>",
            "success_url": "https://example.com/paid",
            "cancel_url": "https://example.com/cancelled",
            "line_items": [{"name": "Pass", "amount_cents": 50000}]
        }

    Returns:
        201 with the redirect url and the initiated payment record id
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="create_checkout",
        summary="Create checkout",
        request=CreateCheckoutSerializer,
        responses={
            201: CheckoutResponseSerializer,
            400: OpenApiResponse(description="Invalid request or gateway configuration"),
            502: OpenApiResponse(description="Gateway call failed"),
        },
        tags=["Payments - Checkout"],
    )
    def post(self, request):
        serializer = CreateCheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            checkout = CheckoutService.create_checkout(
                data["registration"],
                success_url=data["success_url"],
                cancel_url=data["cancel_url"],
                line_items=data.get("line_items"),
            )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(checkout_payload(checkout), status=status.HTTP_201_CREATED)


class InstallmentCheckoutView(APIView):
    """POST /api/v1/payments/installments/{id}/checkout/"""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="create_installment_checkout",
        summary="Create checkout for one installment",
        request=InstallmentCheckoutSerializer,
        responses={
            201: CheckoutResponseSerializer,
            404: OpenApiResponse(description="Installment not found"),
            422: OpenApiResponse(description="Gateway has no partial payments"),
        },
        tags=["Payments - Plans"],
    )
    def post(self, request, installment_id):
        serializer = InstallmentCheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        installment = (
            Installment.objects.select_related("plan__event", "plan__registration")
            .filter(pk=installment_id)
            .first()
        )
        if installment is None:
            return Response(
                {"error": "Installment not found", "error_code": "INSTALLMENT_NOT_FOUND"},
                status=status.HTTP_404_NOT_FOUND,
            )

        try:
            checkout = CheckoutService.create_installment_checkout(
                installment,
                success_url=serializer.validated_data.get("success_url"),
                cancel_url=serializer.validated_data.get("cancel_url"),
            )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(checkout_payload(checkout), status=status.HTTP_201_CREATED)


# =============================================================================
# Payment Plans
# =============================================================================


class CreatePaymentPlanView(APIView):
    """
    Split a registration fee into installments.

    POST /api/v1/payments/plans/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="create_payment_plan",
        summary="Create installment plan",
        request=CreatePaymentPlanSerializer,
        responses={
            201: PaymentPlanSerializer,
            400: OpenApiResponse(description="Invalid schedule"),
        },
        tags=["Payments - Plans"],
    )
    def post(self, request):
        serializer = CreatePaymentPlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        registration = data.pop("registration")

        try:
            plan = PaymentPlanService.create_plan(registration, **data)
        except BaseApplicationError as e:
            return error_response(e)

        return Response(PaymentPlanSerializer(plan).data, status=status.HTTP_201_CREATED)


class PaymentPlanDetailView(APIView):
    """GET /api/v1/payments/plans/{id}/ - plan, installments and derived summary."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_payment_plan",
        summary="Get plan with summary",
        responses={200: PaymentPlanSerializer, 404: OpenApiResponse(description="Not found")},
        tags=["Payments - Plans"],
    )
    def get(self, request, plan_id):
        try:
            plan = PaymentPlanService.get_plan(plan_id)
        except BaseApplicationError as e:
            return error_response(e)

        return Response(
            {
                **PaymentPlanSerializer(plan).data,
                "summary": PaymentPlanService.get_summary(plan),
            }
        )


class CancelPaymentPlanView(APIView):
    """
    POST /api/v1/payments/plans/{id}/cancel/

    Sending the plan version read by the client makes a concurrent edit
    fail with 409 instead of silently winning.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="cancel_payment_plan",
        summary="Cancel plan",
        request=CancelPaymentPlanSerializer,
        responses={
            200: PaymentPlanSerializer,
            404: OpenApiResponse(description="Not found"),
            409: OpenApiResponse(description="Stale version or plan not cancellable"),
        },
        tags=["Payments - Plans"],
    )
    def post(self, request, plan_id):
        serializer = CancelPaymentPlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            plan = PaymentPlanService.get_plan(plan_id)
            plan = PaymentPlanService.cancel_plan(
                plan,
                reason=serializer.validated_data["reason"],
                expected_version=serializer.validated_data.get("version"),
            )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(PaymentPlanSerializer(plan).data)


# =============================================================================
# Payment Records
# =============================================================================


class PaymentRecordDetailView(RetrieveAPIView):
    """GET /api/v1/payments/records/{id}/"""

    permission_classes = [IsAuthenticated]
    serializer_class = PaymentRecordSerializer
    queryset = PaymentRecord.objects.all()
    lookup_url_kwarg = "payment_id"

    @extend_schema(operation_id="get_payment_record", tags=["Payments - Records"])
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)


class PaymentStatusView(APIView):
    """GET /api/v1/payments/records/{id}/status/ - ask the gateway directly."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_gateway_payment_status",
        summary="Live gateway status",
        responses={
            200: OpenApiResponse(description="Gateway view of the payment"),
            404: OpenApiResponse(description="Not found locally or on the gateway"),
            502: OpenApiResponse(description="Gateway call failed"),
        },
        tags=["Payments - Records"],
    )
    def get(self, request, payment_id):
        try:
            payment = CheckoutService.get_payment_status(payment_id)
        except BaseApplicationError as e:
            return error_response(e)

        return Response(
            {
                "provider_payment_id": payment.provider_payment_id,
                "status": payment.status,
                "amount_cents": payment.amount_cents,
                "currency": payment.currency,
                "captured_at": payment.captured_at.isoformat() if payment.captured_at else None,
            }
        )


class RefundPaymentView(APIView):
    """
    Refund a paid payment in full or in part.

    POST /api/v1/payments/records/{id}/refund/

    Request body:
        {"amount_cents": 2500, "reason": "Attendee cancelled"}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="refund_payment",
        summary="Refund payment",
        request=RefundSerializer,
        responses={
            201: RefundResponseSerializer,
            400: OpenApiResponse(description="Amount exceeds the refundable amount"),
            404: OpenApiResponse(description="Not found"),
            422: OpenApiResponse(description="Gateway has no refund support"),
            502: OpenApiResponse(description="Gateway call failed"),
        },
        tags=["Payments - Records"],
    )
    def post(self, request, payment_id):
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            refund = CheckoutService.refund_payment(
                payment_id,
                amount_cents=serializer.validated_data.get("amount_cents"),
                reason=serializer.validated_data["reason"],
            )
        except BaseApplicationError as e:
            return error_response(e)

        logger.info(
            "Refund requested",
            extra={
                "payment_id": str(payment_id),
                "refund_id": refund.refund_id,
                "user_id": request.user.pk,
            },
        )
        return Response(
            RefundResponseSerializer(refund).data,
            status=status.HTTP_201_CREATED,
        )


# =============================================================================
# Reconciliation
# =============================================================================


class ReconciliationReportListView(ListAPIView):
    """GET /api/v1/payments/reconciliation/reports/?start=YYYY-MM-DD&end=YYYY-MM-DD"""

    permission_classes = [IsAdminUser]
    serializer_class = ReconciliationReportListSerializer

    def get_queryset(self):
        queryset = ReconciliationReport.objects.all()
        start = self.request.query_params.get("start")
        end = self.request.query_params.get("end")
        if start:
            queryset = queryset.filter(report_date__gte=start)
        if end:
            queryset = queryset.filter(report_date__lte=end)
        return queryset

    @extend_schema(
        operation_id="list_reconciliation_reports",
        parameters=[
            OpenApiParameter("start", str, description="First report date (inclusive)"),
            OpenApiParameter("end", str, description="Last report date (inclusive)"),
        ],
        tags=["Payments - Reconciliation"],
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)


class ReconciliationReportDetailView(RetrieveAPIView):
    """GET /api/v1/payments/reconciliation/reports/{id}/"""

    permission_classes = [IsAdminUser]
    serializer_class = ReconciliationReportSerializer
    queryset = ReconciliationReport.objects.all()
    lookup_url_kwarg = "report_id"

    @extend_schema(operation_id="get_reconciliation_report", tags=["Payments - Reconciliation"])
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)


class ReconciliationStatsView(APIView):
    """GET /api/v1/payments/reconciliation/stats/?event=<uuid>"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="get_reconciliation_stats",
        parameters=[OpenApiParameter("event", str, description="Restrict to one event")],
        responses={200: OpenApiResponse(description="Aggregated counts and match rate")},
        tags=["Payments - Reconciliation"],
    )
    def get(self, request):
        stats = ReconciliationService.reconciliation_stats(
            event_id=request.query_params.get("event"),
        )
        return Response(stats)


class RunReconciliationView(APIView):
    """
    Reconcile one day now, in-request.

    POST /api/v1/payments/reconciliation/run/

    Request body:
        {"report_date": "2026-03-01"}

    Returns:
        201 with the new report, or 409 while another run holds the lock
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="run_reconciliation",
        summary="Run reconciliation",
        request=RunReconciliationSerializer,
        responses={
            201: ReconciliationReportSerializer,
            409: OpenApiResponse(description="Another run is in progress"),
        },
        tags=["Payments - Reconciliation"],
    )
    def post(self, request):
        serializer = RunReconciliationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            report = ReconciliationService.perform_daily_reconciliation(
                serializer.validated_data.get("report_date"),
                actor=request.user.get_username(),
            )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(
            ReconciliationReportSerializer(report).data,
            status=status.HTTP_201_CREATED,
        )
