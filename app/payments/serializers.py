"""
DRF serializers for payments app.

This module provides serializers for:
- Checkout and refund requests
- Payment plan creation, cancellation and display
- Payment records and reconciliation reports

Related files:
    - views.py: Payment API views
    - services/: Business logic the views delegate to

Usage:
    serializer = CreateCheckoutSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    checkout = CheckoutService.create_checkout(
        serializer.validated_data["registration"], ...
    )
"""

from __future__ import annotations

from rest_framework import serializers

from events.models import Registration
from payments.models import Installment, PaymentPlan, PaymentRecord, ReconciliationReport


# =============================================================================
# Requests
# =============================================================================


class LineItemSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    amount_cents = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1, default=1)


class CreateCheckoutSerializer(serializers.Serializer):
    """
    Checkout for a registration.

    Without line_items the registration fee is charged as one item.
    """

    registration = serializers.PrimaryKeyRelatedField(
        queryset=Registration.objects.select_related("event"),
    )
    success_url = serializers.URLField()
    cancel_url = serializers.URLField()
    line_items = LineItemSerializer(many=True, required=False)

    def validate_line_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one line item is required.")
        return value


class CheckoutResponseSerializer(serializers.Serializer):
    url = serializers.CharField()
    payment_id = serializers.CharField()
    provider_payment_id = serializers.CharField()
    amount_cents = serializers.IntegerField()
    currency = serializers.CharField()
    status = serializers.CharField()
    extra = serializers.DictField()


class InstallmentCheckoutSerializer(serializers.Serializer):
    success_url = serializers.URLField(required=False)
    cancel_url = serializers.URLField(required=False)


class CreatePaymentPlanSerializer(serializers.Serializer):
    registration = serializers.PrimaryKeyRelatedField(
        queryset=Registration.objects.select_related("event"),
    )
    total_amount_cents = serializers.IntegerField(min_value=1)
    installment_count = serializers.IntegerField(min_value=1, max_value=36)
    first_due_date = serializers.DateTimeField(required=False)
    interval_days = serializers.IntegerField(min_value=1, required=False)
    auto_charge = serializers.BooleanField(default=False)
    saved_payment_method = serializers.DictField(required=False)
    reminder_settings = serializers.DictField(required=False)

    def validate(self, attrs):
        if attrs["installment_count"] > attrs["total_amount_cents"]:
            raise serializers.ValidationError(
                {"installment_count": "Cannot exceed the total amount in minor units."}
            )
        return attrs


class CancelPaymentPlanSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")
    version = serializers.IntegerField(
        required=False,
        help_text="Plan version the client last read; rejects stale edits",
    )


class RefundSerializer(serializers.Serializer):
    amount_cents = serializers.IntegerField(
        min_value=1,
        required=False,
        help_text="Omit for a full refund",
    )
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class RefundResponseSerializer(serializers.Serializer):
    refund_id = serializers.CharField()
    status = serializers.CharField()
    amount_cents = serializers.IntegerField()
    payment_id = serializers.CharField(allow_null=True)


class RunReconciliationSerializer(serializers.Serializer):
    report_date = serializers.DateField(
        required=False,
        help_text="Day to reconcile; defaults to yesterday",
    )


# =============================================================================
# Responses
# =============================================================================


class PaymentRecordSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentRecord
        fields = [
            "id",
            "event",
            "registration",
            "installment",
            "provider",
            "provider_payment_id",
            "amount_cents",
            "currency",
            "fee_cents",
            "net_cents",
            "refunded_cents",
            "method",
            "status",
            "captured_at",
            "invoice_number",
            "synced_from_gateway",
            "last_reconciled_at",
            "reconciliation_note",
            "created_at",
        ]
        read_only_fields = fields


class InstallmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Installment
        fields = [
            "id",
            "sequence",
            "amount_cents",
            "due_date",
            "status",
            "payment",
            "paid_at",
            "reminders_sent",
        ]
        read_only_fields = fields


class PaymentPlanSerializer(serializers.ModelSerializer):
    installments = InstallmentSerializer(many=True, read_only=True)

    class Meta:
        model = PaymentPlan
        fields = [
            "id",
            "registration",
            "event",
            "total_amount_cents",
            "currency",
            "provider",
            "auto_charge",
            "status",
            "version",
            "completed_at",
            "cancelled_at",
            "installments",
            "created_at",
        ]
        read_only_fields = fields


class ReconciliationReportListSerializer(serializers.ModelSerializer):
    match_rate = serializers.FloatField(read_only=True)
    discrepancy_rate = serializers.FloatField(read_only=True)

    class Meta:
        model = ReconciliationReport
        fields = [
            "id",
            "report_date",
            "summary",
            "match_rate",
            "discrepancy_rate",
            "generated_at",
            "generated_by",
        ]
        read_only_fields = fields


class ReconciliationReportSerializer(ReconciliationReportListSerializer):
    class Meta(ReconciliationReportListSerializer.Meta):
        fields = [*ReconciliationReportListSerializer.Meta.fields, "events"]
        read_only_fields = fields
