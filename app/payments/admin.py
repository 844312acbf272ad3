"""
Payment admin configuration.

Registers the payment ledger, installment plans, reconciliation reports
and webhook deliveries. Status changes go through the service layer; the
admin is for inspection plus a few review actions.
"""

from django.contrib import admin

from payments.models import (
    Installment,
    PaymentPlan,
    PaymentRecord,
    ReconciliationReport,
    WebhookEvent,
)
from payments.state_machines import WebhookEventStatus

__all__ = [
    "PaymentPlanAdmin",
    "PaymentRecordAdmin",
    "ReconciliationReportAdmin",
    "WebhookEventAdmin",
]


def format_amount(amount_cents: int | None, currency: str) -> str:
    if amount_cents is None:
        return "-"
    return f"{amount_cents / 100:.2f} {currency.upper()}"


# =============================================================================
# Payment Records
# =============================================================================


class RefundRowInline(admin.TabularInline):
    """Refund rows recorded against a charge."""

    model = PaymentRecord
    fk_name = "original_payment"
    verbose_name = "Refund"
    verbose_name_plural = "Refunds"
    extra = 0
    fields = ["provider_payment_id", "amount_cents", "status", "created_at"]
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentRecord.

    Records are a financial audit trail: never deleted, never added by hand.
    """

    list_display = [
        "id",
        "event",
        "provider",
        "provider_payment_id",
        "amount_display",
        "status",
        "synced_from_gateway",
        "last_reconciled_at",
        "created_at",
    ]
    list_filter = ["status", "provider", "synced_from_gateway", "created_at"]
    search_fields = [
        "id",
        "provider_payment_id",
        "invoice_number",
        "registration__registration_id",
        "registration__email",
    ]
    readonly_fields = [
        "id",
        "event",
        "registration",
        "installment",
        "original_payment",
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
        "paid_at",
        "failed_at",
        "refunded_at",
        "failure_reason",
        "invoice_number",
        "invoice_url",
        "synced_from_gateway",
        "last_reconciled_at",
        "raw_response",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [RefundRowInline]
    actions = ["clear_review_flag"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "event", "registration", "installment", "status"),
            },
        ),
        (
            "Gateway",
            {
                "fields": ("provider", "provider_payment_id", "method", "original_payment"),
            },
        ),
        (
            "Amount",
            {
                "fields": (
                    "amount_cents",
                    "currency",
                    "fee_cents",
                    "net_cents",
                    "refunded_cents",
                ),
            },
        ),
        (
            "Status Timestamps",
            {
                "fields": ("captured_at", "paid_at", "failed_at", "refunded_at"),
                "classes": ("collapse",),
            },
        ),
        (
            "Invoice",
            {
                "fields": ("invoice_number", "invoice_url"),
            },
        ),
        (
            "Reconciliation",
            {
                "fields": (
                    "synced_from_gateway",
                    "last_reconciled_at",
                    "reconciliation_note",
                ),
            },
        ),
        (
            "Failure Info",
            {
                "fields": ("failure_reason",),
                "classes": ("collapse",),
            },
        ),
        (
            "Raw Data",
            {
                "fields": ("raw_response", "metadata"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: PaymentRecord) -> str:
        return format_amount(obj.amount_cents, obj.currency)

    @admin.action(description="Clear manual-review flag on selected payments")
    def clear_review_flag(self, request, queryset):
        count = 0
        for record in queryset:
            if record.get_meta("needs_review"):
                record.merge_meta(
                    {"needs_review": False, "reviewed_by": request.user.get_username()}
                )
                count += 1
        self.message_user(request, f"Cleared the review flag on {count} payments.")

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False


# =============================================================================
# Payment Plans
# =============================================================================


class InstallmentInline(admin.TabularInline):
    model = Installment
    extra = 0
    fields = [
        "sequence",
        "amount_cents",
        "due_date",
        "status",
        "payment",
        "paid_at",
        "reminders_sent",
        "charge_attempts",
    ]
    readonly_fields = fields
    can_delete = False
    ordering = ["sequence"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentPlan)
class PaymentPlanAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "registration",
        "event",
        "total_display",
        "status",
        "auto_charge",
        "created_at",
    ]
    list_filter = ["status", "auto_charge", "provider"]
    search_fields = ["id", "registration__registration_id", "registration__email"]
    readonly_fields = [
        "id",
        "registration",
        "event",
        "total_amount_cents",
        "currency",
        "provider",
        "status",
        "version",
        "completed_at",
        "cancelled_at",
        "defaulted_at",
        "cancellation_reason",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    inlines = [InstallmentInline]

    @admin.display(description="Total")
    def total_display(self, obj: PaymentPlan) -> str:
        return format_amount(obj.total_amount_cents, obj.currency)

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Reconciliation Reports
# =============================================================================


@admin.register(ReconciliationReport)
class ReconciliationReportAdmin(admin.ModelAdmin):
    """
    Reconciliation history. Reports are immutable: read-only here, and the
    model refuses to save an existing report.
    """

    list_display = [
        "report_date",
        "generated_at",
        "generated_by",
        "total_events",
        "total_payments",
        "match_rate_display",
        "errors",
    ]
    list_filter = ["generated_by"]
    date_hierarchy = "report_date"
    ordering = ["-report_date", "-generated_at"]
    readonly_fields = ["id", "report_date", "summary", "events", "generated_at", "generated_by"]

    @admin.display(description="Events")
    def total_events(self, obj: ReconciliationReport) -> int:
        return obj.summary.get("totalEvents", 0)

    @admin.display(description="Match rate")
    def match_rate_display(self, obj: ReconciliationReport) -> str:
        return f"{obj.match_rate:.2f}%"

    @admin.display(description="Errors")
    def errors(self, obj: ReconciliationReport) -> int:
        return obj.summary.get("errors", 0)

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Webhook Events
# =============================================================================


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Webhook deliveries. Payloads are immutable once received; failed rows
    can be queued for another attempt.
    """

    list_display = [
        "id",
        "provider",
        "event_key",
        "event_type",
        "status",
        "attempts",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "provider", "event_type", "created_at"]
    search_fields = ["id", "event_key", "event_type"]
    readonly_fields = [
        "id",
        "event",
        "provider",
        "event_key",
        "event_type",
        "payload",
        "status",
        "attempts",
        "processed_at",
        "error_message",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["retry_selected"]

    @admin.action(description="Retry selected failed deliveries")
    def retry_selected(self, request, queryset):
        from payments.tasks import reprocess_webhook_event

        failed = queryset.filter(status=WebhookEventStatus.FAILED, event__isnull=False)
        count = 0
        for webhook_event in failed:
            reprocess_webhook_event.delay(str(webhook_event.pk))
            count += 1
        self.message_user(request, f"Queued {count} deliveries for retry.")

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False
