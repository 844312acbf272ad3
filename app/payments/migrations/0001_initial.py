import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.db import migrations, models

import payments.models.payment_plan

PROVIDER_CHOICES = [
    ("razorpay", "Razorpay"),
    ("stripe", "Stripe"),
    ("instamojo", "Instamojo"),
    ("phonepe", "PhonePe"),
    ("cashfree", "Cashfree"),
    ("payu", "PayU"),
    ("paytm", "Paytm"),
    ("stub", "Stub (test gateway)"),
]


def uuid_pk():
    return models.UUIDField(
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
        primary_key=True,
        serialize=False,
    )


def created_at():
    return models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when this record was created",
    )


def updated_at():
    return models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when this record was last modified",
    )


def metadata():
    return models.JSONField(
        blank=True,
        default=dict,
        help_text="Flexible key-value metadata storage",
    )


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("events", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentPlan",
            fields=[
                ("id", uuid_pk()),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Optimistic locking version, incremented on every update",
                    ),
                ),
                ("metadata", metadata()),
                ("created_at", created_at()),
                ("updated_at", updated_at()),
                (
                    "total_amount_cents",
                    models.BigIntegerField(help_text="Plan total in minor currency units"),
                ),
                ("currency", models.CharField(default="INR", max_length=3)),
                (
                    "provider",
                    models.CharField(
                        choices=PROVIDER_CHOICES,
                        help_text="Gateway used for installment payments",
                        max_length=20,
                    ),
                ),
                (
                    "auto_charge",
                    models.BooleanField(
                        default=False,
                        help_text="Charge the saved payment method when an installment is due",
                    ),
                ),
                (
                    "saved_payment_method",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="provider, payment_method_id, last4, type, expiry_month, expiry_year",
                    ),
                ),
                (
                    "reminder_settings",
                    models.JSONField(
                        blank=True,
                        default=payments.models.payment_plan.default_reminder_settings,
                        help_text="enabled, days_before, max_reminders, escalation_days",
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("active", "Active"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                            ("defaulted", "Defaulted"),
                        ],
                        db_index=True,
                        default="active",
                        help_text="Current plan status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("defaulted_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, default="")),
                (
                    "event",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_plans",
                        to="events.event",
                    ),
                ),
                (
                    "registration",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_plans",
                        to="events.registration",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Plan",
                "verbose_name_plural": "Payment Plans",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["registration", "status"],
                        name="payments_pa_registr_3d1c0e_idx",
                    ),
                    models.Index(
                        fields=["event", "status"],
                        name="payments_pa_event_i_6f2a91_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("total_amount_cents__gt", 0)),
                        name="payment_plan_total_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("id", uuid_pk()),
                ("metadata", metadata()),
                ("created_at", created_at()),
                ("updated_at", updated_at()),
                (
                    "provider",
                    models.CharField(
                        choices=PROVIDER_CHOICES,
                        db_index=True,
                        help_text="Gateway that processed this payment",
                        max_length=20,
                    ),
                ),
                (
                    "provider_payment_id",
                    models.CharField(
                        blank=True,
                        help_text="Gateway-assigned id (order/session/transaction id)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(
                        help_text="Amount in minor currency units (negative for refund rows)"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="INR",
                        help_text="ISO 4217 currency code (uppercase)",
                        max_length=3,
                    ),
                ),
                (
                    "fee_cents",
                    models.BigIntegerField(
                        blank=True,
                        help_text="Gateway fee in minor units, when reported",
                        null=True,
                    ),
                ),
                (
                    "net_cents",
                    models.BigIntegerField(
                        blank=True,
                        help_text="amount - fee, computed on save",
                        null=True,
                    ),
                ),
                (
                    "refunded_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Running total refunded against this payment",
                    ),
                ),
                (
                    "method",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Payment method reported by the gateway (card, upi, ...)",
                        max_length=50,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("initiated", "Initiated"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                            ("partial-refund", "Partially Refunded"),
                        ],
                        db_index=True,
                        default="initiated",
                        help_text="Current payment status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "captured_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the gateway captured the payment",
                        null=True,
                    ),
                ),
                (
                    "paid_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the record transitioned to paid locally",
                        null=True,
                    ),
                ),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the first refund was recorded",
                        null=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, default="")),
                (
                    "raw_response",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Latest raw gateway payload, kept for audit",
                    ),
                ),
                (
                    "invoice_number",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Invoice number assigned when the payment is first paid",
                        max_length=40,
                    ),
                ),
                (
                    "invoice_url",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Path or URL of the generated invoice document",
                        max_length=500,
                    ),
                ),
                (
                    "synced_from_gateway",
                    models.BooleanField(
                        default=False,
                        help_text="Created by reconciliation from gateway data",
                    ),
                ),
                ("last_reconciled_at", models.DateTimeField(blank=True, null=True)),
                ("reconciliation_note", models.TextField(blank=True, default="")),
                (
                    "event",
                    models.ForeignKey(
                        help_text="Event this payment belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_records",
                        to="events.event",
                    ),
                ),
                (
                    "registration",
                    models.ForeignKey(
                        blank=True,
                        help_text="Registration being paid for (null for non-registration charges)",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_records",
                        to="events.registration",
                    ),
                ),
                (
                    "original_payment",
                    models.ForeignKey(
                        blank=True,
                        help_text="For refund rows: the payment being refunded",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refund_records",
                        to="payments.paymentrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Record",
                "verbose_name_plural": "Payment Records",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Installment",
            fields=[
                ("id", uuid_pk()),
                ("created_at", created_at()),
                ("updated_at", updated_at()),
                (
                    "sequence",
                    models.PositiveSmallIntegerField(help_text="1-based position within the plan"),
                ),
                ("amount_cents", models.BigIntegerField()),
                ("due_date", models.DateTimeField(db_index=True)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("due", "Due"),
                            ("paid", "Paid"),
                            ("overdue", "Overdue"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("reminders_sent", models.PositiveSmallIntegerField(default=0)),
                ("last_reminder_sent_at", models.DateTimeField(blank=True, null=True)),
                ("overdue_notification_sent", models.BooleanField(default=False)),
                ("charge_attempts", models.PositiveSmallIntegerField(default=0)),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="installments",
                        to="payments.paymentplan",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        blank=True,
                        help_text="Payment that settled this installment",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="payments.paymentrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Installment",
                "verbose_name_plural": "Installments",
                "ordering": ["plan", "sequence"],
                "indexes": [
                    models.Index(
                        fields=["status", "due_date"],
                        name="payments_in_status_8b4e27_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("plan", "sequence"),
                        name="installment_plan_sequence_unique",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="installment_amount_positive",
                    ),
                ],
            },
        ),
        migrations.AddField(
            model_name="paymentrecord",
            name="installment",
            field=models.ForeignKey(
                blank=True,
                help_text="Installment this payment settles, if any",
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="payment_records",
                to="payments.installment",
            ),
        ),
        migrations.AddIndex(
            model_name="paymentrecord",
            index=models.Index(
                fields=["event", "status"], name="payments_pa_event_i_0c5d1b_idx"
            ),
        ),
        migrations.AddIndex(
            model_name="paymentrecord",
            index=models.Index(
                fields=["event", "created_at"], name="payments_pa_event_i_9e7a44_idx"
            ),
        ),
        migrations.AddIndex(
            model_name="paymentrecord",
            index=models.Index(
                fields=["registration", "status"], name="payments_pa_registr_51b8c2_idx"
            ),
        ),
        migrations.AddConstraint(
            model_name="paymentrecord",
            constraint=models.UniqueConstraint(
                condition=models.Q(("provider_payment_id__isnull", False)),
                fields=("provider", "provider_payment_id"),
                name="payment_record_provider_payment_id_unique",
            ),
        ),
        migrations.AddConstraint(
            model_name="paymentrecord",
            constraint=models.CheckConstraint(
                condition=models.Q(
                    ("fee_cents__isnull", True),
                    ("net_cents", models.F("amount_cents") - models.F("fee_cents")),
                    _connector="OR",
                ),
                name="payment_record_net_is_amount_minus_fee",
            ),
        ),
        migrations.CreateModel(
            name="ReconciliationReport",
            fields=[
                ("id", uuid_pk()),
                ("created_at", created_at()),
                ("updated_at", updated_at()),
                (
                    "report_date",
                    models.DateField(db_index=True, help_text="Calendar day that was reconciled"),
                ),
                ("summary", models.JSONField(default=dict)),
                ("events", models.JSONField(default=list)),
                ("generated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "generated_by",
                    models.CharField(
                        default="scheduler",
                        help_text="Actor that triggered the run (scheduler or a username)",
                        max_length=150,
                    ),
                ),
            ],
            options={
                "verbose_name": "Reconciliation Report",
                "verbose_name_plural": "Reconciliation Reports",
                "ordering": ["-report_date", "-generated_at"],
                "indexes": [
                    models.Index(
                        fields=["report_date", "generated_at"],
                        name="payments_re_report__4a9f13_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", uuid_pk()),
                ("created_at", created_at()),
                ("updated_at", updated_at()),
                (
                    "provider",
                    models.CharField(choices=PROVIDER_CHOICES, db_index=True, max_length=20),
                ),
                (
                    "event_key",
                    models.CharField(
                        help_text="Gateway event id, or SHA-256 of the raw body",
                        max_length=255,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="Gateway event type (e.g. 'payment.captured')",
                        max_length=100,
                    ),
                ),
                ("payload", models.JSONField(default=dict, help_text="Parsed webhook payload")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("ignored", "Ignored"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, null=True)),
                (
                    "attempts",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of processing attempts"
                    ),
                ),
                (
                    "event",
                    models.ForeignKey(
                        blank=True,
                        help_text="Event whose gateway configuration verified the delivery",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="webhook_events",
                        to="events.event",
                    ),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="payments_we_status_2c7d5e_idx",
                    ),
                    models.Index(
                        fields=["provider", "event_type"],
                        name="payments_we_provide_7a1e90_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider", "event_key"),
                        name="webhook_event_provider_key_unique",
                    ),
                ],
            },
        ),
    ]
