"""
PaymentRecord model: the persistent ledger of payment attempts.

One row per gateway transaction (checkout session, order, direct charge) plus
one negative-amount row per refund. Rows are never hard-deleted.

Idempotency:
    (provider, provider_payment_id) is unique whenever provider_payment_id is
    set. All writes that originate from a gateway (checkout logging, webhook
    handling, reconciliation sync) go through
    PaymentRecordService.log_payment(), which upserts on that pair.

Usage:
    from payments.models import PaymentRecord
    from payments.state_machines import PaymentStatus

    record = PaymentRecord.objects.create(
        event=event,
        registration=registration,
        provider="razorpay",
        provider_payment_id="order_9A33XWu170gUtm",
        amount_cents=50000,
        currency="INR",
    )

    # State transitions using django-fsm
    record.mark_paid()
    record.save()
"""

from __future__ import annotations

import random

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.exceptions import PaymentValidationError
from payments.state_machines import PaymentStatus, ProviderName


class PaymentRecordQuerySet(models.QuerySet):
    """Query helpers used by checkout, webhooks and reconciliation."""

    def charges(self) -> PaymentRecordQuerySet:
        """Exclude the negative-amount refund rows."""
        return self.filter(original_payment__isnull=True)

    def refunds(self) -> PaymentRecordQuerySet:
        return self.filter(original_payment__isnull=False)

    def for_event(self, event) -> PaymentRecordQuerySet:
        return self.filter(event=event)

    def created_between(self, start, end) -> PaymentRecordQuerySet:
        return self.filter(created_at__gte=start, created_at__lt=end)

    def with_provider_id(self) -> PaymentRecordQuerySet:
        return self.filter(provider_payment_id__isnull=False)

    def paid(self) -> PaymentRecordQuerySet:
        return self.filter(status=PaymentStatus.PAID)


class PaymentRecord(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    A single payment attempt (or refund) against one gateway.

    State Flow:
        INITIATED -> PAID -> REFUNDED / PARTIAL_REFUND
        INITIATED -> FAILED -> PAID

    Invariants:
        - net_cents == amount_cents - fee_cents whenever fee_cents is known
          (computed on save and enforced by a check constraint)
        - Once REFUNDED, the record never returns to PAID or INITIATED
        - (provider, provider_payment_id), once set, never changes
    """

    # ==========================================================================
    # Ownership
    # ==========================================================================

    event = models.ForeignKey(
        "events.Event",
        on_delete=models.PROTECT,
        related_name="payment_records",
        help_text="Event this payment belongs to",
    )

    registration = models.ForeignKey(
        "events.Registration",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payment_records",
        help_text="Registration being paid for (null for non-registration charges)",
    )

    installment = models.ForeignKey(
        "payments.Installment",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_records",
        help_text="Installment this payment settles, if any",
    )

    original_payment = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="refund_records",
        help_text="For refund rows: the payment being refunded",
    )

    # ==========================================================================
    # Gateway Identity
    # ==========================================================================

    provider = models.CharField(
        max_length=20,
        choices=ProviderName.choices,
        db_index=True,
        help_text="Gateway that processed this payment",
    )

    provider_payment_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Gateway-assigned id (order/session/transaction id)",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.BigIntegerField(
        help_text="Amount in minor currency units (negative for refund rows)",
    )

    currency = models.CharField(
        max_length=3,
        default="INR",
        help_text="ISO 4217 currency code (uppercase)",
    )

    fee_cents = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="Gateway fee in minor units, when reported",
    )

    net_cents = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="amount - fee, computed on save",
    )

    refunded_cents = models.BigIntegerField(
        default=0,
        help_text="Running total refunded against this payment",
    )

    method = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Payment method reported by the gateway (card, upi, ...)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=PaymentStatus.INITIATED,
        choices=PaymentStatus.choices,
        db_index=True,
        protected=True,  # Prevent direct assignment outside transitions
        help_text="Current payment status (managed by FSM)",
    )

    captured_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the gateway captured the payment",
    )

    paid_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the record transitioned to paid locally",
    )

    failed_at = models.DateTimeField(null=True, blank=True)

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the first refund was recorded",
    )

    failure_reason = models.TextField(blank=True, default="")

    # ==========================================================================
    # Audit & Documents
    # ==========================================================================

    raw_response = models.JSONField(
        default=dict,
        blank=True,
        help_text="Latest raw gateway payload, kept for audit",
    )

    invoice_number = models.CharField(
        max_length=40,
        blank=True,
        default="",
        db_index=True,
        help_text="Invoice number assigned when the payment is first paid",
    )

    invoice_url = models.CharField(
        max_length=500,
        blank=True,
        default="",
        help_text="Path or URL of the generated invoice document",
    )

    # ==========================================================================
    # Reconciliation
    # ==========================================================================

    synced_from_gateway = models.BooleanField(
        default=False,
        help_text="Created by reconciliation from gateway data",
    )

    last_reconciled_at = models.DateTimeField(null=True, blank=True)

    reconciliation_note = models.TextField(blank=True, default="")

    objects = PaymentRecordQuerySet.as_manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Record"
        verbose_name_plural = "Payment Records"
        indexes = [
            models.Index(fields=["event", "status"], name="payments_pa_event_i_0c5d1b_idx"),
            models.Index(fields=["event", "created_at"], name="payments_pa_event_i_9e7a44_idx"),
            models.Index(fields=["registration", "status"], name="payments_pa_registr_51b8c2_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_payment_id"],
                condition=Q(provider_payment_id__isnull=False),
                name="payment_record_provider_payment_id_unique",
            ),
            models.CheckConstraint(
                condition=Q(fee_cents__isnull=True)
                | Q(net_cents=F("amount_cents") - F("fee_cents")),
                name="payment_record_net_is_amount_minus_fee",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency}"
        return f"PaymentRecord({self.provider}:{self.provider_payment_id}, {self.status}, {amount_display})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_identity = (instance.provider, instance.provider_payment_id)
        return instance

    def save(self, *args, **kwargs):
        """
        Save with derived net amount and identity protection.

        Raises:
            PaymentValidationError: If a stored (provider, provider_payment_id)
                pair is being changed
        """
        loaded = getattr(self, "_loaded_identity", None)
        if loaded and loaded[1] and loaded != (self.provider, self.provider_payment_id):
            raise PaymentValidationError(
                "Gateway identity of a payment record cannot change",
                details={
                    "payment_id": str(self.pk),
                    "stored": list(loaded),
                    "requested": [self.provider, self.provider_payment_id],
                },
            )

        if self.fee_cents is not None and self.amount_cents is not None:
            self.net_cents = self.amount_cents - self.fee_cents
            update_fields = kwargs.get("update_fields")
            if update_fields is not None and "net_cents" not in update_fields:
                kwargs["update_fields"] = [*update_fields, "net_cents"]

        if self.currency:
            self.currency = self.currency.upper()

        super().save(*args, **kwargs)
        self._loaded_identity = (self.provider, self.provider_payment_id)

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_refund(self) -> bool:
        return self.original_payment_id is not None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID

    @property
    def refundable_cents(self) -> int:
        if self.status not in (PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND):
            return 0
        return max(self.amount_cents - self.refunded_cents, 0)

    def assign_invoice_number(self) -> str:
        """
        Assign an invoice number if none exists.

        Format: {EVT}-{YYYYMMDD}-{NNN} where EVT is the first three
        alphanumerics of the event code.

        Note: Does not save - caller must save after calling.
        """
        if not self.invoice_number:
            code = "".join(ch for ch in (self.event.code or "") if ch.isalnum())
            prefix = (code[:3] or "EVT").upper()
            stamp = (self.captured_at or timezone.now()).strftime("%Y%m%d")
            self.invoice_number = f"{prefix}-{stamp}-{random.randint(0, 999):03d}"
        return self.invoice_number

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=[PaymentStatus.INITIATED, PaymentStatus.FAILED],
        target=PaymentStatus.PAID,
    )
    def mark_paid(self, captured_at=None):
        """
        Mark payment as paid.

        Transition: INITIATED / FAILED -> PAID

        FAILED is a legal source because some gateways report a late
        success after an earlier failure callback.
        """
        now = timezone.now()
        self.captured_at = captured_at or self.captured_at or now
        self.paid_at = now
        self.failure_reason = ""

    @transition(
        field=status,
        source=PaymentStatus.INITIATED,
        target=PaymentStatus.FAILED,
    )
    def mark_failed(self, reason: str | None = None):
        """
        Mark payment as failed.

        Transition: INITIATED -> FAILED
        """
        self.failed_at = timezone.now()
        self.failure_reason = reason or ""

    @transition(
        field=status,
        source=[PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND],
        target=PaymentStatus.REFUNDED,
    )
    def mark_refunded(self):
        """
        Mark payment as fully refunded. Terminal.

        Transition: PAID / PARTIAL_REFUND -> REFUNDED
        """
        self.refunded_at = self.refunded_at or timezone.now()

    @transition(
        field=status,
        source=[PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND],
        target=PaymentStatus.PARTIAL_REFUND,
    )
    def mark_partially_refunded(self):
        """
        Record a partial refund.

        Transition: PAID / PARTIAL_REFUND -> PARTIAL_REFUND
        """
        self.refunded_at = self.refunded_at or timezone.now()
