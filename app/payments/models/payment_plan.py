"""
PaymentPlan and Installment models for installment billing.

A PaymentPlan splits a registration fee into an ordered list of Installments.
The plan exclusively owns its installments (cascade delete, no API of their
own). Derived values (total paid, remaining, next due, overdue set) are
computed on read by payments.services.plan_schedule and never stored.

Usage:
    from payments.services import PaymentPlanService

    plan = PaymentPlanService.create_plan(
        registration=registration,
        total_amount_cents=10000,
        installment_count=3,
    )
    # -> installments 3333 (due), 3333 (pending), 3334 (pending)

    PaymentPlanService.mark_installment_paid(plan.installments.first(), payment)
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel

from payments.state_machines import (
    InstallmentStatus,
    PaymentPlanStatus,
    ProviderName,
)


def default_reminder_settings() -> dict:
    return {
        "enabled": True,
        "days_before": 3,
        "max_reminders": 3,
        "escalation_days": 7,
    }


class PaymentPlanQuerySet(models.QuerySet):
    def active(self) -> PaymentPlanQuerySet:
        return self.filter(status=PaymentPlanStatus.ACTIVE)

    def with_due_installments(self, as_of=None) -> PaymentPlanQuerySet:
        """Active plans with a due installment whose date has arrived."""
        as_of = as_of or timezone.now()
        return self.active().filter(
            installments__status=InstallmentStatus.DUE,
            installments__due_date__lte=as_of,
        ).distinct()

    def with_overdue_installments(self) -> PaymentPlanQuerySet:
        return self.active().filter(
            installments__status=InstallmentStatus.OVERDUE
        ).distinct()


class PaymentPlan(UUIDPrimaryKeyMixin, VersionedMixin, MetadataMixin, BaseModel):
    """
    Installment schedule for one registration.

    State Flow:
        ACTIVE -> COMPLETED (every installment paid)
        ACTIVE -> CANCELLED (explicit cancellation, reason recorded)
        ACTIVE -> DEFAULTED (reminders and retries exhausted)

    Invariants:
        - sum(installment.amount_cents) == total_amount_cents
        - at most one installment is DUE ahead of the others
        - COMPLETED iff every installment is PAID

    Uses optimistic locking via the version field for reschedule/cancel.
    """

    # ==========================================================================
    # Ownership
    # ==========================================================================

    registration = models.ForeignKey(
        "events.Registration",
        on_delete=models.PROTECT,
        related_name="payment_plans",
    )

    event = models.ForeignKey(
        "events.Event",
        on_delete=models.PROTECT,
        related_name="payment_plans",
    )

    # ==========================================================================
    # Amount & Provider
    # ==========================================================================

    total_amount_cents = models.BigIntegerField(
        help_text="Plan total in minor currency units",
    )

    currency = models.CharField(max_length=3, default="INR")

    provider = models.CharField(
        max_length=20,
        choices=ProviderName.choices,
        help_text="Gateway used for installment payments",
    )

    auto_charge = models.BooleanField(
        default=False,
        help_text="Charge the saved payment method when an installment is due",
    )

    saved_payment_method = models.JSONField(
        default=dict,
        blank=True,
        help_text="provider, payment_method_id, last4, type, expiry_month, expiry_year",
    )

    reminder_settings = models.JSONField(
        default=default_reminder_settings,
        blank=True,
        help_text="enabled, days_before, max_reminders, escalation_days",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=PaymentPlanStatus.ACTIVE,
        choices=PaymentPlanStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current plan status (managed by FSM)",
    )

    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    defaulted_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True, default="")

    objects = PaymentPlanQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Plan"
        verbose_name_plural = "Payment Plans"
        indexes = [
            models.Index(fields=["registration", "status"], name="payments_pa_registr_3d1c0e_idx"),
            models.Index(fields=["event", "status"], name="payments_pa_event_i_6f2a91_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_amount_cents__gt=0),
                name="payment_plan_total_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentPlan({self.id}, {self.status}, {self.total_amount_cents} {self.currency})"

    @property
    def has_saved_payment_method(self) -> bool:
        return bool((self.saved_payment_method or {}).get("payment_method_id"))

    @property
    def is_active(self) -> bool:
        return self.status == PaymentPlanStatus.ACTIVE

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=[PaymentPlanStatus.ACTIVE, PaymentPlanStatus.DEFAULTED],
        target=PaymentPlanStatus.COMPLETED,
    )
    def complete(self):
        """Transition: ACTIVE | DEFAULTED -> COMPLETED"""
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=PaymentPlanStatus.ACTIVE,
        target=PaymentPlanStatus.CANCELLED,
    )
    def cancel(self, reason: str = ""):
        """Transition: ACTIVE -> CANCELLED"""
        self.cancelled_at = timezone.now()
        self.cancellation_reason = reason

    @transition(
        field=status,
        source=PaymentPlanStatus.ACTIVE,
        target=PaymentPlanStatus.DEFAULTED,
    )
    def mark_defaulted(self):
        """Transition: ACTIVE -> DEFAULTED"""
        self.defaulted_at = timezone.now()


class InstallmentQuerySet(models.QuerySet):
    def open(self) -> InstallmentQuerySet:
        """Installments that still expect money."""
        return self.filter(
            status__in=[
                InstallmentStatus.PENDING,
                InstallmentStatus.DUE,
                InstallmentStatus.OVERDUE,
                InstallmentStatus.FAILED,
            ]
        )

    def past_due(self, as_of=None) -> InstallmentQuerySet:
        as_of = as_of or timezone.now()
        return self.filter(
            status=InstallmentStatus.DUE,
            due_date__lt=as_of,
            plan__status=PaymentPlanStatus.ACTIVE,
        )


class Installment(UUIDPrimaryKeyMixin, BaseModel):
    """
    One scheduled partial payment within a PaymentPlan.

    State Flow:
        PENDING -> DUE -> PAID
        DUE -> OVERDUE -> PAID / FAILED
        PENDING / DUE / OVERDUE / FAILED -> CANCELLED
    """

    plan = models.ForeignKey(
        PaymentPlan,
        on_delete=models.CASCADE,
        related_name="installments",
    )

    sequence = models.PositiveSmallIntegerField(
        help_text="1-based position within the plan",
    )

    amount_cents = models.BigIntegerField()

    due_date = models.DateTimeField(db_index=True)

    status = FSMField(
        default=InstallmentStatus.PENDING,
        choices=InstallmentStatus.choices,
        db_index=True,
        protected=True,
    )

    payment = models.ForeignKey(
        "payments.PaymentRecord",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="Payment that settled this installment",
    )

    paid_at = models.DateTimeField(null=True, blank=True)

    # ==========================================================================
    # Reminders & Retries
    # ==========================================================================

    reminders_sent = models.PositiveSmallIntegerField(default=0)
    last_reminder_sent_at = models.DateTimeField(null=True, blank=True)
    overdue_notification_sent = models.BooleanField(default=False)
    charge_attempts = models.PositiveSmallIntegerField(default=0)

    objects = InstallmentQuerySet.as_manager()

    class Meta:
        ordering = ["plan", "sequence"]
        verbose_name = "Installment"
        verbose_name_plural = "Installments"
        indexes = [
            models.Index(fields=["status", "due_date"], name="payments_in_status_8b4e27_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["plan", "sequence"],
                name="installment_plan_sequence_unique",
            ),
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="installment_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Installment({self.plan_id}#{self.sequence}, {self.status}, {self.amount_cents})"

    @property
    def is_open(self) -> bool:
        return self.status in (
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.OVERDUE,
            InstallmentStatus.FAILED,
        )

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=InstallmentStatus.PENDING,
        target=InstallmentStatus.DUE,
    )
    def activate(self):
        """Transition: PENDING -> DUE"""

    @transition(
        field=status,
        source=[
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.OVERDUE,
            InstallmentStatus.FAILED,
        ],
        target=InstallmentStatus.PAID,
    )
    def mark_paid(self, payment=None):
        """
        Transition: PENDING / DUE / OVERDUE / FAILED -> PAID

        PENDING is accepted so that money captured early by the gateway is
        never rejected.
        """
        self.paid_at = timezone.now()
        if payment is not None:
            self.payment = payment

    @transition(
        field=status,
        source=InstallmentStatus.DUE,
        target=InstallmentStatus.OVERDUE,
    )
    def mark_overdue(self):
        """Transition: DUE -> OVERDUE"""

    @transition(
        field=status,
        source=[InstallmentStatus.DUE, InstallmentStatus.OVERDUE],
        target=InstallmentStatus.FAILED,
    )
    def mark_failed(self):
        """Transition: DUE / OVERDUE -> FAILED"""

    @transition(
        field=status,
        source=[
            InstallmentStatus.PENDING,
            InstallmentStatus.DUE,
            InstallmentStatus.OVERDUE,
            InstallmentStatus.FAILED,
        ],
        target=InstallmentStatus.CANCELLED,
    )
    def cancel(self):
        """Transition: PENDING / DUE / OVERDUE / FAILED -> CANCELLED"""
