"""
Event and registration models referenced by the payment core.

Event:
    Carries the per-event payment configuration. The payments app never
    reads gateway credentials from settings; it builds a ProviderConfig
    from Event.payment_config:

        {
            "provider": "razorpay",
            "mode": "test",
            "credentials": {"key_id": "...", "key_secret": "...", ...},
            "extra": {"gst_percentage": 18, "inclusive_tax": false}
        }

Registration:
    One attendee's registration for an event. payment_status is updated by
    the payment core when a payment becomes paid or is refunded.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class RegistrationPaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    REFUNDED = "refunded", "Refunded"


class Event(UUIDPrimaryKeyMixin, BaseModel):
    """An event that accepts payments through one configured gateway."""

    name = models.CharField(max_length=255)
    code = models.CharField(
        max_length=32,
        unique=True,
        help_text="Short event code, used as the invoice number prefix",
    )
    currency = models.CharField(max_length=3, default="INR")
    payment_config = models.JSONField(
        default=dict,
        blank=True,
        help_text="Gateway provider, mode, credentials and invoice extras",
    )

    class Meta(BaseModel.Meta):
        verbose_name = "Event"
        verbose_name_plural = "Events"

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"

    @property
    def payment_provider(self) -> str:
        return (self.payment_config or {}).get("provider", "")

    @property
    def has_payment_provider(self) -> bool:
        return bool(self.payment_provider)


class Registration(UUIDPrimaryKeyMixin, BaseModel):
    """An attendee registration that may be paid in full or in installments."""

    event = models.ForeignKey(
        Event,
        on_delete=models.PROTECT,
        related_name="registrations",
    )
    registration_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Human-facing registration number (e.g. ABC-0001)",
    )
    email = models.EmailField(db_index=True)
    first_name = models.CharField(max_length=120, blank=True)
    last_name = models.CharField(max_length=120, blank=True)
    phone = models.CharField(max_length=32, blank=True)
    amount_cents = models.BigIntegerField(
        default=0,
        help_text="Registration fee in minor currency units",
    )
    payment_status = models.CharField(
        max_length=16,
        choices=RegistrationPaymentStatus.choices,
        default=RegistrationPaymentStatus.PENDING,
        db_index=True,
    )

    class Meta(BaseModel.Meta):
        verbose_name = "Registration"
        verbose_name_plural = "Registrations"

    def __str__(self) -> str:
        return f"{self.registration_id} <{self.email}>"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
