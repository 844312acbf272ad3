"""
WebhookEvent model for inbound gateway webhook tracking.

Stores every verified webhook received from any gateway for idempotent
processing and audit trails. The unique (provider, event_key) constraint
ensures duplicate deliveries are detected and handled as no-ops.

event_key is the gateway's own event id when the payload carries one
(Stripe evt_xxx, Razorpay x-razorpay-event-id, Cashfree cf_payment_id ...),
otherwise the SHA-256 of the raw body.

Usage:
    event, created = WebhookEvent.objects.get_or_create(
        provider="razorpay",
        event_key=event_key,
        defaults={"event_type": "payment.captured", "payload": payload},
    )
    if not created and event.is_processed:
        return HttpResponse(status=200)  # duplicate delivery
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import ProviderName, WebhookEventStatus


class WebhookEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks gateway webhook deliveries for idempotent processing.

    Processing Flow:
        1. Webhook arrives, adapter verifies the signature
        2. get_or_create WebhookEvent on (provider, event_key)
        3. If exists and PROCESSED/IGNORED -> return 200 (duplicate)
        4. Set status to PROCESSING
        5. adapter.handle_webhook(payload)
        6. Set status to PROCESSED / IGNORED, or FAILED and return 500 so the
           gateway redelivers
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    provider = models.CharField(
        max_length=20,
        choices=ProviderName.choices,
        db_index=True,
    )

    event_key = models.CharField(
        max_length=255,
        help_text="Gateway event id, or SHA-256 of the raw body",
    )

    event = models.ForeignKey(
        "events.Event",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_events",
        help_text="Event whose gateway configuration verified the delivery",
    )

    event_type = models.CharField(
        max_length=100,
        blank=True,
        default="",
        db_index=True,
        help_text="Gateway event type (e.g. 'payment.captured')",
    )

    # ==========================================================================
    # Payload
    # ==========================================================================

    payload = models.JSONField(
        default=dict,
        help_text="Parsed webhook payload",
    )

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=WebhookEventStatus.choices,
        default=WebhookEventStatus.PENDING,
        db_index=True,
    )

    processed_at = models.DateTimeField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    attempts = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Webhook Event"
        verbose_name_plural = "Webhook Events"
        indexes = [
            models.Index(fields=["status", "created_at"], name="payments_we_status_2c7d5e_idx"),
            models.Index(fields=["provider", "event_type"], name="payments_we_provide_7a1e90_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "event_key"],
                name="webhook_event_provider_key_unique",
            ),
        ]

    def __str__(self) -> str:
        return f"WebhookEvent({self.provider}:{self.event_key}, {self.event_type})"

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_processed(self) -> bool:
        return self.status in (WebhookEventStatus.PROCESSED, WebhookEventStatus.IGNORED)

    @property
    def is_failed(self) -> bool:
        return self.status == WebhookEventStatus.FAILED

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def mark_processing(self) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.PROCESSING
        self.attempts += 1

    def mark_processed(self, ignored: bool = False) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.IGNORED if ignored else WebhookEventStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_failed(self, error_message: str) -> None:
        """Note: Does not save - caller must save after calling."""
        self.status = WebhookEventStatus.FAILED
        self.error_message = error_message
