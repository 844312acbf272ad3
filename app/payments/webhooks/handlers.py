"""
Webhook processing shared by the HTTP endpoint and the retry task.

The endpoint verifies and records a delivery, then calls
process_webhook_event() in-request. A delivery that fails is left in FAILED
state with its parsed payload; retry_failed_webhooks re-runs the same
function later with an adapter rebuilt from the event's configuration.

Usage:
    from payments.webhooks.handlers import record_webhook_event, process_webhook_event

    webhook_event, created = record_webhook_event(adapter, event, payload, request)
    if created or not webhook_event.is_processed:
        process_webhook_event(webhook_event, adapter)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction

from payments.models import WebhookEvent

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Any

    from events.models import Event
    from payments.adapters.base import (
        PaymentProviderAdapter,
        WebhookRequest,
        WebhookResult,
    )


logger = logging.getLogger(__name__)


def record_webhook_event(
    adapter: PaymentProviderAdapter,
    event: Event,
    payload: Mapping[str, Any],
    request: WebhookRequest,
) -> tuple[WebhookEvent, bool]:
    """
    Store a verified delivery, keyed by (provider, event_key).

    Returns:
        (webhook_event, created). created is False for a re-delivery.
    """
    event_key = adapter.webhook_event_key(payload, request)
    return WebhookEvent.objects.get_or_create(
        provider=adapter.name,
        event_key=event_key,
        defaults={
            "event": event,
            "event_type": adapter.webhook_event_type(payload)[:100],
            "payload": dict(payload),
        },
    )


def process_webhook_event(
    webhook_event: WebhookEvent,
    adapter: PaymentProviderAdapter,
) -> WebhookResult:
    """
    Apply a stored delivery through the adapter and record the outcome.

    Raises:
        Exception: Whatever the adapter raised; the row is left FAILED
    """
    webhook_event.mark_processing()
    webhook_event.save(update_fields=["status", "attempts", "updated_at"])

    try:
        with transaction.atomic():
            result = adapter.handle_webhook(webhook_event.payload)
    except Exception as e:
        webhook_event.mark_failed(f"{type(e).__name__}: {e}")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        logger.exception(
            "Webhook processing failed",
            extra={
                "webhook_event_id": str(webhook_event.pk),
                "provider": webhook_event.provider,
                "event_type": webhook_event.event_type,
                "attempts": webhook_event.attempts,
            },
        )
        raise

    webhook_event.mark_processed(ignored=not result.processed)
    webhook_event.save(
        update_fields=["status", "processed_at", "error_message", "updated_at"]
    )
    logger.info(
        "Webhook processed",
        extra={
            "webhook_event_id": str(webhook_event.pk),
            "provider": webhook_event.provider,
            "event_type": result.event_type,
            "processed": result.processed,
            "changed": result.changed,
            "payment_id": result.payment_id,
        },
    )
    return result
