"""
Webhook endpoint shared by every gateway.

Route: POST /api/v1/payments/webhooks/<provider>/<event_id>/

The event id in the URL selects the gateway configuration (and so the
webhook secret) to verify with. The view:
1. Builds the event's adapter and checks it serves <provider>
2. Verifies the signature
3. Records the delivery idempotently on (provider, event_key)
4. Applies it in-request and answers 200, or 500 so the gateway redelivers

Usage:
    # In urls.py
    from payments.webhooks.views import provider_webhook

    urlpatterns = [
        path("webhooks/<str:provider>/<uuid:event_id>/", provider_webhook),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from events.models import Event
from payments.adapters.base import WebhookRequest
from payments.adapters.registry import get_adapter_for_event
from payments.exceptions import ConfigurationError, InvalidSignatureError
from payments.webhooks.handlers import process_webhook_event, record_webhook_event


logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def provider_webhook(request: HttpRequest, provider: str, event_id) -> HttpResponse:
    """
    Receive a gateway webhook for one event.

    Returns:
        HttpResponse with status:
        - 200: Applied, ignored, or a duplicate of an applied delivery
        - 400: Invalid signature or payload
        - 404: Unknown event, or the event does not use this provider
        - 500: Processing failed; the gateway should redeliver
    """
    event = Event.objects.filter(pk=event_id).first()
    if event is None:
        return HttpResponse("Unknown event", status=404)

    try:
        adapter = get_adapter_for_event(event)
    except ConfigurationError as e:
        logger.warning(
            "Webhook for event without usable gateway configuration",
            extra={"event_id": str(event_id), "provider": provider, "error": e.message},
        )
        return HttpResponse("Gateway not configured", status=404)

    if adapter.name != provider:
        logger.warning(
            "Webhook provider does not match event configuration",
            extra={
                "event_id": str(event_id),
                "provider": provider,
                "configured_provider": adapter.name,
            },
        )
        return HttpResponse("Provider mismatch", status=404)

    webhook_request = WebhookRequest.from_django(request)
    try:
        payload = adapter.verify_webhook(webhook_request)
    except InvalidSignatureError as e:
        logger.warning(
            "Webhook signature verification failed",
            extra={"event_id": str(event_id), "provider": provider, "error": e.message},
        )
        return HttpResponse("Invalid signature", status=400)

    webhook_event, created = record_webhook_event(adapter, event, payload, webhook_request)
    if not created and webhook_event.is_processed:
        logger.info(
            "Duplicate webhook delivery",
            extra={
                "webhook_event_id": str(webhook_event.pk),
                "provider": provider,
                "event_key": webhook_event.event_key,
            },
        )
        return HttpResponse("Already processed", status=200)

    try:
        process_webhook_event(webhook_event, adapter)
    except Exception:
        # Already logged and stored as FAILED; a 5xx makes the gateway retry
        return HttpResponse("Processing failed", status=500)

    return HttpResponse("OK", status=200)
