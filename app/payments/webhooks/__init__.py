"""
Webhook handling for payment events from every configured gateway.

Deliveries are verified by the event's adapter, stored idempotently as
WebhookEvent rows, and applied in-request. Failed deliveries are retried
from their stored payload by a Celery task.

Usage:
    # In urls.py
    from payments.webhooks.views import provider_webhook

    urlpatterns = [
        path("webhooks/<str:provider>/<uuid:event_id>/", provider_webhook),
    ]
"""

from payments.webhooks.handlers import process_webhook_event, record_webhook_event
from payments.webhooks.views import provider_webhook

__all__ = [
    "process_webhook_event",
    "provider_webhook",
    "record_webhook_event",
]
