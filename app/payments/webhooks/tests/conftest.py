"""
Pytest fixtures for webhook tests.

Provides signed stub gateway deliveries, the per-event webhook URL and
stored WebhookEvent rows in each processing state.
"""

import uuid

import pytest

from payments.state_machines import WebhookEventStatus
from payments.tests.factories import WebhookEventFactory


# =============================================================================
# Delivery Fixtures
# =============================================================================


@pytest.fixture
def webhook_url(event):
    return f"/api/v1/payments/webhooks/stub/{event.pk}/"


@pytest.fixture
def captured_payload(initiated_record):
    """payment.captured delivery for `initiated_record`."""
    return {
        "id": f"evt_stub_{uuid.uuid4().hex[:16]}",
        "event_type": "payment.captured",
        "payment_id": initiated_record.provider_payment_id,
        "status": "captured",
        "amount": initiated_record.amount_cents,
        "metadata": {},
    }


@pytest.fixture
def post_webhook(client, stub_adapter, webhook_url):
    """POST a payload signed the way the stub gateway signs it."""

    def _post(payload, url=None, signature=None):
        request = stub_adapter.build_webhook_request(payload)
        return client.post(
            url or webhook_url,
            data=request.body,
            content_type="application/json",
            HTTP_X_STUB_TIMESTAMP=request.header("x-stub-timestamp"),
            HTTP_X_STUB_SIGNATURE=signature or request.header("x-stub-signature"),
        )

    return _post


# =============================================================================
# WebhookEvent Fixtures
# =============================================================================


@pytest.fixture
def pending_webhook_event(event, captured_payload):
    return WebhookEventFactory(
        event=event,
        event_key=captured_payload["id"],
        payload=captured_payload,
    )


@pytest.fixture
def failed_webhook_event(event, captured_payload):
    return WebhookEventFactory(
        event=event,
        event_key=captured_payload["id"],
        payload=captured_payload,
        status=WebhookEventStatus.FAILED,
        attempts=1,
        error_message="GatewayUnavailableError: Gateway down",
    )
