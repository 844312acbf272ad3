"""
Pytest fixtures for gateway adapter tests.

This module provides events configured for each gateway, mock HTTP
responses for the requests-based adapters, and mock Stripe API objects.

Sections:
    - Gateway Event Fixtures
    - Mock HTTP Fixtures
    - Mock Stripe Fixtures
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import requests
import stripe

from events.tests.factories import EventFactory, RegistrationFactory
from payments.adapters.registry import get_adapter_for_event

GATEWAY_CREDENTIALS = {
    "stripe": {"secret_key": "sk_test_123", "webhook_secret": "whsec_test_secret"},
    "razorpay": {
        "key_id": "rzp_test_key",
        "key_secret": "rzp_test_secret",
        "webhook_secret": "rzp_webhook_secret",
    },
    "cashfree": {"app_id": "cf_app", "secret_key": "cf_secret"},
    "instamojo": {"api_key": "im_key", "auth_token": "im_token", "hmac_salt": "im_salt"},
    "paytm": {"mid": "PAYTM_MID", "key": "paytm_merchant_key"},
    "payu": {"merchant_key": "payu_key", "merchant_salt": "payu_salt"},
    "phonepe": {"merchant_id": "PHONEPE_MID", "salt_key": "phonepe_salt", "salt_index": "1"},
    "stub": {},
}


# =============================================================================
# Gateway Event Fixtures
# =============================================================================


@pytest.fixture
def gateway_event(db):
    """Build an event configured for the named gateway with test credentials."""

    def _create(provider: str, **credentials: Any):
        return EventFactory(
            payment_config={
                "provider": provider,
                "mode": "test",
                "credentials": {**GATEWAY_CREDENTIALS[provider], **credentials},
            },
        )

    return _create


@pytest.fixture
def gateway_adapter(gateway_event):
    """Adapter plus a registration on an event using that gateway."""

    def _create(provider: str):
        event = gateway_event(provider)
        registration = RegistrationFactory(event=event, amount_cents=50000)
        return get_adapter_for_event(event), registration

    return _create


# =============================================================================
# Mock HTTP Fixtures
# =============================================================================


def make_response(status_code: int = 200, json_data: Any = None, text: str = "") -> MagicMock:
    """requests.Response stand-in whose raise_for_status matches the code."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = json_data if json_data is not None else {}
    response.content = b"{}" if json_data is not None or not text else text.encode()
    response.text = text
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def mock_http():
    """Patch requests.Session.request for every requests-based adapter."""
    with patch.object(requests.Session, "request") as mock:
        mock.return_value = make_response(json_data={})
        yield mock


# =============================================================================
# Mock Stripe Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@dataclass
class MockStripeList:
    """Mock Stripe list response supporting auto_paging_iter()."""

    items: list[MockStripeObject]

    def auto_paging_iter(self):
        return iter(self.items)


@pytest.fixture
def mock_checkout_session():
    def _create(
        id: str = "cs_test_123",
        payment_status: str = "unpaid",
        status: str = "open",
        amount_total: int = 50000,
        currency: str = "inr",
        payment_intent: Any = None,
        metadata: dict | None = None,
        customer_email: str = "attendee@example.com",
        created: int = 1772352000,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "checkout.session",
                "url": f"https://checkout.stripe.com/c/pay/{id}",
                "payment_status": payment_status,
                "status": status,
                "amount_total": amount_total,
                "currency": currency,
                "payment_intent": payment_intent,
                "metadata": metadata or {},
                "customer_email": customer_email,
                "client_reference_id": None,
                "created": created,
            }
        )

    return _create


@pytest.fixture
def mock_payment_intent():
    def _create(
        id: str = "pi_test_123",
        status: str = "succeeded",
        amount: int = 3000,
        currency: str = "inr",
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_intent",
                "status": status,
                "amount": amount,
                "currency": currency,
                "created": 1772352000,
            }
        )

    return _create


@pytest.fixture
def mock_stripe_session(mock_checkout_session):
    """Mock stripe.checkout.Session API."""
    with patch("stripe.checkout.Session") as mock:
        mock.create.return_value = mock_checkout_session()
        mock.retrieve.return_value = mock_checkout_session()
        mock.list.return_value = MockStripeList(items=[])
        yield mock


@pytest.fixture
def mock_stripe_payment_intent(mock_payment_intent):
    """Mock stripe.PaymentIntent API."""
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = mock_payment_intent()
        mock.retrieve.return_value = mock_payment_intent()
        yield mock


@pytest.fixture
def mock_stripe_refund():
    """Mock stripe.Refund API."""
    with patch("stripe.Refund") as mock:
        mock.create.return_value = MockStripeObject(
            {
                "id": "re_test_123",
                "object": "refund",
                "amount": 20000,
                "status": "succeeded",
                "payment_intent": "pi_test_123",
            }
        )
        yield mock


@pytest.fixture
def card_error():
    error = stripe.CardError(
        message="Your card was declined.",
        param=None,
        code="card_declined",
        http_status=402,
    )
    error.decline_code = "generic_decline"
    return error
