"""
Payment provider adapters.

Every gateway the platform talks to is wrapped by a PaymentProviderAdapter
subclass. All external payment API calls go through these adapters so that
error handling, timeouts, idempotency, and logging stay consistent.

Importing this package registers every adapter with the registry.

Usage:
    from payments.adapters import get_adapter_for_event

    adapter = get_adapter_for_event(event)
    checkout = adapter.create_checkout(
        registration,
        [{"name": "Conference Pass", "amount_cents": 50000}],
        success_url="https://example.com/ok",
        cancel_url="https://example.com/cancel",
    )
"""

from payments.adapters.base import (
    ChargeResult,
    CheckoutResult,
    GatewayPayment,
    IdempotencyKeyGenerator,
    LineItem,
    PaymentProviderAdapter,
    ProviderConfig,
    RefundResult,
    WebhookRequest,
    WebhookResult,
    WebhookUpdate,
    backoff_delay,
    is_retryable_error,
)
from payments.adapters.cashfree_adapter import CashfreeAdapter
from payments.adapters.instamojo_adapter import InstamojoAdapter
from payments.adapters.paytm_adapter import PaytmAdapter
from payments.adapters.payu_adapter import PayUAdapter
from payments.adapters.phonepe_adapter import PhonePeAdapter
from payments.adapters.razorpay_adapter import RazorpayAdapter
from payments.adapters.registry import (
    get_adapter,
    get_adapter_class,
    get_adapter_for_event,
    list_providers,
    register_adapter,
)
from payments.adapters.stripe_adapter import StripeAdapter
from payments.adapters.stub_adapter import StubAdapter

__all__ = [
    "CashfreeAdapter",
    "ChargeResult",
    "CheckoutResult",
    "GatewayPayment",
    "IdempotencyKeyGenerator",
    "InstamojoAdapter",
    "LineItem",
    "PayUAdapter",
    "PaymentProviderAdapter",
    "PaytmAdapter",
    "PhonePeAdapter",
    "ProviderConfig",
    "RazorpayAdapter",
    "RefundResult",
    "StripeAdapter",
    "StubAdapter",
    "WebhookRequest",
    "WebhookResult",
    "WebhookUpdate",
    "backoff_delay",
    "get_adapter",
    "get_adapter_class",
    "get_adapter_for_event",
    "is_retryable_error",
    "list_providers",
    "register_adapter",
]
