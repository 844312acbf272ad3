"""
Razorpay adapter (Orders API v1).

Credentials:
- key_id, key_secret: API key pair (HTTP basic auth)
- webhook_secret: Secret configured on the Razorpay webhook

The Razorpay order id is the provider payment id. The id of the captured
payment inside the order (pay_xxx) is kept in the record's metadata because
refunds are issued against it.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from django.conf import settings

from payments.adapters.base import (
    CheckoutResult,
    GatewayPayment,
    PaymentProviderAdapter,
    RefundResult,
    WebhookRequest,
    WebhookUpdate,
    constant_time_equals,
)
from payments.adapters.registry import register_adapter
from payments.exceptions import PaymentValidationError
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from events.models import Registration
    from payments.models import Installment, PaymentPlan, PaymentRecord

# Razorpay order status -> gateway status understood by normalization.
# Orders past "created" are resolved through their payments instead.
ORDER_STATUS = {
    "created": "created",
    "attempted": "created",
    "paid": "paid",
}

PAGE_SIZE = 100


def _from_timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(int(value), tz=UTC) if value else None


def _status_from_payments(payments: list[Mapping[str, Any]], order_status: str) -> str:
    """
    Status of an order as its payments report it.

    A captured payment wins over failed attempts; refunds show up on the
    captured payment as status "refunded" or a non-zero amount_refunded.
    """
    for payment in payments:
        if payment.get("status") not in ("captured", "refunded"):
            continue
        refunded = payment.get("amount_refunded") or 0
        if payment.get("status") == "refunded" or (refunded and refunded >= (payment.get("amount") or 0)):
            return "refunded"
        if refunded:
            return "partial-refund"
        return "paid"
    if any(payment.get("status") == "failed" for payment in payments):
        return "failed"
    return ORDER_STATUS.get(order_status, order_status)


@register_adapter
class RazorpayAdapter(PaymentProviderAdapter):
    name = ProviderName.RAZORPAY.value
    display_name = "Razorpay"
    required_credentials = ("key_id", "key_secret", "webhook_secret")
    live_base_url = "https://api.razorpay.com/v1"
    test_base_url = "https://api.razorpay.com/v1"

    supported_features = {
        "partial_payments": True,
        "subscriptions": False,
        "refunds": True,
        "webhooks": True,
        "saved_cards": False,
        "reconciliation_listing": True,
    }

    @property
    def auth(self) -> tuple[str, str]:
        return (self.config.credential("key_id"), self.config.credential("key_secret"))

    # =========================================================================
    # Checkout
    # =========================================================================

    def create_checkout(
        self,
        registration: Registration,
        line_items: Iterable[Any],
        success_url: str,
        cancel_url: str,
        payment_plan: PaymentPlan | None = None,
        installment: Installment | None = None,
    ) -> CheckoutResult:
        items, total = self._checkout_total(line_items)
        reference = self._merchant_reference(registration)
        notes = {
            "registration_id": registration.registration_id,
            "event_id": str(self.config.event_id),
        }
        if installment is not None:
            notes["installment_id"] = str(installment.pk)

        order = self._request(
            "POST",
            f"{self.base_url}/orders",
            operation="create_order",
            auth=self.auth,
            json={
                "amount": total,
                "currency": self.currency,
                "receipt": reference[:40],
                "payment_capture": 1,
                "notes": notes,
            },
            log_context={"registration_id": registration.registration_id, "amount_cents": total},
        )

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=order["id"],
            amount_cents=total,
            currency=order.get("currency", self.currency),
            status=PaymentStatus.INITIATED,
            raw_response=order,
            metadata=self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
        )

        public_url = getattr(settings, "PAYMENT_PUBLIC_URL", "").rstrip("/")
        query = urlencode(
            {
                "order_id": order["id"],
                "key_id": self.config.credential("key_id"),
                "success": success_url,
                "cancel": cancel_url,
            }
        )
        return CheckoutResult(
            url=f"{public_url}/razorpay/checkout?{query}",
            payment_id=str(record.pk),
            provider_payment_id=order["id"],
            amount_cents=total,
            currency=record.currency,
            extra={"key_id": self.config.credential("key_id")},
            raw_response=order,
        )

    # =========================================================================
    # Refunds
    # =========================================================================

    def refund_payment(
        self,
        record: PaymentRecord,
        amount_cents: int | None = None,
        reason: str = "",
    ) -> RefundResult:
        self.require_feature("refunds")
        amount = amount_cents if amount_cents is not None else record.refundable_cents
        payment_id = record.get_meta("razorpay_payment_id") or self._captured_payment_id(
            record.provider_payment_id
        )

        refund = self._request(
            "POST",
            f"{self.base_url}/payments/{payment_id}/refund",
            operation="create_refund",
            auth=self.auth,
            json={"amount": amount, "notes": {"reason": reason[:255]}},
            log_context={"payment_id": str(record.pk), "amount_cents": amount},
        )

        refund_record = self.record_gateway_refund(
            record,
            amount_cents=amount,
            refund_id=refund["id"],
            reason=reason,
            raw_response=refund,
        )
        return RefundResult(
            refund_id=refund["id"],
            status=refund.get("status", "processed"),
            amount_cents=refund.get("amount", amount),
            payment_id=str(refund_record.pk),
            raw_response=refund,
        )

    def _order_payments(self, order_id: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"{self.base_url}/orders/{order_id}/payments",
            operation="list_order_payments",
            auth=self.auth,
            not_found_ok=True,
        )
        return list(response.get("items") or [])

    def _captured_payment_id(self, order_id: str) -> str:
        for payment in self._order_payments(order_id):
            if payment.get("status") == "captured":
                return payment["id"]
        raise PaymentValidationError(
            "Razorpay order has no captured payment to refund",
            details={"provider_payment_id": order_id},
        )

    # =========================================================================
    # Status & Reconciliation
    # =========================================================================

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        order = self._request(
            "GET",
            f"{self.base_url}/orders/{provider_payment_id}",
            operation="fetch_order",
            auth=self.auth,
            not_found_ok=True,
        )
        return self._order_to_payment(order)

    def fetch_payments(
        self,
        start: datetime,
        end: datetime,
        known_ids: Iterable[str] = (),
    ) -> list[GatewayPayment]:
        payments = []
        skip = 0
        while True:
            page = self._request(
                "GET",
                f"{self.base_url}/orders",
                operation="list_orders",
                auth=self.auth,
                params={
                    "from": int(start.timestamp()),
                    "to": int(end.timestamp()) - 1,
                    "count": PAGE_SIZE,
                    "skip": skip,
                },
            )
            items = page.get("items", [])
            for order in items:
                notes = order.get("notes") or {}
                if isinstance(notes, dict) and notes.get("event_id") not in (
                    None,
                    str(self.config.event_id),
                ):
                    continue
                payments.append(self._order_to_payment(order))
            if len(items) < PAGE_SIZE:
                return payments
            skip += PAGE_SIZE

    def _order_to_payment(self, order: Mapping[str, Any]) -> GatewayPayment:
        notes = order.get("notes") or {}
        if not isinstance(notes, dict):
            notes = {}
        status = order.get("status", "")
        if status != "created":
            status = _status_from_payments(self._order_payments(order["id"]), status)
        return GatewayPayment(
            provider_payment_id=order["id"],
            status=ORDER_STATUS.get(status, status),
            amount_cents=order.get("amount"),
            currency=order.get("currency"),
            created_at=_from_timestamp(order.get("created_at")),
            registration_ref=notes.get("registration_id"),
            raw_response=dict(order),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        signature = request.header("x-razorpay-signature")
        if not signature:
            self._invalid_signature("missing X-Razorpay-Signature header")

        expected = hmac.new(
            self.config.credential("webhook_secret").encode(),
            request.body,
            hashlib.sha256,
        ).hexdigest()
        if not constant_time_equals(expected, signature):
            self._invalid_signature("signature mismatch")
        return request.json()

    def webhook_event_id(self, payload, request) -> str | None:
        return request.header("x-razorpay-event-id")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        event_type = payload.get("event", "")
        entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
        if not entity.get("order_id"):
            return None

        common = {
            "event_type": event_type,
            "provider_payment_id": entity["order_id"],
            "amount_cents": entity.get("amount"),
            "currency": entity.get("currency"),
            "method": entity.get("method") or "",
            "metadata": {"razorpay_payment_id": entity.get("id")},
            "raw_response": dict(payload),
        }

        if event_type == "payment.captured":
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                fee_cents=entity.get("fee") or 0,
                captured_at=_from_timestamp(entity.get("created_at")),
                **common,
            )
        if event_type == "payment.failed":
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=entity.get("error_description") or "Payment failed",
                **common,
            )
        return None
