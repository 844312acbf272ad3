"""
Cashfree Payments adapter (PG Orders API).

Credentials:
- app_id: sent as x-client-id
- secret_key: sent as x-client-secret and used to sign webhooks

Webhook signature: base64(HMAC-SHA256(secret_key, timestamp + raw_body))
in x-webhook-signature, with the timestamp in x-webhook-timestamp. Older
integrations send x-cf-signature over the raw body only.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import uuid
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from payments.adapters.base import (
    CheckoutResult,
    GatewayPayment,
    PaymentProviderAdapter,
    RefundResult,
    WebhookRequest,
    WebhookUpdate,
    constant_time_equals,
    to_major_units,
    to_minor_units,
)
from payments.adapters.registry import register_adapter
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from events.models import Registration
    from payments.models import Installment, PaymentPlan, PaymentRecord

API_VERSION = "2023-08-01"

ORDER_STATUS = {
    "ACTIVE": "created",
    "PAID": "paid",
    "EXPIRED": "cancelled",
    "TERMINATED": "cancelled",
    "TERMINATION_REQUESTED": "cancelled",
}

SUCCESS_EVENTS = ("PAYMENT_SUCCESS_WEBHOOK", "PAYMENT_SUCCESS")
FAILURE_EVENTS = ("PAYMENT_FAILED_WEBHOOK", "PAYMENT_FAILED")


@register_adapter
class CashfreeAdapter(PaymentProviderAdapter):
    name = ProviderName.CASHFREE.value
    display_name = "Cashfree"
    required_credentials = ("app_id", "secret_key")
    live_base_url = "https://api.cashfree.com/pg"
    test_base_url = "https://sandbox.cashfree.com/pg"

    supported_features = {
        "partial_payments": True,
        "subscriptions": False,
        "refunds": True,
        "webhooks": True,
        "saved_cards": False,
        "reconciliation_listing": False,
    }

    @property
    def headers(self) -> dict[str, str]:
        return {
            "x-client-id": self.config.credential("app_id"),
            "x-client-secret": self.config.credential("secret_key"),
            "x-api-version": API_VERSION,
        }

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
        order_id = self._merchant_reference(registration)
        order = self._request(
            "POST",
            f"{self.base_url}/orders",
            operation="create_order",
            headers=self.headers,
            json={
                "order_id": order_id,
                "order_amount": float(to_major_units(total)),
                "order_currency": self.currency,
                "customer_details": {
                    "customer_id": registration.registration_id.replace("-", "_"),
                    "customer_email": registration.email,
                    "customer_phone": registration.phone or "9999999999",
                    "customer_name": registration.full_name,
                },
                "order_meta": {
                    "return_url": success_url,
                    "notify_url": self.notify_url(),
                },
                "order_tags": {
                    "event_id": str(self.config.event_id),
                    "registration_id": registration.registration_id,
                },
            },
            log_context={"registration_id": registration.registration_id, "amount_cents": total},
        )

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=order_id,
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            raw_response=order,
            metadata=self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
        )

        url = order.get("payment_link")
        if not url:
            public_url = getattr(settings, "PAYMENT_PUBLIC_URL", "").rstrip("/")
            query = urlencode(
                {"session": order.get("payment_session_id", ""), "mode": self.mode}
            )
            url = f"{public_url}/cashfree/checkout?{query}"
        return CheckoutResult(
            url=url,
            payment_id=str(record.pk),
            provider_payment_id=order_id,
            amount_cents=total,
            currency=record.currency,
            extra={"payment_session_id": order.get("payment_session_id")},
            raw_response=order,
        )

    def refund_payment(
        self,
        record: PaymentRecord,
        amount_cents: int | None = None,
        reason: str = "",
    ) -> RefundResult:
        self.require_feature("refunds")
        amount = amount_cents if amount_cents is not None else record.refundable_cents
        refund_id = f"refund_{uuid.uuid4().hex[:20]}"

        refund = self._request(
            "POST",
            f"{self.base_url}/orders/{record.provider_payment_id}/refunds",
            operation="create_refund",
            headers=self.headers,
            json={
                "refund_amount": float(to_major_units(amount)),
                "refund_id": refund_id,
                "refund_note": reason[:100],
            },
            log_context={"payment_id": str(record.pk), "amount_cents": amount},
        )

        refund_record = self.record_gateway_refund(
            record,
            amount_cents=amount,
            refund_id=refund.get("refund_id", refund_id),
            reason=reason,
            raw_response=refund,
        )
        return RefundResult(
            refund_id=refund.get("refund_id", refund_id),
            status=str(refund.get("refund_status", "PENDING")).lower(),
            amount_cents=amount,
            payment_id=str(refund_record.pk),
            raw_response=refund,
        )

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        order = self._request(
            "GET",
            f"{self.base_url}/orders/{provider_payment_id}",
            operation="fetch_order",
            headers=self.headers,
            not_found_ok=True,
        )
        status = order.get("order_status", "")
        customer = order.get("customer_details") or {}
        return GatewayPayment(
            provider_payment_id=order.get("order_id", provider_payment_id),
            status=ORDER_STATUS.get(status, status.lower()),
            amount_cents=to_minor_units(order.get("order_amount")),
            currency=order.get("order_currency"),
            created_at=parse_datetime(order.get("created_at") or ""),
            email=customer.get("customer_email"),
            registration_ref=(order.get("order_tags") or {}).get("registration_id"),
            raw_response=order,
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        signature = request.header("x-webhook-signature")
        timestamp = request.header("x-webhook-timestamp")
        if signature:
            if not timestamp:
                self._invalid_signature("missing x-webhook-timestamp header")
            message = timestamp.encode() + request.body
        else:
            signature = request.header("x-cf-signature")
            if not signature:
                self._invalid_signature("missing x-webhook-signature header")
            message = request.body

        digest = hmac.new(
            self.config.credential("secret_key").encode(), message, hashlib.sha256
        ).digest()
        if not constant_time_equals(base64.b64encode(digest).decode(), signature):
            self._invalid_signature("signature mismatch")
        return request.json()

    def webhook_event_id(self, payload, request) -> str | None:
        payment = (payload.get("data") or {}).get("payment") or {}
        cf_payment_id = payment.get("cf_payment_id")
        if not cf_payment_id:
            return None
        return f"{cf_payment_id}:{self.webhook_event_type(payload)}"

    def webhook_event_type(self, payload) -> str:
        return str(payload.get("type") or payload.get("event") or "")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        event_type = self.webhook_event_type(payload)
        data = payload.get("data") or {}
        order = data.get("order") or {}
        payment = data.get("payment") or {}
        if not order.get("order_id"):
            return None

        amount = payment.get("payment_amount", order.get("order_amount"))
        common = {
            "event_type": event_type,
            "provider_payment_id": order["order_id"],
            "amount_cents": to_minor_units(amount) if amount is not None else None,
            "currency": payment.get("payment_currency") or order.get("order_currency"),
            "method": str(payment.get("payment_group") or ""),
            "metadata": {"cf_payment_id": payment.get("cf_payment_id")},
            "raw_response": dict(payload),
        }

        if event_type in SUCCESS_EVENTS:
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                captured_at=parse_datetime(payment.get("payment_time") or "") or timezone.now(),
                **common,
            )
        if event_type in FAILURE_EVENTS:
            error = data.get("error_details") or {}
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=error.get("error_description") or payment.get("payment_message") or "Payment failed",
                **common,
            )
        return None
