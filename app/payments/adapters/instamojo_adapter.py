"""
Instamojo adapter (Payment Requests API v1.1).

Credentials:
- api_key, auth_token: sent as X-Api-Key / X-Auth-Token
- hmac_salt: private salt used to sign webhooks

The payment request id is the provider payment id. Instamojo has no refund
API for payment requests, so refunds are not supported.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import TYPE_CHECKING, Any

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from payments.adapters.base import (
    CheckoutResult,
    GatewayPayment,
    PaymentProviderAdapter,
    WebhookRequest,
    WebhookUpdate,
    constant_time_equals,
    to_major_units,
    to_minor_units,
)
from payments.adapters.registry import register_adapter
from payments.exceptions import GatewayRequestError
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime

    from events.models import Registration
    from payments.models import Installment, PaymentPlan

REQUEST_STATUS = {
    "pending": "created",
    "sent": "created",
    "completed": "completed",
    "expired": "cancelled",
}


@register_adapter
class InstamojoAdapter(PaymentProviderAdapter):
    name = ProviderName.INSTAMOJO.value
    display_name = "Instamojo"
    required_credentials = ("api_key", "auth_token", "hmac_salt")
    live_base_url = "https://www.instamojo.com/api/1.1"
    test_base_url = "https://test.instamojo.com/api/1.1"

    supported_features = {
        "partial_payments": False,
        "subscriptions": False,
        "refunds": False,
        "webhooks": True,
        "saved_cards": False,
        "reconciliation_listing": True,
    }

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-Api-Key": self.config.credential("api_key"),
            "X-Auth-Token": self.config.credential("auth_token"),
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
        response = self._request(
            "POST",
            f"{self.base_url}/payment-requests/",
            operation="create_payment_request",
            headers=self.headers,
            data={
                "purpose": f"Registration {registration.registration_id}"[:30],
                "amount": to_major_units(total),
                "buyer_name": registration.full_name or registration.email,
                "email": registration.email,
                "phone": registration.phone,
                "redirect_url": success_url,
                "webhook": self.notify_url(),
                "allow_repeated_payments": False,
            },
            log_context={"registration_id": registration.registration_id, "amount_cents": total},
        )
        payment_request = response.get("payment_request") or {}
        if not response.get("success") or not payment_request.get("id"):
            raise GatewayRequestError(
                "Instamojo did not create a payment request",
                provider=self.name,
                details={"response": response},
            )

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=payment_request["id"],
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            raw_response=response,
            metadata=self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
        )
        return CheckoutResult(
            url=payment_request["longurl"],
            payment_id=str(record.pk),
            provider_payment_id=payment_request["id"],
            amount_cents=total,
            currency=record.currency,
            raw_response=response,
        )

    # =========================================================================
    # Status & Reconciliation
    # =========================================================================

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        response = self._request(
            "GET",
            f"{self.base_url}/payment-requests/{provider_payment_id}/",
            operation="fetch_payment_request",
            headers=self.headers,
            not_found_ok=True,
        )
        return self._request_to_payment(response.get("payment_request") or {})

    def fetch_payments(
        self,
        start: datetime,
        end: datetime,
        known_ids: Iterable[str] = (),
    ) -> list[GatewayPayment]:
        response = self._request(
            "GET",
            f"{self.base_url}/payment-requests/",
            operation="list_payment_requests",
            headers=self.headers,
            params={
                "min_created_at": start.isoformat(),
                "max_created_at": end.isoformat(),
            },
        )
        notify_url = self.notify_url()
        return [
            self._request_to_payment(payment_request)
            for payment_request in response.get("payment_requests", [])
            if payment_request.get("webhook") in (None, "", notify_url)
        ]

    def _request_to_payment(self, payment_request: Mapping[str, Any]) -> GatewayPayment:
        status = str(payment_request.get("status", "")).lower()
        payments = payment_request.get("payments") or []
        fee = sum(to_minor_units(p.get("fees")) for p in payments if isinstance(p, dict))
        return GatewayPayment(
            provider_payment_id=payment_request["id"],
            status=REQUEST_STATUS.get(status, status),
            amount_cents=to_minor_units(payment_request.get("amount")),
            currency="INR",
            fee_cents=fee or None,
            created_at=parse_datetime(payment_request.get("created_at") or ""),
            email=payment_request.get("email"),
            raw_response=dict(payment_request),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        signature = request.header("x-instamojo-signature")
        if not signature:
            self._invalid_signature("missing X-Instamojo-Signature header")

        digest = hmac.new(
            self.config.credential("hmac_salt").encode(),
            request.body,
            hashlib.sha1,
        ).digest()
        expected = base64.b64encode(digest).decode()
        if not constant_time_equals(expected, signature):
            self._invalid_signature("signature mismatch")

        if "application/json" in request.content_type:
            return request.json()
        return request.form()

    def webhook_event_id(self, payload, request) -> str | None:
        payment_id = payload.get("payment_id")
        return f"{payment_id}:{payload.get('status')}" if payment_id else None

    def webhook_event_type(self, payload) -> str:
        return str(payload.get("status") or "")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        status = payload.get("status")
        provider_payment_id = payload.get("payment_request_id")
        if not provider_payment_id:
            return None

        common = {
            "event_type": str(status or ""),
            "provider_payment_id": provider_payment_id,
            "amount_cents": to_minor_units(payload.get("amount")) or None,
            "currency": payload.get("currency") or None,
            "metadata": {"instamojo_payment_id": payload.get("payment_id")},
            "raw_response": dict(payload),
        }

        if status == "Credit":
            fees = payload.get("fees")
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                fee_cents=to_minor_units(fees) if fees not in (None, "") else None,
                captured_at=parse_datetime(payload.get("created_at") or "") or timezone.now(),
                **common,
            )
        if status == "Failed":
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason="Instamojo reported the payment as failed",
                **common,
            )
        return None
