"""
PhonePe adapter (PG Pay API, redirect flow).

Credentials:
- merchant_id
- salt_key, salt_index: used for the X-VERIFY checksum

Every request body is base64 JSON; X-VERIFY is
sha256(base64_body + api_path + salt_key) + "###" + salt_index.
Server-to-server callbacks carry the same base64 JSON in a "response" field.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from payments.adapters.base import (
    CheckoutResult,
    GatewayPayment,
    PaymentProviderAdapter,
    WebhookRequest,
    WebhookUpdate,
    constant_time_equals,
)
from payments.adapters.registry import register_adapter
from payments.exceptions import GatewayRequestError, PaymentNotFoundError
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from events.models import Registration
    from payments.models import Installment, PaymentPlan

PAY_PATH = "/pg/v1/pay"

# PhonePe response code -> gateway status understood by normalization.
RESPONSE_CODES = {
    "PAYMENT_SUCCESS": "success",
    "PAYMENT_PENDING": "created",
    "PAYMENT_INITIATED": "created",
    "PAYMENT_ERROR": "failed",
    "PAYMENT_DECLINED": "failed",
    "TIMED_OUT": "failed",
}

FAILURE_CODES = ("PAYMENT_ERROR", "PAYMENT_DECLINED")


@register_adapter
class PhonePeAdapter(PaymentProviderAdapter):
    name = ProviderName.PHONEPE.value
    display_name = "PhonePe"
    required_credentials = ("merchant_id", "salt_key", "salt_index")
    live_base_url = "https://api.phonepe.com/apis/hermes"
    test_base_url = "https://api-preprod.phonepe.com/apis/pg-sandbox"

    def _checksum(self, message: str) -> str:
        salt_key = self.config.credential("salt_key")
        digest = hashlib.sha256((message + salt_key).encode()).hexdigest()
        return f"{digest}###{self.config.credential('salt_index')}"

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
        transaction_id = self._merchant_reference(registration)[:38]
        payload = {
            "merchantId": self.config.credential("merchant_id"),
            "merchantTransactionId": transaction_id,
            "merchantUserId": str(registration.pk).replace("-", "")[:36],
            "amount": total,
            "redirectUrl": success_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": self.notify_url(),
            "mobileNumber": registration.phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(payload).encode()).decode()

        response = self._request(
            "POST",
            f"{self.base_url}{PAY_PATH}",
            operation="create_pay_request",
            headers={"X-VERIFY": self._checksum(encoded + PAY_PATH)},
            json={"request": encoded},
            log_context={"registration_id": registration.registration_id, "amount_cents": total},
        )
        if response.get("success") is not True:
            raise GatewayRequestError(
                f"PhonePe rejected the pay request: {response.get('code')}",
                provider=self.name,
                details={"code": response.get("code"), "message": response.get("message")},
            )
        redirect_url = (
            ((response.get("data") or {}).get("instrumentResponse") or {})
            .get("redirectInfo", {})
            .get("url")
        )

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=transaction_id,
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            raw_response=response,
            metadata=self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
        )
        return CheckoutResult(
            url=redirect_url,
            payment_id=str(record.pk),
            provider_payment_id=transaction_id,
            amount_cents=total,
            currency=record.currency,
            raw_response=response,
        )

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        merchant_id = self.config.credential("merchant_id")
        path = f"/pg/v1/status/{merchant_id}/{provider_payment_id}"
        response = self._request(
            "GET",
            f"{self.base_url}{path}",
            operation="check_status",
            headers={"X-VERIFY": self._checksum(path), "X-MERCHANT-ID": merchant_id},
            not_found_ok=True,
        )
        code = response.get("code", "")
        if code == "PAYMENT_NOT_FOUND":
            raise PaymentNotFoundError(
                f"PhonePe has no transaction {provider_payment_id}",
                details={"provider": self.name, "provider_payment_id": provider_payment_id},
            )
        data = response.get("data") or {}
        return GatewayPayment(
            provider_payment_id=provider_payment_id,
            status=RESPONSE_CODES.get(code, code.lower()),
            amount_cents=data.get("amount"),
            currency="INR",
            method=((data.get("paymentInstrument") or {}).get("type") or "").lower(),
            raw_response=response,
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        received = request.header("x-verify")
        if not received:
            self._invalid_signature("missing X-VERIFY header")

        checksum, _, salt_index = received.partition("###")
        expected = hashlib.sha256(
            request.body + self.config.credential("salt_key").encode()
        ).hexdigest()
        if not constant_time_equals(expected, checksum):
            self._invalid_signature("checksum mismatch")
        if salt_index and salt_index != str(self.config.credential("salt_index")):
            self._invalid_signature("salt index mismatch")

        body = request.json()
        if "response" in body:
            try:
                return json.loads(base64.b64decode(body["response"]))
            except ValueError:
                self._invalid_signature("response field is not base64 JSON")
        return body

    def webhook_event_id(self, payload, request) -> str | None:
        transaction_id = (payload.get("data") or {}).get("transactionId")
        return f"{transaction_id}:{payload.get('code')}" if transaction_id else None

    def webhook_event_type(self, payload) -> str:
        return str(payload.get("code") or "")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        code = payload.get("code", "")
        data = payload.get("data") or {}
        if not data.get("merchantTransactionId"):
            return None

        common = {
            "event_type": code,
            "provider_payment_id": data["merchantTransactionId"],
            "amount_cents": data.get("amount"),
            "method": ((data.get("paymentInstrument") or {}).get("type") or "").lower(),
            "metadata": {"phonepe_transaction_id": data.get("transactionId")},
            "raw_response": dict(payload),
        }

        if code == "PAYMENT_SUCCESS":
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                captured_at=timezone.now(),
                **common,
            )
        if code in FAILURE_CODES:
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=payload.get("message") or code,
                **common,
            )
        return None
