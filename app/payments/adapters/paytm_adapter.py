"""
Paytm adapter (PG initiateTransaction + order status API).

Credentials:
- mid: merchant id
- key: merchant key

Callbacks are form-encoded. Their CHECKSUMHASH is the hex SHA-256 of every
other posted value, in posted order, joined by "|" and followed by "|key".
"""

from __future__ import annotations

import base64
import hashlib
import json
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
from payments.exceptions import GatewayRequestError, PaymentNotFoundError
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from events.models import Registration
    from payments.models import Installment, PaymentPlan

TXN_STATUS = {
    "TXN_SUCCESS": "success",
    "TXN_FAILURE": "failed",
    "PENDING": "created",
}

# Order status result codes meaning "no such order".
NOT_FOUND_CODES = ("334", "335", "501")


@register_adapter
class PaytmAdapter(PaymentProviderAdapter):
    name = ProviderName.PAYTM.value
    display_name = "Paytm"
    required_credentials = ("mid", "key")
    live_base_url = "https://securegw.paytm.in"
    test_base_url = "https://securegw-stage.paytm.in"

    @property
    def mid(self) -> str:
        return self.config.credential("mid")

    @property
    def website(self) -> str:
        return self.config.extra.get("website") or ("DEFAULT" if self.config.is_live else "WEBSTAGING")

    def request_signature(self, body: Mapping[str, Any]) -> str:
        message = json.dumps(body, separators=(",", ":")) + self.config.credential("key")
        return base64.b64encode(hashlib.sha256(message.encode()).digest()).decode()

    def callback_checksum(self, posted: Mapping[str, Any]) -> str:
        values = [str(value) for name, value in posted.items() if name != "CHECKSUMHASH"]
        message = "|".join(values) + "|" + self.config.credential("key")
        return hashlib.sha256(message.encode()).hexdigest()

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
        order_id = self._merchant_reference(registration, prefix="REG")
        body = {
            "requestType": "Payment",
            "mid": self.mid,
            "websiteName": self.website,
            "orderId": order_id,
            "callbackUrl": success_url,
            "txnAmount": {"value": to_major_units(total), "currency": self.currency},
            "userInfo": {
                "custId": registration.registration_id,
                "email": registration.email,
            },
        }
        response = self._request(
            "POST",
            f"{self.base_url}/theia/api/v1/initiateTransaction",
            operation="initiate_transaction",
            params={"mid": self.mid, "orderId": order_id},
            json={"body": body, "head": {"signature": self.request_signature(body)}},
            log_context={"registration_id": registration.registration_id, "amount_cents": total},
        )
        result = response.get("body") or {}
        txn_token = result.get("txnToken")
        if not txn_token:
            result_info = result.get("resultInfo") or {}
            raise GatewayRequestError(
                f"Paytm did not issue a transaction token: {result_info.get('resultMsg')}",
                provider=self.name,
                details={"result_code": result_info.get("resultCode")},
            )

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=order_id,
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            raw_response=response,
            metadata=self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
        )
        return CheckoutResult(
            url=f"{self.base_url}/theia/api/v1/showPaymentPage?mid={self.mid}&orderId={order_id}",
            payment_id=str(record.pk),
            provider_payment_id=order_id,
            amount_cents=total,
            currency=record.currency,
            extra={"txn_token": txn_token},
            raw_response=response,
        )

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        body = {"mid": self.mid, "orderId": provider_payment_id}
        response = self._request(
            "POST",
            f"{self.base_url}/v3/order/status",
            operation="order_status",
            json={"body": body, "head": {"signature": self.request_signature(body)}},
            not_found_ok=True,
        )
        result = response.get("body") or {}
        result_info = result.get("resultInfo") or {}
        if str(result_info.get("resultCode")) in NOT_FOUND_CODES:
            raise PaymentNotFoundError(
                f"Paytm has no order {provider_payment_id}",
                details={"provider": self.name, "provider_payment_id": provider_payment_id},
            )
        status = result_info.get("resultStatus", "")
        amount = result.get("txnAmount")
        return GatewayPayment(
            provider_payment_id=provider_payment_id,
            status=TXN_STATUS.get(status, status.lower()),
            amount_cents=to_minor_units(amount) if amount else None,
            currency="INR",
            method=str(result.get("paymentMode") or "").lower(),
            captured_at=parse_datetime(result.get("txnDate") or ""),
            raw_response=response,
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        posted = request.form() if "json" not in request.content_type else request.json()
        received = posted.get("CHECKSUMHASH")
        if not received:
            self._invalid_signature("missing CHECKSUMHASH")
        if not constant_time_equals(self.callback_checksum(posted), received):
            self._invalid_signature("checksum mismatch")
        return posted

    def webhook_event_id(self, payload, request) -> str | None:
        txn_id = payload.get("TXNID")
        return f"{txn_id}:{payload.get('STATUS')}" if txn_id else None

    def webhook_event_type(self, payload) -> str:
        return str(payload.get("STATUS") or "")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        status = payload.get("STATUS")
        if not payload.get("ORDERID"):
            return None

        common = {
            "event_type": str(status or ""),
            "provider_payment_id": payload["ORDERID"],
            "amount_cents": to_minor_units(payload.get("TXNAMOUNT")) or None,
            "currency": payload.get("CURRENCY") or None,
            "method": str(payload.get("PAYMENTMODE") or "").lower(),
            "metadata": {"paytm_txn_id": payload.get("TXNID")},
            "raw_response": dict(payload),
        }

        if status == "TXN_SUCCESS":
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                captured_at=parse_datetime(payload.get("TXNDATE") or "") or timezone.now(),
                **common,
            )
        if status == "TXN_FAILURE":
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=payload.get("RESPMSG") or "Payment failed",
                **common,
            )
        return None
