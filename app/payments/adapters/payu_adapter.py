"""
PayU India adapter (hosted checkout form + merchant postservice API).

Credentials:
- merchant_key
- merchant_salt

Checkout is a browser form POST to PayU's _payment endpoint; the adapter
returns the endpoint URL plus the signed form fields. Callbacks are
form-encoded and authenticated with PayU's reverse SHA-512 hash.

udf1 carries the event id and udf2 the registration id so that listings can
be scoped to one event.
"""

from __future__ import annotations

import hashlib
from datetime import timedelta
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
    from datetime import datetime

    from events.models import Registration
    from payments.models import Installment, PaymentPlan

UDF_FIELDS = ("udf1", "udf2", "udf3", "udf4", "udf5")


def sha512(value: str) -> str:
    return hashlib.sha512(value.encode()).hexdigest()


@register_adapter
class PayUAdapter(PaymentProviderAdapter):
    name = ProviderName.PAYU.value
    display_name = "PayU"
    required_credentials = ("merchant_key", "merchant_salt")
    live_base_url = "https://secure.payu.in"
    test_base_url = "https://test.payu.in"

    supported_features = {
        "partial_payments": False,
        "subscriptions": False,
        "refunds": False,
        "webhooks": True,
        "saved_cards": False,
        "reconciliation_listing": True,
    }

    @property
    def api_url(self) -> str:
        host = "https://info.payu.in" if self.config.is_live else "https://test.payu.in"
        return self.config.extra.get("api_url") or f"{host}/merchant/postservice.php?form=2"

    @property
    def key(self) -> str:
        return self.config.credential("merchant_key")

    @property
    def salt(self) -> str:
        return self.config.credential("merchant_salt")

    # =========================================================================
    # Hashes
    # =========================================================================

    def payment_hash(self, fields: Mapping[str, Any]) -> str:
        """key|txnid|amount|productinfo|firstname|email|udf1..udf5||||||salt"""
        sequence = [
            self.key,
            fields["txnid"],
            fields["amount"],
            fields["productinfo"],
            fields["firstname"],
            fields["email"],
            *(fields.get(udf, "") for udf in UDF_FIELDS),
            "", "", "", "", "",
            self.salt,
        ]
        return sha512("|".join(str(part) for part in sequence))

    def response_hash(self, posted: Mapping[str, Any]) -> str:
        """salt|status||||||udf5|udf4|udf3|udf2|udf1|email|firstname|productinfo|amount|txnid|key"""
        sequence = [
            self.salt,
            posted.get("status", ""),
            "", "", "", "", "",
            *(posted.get(udf, "") for udf in reversed(UDF_FIELDS)),
            posted.get("email", ""),
            posted.get("firstname", ""),
            posted.get("productinfo", ""),
            posted.get("amount", ""),
            posted.get("txnid", ""),
            self.key,
        ]
        value = "|".join(str(part) for part in sequence)
        if posted.get("additionalCharges"):
            value = f"{posted['additionalCharges']}|{value}"
        return sha512(value)

    def _command(self, command: str, *args: str, operation: str, not_found_ok: bool = False):
        var1 = args[0] if args else ""
        data = {
            "key": self.key,
            "command": command,
            "hash": sha512(f"{self.key}|{command}|{var1}|{self.salt}"),
        }
        for index, value in enumerate(args, start=1):
            data[f"var{index}"] = value
        return self._request(
            "POST",
            self.api_url,
            operation=operation,
            data=data,
            not_found_ok=not_found_ok,
        )

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
        txnid = self._merchant_reference(registration)
        fields = {
            "key": self.key,
            "txnid": txnid,
            "amount": to_major_units(total),
            "productinfo": items[0].name if len(items) == 1 else "Event Registration",
            "firstname": registration.first_name or "Attendee",
            "email": registration.email,
            "phone": registration.phone or "9999999999",
            "surl": success_url,
            "furl": cancel_url,
            "udf1": str(self.config.event_id),
            "udf2": registration.registration_id,
        }
        fields["hash"] = self.payment_hash(fields)

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=txnid,
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            metadata=self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
        )
        return CheckoutResult(
            url=f"{self.base_url}/_payment",
            payment_id=str(record.pk),
            provider_payment_id=txnid,
            amount_cents=total,
            currency=record.currency,
            extra={"form_fields": fields},
        )

    # =========================================================================
    # Status & Reconciliation
    # =========================================================================

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        response = self._command(
            "verify_payment",
            provider_payment_id,
            operation="verify_payment",
            not_found_ok=True,
        )
        details = (response.get("transaction_details") or {}).get(provider_payment_id) or {}
        status = str(details.get("status", "")).lower()
        if not details or status == "not found":
            raise PaymentNotFoundError(
                f"PayU has no transaction {provider_payment_id}",
                details={"provider": self.name, "provider_payment_id": provider_payment_id},
            )
        return self._details_to_payment(provider_payment_id, details)

    def fetch_payments(
        self,
        start: datetime,
        end: datetime,
        known_ids: Iterable[str] = (),
    ) -> list[GatewayPayment]:
        # The report API takes inclusive calendar dates.
        last_day = (end - timedelta(microseconds=1)).date()
        response = self._command(
            "get_Transaction_Details",
            start.date().isoformat(),
            last_day.isoformat(),
            operation="list_transactions",
        )
        if str(response.get("status")) not in ("1", "True", "true"):
            raise GatewayRequestError(
                f"PayU transaction listing failed: {response.get('msg')}",
                provider=self.name,
                details={"response": response},
            )
        return [
            self._details_to_payment(transaction["txnid"], transaction)
            for transaction in response.get("Transaction_details") or []
            if transaction.get("udf1") in (None, "", str(self.config.event_id))
        ]

    def _details_to_payment(self, txnid: str, details: Mapping[str, Any]) -> GatewayPayment:
        amount = details.get("amt", details.get("amount"))
        return GatewayPayment(
            provider_payment_id=txnid,
            status=str(details.get("status", "")).lower(),
            amount_cents=to_minor_units(amount) if amount not in (None, "") else None,
            currency="INR",
            method=str(details.get("mode") or "").lower(),
            created_at=parse_datetime(str(details.get("addedon") or "")),
            email=details.get("email"),
            registration_ref=details.get("udf2"),
            raw_response=dict(details),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        posted = request.form() if "json" not in request.content_type else request.json()
        received = posted.get("hash")
        if not received:
            self._invalid_signature("missing hash field")
        if not constant_time_equals(self.response_hash(posted), received):
            self._invalid_signature("reverse hash mismatch")
        return posted

    def webhook_event_id(self, payload, request) -> str | None:
        mihpayid = payload.get("mihpayid")
        return f"{mihpayid}:{payload.get('status')}" if mihpayid else None

    def webhook_event_type(self, payload) -> str:
        return str(payload.get("status") or "")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        status = payload.get("status")
        if not payload.get("txnid"):
            return None

        common = {
            "event_type": str(status or ""),
            "provider_payment_id": payload["txnid"],
            "amount_cents": to_minor_units(payload.get("amount")) or None,
            "method": str(payload.get("mode") or "").lower(),
            "metadata": {"mihpayid": payload.get("mihpayid")},
            "raw_response": dict(payload),
        }

        if status == "success":
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                captured_at=timezone.now(),
                **common,
            )
        if status == "failure":
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=payload.get("error_Message") or "Payment failed",
                **common,
            )
        return None
