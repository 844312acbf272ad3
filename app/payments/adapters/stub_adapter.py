"""
Stub gateway adapter for tests, demos and local development.

Behaves like a real gateway without any network calls:
- Checkout returns a mock payment page URL on PAYMENT_CLIENT_URL
- Webhooks are signed with HMAC-SHA256 over "{timestamp}.{body}" using the
  event's webhook_secret (or PAYMENT_STUB_WEBHOOK_SECRET)
- simulate_payment_success / simulate_payment_failure drive the same signed
  webhook path a real gateway callback would take
- Direct charges of 999999 minor units or more are declined

The gateway side is a process-local ledger (StubLedger). Reconciliation
lists the local stub records for the window, overlaid with the ledger.

Usage:
    adapter = get_adapter_for_event(event)      # event configured for "stub"
    checkout = adapter.create_checkout(registration, [LineItem("Pass", 50000)], ok, cancel)
    adapter.simulate_payment_success(checkout.provider_payment_id)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from django.conf import settings
from django.utils import timezone

from payments.adapters.base import (
    ChargeResult,
    CheckoutResult,
    GatewayPayment,
    PaymentProviderAdapter,
    RefundResult,
    WebhookRequest,
    WebhookResult,
    WebhookUpdate,
    constant_time_equals,
)
from payments.adapters.registry import register_adapter
from payments.exceptions import (
    GatewayRequestError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime

    from events.models import Registration
    from payments.models import Installment, PaymentPlan, PaymentRecord

# Amounts at or above this are declined by process_payment().
DECLINE_THRESHOLD_CENTS = 999999

# Local status -> what the stub "gateway" reports.
_GATEWAY_STATUS = {
    PaymentStatus.INITIATED: "created",
    PaymentStatus.PAID: "captured",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.REFUNDED: "refunded",
    PaymentStatus.PARTIAL_REFUND: "partial-refund",
}


class StubLedger:
    """Thread-safe in-memory record of what the stub gateway has seen."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[str | None, GatewayPayment]] = {}

    def record(self, payment: GatewayPayment, event_id: str | None = None) -> None:
        with self._lock:
            self._entries[payment.provider_payment_id] = (event_id, payment)

    def update_status(self, provider_payment_id: str, status: str) -> None:
        with self._lock:
            entry = self._entries.get(provider_payment_id)
            if entry is not None:
                event_id, payment = entry
                self._entries[provider_payment_id] = (
                    event_id,
                    replace(payment, status=status),
                )

    def get(self, provider_payment_id: str) -> GatewayPayment | None:
        with self._lock:
            entry = self._entries.get(provider_payment_id)
        return entry[1] if entry else None

    def for_window(
        self, event_id: str | None, start: datetime, end: datetime
    ) -> list[GatewayPayment]:
        with self._lock:
            entries = list(self._entries.values())
        return [
            payment
            for entry_event_id, payment in entries
            if entry_event_id == event_id
            and (payment.created_at is None or start <= payment.created_at < end)
        ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@register_adapter
class StubAdapter(PaymentProviderAdapter):
    """Mock gateway implementing the full adapter contract."""

    name = ProviderName.STUB.value
    display_name = "Stub"
    required_credentials = ()

    supported_features = {
        "partial_payments": True,
        "subscriptions": False,
        "refunds": True,
        "webhooks": True,
        "saved_cards": True,
        "reconciliation_listing": True,
    }

    ledger = StubLedger()

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
        prefix = "stub_installment" if installment is not None else "stub_payment"
        provider_payment_id = f"{prefix}_{uuid.uuid4().hex[:16]}"

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=provider_payment_id,
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            method="mock_installment" if installment is not None else "mock",
            metadata=self._checkout_metadata(
                items, success_url, cancel_url, payment_plan, installment
            ),
        )
        self.ledger.record(
            GatewayPayment(
                provider_payment_id=provider_payment_id,
                status="created",
                amount_cents=total,
                currency=self.currency,
                created_at=record.created_at,
                email=registration.email,
                registration_ref=registration.registration_id,
            ),
            event_id=self.config.event_id,
        )

        query = {
            "payment_id": provider_payment_id,
            "amount": total,
            "registration_id": registration.registration_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if installment is not None:
            query["installment_id"] = str(installment.pk)
        client_url = getattr(settings, "PAYMENT_CLIENT_URL", "").rstrip("/")

        self.get_logger().info(
            "Created stub checkout",
            extra={
                "provider": self.name,
                "registration_id": registration.registration_id,
                "provider_payment_id": provider_payment_id,
                "amount_cents": total,
            },
        )
        return CheckoutResult(
            url=f"{client_url}/mock-payment?{urlencode(query)}",
            payment_id=str(record.pk),
            provider_payment_id=provider_payment_id,
            amount_cents=total,
            currency=record.currency,
        )

    # =========================================================================
    # Direct Charges & Refunds
    # =========================================================================

    def process_payment(
        self,
        registration: Registration,
        amount_cents: int,
        payment_method: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
        installment: Installment | None = None,
    ) -> ChargeResult:
        if amount_cents <= 0:
            raise PaymentValidationError(
                "Charge amount must be positive",
                details={"amount_cents": amount_cents},
            )
        provider_payment_id = f"stub_direct_{uuid.uuid4().hex[:16]}"
        succeeded = amount_cents < DECLINE_THRESHOLD_CENTS
        gateway_status = "captured" if succeeded else "failed"

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=provider_payment_id,
            amount_cents=amount_cents,
            currency=self.currency,
            status=gateway_status,
            method=str((payment_method or {}).get("type") or "mock_card"),
            failure_reason="" if succeeded else "Simulated decline",
            metadata={**(metadata or {}), "simulated_payment": True},
        )
        self.ledger.record(
            GatewayPayment(
                provider_payment_id=provider_payment_id,
                status=gateway_status,
                amount_cents=amount_cents,
                currency=record.currency,
                created_at=record.created_at,
                email=registration.email,
            ),
            event_id=self.config.event_id,
        )

        if not succeeded:
            raise GatewayRequestError(
                "Simulated payment failure",
                error_code="CARD_DECLINED",
                provider=self.name,
                details={"provider_payment_id": provider_payment_id},
            )

        return ChargeResult(
            payment_id=str(record.pk),
            provider_payment_id=provider_payment_id,
            status=gateway_status,
            amount_cents=amount_cents,
        )

    def refund_payment(
        self,
        record: PaymentRecord,
        amount_cents: int | None = None,
        reason: str = "",
    ) -> RefundResult:
        from payments.services.payment_record_service import PaymentRecordService

        self.require_feature("refunds")
        amount = amount_cents if amount_cents is not None else record.refundable_cents
        full_refund = amount >= record.refundable_cents
        refund_id = f"stub_refund_{uuid.uuid4().hex[:16]}"

        refund = PaymentRecordService.record_refund(
            record,
            amount_cents=amount,
            refund_provider_id=refund_id,
            reason=reason,
        )
        self.ledger.update_status(
            record.provider_payment_id,
            "refunded" if full_refund else "partial-refund",
        )
        return RefundResult(
            refund_id=refund_id,
            status="refunded",
            amount_cents=amount,
            payment_id=str(refund.pk),
        )

    # =========================================================================
    # Status & Reconciliation
    # =========================================================================

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        from payments.models import PaymentRecord

        ledger_entry = self.ledger.get(provider_payment_id)
        if ledger_entry is not None:
            return ledger_entry

        record = PaymentRecord.objects.filter(
            provider=self.name, provider_payment_id=provider_payment_id
        ).first()
        if record is None:
            raise PaymentNotFoundError(
                f"Stub payment {provider_payment_id} not found",
                details={"provider": self.name, "provider_payment_id": provider_payment_id},
            )
        return self._from_record(record)

    def fetch_payments(
        self,
        start: datetime,
        end: datetime,
        known_ids: Iterable[str] = (),
    ) -> list[GatewayPayment]:
        from payments.models import PaymentRecord

        payments: dict[str, GatewayPayment] = {}
        if self.event is not None:
            records = (
                PaymentRecord.objects.for_event(self.event)
                .filter(provider=self.name)
                .with_provider_id()
                .created_between(start, end)
            )
            for record in records:
                payments[record.provider_payment_id] = self._from_record(record)

        for entry in self.ledger.for_window(self.config.event_id, start, end):
            payments[entry.provider_payment_id] = entry
        return list(payments.values())

    def _from_record(self, record: PaymentRecord) -> GatewayPayment:
        return GatewayPayment(
            provider_payment_id=record.provider_payment_id,
            status=_GATEWAY_STATUS.get(record.status, record.status),
            amount_cents=record.amount_cents,
            currency=record.currency,
            fee_cents=record.fee_cents,
            method=record.method,
            captured_at=record.captured_at,
            created_at=record.created_at,
            email=record.registration.email if record.registration_id else None,
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    @property
    def webhook_secret(self) -> str:
        return self.config.credential("webhook_secret") or getattr(
            settings, "PAYMENT_STUB_WEBHOOK_SECRET", ""
        )

    def sign_payload(self, body: bytes, timestamp: str) -> str:
        message = f"{timestamp}.".encode() + body
        return hmac.new(self.webhook_secret.encode(), message, hashlib.sha256).hexdigest()

    def build_webhook_request(self, payload: Mapping[str, Any]) -> WebhookRequest:
        """Signed request exactly as the stub gateway would deliver it."""
        body = json.dumps(payload, sort_keys=True, default=str).encode()
        timestamp = str(int(time.time()))
        return WebhookRequest(
            body=body,
            headers={
                "Content-Type": "application/json",
                "X-Stub-Timestamp": timestamp,
                "X-Stub-Signature": self.sign_payload(body, timestamp),
            },
        )

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        signature = request.header("x-stub-signature")
        timestamp = request.header("x-stub-timestamp")
        if not signature or not timestamp:
            self._invalid_signature("missing x-stub-signature or x-stub-timestamp header")

        expected = self.sign_payload(request.body, timestamp)
        if not constant_time_equals(expected, signature):
            self._invalid_signature("signature mismatch")
        return request.json()

    def webhook_event_id(self, payload, request) -> str | None:
        return payload.get("id")

    def webhook_event_type(self, payload) -> str:
        return str(payload.get("event_type") or "")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        event_type = self.webhook_event_type(payload)
        metadata = dict(payload.get("metadata") or {})
        amount = payload.get("amount")
        common = {
            "event_type": event_type,
            "provider_payment_id": payload.get("payment_id"),
            "amount_cents": int(amount) if amount is not None else None,
            "metadata": metadata,
            "raw_response": dict(payload),
        }

        if event_type == "payment.captured":
            return WebhookUpdate(status=PaymentStatus.PAID, method="mock", **common)
        if event_type == "payment.failed":
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=str(metadata.get("reason") or "Payment failed"),
                **common,
            )
        if event_type == "payment.refunded":
            return WebhookUpdate(status=PaymentStatus.REFUNDED, **common)
        if event_type == "installment.due":
            return WebhookUpdate(action="installment.due", **common)
        return None

    def handle_webhook(self, payload: Mapping[str, Any]) -> WebhookResult:
        result = super().handle_webhook(payload)
        status = payload.get("status")
        if result.processed and result.provider_payment_id and status:
            self.ledger.update_status(result.provider_payment_id, str(status))
        return result

    def handle_action(self, update: WebhookUpdate) -> WebhookResult:
        from payments.services.payment_plan_service import PaymentPlanService

        plan_id = update.metadata.get("payment_plan_id")
        if update.action != "installment.due" or not plan_id:
            return WebhookResult(event_type=update.event_type, processed=False)

        PaymentPlanService.process_next_installment(plan_id)
        return WebhookResult(event_type=update.event_type, processed=True)

    # =========================================================================
    # Simulation (mock webhook path)
    # =========================================================================

    def simulate_payment_success(self, provider_payment_id: str) -> WebhookResult:
        return self._simulate(
            provider_payment_id,
            "payment.captured",
            "captured",
            {"simulated": True},
        )

    def simulate_payment_failure(
        self, provider_payment_id: str, reason: str = "Simulated failure"
    ) -> WebhookResult:
        return self._simulate(
            provider_payment_id,
            "payment.failed",
            "failed",
            {"simulated": True, "reason": reason},
        )

    def _simulate(
        self,
        provider_payment_id: str,
        event_type: str,
        gateway_status: str,
        metadata: dict[str, Any],
    ) -> WebhookResult:
        payload = {
            "id": f"evt_stub_{uuid.uuid4().hex[:16]}",
            "event_type": event_type,
            "payment_id": provider_payment_id,
            "status": gateway_status,
            "created": timezone.now().isoformat(),
            "metadata": metadata,
        }
        request = self.build_webhook_request(payload)
        return self.handle_webhook(self.verify_webhook(request))
