"""
Stripe adapter (Checkout Sessions).

All Stripe calls go through this adapter to ensure consistent error
handling, timeouts, idempotency and observability. The secret key is passed
per call (api_key=...) because every event carries its own credentials;
the module-level stripe.api_key is never set.

Credentials (Event.payment_config["credentials"]):
- secret_key: Stripe API secret key
- webhook_secret: Webhook signing secret (whsec_...)

Features:
- Hosted Checkout Sessions for full and installment payments
- Off-session PaymentIntents for saved-card auto-charge
- Refunds against the session's PaymentIntent
- Session listing for reconciliation
- Webhook verification via stripe.Webhook.construct_event

Usage:
    adapter = get_adapter_for_event(event)       # provider "stripe"
    result = adapter.create_checkout(registration, items, success_url, cancel_url)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import stripe

from payments.adapters.base import (
    ChargeResult,
    CheckoutResult,
    GatewayPayment,
    IdempotencyKeyGenerator,
    PaymentProviderAdapter,
    RefundResult,
    WebhookRequest,
    WebhookUpdate,
)
from payments.adapters.registry import register_adapter
from payments.exceptions import (
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.state_machines import PaymentStatus, ProviderName

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from events.models import Registration
    from payments.models import Installment, PaymentPlan, PaymentRecord


def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


@register_adapter
class StripeAdapter(PaymentProviderAdapter):
    """
    Adapter for Stripe API operations.

    Features:
    - Configurable timeouts on all API calls
    - Automatic error translation to domain exceptions
    - Structured logging with timing metrics
    - Idempotency support for safe retries
    """

    name = ProviderName.STRIPE.value
    display_name = "Stripe"
    required_credentials = ("secret_key", "webhook_secret")

    supported_features = {
        "partial_payments": True,
        "subscriptions": False,
        "refunds": True,
        "webhooks": True,
        "saved_cards": True,
        "reconciliation_listing": True,
    }

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def api_key(self) -> str:
        return self.config.credential("secret_key")

    def _configure_stripe(self) -> None:
        """Bound every Stripe HTTP call by the gateway timeout."""
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    def _call(self, operation: str, log_context: dict[str, Any], func, *args, **kwargs):
        self._configure_stripe()
        logger = self.get_logger()
        log_context = {"operation": operation, "provider": self.name, **log_context}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)
        try:
            result = func(*args, api_key=self.api_key, **kwargs)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "stripe_id": getattr(result, "id", None), "duration_ms": duration_ms},
        )
        return result

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
        metadata = {
            "registration_id": registration.registration_id,
            "event_id": str(self.config.event_id),
            "reference": reference,
        }
        if installment is not None:
            metadata["installment_id"] = str(installment.pk)

        session = self._call(
            "create_checkout_session",
            {"registration_id": registration.registration_id, "amount_cents": total},
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            customer_email=registration.email,
            client_reference_id=registration.registration_id,
            line_items=[
                {
                    "price_data": {
                        "currency": self.currency.lower(),
                        "product_data": {"name": item.name},
                        "unit_amount": item.amount_cents,
                    },
                    "quantity": item.quantity,
                }
                for item in items
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            idempotency_key=IdempotencyKeyGenerator.generate("checkout", reference),
        )

        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=session.id,
            amount_cents=total,
            currency=self.currency,
            status=PaymentStatus.INITIATED,
            method="card",
            metadata={
                **self._checkout_metadata(items, success_url, cancel_url, payment_plan, installment),
                "reference": reference,
            },
        )
        return CheckoutResult(
            url=session.url,
            payment_id=str(record.pk),
            provider_payment_id=session.id,
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
        payment_method_id = (payment_method or {}).get("payment_method_id")
        if not payment_method_id:
            raise PaymentValidationError(
                "Saved payment method has no payment_method_id",
                details={"provider": self.name},
            )
        entity_id = installment.pk if installment is not None else registration.pk
        attempt = (installment.charge_attempts + 1) if installment is not None else 1

        intent = self._call(
            "create_payment_intent",
            {"registration_id": registration.registration_id, "amount_cents": amount_cents},
            stripe.PaymentIntent.create,
            amount=amount_cents,
            currency=self.currency.lower(),
            customer=payment_method.get("customer_id"),
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            metadata={k: str(v) for k, v in (metadata or {}).items()},
            idempotency_key=IdempotencyKeyGenerator.generate("charge", entity_id, attempt),
        )

        status = self._intent_status(intent.status)
        record = self.log_payment(
            registration=registration,
            installment=installment,
            provider_payment_id=intent.id,
            amount_cents=intent.amount,
            currency=intent.currency,
            status=status,
            method=str(payment_method.get("type") or "card"),
            raw_response=intent.to_dict(),
            metadata=dict(metadata or {}),
        )
        return ChargeResult(
            payment_id=str(record.pk),
            provider_payment_id=intent.id,
            status=status,
            amount_cents=intent.amount,
            raw_response=intent.to_dict(),
        )

    def refund_payment(
        self,
        record: PaymentRecord,
        amount_cents: int | None = None,
        reason: str = "",
    ) -> RefundResult:
        self.require_feature("refunds")
        amount = amount_cents if amount_cents is not None else record.refundable_cents
        payment_intent_id = self._payment_intent_for(record)
        attempt = record.refund_records.count() + 1

        refund = self._call(
            "create_refund",
            {"payment_id": str(record.pk), "amount_cents": amount},
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=amount,
            metadata={"reason": reason, "payment_record_id": str(record.pk)},
            idempotency_key=IdempotencyKeyGenerator.generate("refund", record.pk, attempt),
        )

        refund_record = self.record_gateway_refund(
            record,
            amount_cents=amount,
            refund_id=refund.id,
            reason=reason,
            raw_response=refund.to_dict(),
        )
        return RefundResult(
            refund_id=refund.id,
            status=refund.status,
            amount_cents=refund.amount,
            payment_id=str(refund_record.pk),
            raw_response=refund.to_dict(),
        )

    def _payment_intent_for(self, record: PaymentRecord) -> str:
        if record.provider_payment_id and record.provider_payment_id.startswith("pi_"):
            return record.provider_payment_id
        payment_intent_id = record.get_meta("payment_intent")
        if payment_intent_id:
            return payment_intent_id
        session = self._call(
            "retrieve_checkout_session",
            {"session_id": record.provider_payment_id},
            stripe.checkout.Session.retrieve,
            record.provider_payment_id,
        )
        if not session.payment_intent:
            raise PaymentValidationError(
                "Checkout session has no payment to refund",
                details={"provider_payment_id": record.provider_payment_id},
            )
        return session.payment_intent

    # =========================================================================
    # Status & Reconciliation
    # =========================================================================

    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        if provider_payment_id.startswith("pi_"):
            intent = self._call(
                "retrieve_payment_intent",
                {"payment_intent_id": provider_payment_id},
                stripe.PaymentIntent.retrieve,
                provider_payment_id,
                expand=["latest_charge"],
            )
            return GatewayPayment(
                provider_payment_id=intent.id,
                status=self._charge_status(intent) or self._intent_status(intent.status),
                amount_cents=intent.amount,
                currency=(intent.currency or "").upper(),
                created_at=_from_timestamp(intent.created),
                raw_response=intent.to_dict(),
            )

        session = self._call(
            "retrieve_checkout_session",
            {"session_id": provider_payment_id},
            stripe.checkout.Session.retrieve,
            provider_payment_id,
            expand=["payment_intent.latest_charge"],
        )
        return self._session_to_payment(session)

    def fetch_payments(
        self,
        start: datetime,
        end: datetime,
        known_ids: Iterable[str] = (),
    ) -> list[GatewayPayment]:
        sessions = self._call(
            "list_checkout_sessions",
            {"start": start.isoformat(), "end": end.isoformat()},
            stripe.checkout.Session.list,
            created={"gte": int(start.timestamp()), "lt": int(end.timestamp())},
            limit=100,
            expand=["data.payment_intent.latest_charge"],
        )
        payments = []
        for session in sessions.auto_paging_iter():
            metadata = session.metadata or {}
            if metadata.get("event_id") not in (None, str(self.config.event_id)):
                continue
            payments.append(self._session_to_payment(session))
        return payments

    def _session_to_payment(self, session) -> GatewayPayment:
        metadata = session.metadata or {}
        return GatewayPayment(
            provider_payment_id=session.id,
            status=self._session_status(session),
            amount_cents=session.amount_total,
            currency=(session.currency or "").upper(),
            created_at=_from_timestamp(session.created),
            email=session.customer_email,
            registration_ref=metadata.get("registration_id") or session.client_reference_id,
            raw_response=session.to_dict(),
        )

    @classmethod
    def _session_status(cls, session) -> str:
        intent = session.payment_intent
        if intent is not None and not isinstance(intent, str):
            status = cls._charge_status(intent)
            if status:
                return status
        if session.payment_status == "paid":
            return "paid"
        if session.status == "expired":
            return "cancelled"
        return "created"

    @staticmethod
    def _charge_status(intent) -> str | None:
        """Refund or decline state of an expanded PaymentIntent, if it has one."""
        charge = getattr(intent, "latest_charge", None)
        if charge is not None and not isinstance(charge, str):
            if getattr(charge, "refunded", False):
                return "refunded"
            if getattr(charge, "amount_refunded", 0):
                return "partial-refund"
        if intent.status != "succeeded" and getattr(intent, "last_payment_error", None):
            return "failed"
        return None

    @staticmethod
    def _intent_status(status: str) -> str:
        if status == "succeeded":
            return "captured"
        if status == "canceled":
            return "cancelled"
        if status in ("requires_payment_method", "requires_action"):
            return "failed"
        return "created"

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        signature = request.header("stripe-signature")
        if not signature:
            self._invalid_signature("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                request.body,
                signature,
                self.config.credential("webhook_secret"),
            )
        except stripe.SignatureVerificationError as e:
            self._invalid_signature(str(e))
        except ValueError:
            self._invalid_signature("payload is not valid JSON")
        return request.json()

    def webhook_event_id(self, payload, request) -> str | None:
        return payload.get("id")

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        event_type = payload.get("type", "")
        session = (payload.get("data") or {}).get("object") or {}
        common = {
            "event_type": event_type,
            "provider_payment_id": session.get("id"),
            "amount_cents": session.get("amount_total"),
            "currency": (session.get("currency") or "").upper() or None,
            "metadata": {"payment_intent": session.get("payment_intent")},
            "raw_response": dict(payload),
        }

        if event_type == "checkout.session.completed":
            if session.get("payment_status") != "paid":
                return None
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                captured_at=_from_timestamp(payload.get("created")),
                method="card",
                **common,
            )
        if event_type == "checkout.session.async_payment_succeeded":
            return WebhookUpdate(
                status=PaymentStatus.PAID,
                captured_at=_from_timestamp(payload.get("created")),
                **common,
            )
        if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
            return WebhookUpdate(
                status=PaymentStatus.FAILED,
                failure_reason=event_type.rsplit(".", 1)[-1].replace("_", " "),
                **common,
            )
        return None

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _handle_stripe_error(
        self,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to domain exceptions.

        Raises:
            PaymentNotFoundError: Resource missing on a retrieve
            GatewayRequestError: Card declined, invalid request, bad API key
            GatewayUnavailableError: Rate limited, connection or server error
            GatewayTimeoutError: Request timed out
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, PaymentError):
            raise error

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise GatewayRequestError(
                str(error.user_message or error),
                error_code="CARD_DECLINED",
                provider=self.name,
                status_code=error.http_status,
                details={"decline_code": decline_code, "stripe_code": error.code},
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if error.code == "resource_missing":
                raise PaymentNotFoundError(
                    str(error),
                    details={"provider": self.name, "stripe_code": error.code},
                ) from error
            raise GatewayRequestError(
                str(error),
                provider=self.name,
                status_code=error.http_status,
                details={"stripe_code": error.code},
            ) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayUnavailableError(
                "Stripe rate limit exceeded. Please retry.",
                provider=self.name,
                status_code=429,
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            if "timed out" in str(error).lower():
                raise GatewayTimeoutError(
                    f"Stripe did not respond within {self.timeout:g}s",
                    provider=self.name,
                ) from error
            raise GatewayUnavailableError(
                "Could not connect to Stripe. Please retry.",
                provider=self.name,
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise GatewayRequestError(
                "Stripe authentication failed",
                error_code="GATEWAY_AUTHENTICATION_FAILED",
                provider=self.name,
                status_code=401,
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error. Please retry.",
                provider=self.name,
                status_code=error.http_status,
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise GatewayError(
            f"Unexpected Stripe error: {error}",
            error_code="GATEWAY_UNKNOWN_ERROR",
            provider=self.name,
        ) from error
