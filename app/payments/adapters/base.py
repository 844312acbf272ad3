"""
Provider adapter contract shared by every payment gateway.

This module provides the PaymentProviderAdapter base class and the value
types that flow across it. Every gateway call goes through an adapter so
that timeouts, error translation, logging and webhook authenticity are
handled the same way for all gateways.

Features:
- Immutable ProviderConfig built from an event's payment configuration
- Credential validation at construction (ConfigurationError)
- Bounded timeouts on all outbound HTTP calls (PAYMENT_GATEWAY_TIMEOUT_SECONDS)
- Automatic error translation to domain exceptions
- Structured logging with timing metrics
- Idempotent payment logging through PaymentRecordService

Configuration (via settings):
- PAYMENT_GATEWAY_TIMEOUT_SECONDS: HTTP timeout for gateway calls (default: 10)
- PAYMENT_PUBLIC_URL: Base URL used for gateway notify URLs
- PAYMENT_DEFAULT_CURRENCY: Currency when an event does not set one

Usage:
    from payments.adapters import get_adapter_for_event, LineItem

    adapter = get_adapter_for_event(event)
    result = adapter.create_checkout(
        registration,
        [LineItem(name="Conference pass", amount_cents=50000)],
        success_url="https://example.com/ok",
        cancel_url="https://example.com/cancel",
    )
    # redirect the payer to result.url

    payload = adapter.verify_webhook(WebhookRequest.from_django(request))
    adapter.handle_webhook(payload)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl

import requests
from django.conf import settings

from payments.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidSignatureError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
    UnsupportedFeatureError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from events.models import Event, Registration
    from payments.models import Installment, PaymentPlan, PaymentRecord


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class ProviderConfig:
    """
    Gateway configuration for one event.

    Built from Event.payment_config:
        {"provider": "razorpay", "mode": "test",
         "credentials": {"key_id": "...", ...}, "extra": {...}}

    Credentials are never read from settings.
    """

    provider: str
    mode: str = "test"
    credentials: Mapping[str, Any] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)
    event_id: str | None = None

    @classmethod
    def from_event(cls, event: Event) -> ProviderConfig:
        config = event.payment_config or {}
        provider = (config.get("provider") or "").strip().lower()
        if not provider:
            raise ConfigurationError(
                f"Event {event.code} has no payment provider configured",
                details={"event_id": str(event.pk)},
            )
        return cls(
            provider=provider,
            mode=(config.get("mode") or "test").lower(),
            credentials=dict(config.get("credentials") or {}),
            extra=dict(config.get("extra") or {}),
            event_id=str(event.pk),
        )

    @property
    def is_live(self) -> bool:
        return self.mode == "live"

    def credential(self, name: str, default: Any = None) -> Any:
        return self.credentials.get(name, default)


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class LineItem:
    """One priced line of a checkout. Amounts are in minor units."""

    name: str
    amount_cents: int
    quantity: int = 1

    @property
    def total_cents(self) -> int:
        return self.amount_cents * self.quantity

    @classmethod
    def coerce(cls, item: LineItem | Mapping[str, Any]) -> LineItem:
        if isinstance(item, LineItem):
            return item
        return cls(
            name=str(item.get("name") or "Registration"),
            amount_cents=int(item["amount_cents"]),
            quantity=int(item.get("quantity", 1)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "amount_cents": self.amount_cents,
            "quantity": self.quantity,
        }


@dataclass
class CheckoutResult:
    """Result of creating a hosted checkout session."""

    url: str
    payment_id: str
    provider_payment_id: str
    amount_cents: int
    currency: str
    status: str = "initiated"
    extra: dict[str, Any] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChargeResult:
    """Result of a direct (non-redirect) charge."""

    payment_id: str
    provider_payment_id: str
    status: str
    amount_cents: int
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Result of a refund call."""

    refund_id: str
    status: str
    amount_cents: int
    payment_id: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayPayment:
    """
    A payment as the gateway reports it.

    Returned by get_payment_status() and fetch_payments(). status is the
    gateway's own vocabulary; callers normalize before comparing.
    """

    provider_payment_id: str
    status: str
    amount_cents: int | None = None
    currency: str | None = None
    fee_cents: int | None = None
    method: str = ""
    captured_at: datetime | None = None
    created_at: datetime | None = None
    email: str | None = None
    registration_ref: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookUpdate:
    """
    Normalized result of parsing a verified webhook payload.

    status is already in the local vocabulary (paid, failed, refunded).
    action names non-payment events (e.g. "installment.due").
    """

    event_type: str
    provider_payment_id: str | None = None
    status: str | None = None
    amount_cents: int | None = None
    currency: str | None = None
    fee_cents: int | None = None
    method: str = ""
    captured_at: datetime | None = None
    failure_reason: str = ""
    action: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookResult:
    """Outcome of handle_webhook()."""

    event_type: str
    processed: bool
    provider_payment_id: str | None = None
    payment_id: str | None = None
    changed: bool = False


class WebhookRequest:
    """
    Transport-neutral view of an inbound webhook request.

    Header lookup is case-insensitive. The raw body is kept as bytes because
    every signature scheme is computed over the exact bytes received.
    """

    def __init__(
        self,
        body: bytes,
        headers: Mapping[str, str] | None = None,
        content_type: str = "",
    ):
        self.body = body or b""
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.content_type = content_type or self.headers.get("content-type", "")

    @classmethod
    def from_django(cls, request) -> WebhookRequest:
        return cls(
            body=request.body,
            headers=dict(request.headers),
            content_type=request.content_type or "",
        )

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> dict[str, Any]:
        try:
            data = json.loads(self.body or b"{}")
        except ValueError as e:
            raise PaymentValidationError(
                "Webhook body is not valid JSON",
                details={"error": str(e)},
            ) from e
        if not isinstance(data, dict):
            raise PaymentValidationError("Webhook body must be a JSON object")
        return data

    def form(self) -> dict[str, str]:
        """Form-encoded body as an ordered dict (posted order preserved)."""
        return dict(parse_qsl(self.text, keep_blank_values=True))

    def sha256(self) -> str:
        return hashlib.sha256(self.body).hexdigest()


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for gateway API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The hash component provides uniqueness across service restarts
    while the structured format aids debugging and correlation.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="refund",
            entity_id=payment.id,
            attempt=1,
        )
        # Result: "refund:550e8400-e29b-41d4-a716-446655440000:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_error(error: Exception) -> bool:
    """
    Check if a gateway error is worth retrying.

    Use this in Celery tasks to decide whether to retry:

        @shared_task(bind=True, max_retries=3)
        def retry_installment_charge(self, installment_id):
            try:
                PaymentPlanService.charge_installment(plan, installment)
            except PaymentError as e:
                if is_retryable_error(e):
                    raise self.retry(exc=e, countdown=backoff_delay(self.request.retries))
                raise
    """
    if isinstance(error, GatewayError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 1: 2.0 - 2.5 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Amount Helpers
# =============================================================================


def to_major_units(amount_cents: int) -> str:
    """50000 -> "500.00" """
    return f"{Decimal(amount_cents) / 100:.2f}"


def to_minor_units(amount: Any) -> int:
    """ "500.00" / 500 / 500.0 -> 50000 """
    if amount is None or amount == "":
        return 0
    value = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(value)


def constant_time_equals(expected: str, received: str | None) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode(), received.strip().encode())


# =============================================================================
# Adapter Base Class
# =============================================================================


class PaymentProviderAdapter(ABC):
    """
    Base class for all gateway adapters.

    Concrete adapters implement:
        create_checkout, get_payment_status, verify_webhook, parse_webhook

    and optionally override:
        create_partial_payment, process_payment, refund_payment,
        fetch_payments, webhook_event_id

    Adapters are constructed per request from a ProviderConfig and hold no
    state shared across requests.
    """

    name: str = ""
    display_name: str = ""
    required_credentials: tuple[str, ...] = ()
    live_base_url: str = ""
    test_base_url: str = ""

    supported_features: dict[str, bool] = {
        "partial_payments": False,
        "subscriptions": False,
        "refunds": False,
        "webhooks": True,
        "saved_cards": False,
        "reconciliation_listing": False,
    }

    def __init__(self, config: ProviderConfig, event: Event | None = None):
        self.config = config
        self.event = event
        self._session: requests.Session | None = None
        self._validate_credentials()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} mode={self.config.mode} event={self.config.event_id}>"

    # =========================================================================
    # Configuration
    # =========================================================================

    def _validate_credentials(self) -> None:
        missing = [
            key for key in self.required_credentials if not self.config.credential(key)
        ]
        if missing:
            raise ConfigurationError(
                f"{self.display_name or self.name} credentials missing: {', '.join(missing)}",
                provider=self.name,
                details={"missing": missing, "event_id": self.config.event_id},
            )

    @property
    def mode(self) -> str:
        return self.config.mode

    @property
    def credentials(self) -> Mapping[str, Any]:
        return self.config.credentials

    @property
    def base_url(self) -> str:
        override = self.config.extra.get("base_url")
        if override:
            return override.rstrip("/")
        return self.live_base_url if self.config.is_live else self.test_base_url

    @property
    def timeout(self) -> float:
        return float(getattr(settings, "PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10))

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def currency(self) -> str:
        if self.event is not None and self.event.currency:
            return self.event.currency.upper()
        return getattr(settings, "PAYMENT_DEFAULT_CURRENCY", "INR")

    def get_logger(self) -> logging.Logger:
        cls = type(self)
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    def supports(self, feature: str) -> bool:
        return bool(self.supported_features.get(feature, False))

    def require_feature(self, feature: str) -> None:
        if not self.supports(feature):
            raise UnsupportedFeatureError(
                f"{feature.replace('_', ' ').capitalize()} not supported by {self.name}",
                provider=self.name,
                details={"feature": feature},
            )

    def get_capabilities(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "provider": self.name,
            "supported_features": dict(self.supported_features),
            "credentials": sorted(self.config.credentials.keys()),
            "mode": self.mode,
        }

    def notify_url(self) -> str:
        public_url = getattr(settings, "PAYMENT_PUBLIC_URL", "").rstrip("/")
        return f"{public_url}/api/v1/payments/webhooks/{self.name}/{self.config.event_id}/"

    # =========================================================================
    # Contract
    # =========================================================================

    @abstractmethod
    def create_checkout(
        self,
        registration: Registration,
        line_items: Iterable[LineItem | Mapping[str, Any]],
        success_url: str,
        cancel_url: str,
        payment_plan: PaymentPlan | None = None,
        installment: Installment | None = None,
    ) -> CheckoutResult:
        """
        Create a gateway-hosted payment session and log an "initiated"
        PaymentRecord before returning the redirect URL.
        """

    def create_partial_payment(
        self,
        registration: Registration,
        amount_cents: int,
        installment: Installment,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutResult:
        """Checkout scoped to a single installment amount."""
        self.require_feature("partial_payments")
        return self.create_checkout(
            registration,
            [LineItem(name=f"Installment {installment.sequence}", amount_cents=amount_cents)],
            success_url,
            cancel_url,
            payment_plan=installment.plan,
            installment=installment,
        )

    def process_payment(
        self,
        registration: Registration,
        amount_cents: int,
        payment_method: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
        installment: Installment | None = None,
    ) -> ChargeResult:
        """Direct charge against a saved payment method."""
        raise UnsupportedFeatureError(
            f"Direct charges not supported by {self.name}",
            provider=self.name,
            details={"feature": "saved_cards"},
        )

    def refund_payment(
        self,
        record: PaymentRecord,
        amount_cents: int | None = None,
        reason: str = "",
    ) -> RefundResult:
        self.require_feature("refunds")
        raise NotImplementedError

    @abstractmethod
    def get_payment_status(self, provider_payment_id: str) -> GatewayPayment:
        """
        Read-through status query against the gateway.

        Raises:
            PaymentNotFoundError: The gateway does not know this id
        """

    @abstractmethod
    def verify_webhook(self, request: WebhookRequest) -> dict[str, Any]:
        """
        Verify webhook authenticity and return the parsed payload.

        Raises:
            InvalidSignatureError: Signature missing or mismatched
        """

    @abstractmethod
    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookUpdate | None:
        """Normalize a verified payload. None means the event type is ignored."""

    def webhook_event_id(
        self, payload: Mapping[str, Any], request: WebhookRequest
    ) -> str | None:
        """Gateway-assigned event id for deduplication, if the payload has one."""
        return None

    def webhook_event_key(
        self, payload: Mapping[str, Any], request: WebhookRequest
    ) -> str:
        return self.webhook_event_id(payload, request) or request.sha256()

    def webhook_event_type(self, payload: Mapping[str, Any]) -> str:
        return str(payload.get("event") or payload.get("type") or "")

    # =========================================================================
    # Webhook Handling (template)
    # =========================================================================

    def handle_webhook(self, payload: Mapping[str, Any]) -> WebhookResult:
        """
        Apply a verified webhook payload.

        Unknown event types and payments that are not in the local ledger
        are ignored (reconciliation picks the latter up as "extra").
        Re-delivery of an already applied event is a no-op.
        """
        from payments.services.payment_record_service import PaymentRecordService

        logger = self.get_logger()
        update = self.parse_webhook(payload)
        if update is None:
            event_type = self.webhook_event_type(payload)
            logger.info(
                "Ignoring webhook event type",
                extra={"provider": self.name, "event_type": event_type},
            )
            return WebhookResult(event_type=event_type, processed=False)

        if update.action:
            return self.handle_action(update)

        record, changed = PaymentRecordService.apply_gateway_update(
            self.name, update
        )
        if record is None:
            logger.warning(
                "Webhook references unknown payment",
                extra={
                    "provider": self.name,
                    "event_type": update.event_type,
                    "provider_payment_id": update.provider_payment_id,
                },
            )
            return WebhookResult(
                event_type=update.event_type,
                processed=False,
                provider_payment_id=update.provider_payment_id,
            )

        return WebhookResult(
            event_type=update.event_type,
            processed=True,
            provider_payment_id=update.provider_payment_id,
            payment_id=str(record.pk),
            changed=changed,
        )

    def handle_action(self, update: WebhookUpdate) -> WebhookResult:
        return WebhookResult(event_type=update.event_type, processed=False)

    # =========================================================================
    # Ledger Helpers
    # =========================================================================

    def log_payment(self, **fields: Any) -> PaymentRecord:
        """Idempotent upsert keyed by (provider, provider_payment_id)."""
        from payments.services.payment_record_service import PaymentRecordService

        if self.event is None:
            raise ConfigurationError(
                "Adapter has no event bound; cannot log payments",
                provider=self.name,
            )
        metadata = dict(fields.pop("metadata", None) or {})
        metadata.setdefault("provider_features", dict(self.supported_features))
        return PaymentRecordService.log_payment(
            event=self.event,
            provider=self.name,
            metadata=metadata,
            **fields,
        )

    def record_gateway_refund(
        self,
        record: PaymentRecord,
        *,
        amount_cents: int,
        refund_id: str,
        reason: str = "",
        raw_response: dict[str, Any] | None = None,
    ) -> PaymentRecord:
        """
        Write the ledger row for a refund the gateway has already issued.

        On failure the gateway refund id is logged at error level and the
        exception re-raised; reconciliation picks the refund up from there.
        """
        from payments.services.payment_record_service import PaymentRecordService

        try:
            return PaymentRecordService.record_refund(
                record,
                amount_cents=amount_cents,
                refund_provider_id=refund_id,
                reason=reason,
                raw_response=raw_response,
            )
        except Exception:
            self.get_logger().exception(
                "Gateway refund issued but not recorded",
                extra={
                    "payment_id": str(record.pk),
                    "provider": self.name,
                    "refund_id": refund_id,
                    "amount_cents": amount_cents,
                },
            )
            raise

    def update_payment_status(
        self,
        provider_payment_id: str,
        status: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> PaymentRecord | None:
        from payments.services.payment_record_service import PaymentRecordService
        from payments.state_machines import normalize_payment_status

        update = WebhookUpdate(
            event_type="status.update",
            provider_payment_id=provider_payment_id,
            status=normalize_payment_status(status),
            failure_reason=str((metadata or {}).get("reason", "")),
            metadata=dict(metadata or {}),
        )
        record, _ = PaymentRecordService.apply_gateway_update(self.name, update)
        return record

    def charge_installment(
        self,
        plan: PaymentPlan,
        installment: Installment,
        payment_method: Mapping[str, Any],
    ) -> ChargeResult:
        """Charge one installment against the plan's saved payment method."""
        return self.process_payment(
            plan.registration,
            installment.amount_cents,
            payment_method,
            metadata={
                "installment_id": str(installment.pk),
                "payment_plan_id": str(plan.pk),
                "auto_charge": True,
            },
            installment=installment,
        )

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def fetch_payments(
        self,
        start: datetime,
        end: datetime,
        known_ids: Iterable[str] = (),
    ) -> list[GatewayPayment]:
        """
        Gateway-side payments for a window.

        Default: probe get_payment_status() for each locally known id. This
        can classify matched/mismatched/missing but never finds extras.
        Adapters with a reporting API override this to list the window.
        """
        payments = []
        for provider_payment_id in known_ids:
            try:
                payments.append(self.get_payment_status(provider_payment_id))
            except PaymentNotFoundError:
                continue
        return payments

    # =========================================================================
    # Helpers for concrete adapters
    # =========================================================================

    def _checkout_total(self, line_items: Iterable[Any]) -> tuple[list[LineItem], int]:
        items = [LineItem.coerce(item) for item in line_items]
        if not items:
            raise PaymentValidationError("Checkout requires at least one line item")
        total = sum(item.total_cents for item in items)
        if total <= 0:
            raise PaymentValidationError(
                "Checkout total must be positive",
                details={"amount_cents": total},
            )
        return items, total

    def _merchant_reference(self, registration: Registration, prefix: str = "reg") -> str:
        """Unique merchant-side order id (gateways reject reused ids)."""
        return f"{prefix}_{registration.registration_id}_{uuid.uuid4().hex[:10]}"

    def _checkout_metadata(
        self,
        line_items: list[LineItem],
        success_url: str,
        cancel_url: str,
        payment_plan: PaymentPlan | None,
        installment: Installment | None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "line_items": [item.to_dict() for item in line_items],
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if payment_plan is not None:
            metadata["payment_plan_id"] = str(payment_plan.pk)
        if installment is not None:
            metadata["installment_id"] = str(installment.pk)
        return metadata

    def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        not_found_ok: bool = False,
        log_context: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Perform one HTTP call to the gateway and return the decoded JSON body.

        Raises:
            PaymentNotFoundError: 404 when not_found_ok is set (status queries)
            GatewayTimeoutError: No response within the timeout
            GatewayUnavailableError: Network failure, 429 or 5xx
            GatewayRequestError: Any other 4xx
        """
        logger = self.get_logger()
        log_context = {
            "operation": operation,
            "provider": self.name,
            "http_method": method,
            **(log_context or {}),
        }

        start_time = time.time()
        logger.info("Starting gateway operation", extra=log_context)

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            data = response.json() if response.content else {}

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Gateway operation completed",
                extra={
                    **log_context,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            return data

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_gateway_error(e, log_context, duration_ms, not_found_ok=not_found_ok)
            raise

    def _handle_gateway_error(
        self,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
        not_found_ok: bool = False,
    ) -> None:
        """
        Translate transport and HTTP errors to domain exceptions.

        Raises:
            PaymentNotFoundError: 404 on a status query
            GatewayTimeoutError: Request timed out
            GatewayUnavailableError: Connection error, 429 or 5xx
            GatewayRequestError: Rejected request (other 4xx)
            GatewayError: Unexpected failure
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, PaymentError):
            raise error

        if isinstance(error, requests.Timeout):
            logger.error("Gateway request timed out", extra=log_context)
            raise GatewayTimeoutError(
                f"{self.name} did not respond within {self.timeout:g}s",
                provider=self.name,
            ) from error

        if isinstance(error, requests.ConnectionError):
            logger.error("Connection error to gateway", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                f"Could not connect to {self.name}. Please retry.",
                provider=self.name,
            ) from error

        if isinstance(error, requests.HTTPError) and error.response is not None:
            status_code = error.response.status_code
            body = error.response.text[:500]
            log_context = {**log_context, "status_code": status_code}

            if status_code == 404 and not_found_ok:
                logger.info("Gateway reports payment not found", extra=log_context)
                raise PaymentNotFoundError(
                    f"{self.name} has no record of this payment",
                    details={"provider": self.name, "status_code": status_code},
                ) from error

            if status_code == 429 or status_code >= 500:
                logger.warning("Gateway unavailable", extra=log_context)
                raise GatewayUnavailableError(
                    f"{self.name} service error ({status_code}). Please retry.",
                    provider=self.name,
                    status_code=status_code,
                ) from error

            logger.error(
                "Gateway rejected request",
                extra={**log_context, "response_body": body},
            )
            raise GatewayRequestError(
                f"{self.name} rejected the request ({status_code})",
                provider=self.name,
                status_code=status_code,
                details={"response": body},
            ) from error

        if isinstance(error, requests.exceptions.InvalidJSONError):
            logger.error("Gateway returned a non-JSON body", extra=log_context)
            raise GatewayError(
                f"{self.name} returned an unreadable response",
                provider=self.name,
            ) from error

        if isinstance(error, requests.RequestException):
            logger.error("Gateway request failed", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                f"{self.name} request failed: {error}",
                provider=self.name,
            ) from error

        logger.error(
            f"Unexpected error from {self.name}: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise GatewayError(
            f"Unexpected {self.name} error: {error}",
            error_code="GATEWAY_UNKNOWN_ERROR",
            provider=self.name,
        ) from error

    def _invalid_signature(self, reason: str) -> None:
        self.get_logger().warning(
            "Webhook signature verification failed",
            extra={"provider": self.name, "event_id": self.config.event_id, "reason": reason},
        )
        raise InvalidSignatureError(
            f"Invalid {self.display_name or self.name} webhook signature",
            provider=self.name,
            details={"reason": reason},
        )
