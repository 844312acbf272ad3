"""
Payment-specific exceptions for payment operations.

This module provides a hierarchy of exceptions for the payment domain,
gateway adapters, concurrency control and reconciliation.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── PaymentNotFoundError - Payment/registration/event lookup failures (404)
    ├── PaymentValidationError - Invalid amounts, schedules, line items
    └── ProviderError - Base for gateway adapter failures
        ├── ConfigurationError - Missing/invalid credentials, unknown provider
        ├── InvalidSignatureError - Webhook authenticity failure
        ├── UnsupportedFeatureError - Capability not declared by the adapter
        └── GatewayError - Outbound gateway call failed
            ├── GatewayTimeoutError - No response in time (transient, retry)
            ├── GatewayUnavailableError - Network / 5xx / 429 (transient, retry)
            └── GatewayRequestError - Rejected request, 4xx (permanent)

    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

    ReconciliationError - Reconciliation run failure
    └── ReconciliationLockError - Another run holds the lock

Usage:
    from payments.exceptions import GatewayError, InvalidSignatureError

    try:
        adapter.verify_webhook(request)
    except InvalidSignatureError:
        return HttpResponse(status=400)

    try:
        result = adapter.create_checkout(...)
    except GatewayError as e:
        if e.is_retryable:
            ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    Inherits from BaseApplicationError for consistent API error responses.
    """

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError, NotFoundError):
    """
    Raised when a payment entity (or the registration/event it refers to)
    cannot be found.

    Example:
        record = PaymentRecord.objects.filter(pk=payment_id).first()
        if record is None:
            raise PaymentNotFoundError(
                f"Payment {payment_id} not found",
                details={"payment_id": str(payment_id)},
            )
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"
    http_status: int = 404


class PaymentValidationError(PaymentError, ValidationError):
    """
    Raised when payment validation fails.

    Use for:
    - Non-positive amounts
    - Empty line items
    - Installment schedules whose amounts do not sum to the plan total
    - Refund amounts exceeding the refundable balance
    """

    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


# =============================================================================
# Provider (Gateway Adapter) Exceptions
# =============================================================================


class ProviderError(PaymentError):
    """
    Base exception for gateway adapter failures.

    Attributes:
        provider: Gateway name (e.g. "razorpay") when known
    """

    default_error_code: str = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider:
            details.setdefault("provider", provider)
        super().__init__(message, error_code=error_code, details=details)
        self.provider = provider


class ConfigurationError(ProviderError):
    """
    Missing or invalid gateway credentials, or an unknown provider name.

    Fatal for that adapter instance. Surfaced to the caller immediately and
    never retried.
    """

    default_error_code: str = "PROVIDER_CONFIGURATION_ERROR"


class InvalidSignatureError(ProviderError):
    """
    Webhook authenticity check failed.

    The request is rejected with no state mutation and logged as a
    security event. Never soft-fail on this.
    """

    default_error_code: str = "INVALID_WEBHOOK_SIGNATURE"


class UnsupportedFeatureError(ProviderError):
    """
    Adapter invoked for a capability it does not declare.

    Example:
        if not adapter.supports("refunds"):
            raise UnsupportedFeatureError(
                "Refunds are not supported by paytm",
                provider="paytm",
                details={"feature": "refunds"},
            )
    """

    default_error_code: str = "UNSUPPORTED_FEATURE"
    http_status: int = 422


class GatewayError(ProviderError):
    """
    An outbound call to the payment gateway failed.

    Use is_retryable to determine retry behavior:
    - True: Transient error (network, timeout, 429, 5xx), retry with backoff
    - False: Permanent error (rejected request), do not retry

    Checkout and refund paths propagate this to the caller. Reconciliation
    counts it as an event-level error and moves on.

    Attributes:
        status_code: HTTP status returned by the gateway, if any
        is_retryable: Whether the operation can be retried
    """

    default_error_code: str = "GATEWAY_ERROR"
    http_status: int = 502
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        is_retryable: bool | None = None,
    ):
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            message, error_code=error_code, provider=provider, details=details
        )
        self.status_code = status_code
        if is_retryable is not None:
            self.is_retryable = is_retryable


class GatewayTimeoutError(GatewayError):
    """
    Gateway call timed out (PAYMENT_GATEWAY_TIMEOUT_SECONDS).

    The operation may have succeeded on the gateway's side. Retrying is safe
    where the adapter sends an idempotency key or a deterministic order id.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """Network failure, rate limiting or a 5xx from the gateway."""

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


class GatewayRequestError(GatewayError):
    """
    The gateway rejected the request (4xx other than 429).

    This usually means invalid parameters or a declined card and will never
    succeed with the same input.
    """

    default_error_code: str = "GATEWAY_REQUEST_REJECTED"
    is_retryable: bool = False


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The record was modified by another process between read and update.
    The caller should either retry with fresh data or abort.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Attributes:
        details: Contains key and timeout information
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed with domain context.

    Example:
        try:
            record.mark_paid()
        except TransitionNotAllowed:
            raise InvalidStateTransitionError(
                f"Cannot mark payment paid from '{record.status}'",
                details={"current_state": record.status, "target_state": "paid"},
            )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        target_state: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if current_state is not None:
            details.setdefault("current_state", current_state)
        if target_state is not None:
            details.setdefault("target_state", target_state)
        super().__init__(message, error_code=error_code, details=details)
        self.current_state = current_state
        self.target_state = target_state


# =============================================================================
# Reconciliation Exceptions
# =============================================================================


class ReconciliationError(PaymentError):
    """Raised when a reconciliation run cannot complete."""

    default_error_code: str = "RECONCILIATION_ERROR"


class ReconciliationLockError(ReconciliationError):
    """Raised when another reconciliation run already holds the run lock."""

    default_error_code: str = "RECONCILIATION_LOCKED"
    http_status: int = 409


__all__ = [
    "ConfigurationError",
    "GatewayError",
    "GatewayRequestError",
    "GatewayTimeoutError",
    "GatewayUnavailableError",
    "InvalidSignatureError",
    "InvalidStateTransitionError",
    "LockAcquisitionError",
    "PaymentError",
    "PaymentNotFoundError",
    "PaymentValidationError",
    "ProviderError",
    "ReconciliationError",
    "ReconciliationLockError",
    "StaleRecordError",
    "UnsupportedFeatureError",
]
