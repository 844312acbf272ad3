"""
Checkout entry points: event -> ProviderConfig -> adapter -> gateway.

Errors propagate to the caller (the API layer turns them into responses)
because the end user has to be told that checkout or refund failed.

Usage:
    from payments.services.checkout_service import CheckoutService

    checkout = CheckoutService.create_checkout(
        registration,
        success_url="https://example.com/paid",
        cancel_url="https://example.com/cancelled",
    )
    redirect(checkout.url)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.services import BaseService

from payments.adapters.base import LineItem
from payments.adapters.registry import get_adapter_for_event
from payments.exceptions import ConfigurationError, PaymentValidationError
from payments.services.payment_plan_service import PaymentPlanService
from payments.services.payment_record_service import PaymentRecordService

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from typing import Any

    from events.models import Registration
    from payments.adapters.base import CheckoutResult, GatewayPayment, RefundResult
    from payments.models import Installment, PaymentPlan


class CheckoutService(BaseService):
    @classmethod
    def create_checkout(
        cls,
        registration: Registration,
        success_url: str,
        cancel_url: str,
        line_items: Iterable[LineItem | Mapping[str, Any]] | None = None,
        payment_plan: PaymentPlan | None = None,
    ) -> CheckoutResult:
        """
        Start a hosted checkout for a registration.

        Without line_items the registration fee is charged as one item.

        Raises:
            ConfigurationError: Event has no usable gateway configuration
            PaymentValidationError: Nothing to charge
            GatewayError: The gateway call failed
        """
        if line_items is None:
            if registration.amount_cents <= 0:
                raise PaymentValidationError(
                    "Registration has no fee to pay",
                    details={"registration_id": registration.registration_id},
                )
            line_items = [
                LineItem(
                    name=f"Registration {registration.registration_id}",
                    amount_cents=registration.amount_cents,
                )
            ]

        adapter = get_adapter_for_event(registration.event)
        cls.get_logger().info(
            "Creating checkout",
            extra={
                "provider": adapter.name,
                "registration_id": registration.registration_id,
                "event_id": str(registration.event_id),
            },
        )
        return adapter.create_checkout(
            registration,
            line_items,
            success_url,
            cancel_url,
            payment_plan=payment_plan,
        )

    @classmethod
    def create_installment_checkout(
        cls,
        installment: Installment,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutResult:
        """
        Raises:
            UnsupportedFeatureError: The gateway has no partial payments
        """
        return PaymentPlanService.create_installment_checkout(
            installment, success_url=success_url, cancel_url=cancel_url
        )

    @classmethod
    def refund_payment(
        cls,
        payment_id,
        amount_cents: int | None = None,
        reason: str = "",
    ) -> RefundResult:
        """
        Refund a paid record in full (amount_cents=None) or in part.

        Raises:
            PaymentNotFoundError: Unknown payment id
            PaymentValidationError: Amount exceeds what is refundable
            UnsupportedFeatureError: The gateway has no refund support
        """
        record = PaymentRecordService.get_payment(payment_id)
        if record.is_refund:
            raise PaymentValidationError(
                "Refund rows cannot be refunded",
                details={"payment_id": str(record.pk)},
            )
        refundable = record.refundable_cents
        if amount_cents is not None and (amount_cents <= 0 or amount_cents > refundable):
            raise PaymentValidationError(
                "Refund amount must be positive and within the refundable amount",
                details={
                    "payment_id": str(record.pk),
                    "amount_cents": amount_cents,
                    "refundable_cents": refundable,
                },
            )
        if refundable <= 0:
            raise PaymentValidationError(
                f"Payment in '{record.status}' state has nothing to refund",
                details={"payment_id": str(record.pk)},
            )

        adapter = cls._adapter_for_record(record)
        return adapter.refund_payment(record, amount_cents=amount_cents, reason=reason)

    @classmethod
    def get_payment_status(cls, payment_id) -> GatewayPayment:
        record = PaymentRecordService.get_payment(payment_id)
        if not record.provider_payment_id:
            raise PaymentValidationError(
                "Payment has no gateway id to query",
                details={"payment_id": str(record.pk)},
            )
        adapter = cls._adapter_for_record(record)
        return adapter.get_payment_status(record.provider_payment_id)

    @classmethod
    def _adapter_for_record(cls, record):
        adapter = get_adapter_for_event(record.event)
        if adapter.name != record.provider:
            raise ConfigurationError(
                f"Payment was made with {record.provider} but the event now uses {adapter.name}",
                provider=record.provider,
                details={"payment_id": str(record.pk)},
            )
        return adapter
