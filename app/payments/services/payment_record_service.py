"""
Payment record store: idempotent writes to the PaymentRecord ledger.

Every write that originates from a gateway goes through this service:
checkout logging, webhook status updates, refunds and reconciliation sync.

Idempotency:
    log_payment() upserts on (provider, provider_payment_id). The database
    unique constraint is the only arbiter between concurrent writers; a
    losing insert re-reads the winner's row and merges into it.

Status handling:
    Status changes only go through the django-fsm transitions on
    PaymentRecord, so a write can never move a record backwards
    (refunded -> paid, paid -> initiated). A write asking for an illegal
    transition keeps the current status and still merges the other fields.

Side effects of becoming paid:
    - invoice number assigned
    - linked installment marked paid (which may complete the plan)
    - linked registration marked paid (non-installment payments)
    - after commit: invoice document generated, confirmation sent

Usage:
    from payments.services.payment_record_service import PaymentRecordService

    record = PaymentRecordService.log_payment(
        event=event,
        provider="razorpay",
        provider_payment_id="order_9A33XWu170gUtm",
        registration=registration,
        amount_cents=50000,
        currency="INR",
        status="initiated",
    )

    record, changed = PaymentRecordService.apply_gateway_update("razorpay", update)
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction

from django_fsm import TransitionNotAllowed

from core.services import BaseService

from events.models import RegistrationPaymentStatus
from payments.exceptions import (
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.models import PaymentRecord
from payments.state_machines import PaymentStatus, normalize_payment_status

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any

    from events.models import Event, Registration
    from payments.adapters.base import WebhookUpdate
    from payments.models import Installment


# Normalized gateway vocabulary -> local status.
NORMALIZED_TO_LOCAL = {
    "pending": PaymentStatus.INITIATED,
    "paid": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "partial-refund": PaymentStatus.PARTIAL_REFUND,
}

# Fields compared to decide whether a write changed anything.
TRACKED_FIELDS = (
    "status",
    "amount_cents",
    "currency",
    "fee_cents",
    "method",
    "captured_at",
    "failure_reason",
    "raw_response",
    "metadata",
    "registration_id",
    "installment_id",
    "refunded_cents",
)


def to_local_status(status: str | None) -> str | None:
    """
    Map any gateway or local status string to a PaymentStatus value.

    Returns None for statuses with no local meaning (e.g. "unknown").
    """
    if status is None:
        return None
    if status in PaymentStatus.values:
        return status
    return NORMALIZED_TO_LOCAL.get(normalize_payment_status(status))


class PaymentRecordService(BaseService):
    """Idempotent ledger writes and status transitions for PaymentRecord."""

    # =========================================================================
    # Lookup
    # =========================================================================

    @classmethod
    def get_by_provider_id(
        cls, provider: str, provider_payment_id: str
    ) -> PaymentRecord | None:
        return PaymentRecord.objects.filter(
            provider=provider, provider_payment_id=provider_payment_id
        ).first()

    @classmethod
    def get_payment(cls, payment_id) -> PaymentRecord:
        try:
            return PaymentRecord.objects.select_related("event", "registration").get(
                pk=payment_id
            )
        except (PaymentRecord.DoesNotExist, ValueError):
            raise PaymentNotFoundError(
                f"Payment {payment_id} not found",
                details={"payment_id": str(payment_id)},
            ) from None

    # =========================================================================
    # Idempotent Logging
    # =========================================================================

    @classmethod
    def log_payment(
        cls,
        *,
        event: Event,
        provider: str,
        amount_cents: int,
        provider_payment_id: str | None = None,
        registration: Registration | None = None,
        installment: Installment | None = None,
        currency: str | None = None,
        status: str = PaymentStatus.INITIATED,
        method: str = "",
        fee_cents: int | None = None,
        captured_at: datetime | None = None,
        failure_reason: str = "",
        raw_response: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        synced_from_gateway: bool = False,
    ) -> PaymentRecord:
        """
        Insert or merge a PaymentRecord keyed by (provider, provider_payment_id).

        The first call inserts. Later calls merge the mutable fields
        (last write wins) and move the status forward when the transition is
        legal. Calling twice with the same pair never creates two records.

        Args:
            status: Local or gateway status ("initiated", "captured", ...)

        Returns:
            The inserted or merged record
        """
        target = to_local_status(status) or PaymentStatus.INITIATED
        fields = {
            "amount_cents": amount_cents,
            "currency": (currency or event.currency).upper(),
            "method": method,
            "fee_cents": fee_cents,
            "captured_at": captured_at,
            "raw_response": raw_response,
            "registration": registration,
            "installment": installment,
        }

        with transaction.atomic():
            record = None
            if provider_payment_id:
                record = cls._locked(provider, provider_payment_id)

            if record is None:
                try:
                    with transaction.atomic():
                        record = PaymentRecord.objects.create(
                            event=event,
                            provider=provider,
                            provider_payment_id=provider_payment_id,
                            amount_cents=amount_cents,
                            currency=fields["currency"],
                            method=method or "",
                            fee_cents=fee_cents,
                            captured_at=captured_at,
                            raw_response=raw_response or {},
                            metadata=dict(metadata or {}),
                            registration=registration,
                            installment=installment,
                            synced_from_gateway=synced_from_gateway,
                        )
                except IntegrityError:
                    # Lost the insert race; merge into the winner's row.
                    record = cls._locked(provider, provider_payment_id)
                    if record is None:
                        raise
                    cls._merge(record, fields, metadata)
                else:
                    cls.get_logger().info(
                        "Payment record created",
                        extra={
                            "payment_id": str(record.pk),
                            "provider": provider,
                            "provider_payment_id": provider_payment_id,
                            "amount_cents": amount_cents,
                        },
                    )
            else:
                cls._merge(record, fields, metadata)

            cls._transition(
                record,
                target,
                captured_at=captured_at,
                reason=failure_reason,
            )
            record.save()
        return record

    @classmethod
    def apply_gateway_update(
        cls, provider: str, update: WebhookUpdate
    ) -> tuple[PaymentRecord | None, bool]:
        """
        Apply a normalized webhook update to the matching record.

        Returns:
            (record, changed). record is None when no local record matches.
            changed is False for a re-delivered update that was already
            applied.
        """
        if not update.provider_payment_id:
            return None, False

        with transaction.atomic():
            record = cls._locked(provider, update.provider_payment_id)
            if record is None:
                return None, False

            before = cls._snapshot(record)
            cls._merge(
                record,
                {
                    "amount_cents": update.amount_cents,
                    "currency": update.currency,
                    "fee_cents": update.fee_cents,
                    "method": update.method,
                    "captured_at": update.captured_at,
                    "raw_response": update.raw_response or None,
                },
                update.metadata,
            )
            target = to_local_status(update.status)
            if target is not None:
                cls._transition(
                    record,
                    target,
                    captured_at=update.captured_at,
                    reason=update.failure_reason,
                )

            changed = cls._snapshot(record) != before
            if changed:
                record.save()
                cls.get_logger().info(
                    "Gateway update applied",
                    extra={
                        "payment_id": str(record.pk),
                        "provider": provider,
                        "event_type": update.event_type,
                        "status": record.status,
                    },
                )
            else:
                cls.get_logger().debug(
                    "Gateway update already applied",
                    extra={"payment_id": str(record.pk), "event_type": update.event_type},
                )
        return record, changed

    # =========================================================================
    # Explicit Transitions
    # =========================================================================

    @classmethod
    def mark_paid(
        cls, record: PaymentRecord, captured_at: datetime | None = None
    ) -> PaymentRecord:
        """
        Raises:
            InvalidStateTransitionError: Record is refunded or already paid
        """
        return cls._explicit(record, PaymentStatus.PAID, captured_at=captured_at)

    @classmethod
    def mark_failed(cls, record: PaymentRecord, reason: str = "") -> PaymentRecord:
        return cls._explicit(record, PaymentStatus.FAILED, reason=reason)

    @classmethod
    def _explicit(cls, record: PaymentRecord, target: str, **kwargs) -> PaymentRecord:
        with transaction.atomic():
            locked = PaymentRecord.objects.select_for_update().get(pk=record.pk)
            if not cls._transition(locked, target, **kwargs):
                raise InvalidStateTransitionError(
                    f"Cannot move payment from '{locked.status}' to '{target}'",
                    current_state=locked.status,
                    target_state=target,
                )
            locked.save()
        return locked

    # =========================================================================
    # Refunds
    # =========================================================================

    @classmethod
    def record_refund(
        cls,
        record: PaymentRecord,
        *,
        amount_cents: int,
        refund_provider_id: str,
        reason: str = "",
        raw_response: dict[str, Any] | None = None,
    ) -> PaymentRecord:
        """
        Record a gateway refund against a paid record.

        Creates a negative-amount PaymentRecord linked to the original and
        moves the original to partial-refund or refunded.

        Raises:
            PaymentValidationError: Amount is not positive or exceeds what
                is still refundable
        """
        with transaction.atomic():
            original = PaymentRecord.objects.select_for_update().get(pk=record.pk)
            refundable = original.refundable_cents
            if amount_cents <= 0 or amount_cents > refundable:
                raise PaymentValidationError(
                    "Refund amount must be positive and within the refundable amount",
                    details={
                        "payment_id": str(original.pk),
                        "amount_cents": amount_cents,
                        "refundable_cents": refundable,
                    },
                )

            refund = PaymentRecord.objects.create(
                event_id=original.event_id,
                registration_id=original.registration_id,
                original_payment=original,
                provider=original.provider,
                provider_payment_id=refund_provider_id,
                amount_cents=-amount_cents,
                currency=original.currency,
                status=PaymentStatus.REFUNDED,
                raw_response=raw_response or {},
                metadata={"reason": reason},
            )

            original.refunded_cents += amount_cents
            if original.refunded_cents >= original.amount_cents:
                original.mark_refunded()
                if original.registration_id:
                    original.registration.payment_status = RegistrationPaymentStatus.REFUNDED
                    original.registration.save(update_fields=["payment_status", "updated_at"])
            else:
                original.mark_partially_refunded()
            original.save()

            cls.get_logger().info(
                "Refund recorded",
                extra={
                    "payment_id": str(original.pk),
                    "refund_payment_id": str(refund.pk),
                    "amount_cents": amount_cents,
                    "status": original.status,
                },
            )
            transaction.on_commit(
                partial(cls._notify_async, str(original.pk), "payment_refunded")
            )

        record.refunded_cents = original.refunded_cents
        return refund

    # =========================================================================
    # Paid Side Effects
    # =========================================================================

    @classmethod
    def send_payment_documents(cls, payment_id) -> PaymentRecord:
        """
        Generate the invoice (once) and send the payment confirmation.

        Runs after commit from a Celery task. Notification failures are
        reported per recipient by the gateway and do not raise.
        """
        from payments.integrations import get_document_generator

        record = cls.get_payment(payment_id)
        if not record.invoice_url:
            record.invoice_url = get_document_generator().generate_invoice(
                record, record.registration, record.event
            )
            record.save(update_fields=["invoice_url", "updated_at"])
        cls.notify(record, "payment_confirmation")
        return record

    @classmethod
    def notify(cls, record: PaymentRecord, template_type: str) -> list[dict[str, Any]]:
        from payments.integrations import get_notification_gateway

        registration = record.registration
        if registration is None:
            return []
        results = get_notification_gateway().send(
            channel="email",
            template_type=template_type,
            event_id=str(record.event_id),
            recipients=[{"email": registration.email, "name": registration.full_name}],
            template_data={
                "event_name": record.event.name,
                "registration_id": registration.registration_id,
                "amount": f"{abs(record.amount_cents) / 100:.2f}",
                "refunded": f"{record.refunded_cents / 100:.2f}",
                "currency": record.currency,
                "invoice_number": record.invoice_number,
                "invoice_url": record.invoice_url,
            },
        )
        failed = [r for r in results if not r.get("success")]
        if failed:
            cls.get_logger().warning(
                "Payment notification not delivered",
                extra={"payment_id": str(record.pk), "template_type": template_type},
            )
        return results

    @classmethod
    def _notify_async(cls, payment_id: str, template_type: str) -> None:
        from payments.tasks import send_payment_notification

        send_payment_notification.delay(payment_id, template_type)

    @classmethod
    def _on_paid(cls, record: PaymentRecord) -> None:
        from payments.services.payment_plan_service import PaymentPlanService
        from payments.tasks import send_payment_documents

        record.assign_invoice_number()

        if record.installment_id:
            try:
                PaymentPlanService.mark_installment_paid(record.installment, record)
            except InvalidStateTransitionError as exc:
                # Money arrived for a cancelled installment; keep it for review.
                record.reconciliation_note = f"Installment not updated: {exc.message}"
                cls.get_logger().warning(
                    "Paid installment payment could not be applied",
                    extra={"payment_id": str(record.pk), "installment_id": str(record.installment_id)},
                )
        elif record.registration_id:
            registration = record.registration
            if registration.payment_status != RegistrationPaymentStatus.PAID:
                registration.payment_status = RegistrationPaymentStatus.PAID
                registration.save(update_fields=["payment_status", "updated_at"])

        transaction.on_commit(partial(send_payment_documents.delay, str(record.pk)))

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def _locked(cls, provider: str, provider_payment_id: str) -> PaymentRecord | None:
        return (
            PaymentRecord.objects.select_for_update()
            .filter(provider=provider, provider_payment_id=provider_payment_id)
            .first()
        )

    @classmethod
    def _merge(
        cls,
        record: PaymentRecord,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None,
    ) -> None:
        """
        Overwrite mutable fields with every non-empty incoming value.

        captured_at and the registration/installment links are set once.
        """
        for name, value in fields.items():
            if value in (None, "") or value == {}:
                continue
            if name == "captured_at" and record.captured_at is not None:
                continue
            if name in ("registration", "installment"):
                if getattr(record, f"{name}_id") is None:
                    setattr(record, name, value)
                continue
            if name == "currency":
                value = value.upper()
            setattr(record, name, value)
        if metadata:
            record.metadata = {**(record.metadata or {}), **metadata}

    @classmethod
    def _transition(
        cls,
        record: PaymentRecord,
        target: str,
        *,
        captured_at: datetime | None = None,
        reason: str = "",
    ) -> bool:
        """
        Move record towards target through the FSM. Returns True on change.

        Illegal targets leave the status untouched (never a regression).
        """
        current = record.status
        if current == target:
            return False

        try:
            if target == PaymentStatus.PAID:
                record.mark_paid(captured_at=captured_at)
                cls._on_paid(record)
            elif target == PaymentStatus.FAILED:
                record.mark_failed(reason=reason)
            elif target == PaymentStatus.REFUNDED:
                if current in (PaymentStatus.INITIATED, PaymentStatus.FAILED):
                    record.mark_paid(captured_at=captured_at)
                    record.assign_invoice_number()
                record.mark_refunded()
                record.refunded_cents = max(record.refunded_cents, record.amount_cents)
            elif target == PaymentStatus.PARTIAL_REFUND:
                record.mark_partially_refunded()
            else:
                return False
        except TransitionNotAllowed:
            cls.get_logger().info(
                "Ignoring status regression",
                extra={
                    "payment_id": str(record.pk),
                    "current_status": current,
                    "requested_status": target,
                },
            )
            return False
        return True

    @classmethod
    def _snapshot(cls, record: PaymentRecord) -> tuple:
        return tuple(getattr(record, name) for name in TRACKED_FIELDS)
