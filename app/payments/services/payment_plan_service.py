"""
Payment plan / installment engine.

Owns every state change of PaymentPlan and Installment. Derived values are
computed by payments.services.plan_schedule; reminder cadence comes from
payments.services.reminder_policy.ReminderPolicy.

Installment flow:
    pending -> due        predecessor paid (first installment: on creation)
    due -> overdue        scheduled sweep, due_date < now
    due|overdue -> paid   linked PaymentRecord reaches "paid"
    due|overdue -> failed auto-charge attempts exhausted
    * -> cancelled        plan cancelled

Plan flow:
    active -> completed   every installment paid (checked after each change)
    active -> cancelled   cancel_plan(reason)
    active -> defaulted   reminders exhausted and escalation period passed

Concurrency:
    Plan mutations lock the plan row (select_for_update) and then its
    installments, always in that order. cancel/reschedule accept an
    expected_version for optimistic locking from API callers.

Usage:
    from payments.services.payment_plan_service import PaymentPlanService

    plan = PaymentPlanService.create_plan(
        registration=registration,
        total_amount_cents=10000,
        installment_count=3,
    )
    PaymentPlanService.mark_installment_paid(first_installment, payment)
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.db.models import F, Max
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from core.services import BaseService

from events.models import RegistrationPaymentStatus
from payments.adapters.base import backoff_delay, is_retryable_error
from payments.exceptions import (
    InvalidStateTransitionError,
    LockAcquisitionError,
    PaymentError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.locks import DistributedLock, check_version
from payments.models import Installment, PaymentPlan
from payments.services import plan_schedule
from payments.services.reminder_policy import ReminderPolicy
from payments.state_machines import InstallmentStatus, PaymentPlanStatus

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any

    from events.models import Registration
    from payments.adapters.base import ChargeResult, CheckoutResult
    from payments.models import PaymentRecord


OPEN_DUE_STATES = (
    InstallmentStatus.DUE,
    InstallmentStatus.OVERDUE,
    InstallmentStatus.FAILED,
)


class PaymentPlanService(BaseService):
    """State changes and scheduled jobs for installment plans."""

    # =========================================================================
    # Creation
    # =========================================================================

    @classmethod
    def create_plan(
        cls,
        registration: Registration,
        total_amount_cents: int,
        installment_count: int,
        first_due_date: datetime | None = None,
        interval_days: int | None = None,
        provider: str | None = None,
        currency: str | None = None,
        auto_charge: bool = False,
        saved_payment_method: dict[str, Any] | None = None,
        reminder_settings: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentPlan:
        """
        Create a plan with evenly split installments.

        The last installment absorbs the rounding remainder. The first
        installment is due immediately; the rest are pending.

        Raises:
            PaymentValidationError: Bad total/count, or no gateway for the event
        """
        event = registration.event
        provider = provider or event.payment_provider
        if not provider:
            raise PaymentValidationError(
                "Event has no payment provider configured",
                details={"event_id": str(event.pk)},
            )
        if auto_charge and not (saved_payment_method or {}).get("payment_method_id"):
            raise PaymentValidationError(
                "Auto-charge requires a saved payment method",
                details={"registration_id": registration.registration_id},
            )

        schedule = plan_schedule.build_schedule(
            total_amount_cents,
            installment_count,
            first_due_date=first_due_date,
            interval_days=interval_days or settings.INSTALLMENT_INTERVAL_DAYS,
        )

        with transaction.atomic():
            plan = PaymentPlan(
                registration=registration,
                event=event,
                total_amount_cents=total_amount_cents,
                currency=(currency or event.currency).upper(),
                provider=provider,
                auto_charge=auto_charge,
                saved_payment_method=saved_payment_method or {},
                metadata=metadata or {},
            )
            if reminder_settings:
                plan.reminder_settings = {**plan.reminder_settings, **reminder_settings}
            plan.save()

            for item in schedule:
                installment = Installment(
                    plan=plan,
                    sequence=item.sequence,
                    amount_cents=item.amount_cents,
                    due_date=item.due_date,
                )
                if item.sequence == 1:
                    installment.activate()
                installment.save()

        cls.get_logger().info(
            "Payment plan created",
            extra={
                "plan_id": str(plan.pk),
                "registration_id": registration.registration_id,
                "total_amount_cents": total_amount_cents,
                "installment_count": installment_count,
            },
        )
        return plan

    # =========================================================================
    # Installment Transitions
    # =========================================================================

    @classmethod
    def mark_installment_paid(
        cls,
        installment: Installment,
        payment: PaymentRecord | None = None,
    ) -> Installment:
        """
        Mark an installment paid, activate its successor, complete the plan.

        Idempotent: an installment that is already paid is returned as is.
        """
        with transaction.atomic():
            plan = cls._lock_plan(installment.plan_id)
            installments = cls._lock_installments(plan)
            current = next(i for i in installments if i.pk == installment.pk)

            if current.status == InstallmentStatus.PAID:
                return current
            try:
                current.mark_paid(payment=payment)
            except TransitionNotAllowed:
                raise InvalidStateTransitionError(
                    f"Cannot pay installment in '{current.status}' state",
                    current_state=current.status,
                    target_state=InstallmentStatus.PAID,
                ) from None
            current.save()

            activated = cls._activate_next(installments)
            cls._complete_if_paid(plan, installments)

        cls.get_logger().info(
            "Installment paid",
            extra={
                "plan_id": str(plan.pk),
                "installment_id": str(current.pk),
                "sequence": current.sequence,
                "activated_sequence": activated.sequence if activated else None,
                "plan_status": plan.status,
            },
        )
        return current

    @classmethod
    def mark_installment_overdue(cls, installment: Installment) -> Installment:
        with transaction.atomic():
            locked = Installment.objects.select_for_update().get(pk=installment.pk)
            if locked.status != InstallmentStatus.DUE:
                return locked
            locked.mark_overdue()
            if not locked.overdue_notification_sent:
                locked.overdue_notification_sent = True
                transaction.on_commit(
                    partial(cls._notify_async, str(locked.pk), "installment_overdue")
                )
            locked.save()
        return locked

    @classmethod
    def mark_installment_failed(cls, installment: Installment) -> Installment:
        with transaction.atomic():
            locked = Installment.objects.select_for_update().get(pk=installment.pk)
            try:
                locked.mark_failed()
            except TransitionNotAllowed:
                raise InvalidStateTransitionError(
                    f"Cannot fail installment in '{locked.status}' state",
                    current_state=locked.status,
                    target_state=InstallmentStatus.FAILED,
                ) from None
            locked.save()
        return locked

    # =========================================================================
    # Reminders
    # =========================================================================

    @classmethod
    def send_reminder(cls, installment: Installment, now: datetime | None = None) -> bool:
        """
        Send one reminder and bump the counters.

        Returns False without sending when the reminder budget is spent.
        """
        now = now or timezone.now()
        with transaction.atomic():
            locked = Installment.objects.select_for_update().select_related(
                "plan__event", "plan__registration"
            ).get(pk=installment.pk)
            policy = ReminderPolicy.for_plan(locked.plan)
            if locked.reminders_sent >= policy.max_reminders:
                return False
            locked.reminders_sent += 1
            locked.last_reminder_sent_at = now
            locked.save(update_fields=["reminders_sent", "last_reminder_sent_at", "updated_at"])

        cls.notify(locked, "installment_reminder")
        return True

    @classmethod
    def notify(cls, installment: Installment, template_type: str) -> list[dict[str, Any]]:
        from payments.integrations import get_notification_gateway

        plan = installment.plan
        registration = plan.registration
        return get_notification_gateway().send(
            channel="email",
            template_type=template_type,
            event_id=str(plan.event_id),
            recipients=[{"email": registration.email, "name": registration.full_name}],
            template_data={
                "event_name": plan.event.name,
                "registration_id": registration.registration_id,
                "installment": installment.sequence,
                "amount": f"{installment.amount_cents / 100:.2f}",
                "currency": plan.currency,
                "due_date": installment.due_date.date().isoformat(),
                "reminders_sent": installment.reminders_sent,
            },
        )

    @classmethod
    def _notify_async(cls, installment_id: str, template_type: str) -> None:
        from payments.tasks import send_installment_notification

        send_installment_notification.delay(installment_id, template_type)

    # =========================================================================
    # Plan Changes
    # =========================================================================

    @classmethod
    def cancel_plan(
        cls,
        plan: PaymentPlan,
        reason: str = "",
        expected_version: int | None = None,
    ) -> PaymentPlan:
        """
        Cancel the plan and every installment that is not yet paid.

        Raises:
            InvalidStateTransitionError: Plan is not active
            StaleRecordError: expected_version does not match
        """
        with transaction.atomic():
            locked = cls._lock_plan(plan.pk, expected_version)
            try:
                locked.cancel(reason=reason)
            except TransitionNotAllowed:
                raise InvalidStateTransitionError(
                    f"Cannot cancel a {locked.status} plan",
                    current_state=locked.status,
                    target_state=PaymentPlanStatus.CANCELLED,
                ) from None
            for installment in cls._lock_installments(locked):
                if installment.is_open:
                    installment.cancel()
                    installment.save()
            locked.save()

        cls.get_logger().info(
            "Payment plan cancelled",
            extra={"plan_id": str(locked.pk), "reason": reason},
        )
        return locked

    @classmethod
    def reschedule_plan(
        cls,
        plan: PaymentPlan,
        changes: list[dict[str, Any]],
        expected_version: int | None = None,
    ) -> PaymentPlan:
        """
        Shift due dates and amounts of unpaid installments.

        changes: [{"sequence": 2, "amount_cents": 4000, "due_date": dt}, ...]
        Amounts of all installments must still add up to the plan total.

        Raises:
            InvalidStateTransitionError: Plan is not active
            PaymentValidationError: Paid installment touched, unknown sequence,
                or the sum invariant would break
        """
        with transaction.atomic():
            locked = cls._lock_plan(plan.pk, expected_version)
            if locked.status != PaymentPlanStatus.ACTIVE:
                raise InvalidStateTransitionError(
                    f"Cannot reschedule a {locked.status} plan",
                    current_state=locked.status,
                )
            installments = {i.sequence: i for i in cls._lock_installments(locked)}

            for change in changes:
                installment = installments.get(change.get("sequence"))
                if installment is None:
                    raise PaymentValidationError(
                        "Unknown installment in reschedule",
                        details={"sequence": change.get("sequence")},
                    )
                if not installment.is_open:
                    raise PaymentValidationError(
                        f"Installment {installment.sequence} is {installment.status} and cannot change",
                        details={"sequence": installment.sequence},
                    )
                if change.get("amount_cents") is not None:
                    installment.amount_cents = int(change["amount_cents"])
                if change.get("due_date") is not None:
                    installment.due_date = change["due_date"]

            plan_schedule.validate_amounts(
                [i.amount_cents for i in installments.values()
                 if i.status != InstallmentStatus.CANCELLED],
                locked.total_amount_cents,
            )
            for installment in installments.values():
                installment.save()
            locked.save()
        return locked

    @classmethod
    def add_installment(
        cls,
        plan: PaymentPlan,
        amount_cents: int,
        due_date: datetime,
    ) -> Installment:
        """Append a pending installment; the plan total grows by its amount."""
        if amount_cents <= 0:
            raise PaymentValidationError(
                "Installment amount must be positive",
                details={"amount_cents": amount_cents},
            )
        with transaction.atomic():
            locked = cls._lock_plan(plan.pk)
            if locked.status != PaymentPlanStatus.ACTIVE:
                raise InvalidStateTransitionError(
                    f"Cannot add installments to a {locked.status} plan",
                    current_state=locked.status,
                )
            last = locked.installments.aggregate(last=Max("sequence"))["last"] or 0
            installment = Installment.objects.create(
                plan=locked,
                sequence=last + 1,
                amount_cents=amount_cents,
                due_date=due_date,
            )
            locked.total_amount_cents += amount_cents
            locked.save()
            cls._activate_next(cls._lock_installments(locked))
        return Installment.objects.get(pk=installment.pk)

    @classmethod
    def default_plan(cls, plan: PaymentPlan, reason: str = "") -> PaymentPlan:
        with transaction.atomic():
            locked = cls._lock_plan(plan.pk)
            if locked.status != PaymentPlanStatus.ACTIVE:
                return locked
            locked.mark_defaulted()
            locked.set_meta("default_reason", reason, save=False)
            locked.save()

        cls.get_logger().warning(
            "Payment plan defaulted",
            extra={"plan_id": str(locked.pk), "reason": reason},
        )
        first_open = locked.installments.filter(status__in=OPEN_DUE_STATES).first()
        if first_open is not None:
            cls.notify(first_open, "payment_plan_defaulted")
        return locked

    # =========================================================================
    # Collecting Payment
    # =========================================================================

    @classmethod
    def process_next_installment(cls, plan_id) -> dict[str, Any]:
        """
        Collect the plan's current installment.

        Auto-charge plans with a saved method are charged directly; others
        get a partial-payment checkout link sent to the registrant.
        """
        with transaction.atomic():
            plan = cls._lock_plan(plan_id)
            if plan.status != PaymentPlanStatus.ACTIVE:
                return {"plan_id": str(plan.pk), "action": "none", "reason": f"plan {plan.status}"}
            installments = cls._lock_installments(plan)
            installment = cls._collectable(installments) or cls._activate_next(installments)

        if installment is None:
            return {"plan_id": str(plan.pk), "action": "none", "reason": "nothing due"}

        if plan.auto_charge and plan.has_saved_payment_method:
            charge = cls.charge_installment(plan, installment)
            return {
                "plan_id": str(plan.pk),
                "action": "charged",
                "installment_id": str(installment.pk),
                "payment_id": charge.payment_id,
                "status": charge.status,
            }

        checkout = cls.create_installment_checkout(installment)
        cls.notify(installment, "installment_due")
        return {
            "plan_id": str(plan.pk),
            "action": "checkout",
            "installment_id": str(installment.pk),
            "payment_id": checkout.payment_id,
            "url": checkout.url,
        }

    @classmethod
    def create_installment_checkout(
        cls,
        installment: Installment,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutResult:
        from payments.adapters.registry import get_adapter_for_event

        plan = installment.plan
        registration = plan.registration
        base = f"{settings.PAYMENT_CLIENT_URL.rstrip('/')}/registrations/{registration.registration_id}"
        adapter = get_adapter_for_event(plan.event)
        return adapter.create_partial_payment(
            registration,
            installment.amount_cents,
            installment,
            success_url or f"{base}/payment/success?installment={installment.pk}",
            cancel_url or f"{base}/payment/cancel?installment={installment.pk}",
        )

    @classmethod
    def charge_installment(cls, plan: PaymentPlan, installment: Installment) -> ChargeResult:
        """
        Charge the saved payment method for one installment.

        A successful capture marks the installment paid through the payment
        record store. After PAYMENT_GATEWAY_MAX_RETRIES failed attempts the
        installment is marked failed. A per-installment lock keeps two
        workers from charging the same installment at once.

        Raises:
            PaymentError: The charge failed (the attempt is still counted)
            LockAcquisitionError: Another worker is charging this installment
        """
        with DistributedLock(f"installment:charge:{installment.pk}", ttl=120, blocking=False):
            return cls._charge_with_lock(plan, installment)

    @classmethod
    def _charge_with_lock(cls, plan: PaymentPlan, installment: Installment) -> ChargeResult:
        from payments.adapters.registry import get_adapter_for_event

        Installment.objects.filter(pk=installment.pk).update(
            charge_attempts=F("charge_attempts") + 1
        )
        installment.charge_attempts += 1
        adapter = get_adapter_for_event(plan.event)
        try:
            return adapter.charge_installment(plan, installment, plan.saved_payment_method)
        except PaymentError as exc:
            cls.get_logger().warning(
                "Installment charge failed",
                extra={
                    "plan_id": str(plan.pk),
                    "installment_id": str(installment.pk),
                    "attempt": installment.charge_attempts,
                    "error_code": exc.error_code,
                },
            )
            if installment.charge_attempts >= settings.PAYMENT_GATEWAY_MAX_RETRIES:
                current = Installment.objects.get(pk=installment.pk)
                if current.status in (InstallmentStatus.DUE, InstallmentStatus.OVERDUE):
                    cls.mark_installment_failed(current)
            raise

    # =========================================================================
    # Scheduled Jobs
    # =========================================================================

    @classmethod
    def sweep_overdue_installments(cls, now: datetime | None = None) -> dict[str, int]:
        """Mark past-due installments overdue and default exhausted plans."""
        now = now or timezone.now()
        overdue = 0
        for installment in Installment.objects.past_due(now):
            cls.mark_installment_overdue(installment)
            overdue += 1

        defaulted = 0
        candidates = Installment.objects.filter(
            status=InstallmentStatus.OVERDUE,
            plan__status=PaymentPlanStatus.ACTIVE,
        ).select_related("plan")
        for installment in candidates:
            if ReminderPolicy.for_plan(installment.plan).should_escalate(installment, now):
                cls.default_plan(
                    installment.plan,
                    reason=f"Installment {installment.sequence} overdue past escalation period",
                )
                defaulted += 1

        cls.get_logger().info(
            "Overdue sweep complete",
            extra={"overdue": overdue, "defaulted": defaulted},
        )
        return {"overdue": overdue, "defaulted": defaulted}

    @classmethod
    def send_due_reminders(cls, now: datetime | None = None) -> int:
        now = now or timezone.now()
        sent = 0
        installments = Installment.objects.filter(
            status__in=[InstallmentStatus.DUE, InstallmentStatus.OVERDUE],
            plan__status=PaymentPlanStatus.ACTIVE,
        ).select_related("plan")
        for installment in installments:
            if ReminderPolicy.for_plan(installment.plan).should_remind(installment, now):
                if cls.send_reminder(installment, now=now):
                    sent += 1
        return sent

    @classmethod
    def charge_due_installments(cls, now: datetime | None = None) -> dict[str, int]:
        """Charge every due installment of auto-charge plans whose date has arrived."""
        now = now or timezone.now()
        charged = failed = 0
        installments = Installment.objects.filter(
            status__in=[InstallmentStatus.DUE, InstallmentStatus.OVERDUE],
            due_date__lte=now,
            plan__status=PaymentPlanStatus.ACTIVE,
            plan__auto_charge=True,
        ).select_related("plan__event", "plan__registration")
        for installment in installments:
            plan = installment.plan
            if not plan.has_saved_payment_method:
                continue
            try:
                cls.charge_installment(plan, installment)
            except LockAcquisitionError:
                continue
            except PaymentError as exc:
                failed += 1
                if is_retryable_error(exc):
                    cls._queue_charge_retry(installment)
            else:
                charged += 1
        return {"charged": charged, "failed": failed}

    @classmethod
    def retry_installment_charge(cls, installment_id) -> ChargeResult | None:
        """
        Charge one installment again after a transient gateway failure.

        Returns None when the installment no longer needs charging (paid,
        failed for good, or its plan stopped auto-charging).

        Raises:
            PaymentError: The charge failed again
            LockAcquisitionError: Another worker is charging this installment
        """
        installment = (
            Installment.objects.select_related("plan__event", "plan__registration")
            .filter(pk=installment_id)
            .first()
        )
        if installment is None:
            return None
        plan = installment.plan
        collectable = installment.status in (InstallmentStatus.DUE, InstallmentStatus.OVERDUE)
        if (
            not collectable
            or plan.status != PaymentPlanStatus.ACTIVE
            or not (plan.auto_charge and plan.has_saved_payment_method)
        ):
            return None
        return cls.charge_installment(plan, installment)

    @classmethod
    def _queue_charge_retry(cls, installment: Installment) -> None:
        from payments.tasks import retry_installment_charge

        countdown = backoff_delay(installment.charge_attempts, base=60.0, max_delay=1800.0)
        transaction.on_commit(
            lambda: retry_installment_charge.apply_async(
                (str(installment.pk),), countdown=countdown
            )
        )

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    def get_plan(cls, plan_id) -> PaymentPlan:
        try:
            return PaymentPlan.objects.select_related("registration", "event").get(pk=plan_id)
        except (PaymentPlan.DoesNotExist, ValueError):
            raise PaymentNotFoundError(
                f"Payment plan {plan_id} not found",
                details={"plan_id": str(plan_id)},
            ) from None

    @classmethod
    def get_summary(cls, plan: PaymentPlan) -> dict[str, Any]:
        return plan_schedule.payment_summary(plan)

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def _lock_plan(cls, plan_id, expected_version: int | None = None) -> PaymentPlan:
        if expected_version is not None:
            return check_version(PaymentPlan, plan_id, expected_version)
        try:
            return PaymentPlan.objects.select_for_update().get(pk=plan_id)
        except PaymentPlan.DoesNotExist:
            raise PaymentNotFoundError(
                f"Payment plan {plan_id} not found",
                details={"plan_id": str(plan_id)},
            ) from None

    @classmethod
    def _lock_installments(cls, plan: PaymentPlan) -> list[Installment]:
        return list(
            Installment.objects.select_for_update().filter(plan=plan).order_by("sequence")
        )

    @classmethod
    def _collectable(cls, installments: list[Installment]) -> Installment | None:
        for installment in installments:
            if installment.status in OPEN_DUE_STATES:
                return installment
        return None

    @classmethod
    def _activate_next(cls, installments: list[Installment]) -> Installment | None:
        """Make the earliest pending installment due when nothing else is."""
        if cls._collectable(installments) is not None:
            return None
        pending = plan_schedule.next_pending_installment(installments)
        if pending is None:
            return None
        pending.activate()
        pending.save()
        transaction.on_commit(
            partial(cls._notify_async, str(pending.pk), "installment_due")
        )
        return pending

    @classmethod
    def _complete_if_paid(cls, plan: PaymentPlan, installments: list[Installment]) -> bool:
        if plan.status not in (PaymentPlanStatus.ACTIVE, PaymentPlanStatus.DEFAULTED):
            return False
        if not plan_schedule.all_paid(installments):
            return False
        plan.complete()
        plan.save()
        registration = plan.registration
        if registration.payment_status != RegistrationPaymentStatus.PAID:
            registration.payment_status = RegistrationPaymentStatus.PAID
            registration.save(update_fields=["payment_status", "updated_at"])
        return True
