"""
Tests for PaymentPlanService: plan creation, installment progression,
cancellation, rescheduling and the scheduled installment jobs.

Charging tests use the mock_redis fixture so the per-installment
DistributedLock acquires without a Redis server.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from django.test import override_settings
from django.utils import timezone

from events.models import Registration, RegistrationPaymentStatus
from payments.exceptions import (
    GatewayRequestError,
    InvalidStateTransitionError,
    LockAcquisitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    UnsupportedFeatureError,
)
from payments.adapters.stub_adapter import StubAdapter
from payments.models import Installment, PaymentPlan, PaymentRecord
from payments.services import PaymentPlanService
from payments.state_machines import InstallmentStatus, PaymentPlanStatus, PaymentStatus


def statuses(plan):
    return list(plan.installments.order_by("sequence").values_list("status", flat=True))


# =============================================================================
# Creation
# =============================================================================


class TestCreatePlan:
    def test_split_with_remainder_on_last(self, plan):
        installments = list(plan.installments.order_by("sequence"))

        assert [i.amount_cents for i in installments] == [3333, 3333, 3334]
        assert sum(i.amount_cents for i in installments) == plan.total_amount_cents

    def test_first_installment_due_rest_pending(self, plan):
        assert statuses(plan) == [
            InstallmentStatus.DUE,
            InstallmentStatus.PENDING,
            InstallmentStatus.PENDING,
        ]

    def test_plan_inherits_event_gateway_and_currency(self, plan, event):
        assert plan.status == PaymentPlanStatus.ACTIVE
        assert plan.provider == "stub"
        assert plan.currency == event.currency
        assert plan.event == event

    def test_due_dates_spaced_by_interval(self, registration):
        first_due = timezone.now()
        plan = PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=first_due,
            interval_days=14,
        )

        second = plan.installments.get(sequence=2)
        assert second.due_date == first_due + timedelta(days=14)

    def test_reminder_settings_merged_with_defaults(self, registration):
        plan = PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            reminder_settings={"days_before": 1},
        )

        assert plan.reminder_settings["days_before"] == 1
        assert plan.reminder_settings["max_reminders"] == 3

    def test_count_greater_than_total_rejected(self, registration):
        with pytest.raises(PaymentValidationError):
            PaymentPlanService.create_plan(
                registration=registration, total_amount_cents=2, installment_count=3
            )

        assert PaymentPlan.objects.count() == 0

    def test_event_without_gateway_rejected(self, registration):
        event = registration.event
        event.payment_config = {}
        event.save()

        with pytest.raises(PaymentValidationError):
            PaymentPlanService.create_plan(
                registration=registration, total_amount_cents=6000, installment_count=2
            )

    def test_auto_charge_requires_saved_method(self, registration):
        with pytest.raises(PaymentValidationError):
            PaymentPlanService.create_plan(
                registration=registration,
                total_amount_cents=6000,
                installment_count=2,
                auto_charge=True,
            )


# =============================================================================
# Installment Progression
# =============================================================================


class TestMarkInstallmentPaid:
    def test_paying_first_makes_second_due(self, plan, paid_record):
        first = plan.installments.get(sequence=1)

        PaymentPlanService.mark_installment_paid(first, paid_record)

        assert statuses(plan) == [
            InstallmentStatus.PAID,
            InstallmentStatus.DUE,
            InstallmentStatus.PENDING,
        ]
        assert plan.installments.get(sequence=1).payment == paid_record

    def test_paying_all_completes_plan(self, plan, registration):
        for installment in plan.installments.order_by("sequence"):
            PaymentPlanService.mark_installment_paid(installment)

        stored = PaymentPlan.objects.get(pk=plan.pk)
        assert stored.status == PaymentPlanStatus.COMPLETED
        assert stored.completed_at is not None
        assert (
            Registration.objects.get(pk=registration.pk).payment_status
            == RegistrationPaymentStatus.PAID
        )

    def test_plan_not_completed_while_installments_remain(self, plan):
        PaymentPlanService.mark_installment_paid(plan.installments.get(sequence=1))

        stored = PaymentPlan.objects.get(pk=plan.pk)
        assert stored.status == PaymentPlanStatus.ACTIVE
        assert stored.completed_at is None

    def test_paying_twice_is_idempotent(self, plan):
        first = plan.installments.get(sequence=1)
        PaymentPlanService.mark_installment_paid(first)
        paid_at = Installment.objects.get(pk=first.pk).paid_at

        again = PaymentPlanService.mark_installment_paid(first)

        assert again.status == InstallmentStatus.PAID
        assert again.paid_at == paid_at
        assert statuses(plan)[2] == InstallmentStatus.PENDING

    def test_early_payment_of_pending_installment(self, plan):
        third = plan.installments.get(sequence=3)

        PaymentPlanService.mark_installment_paid(third)

        assert statuses(plan) == [
            InstallmentStatus.DUE,
            InstallmentStatus.PENDING,
            InstallmentStatus.PAID,
        ]

    def test_cancelled_installment_cannot_be_paid(self, plan):
        PaymentPlanService.cancel_plan(plan)

        with pytest.raises(InvalidStateTransitionError):
            PaymentPlanService.mark_installment_paid(plan.installments.get(sequence=1))

    def test_overdue_then_failed(self, plan):
        first = plan.installments.get(sequence=1)

        PaymentPlanService.mark_installment_overdue(first)
        failed = PaymentPlanService.mark_installment_failed(first)

        assert failed.status == InstallmentStatus.FAILED
        assert Installment.objects.get(pk=first.pk).overdue_notification_sent is True

    def test_pending_installment_cannot_fail(self, plan):
        with pytest.raises(InvalidStateTransitionError):
            PaymentPlanService.mark_installment_failed(plan.installments.get(sequence=2))


# =============================================================================
# Plan Changes
# =============================================================================


class TestCancelPlan:
    def test_cancels_open_installments_and_keeps_paid(self, plan):
        PaymentPlanService.mark_installment_paid(plan.installments.get(sequence=1))

        cancelled = PaymentPlanService.cancel_plan(plan, reason="Attendee withdrew")

        assert cancelled.status == PaymentPlanStatus.CANCELLED
        assert cancelled.cancellation_reason == "Attendee withdrew"
        assert cancelled.cancelled_at is not None
        assert statuses(plan) == [
            InstallmentStatus.PAID,
            InstallmentStatus.CANCELLED,
            InstallmentStatus.CANCELLED,
        ]

    def test_cannot_cancel_twice(self, plan):
        PaymentPlanService.cancel_plan(plan)

        with pytest.raises(InvalidStateTransitionError):
            PaymentPlanService.cancel_plan(plan)


class TestDefaultPlan:
    def test_active_plan_defaults_with_reason(self, plan, notification_gateway):
        defaulted = PaymentPlanService.default_plan(plan, reason="Card expired")

        assert defaulted.status == PaymentPlanStatus.DEFAULTED
        assert defaulted.defaulted_at is not None
        assert defaulted.get_meta("default_reason") == "Card expired"
        assert (
            notification_gateway.send.call_args.kwargs["template_type"]
            == "payment_plan_defaulted"
        )

    def test_inactive_plan_left_alone(self, plan):
        PaymentPlanService.cancel_plan(plan)

        result = PaymentPlanService.default_plan(plan, reason="late")

        assert result.status == PaymentPlanStatus.CANCELLED
        assert result.defaulted_at is None

    def test_paying_every_installment_completes_defaulted_plan(
        self, plan, registration, notification_gateway
    ):
        PaymentPlanService.default_plan(plan, reason="Missed installment")

        for installment in plan.installments.order_by("sequence"):
            PaymentPlanService.mark_installment_paid(installment)

        stored = PaymentPlan.objects.get(pk=plan.pk)
        assert statuses(plan) == [InstallmentStatus.PAID] * 3
        assert stored.status == PaymentPlanStatus.COMPLETED
        assert stored.completed_at is not None
        registration.refresh_from_db()
        assert registration.payment_status == RegistrationPaymentStatus.PAID


class TestReschedulePlan:
    def test_moves_amounts_between_open_installments(self, plan):
        new_due = timezone.now() + timedelta(days=90)

        PaymentPlanService.reschedule_plan(
            plan,
            [
                {"sequence": 2, "amount_cents": 2000, "due_date": new_due},
                {"sequence": 3, "amount_cents": 4667},
            ],
        )

        second = plan.installments.get(sequence=2)
        assert second.amount_cents == 2000
        assert second.due_date == new_due
        assert plan.installments.get(sequence=3).amount_cents == 4667

    def test_sum_must_still_match_total(self, plan):
        with pytest.raises(PaymentValidationError):
            PaymentPlanService.reschedule_plan(plan, [{"sequence": 2, "amount_cents": 1}])

        assert plan.installments.get(sequence=2).amount_cents == 3333

    def test_paid_installment_cannot_change(self, plan):
        PaymentPlanService.mark_installment_paid(plan.installments.get(sequence=1))

        with pytest.raises(PaymentValidationError):
            PaymentPlanService.reschedule_plan(
                plan, [{"sequence": 1, "due_date": timezone.now()}]
            )

    def test_unknown_sequence_rejected(self, plan):
        with pytest.raises(PaymentValidationError):
            PaymentPlanService.reschedule_plan(plan, [{"sequence": 9, "amount_cents": 10}])

    def test_bumps_version(self, plan):
        updated = PaymentPlanService.reschedule_plan(
            plan, [{"sequence": 3, "due_date": timezone.now() + timedelta(days=70)}]
        )

        assert updated.version == plan.version + 1


class TestAddInstallment:
    def test_appends_and_grows_total(self, plan):
        added = PaymentPlanService.add_installment(
            plan, amount_cents=2500, due_date=timezone.now() + timedelta(days=120)
        )

        assert added.sequence == 4
        assert added.status == InstallmentStatus.PENDING
        assert PaymentPlan.objects.get(pk=plan.pk).total_amount_cents == 12500

    def test_completed_plan_rejects_new_installments(self, plan):
        for installment in plan.installments.order_by("sequence"):
            PaymentPlanService.mark_installment_paid(installment)
        assert PaymentPlan.objects.get(pk=plan.pk).status == PaymentPlanStatus.COMPLETED

        with pytest.raises(InvalidStateTransitionError):
            PaymentPlanService.add_installment(
                plan, amount_cents=100, due_date=timezone.now()
            )

    def test_non_positive_amount_rejected(self, plan):
        with pytest.raises(PaymentValidationError):
            PaymentPlanService.add_installment(plan, amount_cents=0, due_date=timezone.now())


class TestGetPlan:
    def test_unknown_plan(self, db):
        with pytest.raises(PaymentNotFoundError):
            PaymentPlanService.get_plan("00000000-0000-0000-0000-000000000000")

    def test_summary(self, plan):
        PaymentPlanService.mark_installment_paid(plan.installments.get(sequence=1))

        summary = PaymentPlanService.get_summary(plan)

        assert summary["total_paid_cents"] == 3333
        assert summary["remaining_cents"] == 6667
        assert summary["next_due"]["sequence"] == 2


# =============================================================================
# Collecting Payment
# =============================================================================


class TestProcessNextInstallment:
    def test_sends_checkout_link_for_manual_plans(self, plan, notification_gateway):
        result = PaymentPlanService.process_next_installment(plan.pk)

        assert result["action"] == "checkout"
        assert result["installment_id"] == str(plan.installments.get(sequence=1).pk)
        record = PaymentRecord.objects.get(pk=result["payment_id"])
        assert record.amount_cents == 3333
        assert record.installment.sequence == 1
        assert notification_gateway.send.call_args.kwargs["template_type"] == "installment_due"

    def test_charges_auto_charge_plans(self, auto_charge_plan, mock_redis):
        result = PaymentPlanService.process_next_installment(auto_charge_plan.pk)

        assert result["action"] == "charged"
        assert result["status"] == "captured"
        assert statuses(auto_charge_plan)[:2] == [InstallmentStatus.PAID, InstallmentStatus.DUE]

    def test_inactive_plan_does_nothing(self, plan):
        PaymentPlanService.cancel_plan(plan)

        result = PaymentPlanService.process_next_installment(plan.pk)

        assert result["action"] == "none"


class TestCreateInstallmentCheckout:
    def test_gateway_without_partial_payments(self, plan):
        with patch.dict(
            StubAdapter.supported_features,
            {"partial_payments": False},
        ):
            with pytest.raises(UnsupportedFeatureError) as exc_info:
                PaymentPlanService.create_installment_checkout(
                    plan.installments.get(sequence=1)
                )

        assert exc_info.value.http_status == 422


class TestChargeInstallment:
    def test_successful_charge_pays_installment(self, auto_charge_plan, mock_redis):
        first = auto_charge_plan.installments.get(sequence=1)

        charge = PaymentPlanService.charge_installment(auto_charge_plan, first)

        record = PaymentRecord.objects.get(pk=charge.payment_id)
        assert record.status == PaymentStatus.PAID
        assert record.installment_id == first.pk
        stored = Installment.objects.get(pk=first.pk)
        assert stored.status == InstallmentStatus.PAID
        assert stored.charge_attempts == 1
        assert mock_redis.set.call_args[0][0] == f"lock:installment:charge:{first.pk}"

    def test_charge_skipped_when_another_worker_holds_lock(self, auto_charge_plan, mock_redis):
        mock_redis.set.return_value = False
        first = auto_charge_plan.installments.get(sequence=1)

        with pytest.raises(LockAcquisitionError):
            PaymentPlanService.charge_installment(auto_charge_plan, first)

        assert Installment.objects.get(pk=first.pk).charge_attempts == 0

    @override_settings(PAYMENT_GATEWAY_MAX_RETRIES=2)
    def test_declined_charges_fail_installment_after_retries(self, registration, mock_redis):
        plan = PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=3_000_000,
            installment_count=3,
            auto_charge=True,
            saved_payment_method={"payment_method_id": "pm_stub_declined", "type": "card"},
        )
        first = plan.installments.get(sequence=1)

        with pytest.raises(GatewayRequestError):
            PaymentPlanService.charge_installment(plan, first)
        assert Installment.objects.get(pk=first.pk).status == InstallmentStatus.DUE

        with pytest.raises(GatewayRequestError):
            PaymentPlanService.charge_installment(plan, Installment.objects.get(pk=first.pk))

        stored = Installment.objects.get(pk=first.pk)
        assert stored.status == InstallmentStatus.FAILED
        assert stored.charge_attempts == 2
        assert PaymentRecord.objects.filter(status=PaymentStatus.FAILED).count() == 2


# =============================================================================
# Scheduled Jobs
# =============================================================================


class TestSweepOverdueInstallments:
    def test_past_due_installment_becomes_overdue(self, registration):
        plan = PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=timezone.now() - timedelta(days=1),
        )

        result = PaymentPlanService.sweep_overdue_installments()

        assert result == {"overdue": 1, "defaulted": 0}
        assert statuses(plan)[0] == InstallmentStatus.OVERDUE

    def test_future_installment_untouched(self, plan):
        result = PaymentPlanService.sweep_overdue_installments()

        assert result["overdue"] == 0
        assert statuses(plan)[0] == InstallmentStatus.DUE

    def test_exhausted_overdue_installment_defaults_plan(
        self, registration, notification_gateway
    ):
        plan = PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=timezone.now() - timedelta(days=10),
        )
        first = plan.installments.get(sequence=1)
        PaymentPlanService.mark_installment_overdue(first)
        Installment.objects.filter(pk=first.pk).update(reminders_sent=3)

        result = PaymentPlanService.sweep_overdue_installments()

        assert result["defaulted"] == 1
        stored = PaymentPlan.objects.get(pk=plan.pk)
        assert stored.status == PaymentPlanStatus.DEFAULTED
        assert stored.get_meta("default_reason").startswith("Installment 1 overdue")
        assert (
            notification_gateway.send.call_args.kwargs["template_type"]
            == "payment_plan_defaulted"
        )


class TestSendDueReminders:
    def test_reminds_inside_window(self, registration, notification_gateway):
        plan = PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=timezone.now() + timedelta(days=2),
        )

        assert PaymentPlanService.send_due_reminders() == 1

        first = plan.installments.get(sequence=1)
        assert first.reminders_sent == 1
        assert first.last_reminder_sent_at is not None
        kwargs = notification_gateway.send.call_args.kwargs
        assert kwargs["template_type"] == "installment_reminder"
        assert kwargs["template_data"]["installment"] == 1

    def test_respects_interval_between_reminders(self, registration, notification_gateway):
        PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=timezone.now() + timedelta(days=2),
        )

        assert PaymentPlanService.send_due_reminders() == 1
        assert PaymentPlanService.send_due_reminders() == 0
        assert notification_gateway.send.call_count == 1

    def test_no_reminder_far_from_due_date(self, registration, notification_gateway):
        PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=timezone.now() + timedelta(days=20),
        )

        assert PaymentPlanService.send_due_reminders() == 0
        notification_gateway.send.assert_not_called()

    def test_send_reminder_stops_at_budget(self, plan, notification_gateway):
        first = plan.installments.get(sequence=1)
        Installment.objects.filter(pk=first.pk).update(reminders_sent=3)

        assert PaymentPlanService.send_reminder(first) is False
        notification_gateway.send.assert_not_called()


class TestChargeDueInstallments:
    def test_charges_due_auto_charge_installments(self, auto_charge_plan, mock_redis):
        result = PaymentPlanService.charge_due_installments()

        assert result == {"charged": 1, "failed": 0}
        assert statuses(auto_charge_plan)[0] == InstallmentStatus.PAID

    def test_ignores_manual_plans(self, registration, mock_redis):
        PaymentPlanService.create_plan(
            registration=registration,
            total_amount_cents=6000,
            installment_count=2,
            first_due_date=timezone.now() - timedelta(hours=1),
        )

        assert PaymentPlanService.charge_due_installments() == {"charged": 0, "failed": 0}

    def test_locked_installments_are_skipped(self, auto_charge_plan, mock_redis):
        mock_redis.set.return_value = False

        result = PaymentPlanService.charge_due_installments()

        assert result == {"charged": 0, "failed": 0}
        assert statuses(auto_charge_plan)[0] == InstallmentStatus.DUE

