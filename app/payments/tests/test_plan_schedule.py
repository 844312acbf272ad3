"""
Tests for payment plan schedule arithmetic.

These functions are pure; installments are stand-in objects so the tests
never touch the database.
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from types import SimpleNamespace

import pytest

from payments.exceptions import PaymentValidationError
from payments.services import plan_schedule
from payments.services.plan_schedule import build_schedule, split_amount
from payments.state_machines import InstallmentStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=dt_timezone.utc)


def make_installment(sequence, amount_cents, status, due_in_days=0):
    return SimpleNamespace(
        pk=f"inst-{sequence}",
        sequence=sequence,
        amount_cents=amount_cents,
        status=status,
        due_date=NOW + timedelta(days=due_in_days),
    )


class TestSplitAmount:
    def test_remainder_goes_to_last_installment(self):
        assert split_amount(10000, 3) == [3333, 3333, 3334]

    def test_even_split(self):
        assert split_amount(9000, 3) == [3000, 3000, 3000]

    def test_single_installment(self):
        assert split_amount(4999, 1) == [4999]

    @pytest.mark.parametrize(
        ("total", "count"),
        [(10000, 3), (10001, 7), (1, 1), (100, 100), (123457, 12)],
    )
    def test_parts_always_sum_to_total(self, total, count):
        parts = split_amount(total, count)

        assert len(parts) == count
        assert sum(parts) == total
        assert all(part > 0 for part in parts)

    def test_count_must_be_positive(self):
        with pytest.raises(PaymentValidationError) as exc_info:
            split_amount(10000, 0)

        assert exc_info.value.details == {"installment_count": 0}

    def test_total_must_be_positive(self):
        with pytest.raises(PaymentValidationError):
            split_amount(0, 3)

    def test_more_parts_than_minor_units_rejected(self):
        with pytest.raises(PaymentValidationError):
            split_amount(2, 3)


class TestBuildSchedule:
    def test_due_dates_follow_interval(self):
        schedule = build_schedule(10000, 3, first_due_date=NOW, interval_days=30)

        assert [item.sequence for item in schedule] == [1, 2, 3]
        assert [item.amount_cents for item in schedule] == [3333, 3333, 3334]
        assert schedule[0].due_date == NOW
        assert schedule[2].due_date == NOW + timedelta(days=60)


class TestValidateAmounts:
    def test_matching_sum_passes(self):
        plan_schedule.validate_amounts([3333, 3333, 3334], 10000)

    def test_sum_mismatch_rejected(self):
        with pytest.raises(PaymentValidationError) as exc_info:
            plan_schedule.validate_amounts([3333, 3333], 10000)

        assert exc_info.value.details == {"sum": 6666, "total_amount_cents": 10000}

    def test_non_positive_amount_rejected(self):
        with pytest.raises(PaymentValidationError):
            plan_schedule.validate_amounts([10000, 0], 10000)


class TestDerivedValues:
    @pytest.fixture
    def installments(self):
        return [
            make_installment(1, 3333, InstallmentStatus.PAID, due_in_days=-30),
            make_installment(2, 3333, InstallmentStatus.DUE, due_in_days=-2),
            make_installment(3, 3334, InstallmentStatus.PENDING, due_in_days=28),
        ]

    def test_total_paid_and_remaining(self, installments):
        assert plan_schedule.total_paid(installments) == 3333
        assert plan_schedule.remaining_amount(10000, installments) == 6667

    def test_next_due_installment(self, installments):
        assert plan_schedule.next_due_installment(installments).sequence == 2

    def test_next_pending_installment(self, installments):
        assert plan_schedule.next_pending_installment(installments).sequence == 3

    def test_overdue_includes_past_due_installments(self, installments):
        overdue = plan_schedule.overdue_installments(installments, now=NOW)

        assert [i.sequence for i in overdue] == [2]

    def test_overdue_empty_before_due_date(self, installments):
        earlier = NOW - timedelta(days=10)

        assert plan_schedule.overdue_installments(installments, now=earlier) == []

    def test_all_paid(self, installments):
        assert plan_schedule.all_paid(installments) is False
        assert plan_schedule.all_paid([]) is False
        assert plan_schedule.all_paid(
            [make_installment(1, 100, InstallmentStatus.PAID)]
        ) is True

    def test_payment_summary(self, installments):
        plan = SimpleNamespace(
            pk="plan-1",
            status="active",
            currency="INR",
            total_amount_cents=10000,
            auto_charge=False,
            completed_at=None,
        )

        summary = plan_schedule.payment_summary(plan, installments, now=NOW)

        assert summary["total_paid_cents"] == 3333
        assert summary["remaining_cents"] == 6667
        assert summary["installment_count"] == 3
        assert summary["status_counts"]["paid"] == 1
        assert summary["status_counts"]["due"] == 1
        assert summary["next_due"]["sequence"] == 2
        assert summary["overdue"] == ["inst-2"]
        assert summary["completed_at"] is None
