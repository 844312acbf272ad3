"""
Pure schedule arithmetic for payment plans.

Nothing here touches the database. The functions take an installment list
(model instances or anything with amount_cents, status, due_date and
sequence attributes) so that derived plan values are always computed on
read from the installments themselves and never stored.

Usage:
    from payments.services.plan_schedule import split_amount, payment_summary

    split_amount(10000, 3)  # [3333, 3333, 3334]
    payment_summary(plan)   # {"total_paid_cents": ..., "next_due": ...}
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.utils import timezone

from payments.exceptions import PaymentValidationError
from payments.state_machines import InstallmentStatus

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import datetime
    from typing import Any

    from payments.models import Installment, PaymentPlan


@dataclass(frozen=True)
class ScheduledInstallment:
    sequence: int
    amount_cents: int
    due_date: datetime


def split_amount(total_cents: int, count: int) -> list[int]:
    """
    Split a total into `count` integer parts.

    Every part is total // count except the last, which absorbs the
    remainder, so the parts always sum to the total.

    Raises:
        PaymentValidationError: Non-positive total or count, or more parts
            than minor units
    """
    if count < 1:
        raise PaymentValidationError(
            "A payment plan needs at least one installment",
            details={"installment_count": count},
        )
    if total_cents <= 0:
        raise PaymentValidationError(
            "Plan total must be positive",
            details={"total_amount_cents": total_cents},
        )
    if count > total_cents:
        raise PaymentValidationError(
            "Every installment must be at least one minor unit",
            details={"total_amount_cents": total_cents, "installment_count": count},
        )

    base = total_cents // count
    return [base] * (count - 1) + [total_cents - base * (count - 1)]


def build_schedule(
    total_cents: int,
    count: int,
    first_due_date: datetime | None = None,
    interval_days: int = 30,
) -> list[ScheduledInstallment]:
    first_due_date = first_due_date or timezone.now()
    return [
        ScheduledInstallment(
            sequence=index + 1,
            amount_cents=amount,
            due_date=first_due_date + timedelta(days=interval_days * index),
        )
        for index, amount in enumerate(split_amount(total_cents, count))
    ]


def validate_amounts(amounts: Sequence[int], total_cents: int) -> None:
    """
    Raises:
        PaymentValidationError: A non-positive amount, or a sum that differs
            from the total
    """
    if any(amount <= 0 for amount in amounts):
        raise PaymentValidationError(
            "Installment amounts must be positive",
            details={"amounts": list(amounts)},
        )
    if sum(amounts) != total_cents:
        raise PaymentValidationError(
            "Installment amounts must add up to the plan total",
            details={"sum": sum(amounts), "total_amount_cents": total_cents},
        )


# =============================================================================
# Derived Values
# =============================================================================


def total_paid(installments: Iterable[Installment]) -> int:
    return sum(i.amount_cents for i in installments if i.status == InstallmentStatus.PAID)


def remaining_amount(total_cents: int, installments: Iterable[Installment]) -> int:
    return total_cents - total_paid(installments)


def next_due_installment(installments: Iterable[Installment]) -> Installment | None:
    """Earliest installment in "due" status by due date."""
    due = [i for i in installments if i.status == InstallmentStatus.DUE]
    return min(due, key=lambda i: (i.due_date, i.sequence), default=None)


def next_pending_installment(installments: Iterable[Installment]) -> Installment | None:
    pending = [i for i in installments if i.status == InstallmentStatus.PENDING]
    return min(pending, key=lambda i: (i.due_date, i.sequence), default=None)


def overdue_installments(
    installments: Iterable[Installment], now: datetime | None = None
) -> list[Installment]:
    """Due installments whose date has passed, plus those already marked overdue."""
    now = now or timezone.now()
    return sorted(
        (
            i
            for i in installments
            if i.status == InstallmentStatus.OVERDUE
            or (i.status == InstallmentStatus.DUE and i.due_date < now)
        ),
        key=lambda i: i.sequence,
    )


def all_paid(installments: Sequence[Installment]) -> bool:
    return bool(installments) and all(i.status == InstallmentStatus.PAID for i in installments)


def payment_summary(
    plan: PaymentPlan,
    installments: Sequence[Installment] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if installments is None:
        installments = list(plan.installments.order_by("sequence"))
    paid = total_paid(installments)
    next_due = next_due_installment(installments)
    counts = {status: 0 for status in InstallmentStatus.values}
    for installment in installments:
        counts[installment.status] += 1

    return {
        "plan_id": str(plan.pk),
        "status": plan.status,
        "currency": plan.currency,
        "total_amount_cents": plan.total_amount_cents,
        "total_paid_cents": paid,
        "remaining_cents": plan.total_amount_cents - paid,
        "installment_count": len(installments),
        "status_counts": counts,
        "next_due": (
            {
                "id": str(next_due.pk),
                "sequence": next_due.sequence,
                "amount_cents": next_due.amount_cents,
                "due_date": next_due.due_date.isoformat(),
            }
            if next_due
            else None
        ),
        "overdue": [str(i.pk) for i in overdue_installments(installments, now)],
        "auto_charge": plan.auto_charge,
        "completed_at": plan.completed_at.isoformat() if plan.completed_at else None,
    }
