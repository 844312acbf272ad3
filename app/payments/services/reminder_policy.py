"""
Installment reminder policy.

Reminder cadence is a value object consumed by the scheduler
(PaymentPlanService.send_due_reminders), not logic spread across call sites.

Cadence:
    - first reminder: `days_before` days before the due date
    - reminder n+1: at least min_interval_hours * backoff_base ** (n - 1)
      hours after reminder n
    - at most `max_reminders` reminders per installment
    - an overdue installment with reminders exhausted and more than
      `escalation_days` past its due date defaults the plan

Usage:
    policy = ReminderPolicy.for_plan(plan)
    if policy.should_remind(installment):
        PaymentPlanService.send_reminder(installment)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from payments.state_machines import InstallmentStatus

if TYPE_CHECKING:
    from datetime import datetime

    from payments.models import Installment, PaymentPlan


@dataclass(frozen=True)
class ReminderPolicy:
    enabled: bool = True
    days_before: int = 3
    max_reminders: int = 3
    min_interval_hours: float = 24
    escalation_days: int = 7
    backoff_base: float = 2.0

    @classmethod
    def from_settings(cls) -> ReminderPolicy:
        return cls(
            days_before=settings.INSTALLMENT_REMINDER_DAYS_BEFORE,
            max_reminders=settings.INSTALLMENT_REMINDER_MAX_REMINDERS,
            min_interval_hours=settings.INSTALLMENT_REMINDER_MIN_INTERVAL_HOURS,
            escalation_days=settings.INSTALLMENT_ESCALATION_DAYS,
            backoff_base=settings.INSTALLMENT_REMINDER_BACKOFF_BASE,
        )

    @classmethod
    def for_plan(cls, plan: PaymentPlan) -> ReminderPolicy:
        """Settings defaults overridden by the plan's reminder_settings."""
        overrides = {
            key: value
            for key, value in (plan.reminder_settings or {}).items()
            if key in cls.__dataclass_fields__ and value is not None
        }
        return replace(cls.from_settings(), **overrides)

    def interval_after(self, reminders_sent: int) -> timedelta:
        exponent = max(reminders_sent - 1, 0)
        return timedelta(hours=self.min_interval_hours * self.backoff_base**exponent)

    def next_reminder_at(self, installment: Installment) -> datetime | None:
        """None once the reminder budget is spent."""
        if installment.reminders_sent >= self.max_reminders:
            return None
        if installment.reminders_sent == 0 or installment.last_reminder_sent_at is None:
            return installment.due_date - timedelta(days=self.days_before)
        return installment.last_reminder_sent_at + self.interval_after(
            installment.reminders_sent
        )

    def should_remind(self, installment: Installment, now: datetime | None = None) -> bool:
        if not self.enabled:
            return False
        if installment.status not in (InstallmentStatus.DUE, InstallmentStatus.OVERDUE):
            return False
        next_at = self.next_reminder_at(installment)
        return next_at is not None and (now or timezone.now()) >= next_at

    def should_escalate(self, installment: Installment, now: datetime | None = None) -> bool:
        if installment.status != InstallmentStatus.OVERDUE:
            return False
        if installment.reminders_sent < self.max_reminders:
            return False
        now = now or timezone.now()
        return now - installment.due_date > timedelta(days=self.escalation_days)
