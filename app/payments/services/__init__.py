"""
Payment services for coordinating payment operations.

This module provides:
- PaymentRecordService: Idempotent ledger writes and status transitions
- CheckoutService: Checkout, refund and status entry points per event
- PaymentPlanService: Installment plans, reminders and auto-charge
- ReconciliationService: Daily comparison against each gateway

Usage:
    from payments.services import CheckoutService

    # Start a checkout for a registration
    checkout = CheckoutService.create_checkout(
        registration,
        success_url="https://example.com/paid",
        cancel_url="https://example.com/cancelled",
    )

    # Split a registration fee into installments
    from payments.services import PaymentPlanService

    plan = PaymentPlanService.create_plan(
        registration,
        total_amount_cents=10000,
        installment_count=3,
    )

    # Run reconciliation
    from payments.services import ReconciliationService

    report = ReconciliationService.perform_daily_reconciliation()
"""

from payments.services.checkout_service import CheckoutService
from payments.services.payment_plan_service import PaymentPlanService
from payments.services.payment_record_service import (
    PaymentRecordService,
    to_local_status,
)
from payments.services.plan_schedule import (
    ScheduledInstallment,
    build_schedule,
    payment_summary,
    split_amount,
)
from payments.services.reconciliation_service import (
    Discrepancy,
    EventReconciliationResult,
    PaymentComparison,
    ReconciliationService,
)
from payments.services.reminder_policy import ReminderPolicy

__all__ = [
    "CheckoutService",
    "Discrepancy",
    "EventReconciliationResult",
    "PaymentComparison",
    "PaymentPlanService",
    "PaymentRecordService",
    "ReconciliationService",
    "ReminderPolicy",
    "ScheduledInstallment",
    "build_schedule",
    "payment_summary",
    "split_amount",
    "to_local_status",
]
