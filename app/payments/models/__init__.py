"""
Payment domain models.

This module contains all payment-related models:
- PaymentRecord: Ledger of payment attempts and refunds, keyed by gateway id
- PaymentPlan / Installment: Installment billing schedules
- ReconciliationReport: Immutable daily reconciliation history
- WebhookEvent: Inbound webhook tracking for idempotent processing
"""

from payments.models.payment_plan import Installment, PaymentPlan
from payments.models.payment_record import PaymentRecord
from payments.models.reconciliation import ReconciliationReport
from payments.models.webhook_event import WebhookEvent

__all__ = [
    "Installment",
    "PaymentPlan",
    "PaymentRecord",
    "ReconciliationReport",
    "WebhookEvent",
]
