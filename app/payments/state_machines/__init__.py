"""
State machine enums for payment models.

This module defines the state enums used by payment models with django-fsm.
"""

from payments.state_machines.states import (
    InstallmentStatus,
    PaymentPlanStatus,
    PaymentStatus,
    ProviderName,
    ReconciliationOutcome,
    WebhookEventStatus,
    normalize_payment_status,
)

__all__ = [
    "InstallmentStatus",
    "PaymentPlanStatus",
    "PaymentStatus",
    "ProviderName",
    "ReconciliationOutcome",
    "WebhookEventStatus",
    "normalize_payment_status",
]
