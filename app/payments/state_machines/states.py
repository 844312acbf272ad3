"""
State enums for payment models.

This module defines all state enums used by payment models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

PaymentRecord States:
    initiated → paid → refunded / partial-refund
    initiated → failed → paid (late capture reported by webhook or reconciliation)
    partial-refund → refunded / partial-refund

Installment States:
    pending → due → paid
    due → overdue → paid / failed
    pending / due / overdue → cancelled (plan cancelled)

PaymentPlan States:
    active / defaulted → completed (every installment paid)
    active → cancelled / defaulted
"""

from django.db import models


class ProviderName(models.TextChoices):
    """Supported payment gateways."""

    RAZORPAY = "razorpay", "Razorpay"
    STRIPE = "stripe", "Stripe"
    INSTAMOJO = "instamojo", "Instamojo"
    PHONEPE = "phonepe", "PhonePe"
    CASHFREE = "cashfree", "Cashfree"
    PAYU = "payu", "PayU"
    PAYTM = "paytm", "Paytm"
    STUB = "stub", "Stub (test gateway)"


class PaymentStatus(models.TextChoices):
    """
    States for the PaymentRecord lifecycle.

    Terminal state: REFUNDED. Once refunded a record never returns to
    PAID or INITIATED.

    State Flow:
        INITIATED → PAID → REFUNDED
        INITIATED → PAID → PARTIAL_REFUND → REFUNDED
        INITIATED → FAILED → PAID (late success)
    """

    INITIATED = "initiated", "Initiated"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"
    PARTIAL_REFUND = "partial-refund", "Partially Refunded"


class InstallmentStatus(models.TextChoices):
    """
    States for one Installment within a PaymentPlan.

    Only the earliest unpaid installment is ever DUE; the next PENDING one
    becomes DUE when its predecessor is PAID.

    State Flow:
        PENDING → DUE → PAID
        DUE → OVERDUE → PAID / FAILED
        PENDING / DUE / OVERDUE → CANCELLED
    """

    PENDING = "pending", "Pending"
    DUE = "due", "Due"
    PAID = "paid", "Paid"
    OVERDUE = "overdue", "Overdue"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class PaymentPlanStatus(models.TextChoices):
    """
    States for the PaymentPlan lifecycle.

    Terminal states: COMPLETED, CANCELLED, DEFAULTED
    """

    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    DEFAULTED = "defaulted", "Defaulted"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for inbound gateway webhooks.

    IGNORED marks verified events whose type the adapter does not handle.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    IGNORED = "ignored", "Ignored"
    FAILED = "failed", "Failed"


class ReconciliationOutcome(models.TextChoices):
    """Classification bucket for one payment during reconciliation."""

    MATCHED = "matched", "Matched"
    MISMATCHED = "mismatched", "Mismatched"
    MISSING = "missing", "Missing on gateway"
    EXTRA = "extra", "Only on gateway"


# =============================================================================
# Gateway Status Normalization
# =============================================================================

# Gateway terminology -> canonical status used for comparison.
GATEWAY_STATUS_ALIASES: dict[str, str] = {
    "captured": "paid",
    "successful": "paid",
    "success": "paid",
    "completed": "paid",
    "paid": "paid",
    "authorized": "pending",
    "created": "pending",
    "initiated": "pending",
    "pending": "pending",
    "failed": "failed",
    "cancelled": "failed",
    "refunded": "refunded",
}


def normalize_payment_status(status) -> str:
    """
    Map a gateway or local status string onto the canonical vocabulary.

    Unknown values are lower-cased and passed through; empty values become
    "unknown". Normalizing an already normalized value returns it unchanged.

        >>> normalize_payment_status("CAPTURED")
        'paid'
        >>> normalize_payment_status("initiated")
        'pending'
    """
    if status is None:
        return "unknown"
    value = str(status).strip().lower()
    if not value:
        return "unknown"
    return GATEWAY_STATUS_ALIASES.get(value, value)
