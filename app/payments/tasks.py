"""
Celery tasks for payment processing.

This module provides async tasks for:
- Daily gateway reconciliation
- Installment sweeps: overdue marking, reminders, auto-charge
- Invoice generation and notifications after a transaction commits
- Retrying failed webhook deliveries
- Retention cleanup of reports and webhook rows

Periodic tasks are registered with celery-beat by the
0002_payment_schedules data migration.

Usage:
    from payments.tasks import run_daily_reconciliation

    # Reconcile a specific day on demand
    run_daily_reconciliation.delay("2026-03-01", actor="admin")

    # Queued by the services after commit
    from payments.tasks import send_payment_documents
    transaction.on_commit(lambda: send_payment_documents.delay(str(payment.pk)))
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from payments.exceptions import (
    ConfigurationError,
    LockAcquisitionError,
    PaymentError,
    ReconciliationLockError,
)
from payments.models import Installment, ReconciliationReport, WebhookEvent
from payments.state_machines import WebhookEventStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_WEBHOOK_ATTEMPTS = 5
WEBHOOK_RETRY_BATCH_SIZE = 100
STUCK_PROCESSING_THRESHOLD_MINUTES = 30
NOTIFICATION_MAX_RETRIES = 3


# =============================================================================
# Reconciliation
# =============================================================================


@shared_task(acks_late=True)
def run_daily_reconciliation(report_date: str | None = None, actor: str = "scheduler") -> dict:
    """
    Reconcile one calendar day (default: yesterday) across every event.

    Args:
        report_date: ISO date to reconcile
        actor: Recorded on the report as generated_by

    Returns:
        Dict with the report id and summary, or status "locked" when another
        run holds the reconciliation lock
    """
    from payments.services.reconciliation_service import ReconciliationService

    day = date.fromisoformat(report_date) if report_date else None
    try:
        report = ReconciliationService.perform_daily_reconciliation(day, actor=actor)
    except ReconciliationLockError:
        logger.warning("Reconciliation skipped, another run is in progress")
        return {"status": "locked"}

    return {
        "status": "completed",
        "report_id": str(report.pk),
        "report_date": report.report_date.isoformat(),
        "summary": report.summary,
    }


# =============================================================================
# Installment Jobs
# =============================================================================


@shared_task
def sweep_overdue_installments() -> dict:
    from payments.services.payment_plan_service import PaymentPlanService

    return PaymentPlanService.sweep_overdue_installments()


@shared_task
def send_installment_reminders() -> dict:
    from payments.services.payment_plan_service import PaymentPlanService

    sent = PaymentPlanService.send_due_reminders()
    logger.info("Installment reminders sent", extra={"sent_count": sent})
    return {"sent_count": sent}


@shared_task(acks_late=True)
def charge_due_installments() -> dict:
    from payments.services.payment_plan_service import PaymentPlanService

    result = PaymentPlanService.charge_due_installments()
    logger.info("Auto-charge run complete", extra=result)
    return result


@shared_task(bind=True, max_retries=None, acks_late=True)
def retry_installment_charge(self, installment_id: str) -> dict:
    """
    Re-charge an installment whose last attempt hit a transient gateway error.

    Retries with exponential backoff while the gateway keeps failing
    transiently; the installment is marked failed by the service once
    PAYMENT_GATEWAY_MAX_RETRIES attempts have been made, which ends the loop.
    """
    from payments.adapters.base import backoff_delay, is_retryable_error
    from payments.services.payment_plan_service import PaymentPlanService

    try:
        charge = PaymentPlanService.retry_installment_charge(installment_id)
    except LockAcquisitionError:
        return {"status": "locked", "installment_id": installment_id}
    except PaymentError as exc:
        if is_retryable_error(exc):
            raise self.retry(exc=exc, countdown=backoff_delay(self.request.retries, base=60.0))
        logger.warning(
            "Installment charge retry failed",
            extra={"installment_id": installment_id, "error_code": exc.error_code},
        )
        return {"status": "failed", "installment_id": installment_id}

    if charge is None:
        return {"status": "skipped", "installment_id": installment_id}
    return {
        "status": charge.status,
        "installment_id": installment_id,
        "payment_id": charge.payment_id,
    }


# =============================================================================
# Documents and Notifications
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": NOTIFICATION_MAX_RETRIES},
)
def send_payment_documents(self, payment_id: str) -> dict:
    """Generate the invoice for a paid record and send the confirmation."""
    from payments.services.payment_record_service import PaymentRecordService

    record = PaymentRecordService.send_payment_documents(payment_id)
    return {"payment_id": str(record.pk), "invoice_url": record.invoice_url}


@shared_task(
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": NOTIFICATION_MAX_RETRIES},
)
def send_payment_notification(self, payment_id: str, template_type: str) -> dict:
    from payments.services.payment_record_service import PaymentRecordService

    record = PaymentRecordService.get_payment(payment_id)
    results = PaymentRecordService.notify(record, template_type)
    return {
        "payment_id": str(record.pk),
        "template_type": template_type,
        "delivered": sum(1 for r in results if r.get("success")),
    }


@shared_task(
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": NOTIFICATION_MAX_RETRIES},
)
def send_installment_notification(self, installment_id: str, template_type: str) -> dict:
    from payments.services.payment_plan_service import PaymentPlanService

    installment = (
        Installment.objects.select_related("plan__registration", "plan__event")
        .filter(pk=installment_id)
        .first()
    )
    if installment is None:
        logger.error(
            "Installment not found for notification",
            extra={"installment_id": installment_id, "template_type": template_type},
        )
        return {"status": "not_found", "installment_id": installment_id}

    results = PaymentPlanService.notify(installment, template_type)
    return {
        "installment_id": installment_id,
        "template_type": template_type,
        "delivered": sum(1 for r in results if r.get("success")),
    }


# =============================================================================
# Webhook Retries
# =============================================================================


@shared_task(acks_late=True)
def reprocess_webhook_event(webhook_event_id: str) -> dict:
    """
    Re-apply a stored delivery with an adapter built from its event.

    Raises:
        Exception: Whatever the adapter raised; the row stays FAILED and
            the next retry_failed_webhooks run picks it up again
    """
    from payments.adapters.registry import get_adapter_for_event
    from payments.webhooks.handlers import process_webhook_event

    webhook_event = (
        WebhookEvent.objects.select_related("event").filter(pk=webhook_event_id).first()
    )
    if webhook_event is None:
        logger.error(
            "WebhookEvent not found",
            extra={"webhook_event_id": webhook_event_id},
        )
        return {"status": "not_found", "webhook_event_id": webhook_event_id}

    if webhook_event.is_processed:
        return {"status": "already_processed", "webhook_event_id": webhook_event_id}

    if webhook_event.event is None:
        webhook_event.mark_failed("Event no longer exists")
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        return {"status": "orphaned", "webhook_event_id": webhook_event_id}

    try:
        adapter = get_adapter_for_event(webhook_event.event)
    except ConfigurationError as e:
        webhook_event.mark_failed(e.message)
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        return {"status": "misconfigured", "webhook_event_id": webhook_event_id}

    result = process_webhook_event(webhook_event, adapter)
    return {
        "status": "processed" if result.processed else "ignored",
        "webhook_event_id": webhook_event_id,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """Queue failed deliveries that still have attempts left."""
    failed_webhooks = WebhookEvent.objects.filter(
        status=WebhookEventStatus.FAILED,
        attempts__lt=MAX_WEBHOOK_ATTEMPTS,
        event__isnull=False,
    ).order_by("created_at")[:WEBHOOK_RETRY_BATCH_SIZE]

    queued_count = 0
    for webhook in failed_webhooks:
        reprocess_webhook_event.delay(str(webhook.pk))
        queued_count += 1
        logger.info(
            "Queued failed webhook for retry",
            extra={
                "webhook_event_id": str(webhook.pk),
                "provider": webhook.provider,
                "attempts": webhook.attempts,
            },
        )

    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_webhooks() -> dict:
    """Mark rows left in PROCESSING by a crashed worker as FAILED."""
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    reset_count = 0
    for webhook in WebhookEvent.objects.filter(
        status=WebhookEventStatus.PROCESSING,
        updated_at__lt=threshold,
    ):
        webhook.mark_failed("Processing timed out, reset for retry")
        webhook.save(update_fields=["status", "error_message", "updated_at"])
        reset_count += 1
        logger.warning(
            "Reset stuck webhook",
            extra={
                "webhook_event_id": str(webhook.pk),
                "provider": webhook.provider,
                "stuck_since": webhook.updated_at.isoformat(),
            },
        )

    return {"reset_count": reset_count}


# =============================================================================
# Retention
# =============================================================================


@shared_task
def cleanup_old_reconciliation_reports(days: int | None = None) -> dict:
    days = days or settings.RECONCILIATION_REPORT_RETENTION_DAYS
    deleted_count = ReconciliationReport.cleanup_old(days=days)
    if deleted_count:
        logger.info(
            "Deleted old reconciliation reports",
            extra={"deleted_count": deleted_count, "retention_days": days},
        )
    return {"deleted_count": deleted_count}


@shared_task
def cleanup_old_webhooks(days: int | None = None) -> dict:
    """Delete applied or ignored deliveries; failed rows are kept for debugging."""
    days = days or settings.WEBHOOK_RETENTION_DAYS
    cutoff = timezone.now() - timedelta(days=days)

    deleted_count, _ = WebhookEvent.objects.filter(
        status__in=[WebhookEventStatus.PROCESSED, WebhookEventStatus.IGNORED],
        processed_at__lt=cutoff,
    ).delete()

    if deleted_count:
        logger.info(
            "Deleted old webhook events",
            extra={"deleted_count": deleted_count, "cutoff_date": cutoff.isoformat()},
        )
    return {"deleted_count": deleted_count}
