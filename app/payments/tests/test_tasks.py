"""
Tests for payment Celery tasks.

Tests cover:
- run_daily_reconciliation task
- Installment sweep, reminder, auto-charge and charge retry tasks
- Document and notification tasks
- Retention cleanup of reconciliation reports

Webhook retry tasks are tested in payments/webhooks/tests/test_tasks.py.
"""

from datetime import date, timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from payments.exceptions import (
    GatewayRequestError,
    GatewayUnavailableError,
    ReconciliationLockError,
)
from payments.models import Installment, PaymentRecord, ReconciliationReport
from payments.state_machines import InstallmentStatus
from payments.tasks import (
    charge_due_installments,
    cleanup_old_reconciliation_reports,
    retry_installment_charge,
    run_daily_reconciliation,
    send_installment_notification,
    send_installment_reminders,
    send_payment_documents,
    send_payment_notification,
    sweep_overdue_installments,
)
from payments.tests.factories import ReconciliationReportFactory


# =============================================================================
# run_daily_reconciliation Tests
# =============================================================================


class TestRunDailyReconciliation:
    def test_reconciles_requested_day(self, paid_record, mock_redis):
        result = run_daily_reconciliation("2026-03-01", actor="admin")

        assert result["status"] == "completed"
        assert result["report_date"] == "2026-03-01"
        report = ReconciliationReport.objects.get(pk=result["report_id"])
        assert report.generated_by == "admin"
        assert result["summary"] == report.summary

    def test_defaults_to_yesterday(self, db, mock_redis):
        result = run_daily_reconciliation()

        yesterday = timezone.localdate() - timedelta(days=1)
        assert result["report_date"] == yesterday.isoformat()

    def test_locked_run_is_skipped(self, db):
        with patch(
            "payments.services.reconciliation_service.ReconciliationService"
            ".perform_daily_reconciliation",
            side_effect=ReconciliationLockError("Another reconciliation run is in progress"),
        ):
            result = run_daily_reconciliation("2026-03-01")

        assert result == {"status": "locked"}
        assert ReconciliationReport.objects.count() == 0


# =============================================================================
# Installment Job Tests
# =============================================================================


class TestInstallmentJobs:
    def test_sweep_overdue_installments(self, plan):
        first = plan.installments.get(sequence=1)
        Installment.objects.filter(pk=first.pk).update(
            due_date=timezone.now() - timedelta(days=1)
        )

        result = sweep_overdue_installments()

        assert result == {"overdue": 1, "defaulted": 0}
        assert Installment.objects.get(pk=first.pk).status == InstallmentStatus.OVERDUE

    def test_send_installment_reminders(self, plan, notification_gateway):
        result = send_installment_reminders()

        assert result == {"sent_count": 1}
        notification_gateway.send.assert_called_once()

    def test_charge_due_installments(self, auto_charge_plan, mock_redis):
        result = charge_due_installments()

        assert result == {"charged": 1, "failed": 0}


class TestRetryInstallmentCharge:
    def test_charges_due_installment(self, auto_charge_plan, mock_redis):
        first = auto_charge_plan.installments.get(sequence=1)

        result = retry_installment_charge(str(first.pk))

        assert result["status"] == "captured"
        assert result["installment_id"] == str(first.pk)
        assert Installment.objects.get(pk=first.pk).status == InstallmentStatus.PAID

    def test_skips_installment_no_longer_due(self, auto_charge_plan, mock_redis):
        second = auto_charge_plan.installments.get(sequence=2)

        result = retry_installment_charge(str(second.pk))

        assert result == {"status": "skipped", "installment_id": str(second.pk)}

    def test_transient_failure_is_retried(self, auto_charge_plan):
        first = auto_charge_plan.installments.get(sequence=1)
        error = GatewayUnavailableError("Gateway down", provider="stub")

        with patch(
            "payments.services.payment_plan_service.PaymentPlanService"
            ".retry_installment_charge",
            side_effect=error,
        ):
            # Called directly, Task.retry re-raises the original error
            with pytest.raises(GatewayUnavailableError):
                retry_installment_charge(str(first.pk))

    def test_permanent_failure_is_not_retried(self, auto_charge_plan):
        first = auto_charge_plan.installments.get(sequence=1)

        with patch(
            "payments.services.payment_plan_service.PaymentPlanService"
            ".retry_installment_charge",
            side_effect=GatewayRequestError("Card declined", provider="stub"),
        ):
            result = retry_installment_charge(str(first.pk))

        assert result == {"status": "failed", "installment_id": str(first.pk)}

    def test_sweep_queues_retry_for_transient_failure(
        self, auto_charge_plan, django_capture_on_commit_callbacks
    ):
        first = auto_charge_plan.installments.get(sequence=1)

        with (
            patch(
                "payments.services.payment_plan_service.PaymentPlanService.charge_installment",
                side_effect=GatewayUnavailableError("Gateway down", provider="stub"),
            ),
            patch("payments.tasks.retry_installment_charge.apply_async") as mock_apply,
            django_capture_on_commit_callbacks(execute=True),
        ):
            result = charge_due_installments()

        assert result == {"charged": 0, "failed": 1}
        assert mock_apply.call_args.args[0] == (str(first.pk),)
        assert mock_apply.call_args.kwargs["countdown"] >= 60


# =============================================================================
# Document and Notification Tests
# =============================================================================


class TestSendPaymentDocuments:
    def test_generates_invoice_and_confirms(
        self, paid_record, document_generator, notification_gateway
    ):
        result = send_payment_documents(str(paid_record.pk))

        assert result["payment_id"] == str(paid_record.pk)
        assert result["invoice_url"]
        document_generator.generate_invoice.assert_called_once()
        assert (
            notification_gateway.send.call_args.kwargs["template_type"]
            == "payment_confirmation"
        )
        assert PaymentRecord.objects.get(pk=paid_record.pk).invoice_url == result["invoice_url"]


class TestSendPaymentNotification:
    def test_counts_delivered_messages(self, paid_record, notification_gateway):
        result = send_payment_notification(str(paid_record.pk), "payment_confirmation")

        assert result["delivered"] == 1
        assert result["template_type"] == "payment_confirmation"


class TestSendInstallmentNotification:
    def test_notifies_registrant(self, plan, notification_gateway):
        first = plan.installments.get(sequence=1)

        result = send_installment_notification(str(first.pk), "installment_due")

        assert result["delivered"] == 1
        kwargs = notification_gateway.send.call_args.kwargs
        assert kwargs["template_type"] == "installment_due"
        assert kwargs["recipients"][0]["email"] == plan.registration.email

    def test_unknown_installment(self, db, notification_gateway):
        result = send_installment_notification(
            "00000000-0000-0000-0000-000000000000", "installment_due"
        )

        assert result["status"] == "not_found"
        notification_gateway.send.assert_not_called()


# =============================================================================
# Retention Tests
# =============================================================================


class TestCleanupOldReconciliationReports:
    def test_deletes_reports_past_retention(self, db):
        old = ReconciliationReportFactory(report_date=date(2025, 6, 1))
        ReconciliationReport.objects.filter(pk=old.pk).update(
            generated_at=timezone.now() - timedelta(days=120)
        )
        recent = ReconciliationReportFactory()

        result = cleanup_old_reconciliation_reports(days=90)

        assert result == {"deleted_count": 1}
        assert list(ReconciliationReport.objects.values_list("pk", flat=True)) == [recent.pk]
