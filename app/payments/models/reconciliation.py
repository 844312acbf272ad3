"""
ReconciliationReport model: immutable history of daily reconciliation runs.

Each run of the reconciliation engine writes exactly one report. Reports
reference payments by value (denormalized snapshots in the events JSON), not
by foreign key, so later changes to a PaymentRecord never alter history.

Usage:
    from payments.models import ReconciliationReport

    report = ReconciliationReport.latest_for_date(date(2026, 3, 1))
    report.match_rate  # 98.5
"""

from __future__ import annotations

from datetime import timedelta

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.exceptions import ReconciliationError


class ReconciliationReport(UUIDPrimaryKeyMixin, BaseModel):
    """
    Summary of one reconciliation run.

    summary:
        {"totalEvents", "totalPayments", "matched", "mismatched",
         "missing", "extra", "errors"}

    events:
        One entry per reconciled event:
        {"eventId", "eventName", "provider", "status",
         "dateRange": {"start", "end"},
         "summary": {"totalPayments", "gatewayPayments", "matched",
                     "mismatched", "missing", "extra", "errors"},
         "comparison": {"matched": [...], "mismatched": [...],
                        "missing": [...], "extra": [...]},
         "error": "..." (only when status == "error")}

    Invariant:
        Immutable once written. save() on an existing report raises.
    """

    report_date = models.DateField(
        db_index=True,
        help_text="Calendar day that was reconciled",
    )

    summary = models.JSONField(default=dict)

    events = models.JSONField(default=list)

    generated_at = models.DateTimeField(default=timezone.now)

    generated_by = models.CharField(
        max_length=150,
        default="scheduler",
        help_text="Actor that triggered the run (scheduler or a username)",
    )

    class Meta:
        ordering = ["-report_date", "-generated_at"]
        verbose_name = "Reconciliation Report"
        verbose_name_plural = "Reconciliation Reports"
        indexes = [
            models.Index(fields=["report_date", "generated_at"], name="payments_re_report__4a9f13_idx"),
        ]

    def __str__(self) -> str:
        return f"ReconciliationReport({self.report_date}, {self.match_rate}% matched)"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ReconciliationError(
                "Reconciliation reports are immutable once written",
                error_code="REPORT_IMMUTABLE",
                details={"report_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    # ==========================================================================
    # Derived Metrics
    # ==========================================================================

    @property
    def total_payments(self) -> int:
        return int(self.summary.get("totalPayments", 0))

    @property
    def match_rate(self) -> float:
        """Percentage of payments matched; 100 when there were none."""
        total = self.total_payments
        if total == 0:
            return 100.0
        return round(self.summary.get("matched", 0) / total * 100, 2)

    @property
    def discrepancy_rate(self) -> float:
        total = self.total_payments
        if total == 0:
            return 0.0
        discrepancies = self.summary.get("mismatched", 0) + self.summary.get("missing", 0)
        return round(discrepancies / total * 100, 2)

    # ==========================================================================
    # Queries
    # ==========================================================================

    @classmethod
    def latest_for_date(cls, report_date) -> ReconciliationReport | None:
        return (
            cls.objects.filter(report_date=report_date)
            .order_by("-generated_at")
            .first()
        )

    @classmethod
    def for_range(cls, start_date, end_date) -> models.QuerySet:
        return cls.objects.filter(
            report_date__gte=start_date, report_date__lte=end_date
        ).order_by("report_date", "generated_at")

    @classmethod
    def cleanup_old(cls, days: int = 90) -> int:
        """Delete reports generated more than `days` ago. Returns count."""
        cutoff = timezone.now() - timedelta(days=days)
        deleted, _ = cls.objects.filter(generated_at__lt=cutoff).delete()
        return deleted
