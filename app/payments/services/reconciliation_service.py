"""
Reconciliation engine: local PaymentRecords against each gateway's view.

For every event with a configured gateway the engine lists the window's
payments on both sides and partitions them into four buckets:

    matched     present on both sides, amount/currency/status agree
    mismatched  present on both sides, at least one field differs
    missing     local record the gateway does not report
    extra       gateway payment with no local record

Healing Strategy:
    - mismatched: the gateway is authoritative. Amount, currency and fee
      are overwritten; status moves forward through the record state
      machine. A status the state machine refuses is left alone and the
      record is flagged for manual review.
    - extra: synced into the ledger with synced_from_gateway=True
    - missing: flagged for manual review, never auto-resolved

Each run writes one immutable ReconciliationReport. A failure on one event
is logged and counted and the run carries on with the next event.

Usage:
    from payments.services.reconciliation_service import ReconciliationService

    report = ReconciliationService.perform_daily_reconciliation()
    report.summary  # {"matched": 41, "mismatched": 1, ...}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from core.services import BaseService

from events.models import Event, Registration
from payments.adapters.registry import get_adapter_for_event
from payments.exceptions import (
    ConfigurationError,
    LockAcquisitionError,
    PaymentError,
    ReconciliationLockError,
)
from payments.locks import DistributedLock
from payments.models import PaymentRecord, ReconciliationReport
from payments.services.payment_record_service import PaymentRecordService
from payments.state_machines import (
    ReconciliationOutcome,
    normalize_payment_status,
)

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import date
    from typing import Any

    from payments.adapters.base import GatewayPayment, PaymentProviderAdapter


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

RECONCILIATION_RUN_LOCK_KEY = "reconciliation:run"
RECONCILIATION_RUN_LOCK_TTL = 3600  # 1 hour
RECONCILIATION_RUN_LOCK_TIMEOUT = 5.0

MANUAL_REVIEW_NOTE = "Not reported by the gateway; flagged for manual review"

# Written when a record is stamped by a run
REVIEW_FIELDS = ["last_reconciled_at", "reconciliation_note", "metadata", "updated_at"]


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class Discrepancy:
    """One field on which the local record and the gateway disagree."""

    field: str
    local: Any
    gateway: Any

    @property
    def delta(self) -> int | None:
        if isinstance(self.local, int) and isinstance(self.gateway, int):
            return self.gateway - self.local
        return None

    def to_dict(self) -> dict[str, Any]:
        data = {"field": self.field, "local": self.local, "gateway": self.gateway}
        if self.delta is not None:
            data["delta"] = self.delta
        return data


@dataclass
class PaymentComparison:
    """Partition of one event's payments into the four outcome buckets."""

    matched: list[tuple[PaymentRecord, GatewayPayment]] = field(default_factory=list)
    mismatched: list[tuple[PaymentRecord, GatewayPayment, list[Discrepancy]]] = field(
        default_factory=list
    )
    missing: list[PaymentRecord] = field(default_factory=list)
    extra: list[GatewayPayment] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.matched) + len(self.mismatched) + len(self.missing) + len(self.extra)

    def counts(self) -> dict[str, int]:
        return {
            ReconciliationOutcome.MATCHED.value: len(self.matched),
            ReconciliationOutcome.MISMATCHED.value: len(self.mismatched),
            ReconciliationOutcome.MISSING.value: len(self.missing),
            ReconciliationOutcome.EXTRA.value: len(self.extra),
        }

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        """Snapshots by value, safe to store in a report."""
        return {
            "matched": [
                {**_record_snapshot(record), "gatewayStatus": payment.status}
                for record, payment in self.matched
            ],
            "mismatched": [
                {
                    **_record_snapshot(record),
                    "gatewayStatus": payment.status,
                    "discrepancies": [d.to_dict() for d in discrepancies],
                }
                for record, payment, discrepancies in self.mismatched
            ],
            "missing": [_record_snapshot(record) for record in self.missing],
            "extra": [_gateway_snapshot(payment) for payment in self.extra],
        }


@dataclass
class EventReconciliationResult:
    """Outcome of reconciling one event's window."""

    event_id: str
    event_name: str
    provider: str
    status: str  # reconciled | skipped | error
    start: datetime
    end: datetime
    comparison: PaymentComparison = field(default_factory=PaymentComparison)
    gateway_payments: int = 0
    errors: int = 0
    error: str = ""

    def summary(self) -> dict[str, int]:
        return {
            "totalPayments": self.comparison.total,
            "gatewayPayments": self.gateway_payments,
            **self.comparison.counts(),
            "errors": self.errors,
        }

    def to_report_entry(self) -> dict[str, Any]:
        entry = {
            "eventId": self.event_id,
            "eventName": self.event_name,
            "provider": self.provider,
            "status": self.status,
            "dateRange": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "summary": self.summary(),
            "comparison": self.comparison.to_dict(),
        }
        if self.error:
            entry["error"] = self.error
        return entry


def _record_snapshot(record: PaymentRecord) -> dict[str, Any]:
    return {
        "paymentId": str(record.pk),
        "providerPaymentId": record.provider_payment_id,
        "registrationId": str(record.registration_id) if record.registration_id else None,
        "amountCents": record.amount_cents,
        "currency": record.currency,
        "status": record.status,
    }


def _gateway_snapshot(payment: GatewayPayment) -> dict[str, Any]:
    return {
        "providerPaymentId": payment.provider_payment_id,
        "amountCents": payment.amount_cents,
        "currency": payment.currency,
        "status": payment.status,
        "email": payment.email,
    }


# =============================================================================
# Reconciliation Service
# =============================================================================


class ReconciliationService(BaseService):
    """Daily comparison of the payment ledger against every configured gateway."""

    # =========================================================================
    # Public API
    # =========================================================================

    @classmethod
    def perform_daily_reconciliation(
        cls,
        report_date: date | None = None,
        actor: str = "scheduler",
    ) -> ReconciliationReport:
        """
        Reconcile every event with a gateway for one calendar day.

        Args:
            report_date: Day to reconcile (default: yesterday, local time)
            actor: Recorded as generated_by on the report

        Returns:
            The newly written ReconciliationReport

        Raises:
            ReconciliationLockError: If another run is already in progress
        """
        report_date = report_date or timezone.localdate() - timedelta(days=1)

        try:
            lock = DistributedLock(
                RECONCILIATION_RUN_LOCK_KEY,
                ttl=RECONCILIATION_RUN_LOCK_TTL,
                timeout=RECONCILIATION_RUN_LOCK_TIMEOUT,
            )
            lock.acquire()
        except LockAcquisitionError:
            cls.get_logger().warning(
                "Another reconciliation run is in progress",
                extra={"lock_key": RECONCILIATION_RUN_LOCK_KEY},
            )
            raise ReconciliationLockError(
                "Another reconciliation run is in progress",
                details={"lock_key": RECONCILIATION_RUN_LOCK_KEY},
            )

        try:
            return cls._run_with_lock(report_date, actor, lock)
        finally:
            lock.release()

    @classmethod
    def reconcile_event_payments(
        cls,
        event: Event,
        start: datetime,
        end: datetime,
        adapter: PaymentProviderAdapter | None = None,
    ) -> EventReconciliationResult:
        """
        Compare and heal one event's payments created in [start, end).

        Raises:
            ConfigurationError: Event has no usable gateway configuration
            GatewayError: The gateway could not be listed
        """
        adapter = adapter or get_adapter_for_event(event)
        provider = adapter.name

        local_records = list(
            PaymentRecord.objects.for_event(event)
            .charges()
            .with_provider_id()
            .filter(provider=provider)
            .created_between(start, end)
        )
        known_ids = [record.provider_payment_id for record in local_records]
        gateway_payments = adapter.fetch_payments(start, end, known_ids=known_ids)

        # Gateway payments created in the window may belong to local records
        # created just outside it. Ids recorded under another event sharing
        # the same credentials are that event's to reconcile.
        unseen = {p.provider_payment_id for p in gateway_payments} - set(known_ids)
        if unseen:
            foreign = set()
            for record in PaymentRecord.objects.charges().filter(
                provider=provider, provider_payment_id__in=unseen
            ):
                if record.event_id == event.pk:
                    local_records.append(record)
                else:
                    foreign.add(record.provider_payment_id)
            if foreign:
                gateway_payments = [
                    p for p in gateway_payments if p.provider_payment_id not in foreign
                ]

        comparison = cls.compare_payments(local_records, gateway_payments)
        result = EventReconciliationResult(
            event_id=str(event.pk),
            event_name=event.name,
            provider=provider,
            status="reconciled",
            start=start,
            end=end,
            comparison=comparison,
            gateway_payments=len(gateway_payments),
        )

        now = timezone.now()
        if comparison.matched:
            PaymentRecord.objects.filter(
                pk__in=[record.pk for record, _ in comparison.matched]
            ).update(last_reconciled_at=now)

        for record, payment, discrepancies in comparison.mismatched:
            try:
                cls.heal_mismatch(record, payment, discrepancies)
            except PaymentError:
                result.errors += 1
                cls.get_logger().exception(
                    "Failed to heal mismatched payment",
                    extra={"payment_id": str(record.pk), "event_id": str(event.pk)},
                )

        for record in comparison.missing:
            cls.flag_missing(record)

        for payment in comparison.extra:
            try:
                cls.sync_extra(event, provider, payment)
            except PaymentError:
                result.errors += 1
                cls.get_logger().exception(
                    "Failed to sync gateway payment",
                    extra={
                        "provider_payment_id": payment.provider_payment_id,
                        "event_id": str(event.pk),
                    },
                )

        cls.get_logger().info(
            "Event reconciled",
            extra={"event_id": str(event.pk), "provider": provider, **comparison.counts()},
        )
        return result

    # =========================================================================
    # Comparison
    # =========================================================================

    @classmethod
    def compare_payments(
        cls,
        local_records: Iterable[PaymentRecord],
        gateway_payments: Iterable[GatewayPayment],
    ) -> PaymentComparison:
        """
        Partition both sides into matched/mismatched/missing/extra.

        Every local record and every gateway payment lands in exactly one
        bucket. Duplicate ids are collapsed (last one wins).
        """
        local_by_id = {record.provider_payment_id: record for record in local_records}
        gateway_by_id = {payment.provider_payment_id: payment for payment in gateway_payments}

        comparison = PaymentComparison()
        for provider_payment_id, record in local_by_id.items():
            payment = gateway_by_id.get(provider_payment_id)
            if payment is None:
                comparison.missing.append(record)
                continue
            discrepancies = cls.find_payment_discrepancies(record, payment)
            if discrepancies:
                comparison.mismatched.append((record, payment, discrepancies))
            else:
                comparison.matched.append((record, payment))

        comparison.extra = [
            payment
            for provider_payment_id, payment in gateway_by_id.items()
            if provider_payment_id not in local_by_id
        ]
        return comparison

    @classmethod
    def find_payment_discrepancies(
        cls, record: PaymentRecord, payment: GatewayPayment
    ) -> list[Discrepancy]:
        """
        Fields on which record and gateway disagree.

        Fields the gateway does not report (None) are not compared. Statuses
        are compared after normalization so "captured" equals "paid".
        """
        discrepancies = []
        if payment.amount_cents is not None and payment.amount_cents != record.amount_cents:
            discrepancies.append(
                Discrepancy("amount_cents", record.amount_cents, payment.amount_cents)
            )
        if payment.currency and payment.currency.upper() != (record.currency or "").upper():
            discrepancies.append(
                Discrepancy("currency", record.currency, payment.currency.upper())
            )
        local_status = cls.normalize_payment_status(record.status)
        gateway_status = cls.normalize_payment_status(payment.status)
        if local_status != gateway_status:
            discrepancies.append(Discrepancy("status", local_status, gateway_status))
        if (
            payment.fee_cents is not None
            and record.fee_cents is not None
            and payment.fee_cents != record.fee_cents
        ):
            discrepancies.append(Discrepancy("fee_cents", record.fee_cents, payment.fee_cents))
        return discrepancies

    @staticmethod
    def normalize_payment_status(status) -> str:
        return normalize_payment_status(status)

    # =========================================================================
    # Healing
    # =========================================================================

    @classmethod
    def heal_mismatch(
        cls,
        record: PaymentRecord,
        payment: GatewayPayment,
        discrepancies: list[Discrepancy],
    ) -> PaymentRecord:
        """
        Align a mismatched record with the gateway.

        Status only ever moves forward; a refused move keeps the local status
        and leaves a manual-review note on the record.
        """
        with transaction.atomic():
            healed = PaymentRecordService.log_payment(
                event=record.event,
                provider=record.provider,
                provider_payment_id=record.provider_payment_id,
                amount_cents=(
                    payment.amount_cents
                    if payment.amount_cents is not None
                    else record.amount_cents
                ),
                currency=payment.currency or record.currency,
                status=payment.status,
                method=payment.method,
                fee_cents=payment.fee_cents,
                captured_at=payment.captured_at,
                raw_response=payment.raw_response,
            )

            notes = [
                f"{d.field}: {d.local} -> {d.gateway}"
                for d in discrepancies
                if d.field != "status"
            ]
            gateway_status = cls.normalize_payment_status(payment.status)
            if cls.normalize_payment_status(healed.status) == gateway_status:
                notes.extend(
                    f"status: {d.local} -> {d.gateway}"
                    for d in discrepancies
                    if d.field == "status"
                )
                note = "Healed from gateway: " + "; ".join(notes)
            else:
                notes.append(
                    f"gateway reports {gateway_status} but local status "
                    f"{healed.status} cannot move there; manual review required"
                )
                note = "; ".join(notes)
                healed.merge_meta({"needs_review": True}, save=False)

            healed.last_reconciled_at = timezone.now()
            healed.reconciliation_note = note
            healed.save(update_fields=REVIEW_FIELDS)

        cls.get_logger().info(
            "Healed mismatched payment",
            extra={
                "payment_id": str(healed.pk),
                "fields": [d.field for d in discrepancies],
                "status": healed.status,
            },
        )
        return healed

    @classmethod
    def sync_extra(
        cls, event: Event, provider: str, payment: GatewayPayment
    ) -> PaymentRecord:
        """Create the local record for a payment only the gateway knows."""
        registration = cls._match_registration(event, payment)
        record = PaymentRecordService.log_payment(
            event=event,
            provider=provider,
            provider_payment_id=payment.provider_payment_id,
            amount_cents=payment.amount_cents or 0,
            registration=registration,
            currency=payment.currency,
            status=payment.status,
            method=payment.method,
            fee_cents=payment.fee_cents,
            captured_at=payment.captured_at,
            raw_response=payment.raw_response,
            synced_from_gateway=True,
        )
        PaymentRecord.objects.filter(pk=record.pk).update(
            last_reconciled_at=timezone.now(),
            reconciliation_note="Synced from gateway during reconciliation",
        )
        cls.get_logger().info(
            "Synced gateway payment",
            extra={
                "payment_id": str(record.pk),
                "provider_payment_id": payment.provider_payment_id,
                "registration_matched": registration is not None,
            },
        )
        return record

    @classmethod
    def flag_missing(cls, record: PaymentRecord) -> None:
        record.merge_meta({"needs_review": True}, save=False)
        record.last_reconciled_at = timezone.now()
        record.reconciliation_note = MANUAL_REVIEW_NOTE
        record.save(update_fields=REVIEW_FIELDS)
        cls.get_logger().warning(
            "Payment not found on gateway",
            extra={
                "payment_id": str(record.pk),
                "provider": record.provider,
                "provider_payment_id": record.provider_payment_id,
            },
        )

    # =========================================================================
    # Statistics
    # =========================================================================

    @classmethod
    def reconciliation_stats(
        cls,
        event_id=None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, Any]:
        """
        Aggregate report summaries over a date range (default: last 30 days).

        With event_id, only that event's entries are counted.
        """
        end_date = end_date or timezone.localdate()
        start_date = start_date or end_date - timedelta(days=30)

        totals = {
            "reports": 0,
            "totalPayments": 0,
            "matched": 0,
            "mismatched": 0,
            "missing": 0,
            "extra": 0,
            "errors": 0,
        }
        for report in ReconciliationReport.for_range(start_date, end_date):
            totals["reports"] += 1
            if event_id is None:
                summaries = [report.summary]
            else:
                summaries = [
                    entry.get("summary", {})
                    for entry in report.events
                    if entry.get("eventId") == str(event_id)
                ]
            for summary in summaries:
                for key in ("totalPayments", "matched", "mismatched", "missing", "extra", "errors"):
                    totals[key] += int(summary.get(key, 0))

        total = totals["totalPayments"]
        return {
            "startDate": start_date.isoformat(),
            "endDate": end_date.isoformat(),
            "eventId": str(event_id) if event_id is not None else None,
            **totals,
            "matchRate": round(totals["matched"] / total * 100, 2) if total else 100.0,
        }

    # =========================================================================
    # Internal Methods
    # =========================================================================

    @classmethod
    def _run_with_lock(
        cls, report_date: date, actor: str, lock: DistributedLock
    ) -> ReconciliationReport:
        start, end = cls._day_window(report_date)
        cls.get_logger().info(
            "Starting reconciliation run",
            extra={"report_date": report_date.isoformat(), "actor": actor},
        )

        entries = []
        summary = {
            "totalEvents": 0,
            "totalPayments": 0,
            "matched": 0,
            "mismatched": 0,
            "missing": 0,
            "extra": 0,
            "errors": 0,
        }
        events = [
            event
            for event in Event.objects.order_by("created_at")
            if event.has_payment_provider
        ]

        for event in events:
            summary["totalEvents"] += 1
            lock.extend()
            try:
                result = cls.reconcile_event_payments(event, start, end)
            except ConfigurationError as e:
                cls.get_logger().warning(
                    "Skipping event with unusable gateway configuration",
                    extra={"event_id": str(event.pk), "error": e.message},
                )
                result = EventReconciliationResult(
                    event_id=str(event.pk),
                    event_name=event.name,
                    provider=event.payment_provider,
                    status="skipped",
                    start=start,
                    end=end,
                    error=e.message,
                )
            except Exception as e:
                # One failing event must not abort the run
                cls.get_logger().exception(
                    "Reconciliation failed for event",
                    extra={"event_id": str(event.pk), "provider": event.payment_provider},
                )
                result = EventReconciliationResult(
                    event_id=str(event.pk),
                    event_name=event.name,
                    provider=event.payment_provider,
                    status="error",
                    start=start,
                    end=end,
                    errors=1,
                    error=str(e),
                )

            event_summary = result.summary()
            for key in ("totalPayments", "matched", "mismatched", "missing", "extra", "errors"):
                summary[key] += event_summary[key]
            entries.append(result.to_report_entry())

        report = ReconciliationReport.objects.create(
            report_date=report_date,
            summary=summary,
            events=entries,
            generated_by=actor,
        )
        cls.get_logger().info(
            "Reconciliation run completed",
            extra={"report_id": str(report.pk), **summary},
        )
        return report

    @classmethod
    def _day_window(cls, report_date: date) -> tuple[datetime, datetime]:
        start = timezone.make_aware(datetime.combine(report_date, time.min))
        return start, start + timedelta(days=1)

    @classmethod
    def _match_registration(
        cls, event: Event, payment: GatewayPayment
    ) -> Registration | None:
        """Find the registration by reference first, then by payer email."""
        if payment.registration_ref:
            registration = Registration.objects.filter(
                event=event, registration_id=payment.registration_ref
            ).first()
            if registration:
                return registration
        if payment.email:
            return (
                Registration.objects.filter(event=event, email__iexact=payment.email)
                .order_by("-created_at")
                .first()
            )
        return None
