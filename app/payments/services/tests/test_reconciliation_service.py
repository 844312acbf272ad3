"""
Tests for ReconciliationService.

Tests cover:
- Partitioning into matched / mismatched / missing / extra
- Healing of mismatched records (gateway is authoritative, status forward only)
- Syncing of gateway-only payments and registration matching
- Flagging of payments the gateway does not report
- Full daily runs: report contents, per-event isolation, run lock
- Aggregated statistics

Gateways are replaced with a MagicMock adapter whose fetch_payments()
returns GatewayPayment lists, passed either directly or by patching the
registry lookup. Gateway status mapping is also checked end to end against
the Razorpay adapter with HTTP mocked.
"""

from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
from django.utils import timezone

from events.tests.factories import EventFactory, RegistrationFactory
from payments.adapters.base import GatewayPayment
from payments.adapters.tests.conftest import GATEWAY_CREDENTIALS, make_response
from payments.exceptions import (
    ConfigurationError,
    GatewayUnavailableError,
    LockAcquisitionError,
    ReconciliationLockError,
)
from payments.models import PaymentRecord, ReconciliationReport
from payments.services.reconciliation_service import (
    MANUAL_REVIEW_NOTE,
    Discrepancy,
    ReconciliationService,
)
from payments.state_machines import PaymentStatus
from payments.tests.factories import (
    PaidPaymentRecordFactory,
    PaymentRecordFactory,
    ReconciliationReportFactory,
)


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def fake_gateway():
    """Adapter stand-in reporting whatever the test puts in `payments`."""
    adapter = MagicMock()
    adapter.name = "stub"
    adapter.payments = []
    adapter.fetch_payments.side_effect = lambda start, end, known_ids=(): list(adapter.payments)
    return adapter


@pytest.fixture
def gateway_factory(fake_gateway):
    with patch(
        "payments.services.reconciliation_service.get_adapter_for_event",
        return_value=fake_gateway,
    ):
        yield fake_gateway


@pytest.fixture
def window():
    now = timezone.now()
    return now - timedelta(hours=1), now + timedelta(hours=1)


def gateway_payment(record=None, **overrides) -> GatewayPayment:
    fields = {
        "provider_payment_id": record.provider_payment_id if record else "stub_payment_gateway_only",
        "status": "captured",
        "amount_cents": record.amount_cents if record else 1000,
        "currency": record.currency if record else "INR",
    }
    fields.update(overrides)
    return GatewayPayment(**fields)


# =============================================================================
# Test: Comparison
# =============================================================================


@pytest.mark.django_db
class TestComparePayments:
    def test_every_payment_lands_in_one_bucket(self, event):
        matched = PaidPaymentRecordFactory(event=event, amount_cents=1000)
        mismatched = PaidPaymentRecordFactory(event=event, amount_cents=2000)
        missing = PaidPaymentRecordFactory(event=event)
        extra = gateway_payment()

        comparison = ReconciliationService.compare_payments(
            [matched, mismatched, missing],
            [gateway_payment(matched), gateway_payment(mismatched, amount_cents=2500), extra],
        )

        assert [record for record, _ in comparison.matched] == [matched]
        assert [record for record, _, _ in comparison.mismatched] == [mismatched]
        assert comparison.missing == [missing]
        assert comparison.extra == [extra]
        assert comparison.total == 4

    def test_statuses_are_compared_normalized(self, paid_record):
        payment = gateway_payment(paid_record, status="CAPTURED")

        assert ReconciliationService.find_payment_discrepancies(paid_record, payment) == []

    def test_fields_the_gateway_omits_are_not_compared(self, paid_record):
        payment = gateway_payment(paid_record, amount_cents=None, currency=None, fee_cents=25)

        assert ReconciliationService.find_payment_discrepancies(paid_record, payment) == []

    def test_discrepancies(self, paid_record):
        payment = gateway_payment(paid_record, amount_cents=45000, currency="usd", status="created")

        discrepancies = ReconciliationService.find_payment_discrepancies(paid_record, payment)

        assert [d.to_dict() for d in discrepancies] == [
            {"field": "amount_cents", "local": 50000, "gateway": 45000, "delta": -5000},
            {"field": "currency", "local": "INR", "gateway": "USD"},
            {"field": "status", "local": "paid", "gateway": "pending"},
        ]


# =============================================================================
# Test: Per-Event Reconciliation
# =============================================================================


@pytest.mark.django_db
class TestReconcileEventPayments:
    def test_paid_and_captured_match(self, event, fake_gateway, window):
        record = PaidPaymentRecordFactory(event=event, amount_cents=1000)
        fake_gateway.payments = [gateway_payment(record, status="captured")]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        record.refresh_from_db()
        assert result.comparison.counts() == {"matched": 1, "mismatched": 0, "missing": 0, "extra": 0}
        assert record.last_reconciled_at is not None
        assert record.status == PaymentStatus.PAID

    def test_gateway_only_payment_is_synced(self, event, fake_gateway, window):
        fake_gateway.payments = [gateway_payment(amount_cents=1000, status="captured")]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        synced = PaymentRecord.objects.get(provider_payment_id="stub_payment_gateway_only")
        assert len(result.comparison.extra) == 1
        assert synced.synced_from_gateway is True
        assert synced.status == PaymentStatus.PAID
        assert synced.amount_cents == 1000
        assert synced.reconciliation_note == "Synced from gateway during reconciliation"

    def test_missing_payment_is_flagged_not_changed(self, event, fake_gateway, window):
        record = PaidPaymentRecordFactory(event=event)

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        record.refresh_from_db()
        assert result.comparison.missing == [record]
        assert record.status == PaymentStatus.PAID
        assert record.get_meta("needs_review") is True
        assert record.reconciliation_note == MANUAL_REVIEW_NOTE

    def test_mismatch_is_healed_from_gateway(self, event, fake_gateway, window):
        record = PaymentRecordFactory(event=event, amount_cents=1000)
        fake_gateway.payments = [gateway_payment(record, amount_cents=1200, status="captured")]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        record.refresh_from_db()
        assert len(result.comparison.mismatched) == 1
        assert record.status == PaymentStatus.PAID
        assert record.amount_cents == 1200
        assert record.captured_at is not None
        assert record.reconciliation_note.startswith("Healed from gateway: ")
        assert "amount_cents: 1000 -> 1200" in record.reconciliation_note

    def test_records_outside_window_are_compared(self, event, fake_gateway, window):
        record = PaidPaymentRecordFactory(event=event, amount_cents=1000)
        PaymentRecord.objects.filter(pk=record.pk).update(
            created_at=timezone.now() - timedelta(days=3)
        )
        fake_gateway.payments = [gateway_payment(record)]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        assert len(result.comparison.matched) == 1
        assert result.comparison.extra == []

    def test_refunds_are_not_reconciled_as_charges(self, event, fake_gateway, window, paid_record):
        PaymentRecordFactory(
            event=event,
            registration=paid_record.registration,
            original_payment=paid_record,
            provider_payment_id="stub_refund_1",
            amount_cents=-1000,
            status=PaymentStatus.REFUNDED,
        )
        fake_gateway.payments = [gateway_payment(paid_record)]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        assert result.comparison.missing == []
        assert len(result.comparison.matched) == 1

    def test_failed_and_refunded_records_match_gateway(self, event, fake_gateway, window):
        failed = PaymentRecordFactory(event=event, status=PaymentStatus.FAILED)
        refunded = PaidPaymentRecordFactory(event=event, status=PaymentStatus.REFUNDED)
        partial = PaidPaymentRecordFactory(event=event, status=PaymentStatus.PARTIAL_REFUND)
        fake_gateway.payments = [
            gateway_payment(failed, status="failed"),
            gateway_payment(refunded, status="refunded"),
            gateway_payment(partial, status="partial-refund"),
        ]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        assert result.comparison.counts() == {"matched": 3, "mismatched": 0, "missing": 0, "extra": 0}

    def test_ids_recorded_under_another_event_are_skipped(self, event, fake_gateway, window):
        other = PaidPaymentRecordFactory(event=EventFactory(), amount_cents=1000)
        PaymentRecord.objects.filter(pk=other.pk).update(
            created_at=timezone.now() - timedelta(days=3)
        )
        fake_gateway.payments = [gateway_payment(other, amount_cents=1500)]

        result = ReconciliationService.reconcile_event_payments(event, *window, adapter=fake_gateway)

        other.refresh_from_db()
        assert result.comparison.total == 0
        assert result.gateway_payments == 0
        assert other.amount_cents == 1000
        assert other.last_reconciled_at is None
        assert PaymentRecord.objects.filter(
            provider_payment_id=other.provider_payment_id
        ).count() == 1

    def test_sync_failure_is_counted(self, event, fake_gateway, window):
        fake_gateway.payments = [gateway_payment()]

        with patch.object(
            ReconciliationService,
            "sync_extra",
            side_effect=GatewayUnavailableError("down", provider="stub"),
        ):
            result = ReconciliationService.reconcile_event_payments(
                event, *window, adapter=fake_gateway
            )

        assert result.errors == 1
        assert result.summary()["errors"] == 1


# =============================================================================
# Test: Healing
# =============================================================================


@pytest.mark.django_db
class TestHealMismatch:
    def test_refused_status_is_flagged_for_review(self, paid_record):
        payment = gateway_payment(paid_record, status="created")
        discrepancies = [Discrepancy("status", "paid", "pending")]

        healed = ReconciliationService.heal_mismatch(paid_record, payment, discrepancies)

        assert healed.status == PaymentStatus.PAID
        assert healed.get_meta("needs_review") is True
        assert "manual review required" in healed.reconciliation_note

    def test_gateway_refund_moves_record_forward(self, paid_record):
        payment = gateway_payment(paid_record, status="refunded")
        discrepancies = ReconciliationService.find_payment_discrepancies(paid_record, payment)

        healed = ReconciliationService.heal_mismatch(paid_record, payment, discrepancies)

        assert healed.status == PaymentStatus.REFUNDED
        assert healed.reconciliation_note == "Healed from gateway: status: paid -> refunded"
        assert not healed.get_meta("needs_review")

    def test_gateway_without_currency_keeps_record_currency(self, event):
        record = PaidPaymentRecordFactory(event=event, currency="USD", amount_cents=1000)
        payment = gateway_payment(record, currency=None, amount_cents=1200)

        healed = ReconciliationService.heal_mismatch(
            record, payment, ReconciliationService.find_payment_discrepancies(record, payment)
        )

        assert healed.currency == "USD"
        assert healed.amount_cents == 1200

    def test_healing_never_duplicates_the_record(self, paid_record):
        payment = gateway_payment(paid_record, amount_cents=49000)

        ReconciliationService.heal_mismatch(
            paid_record, payment, [Discrepancy("amount_cents", 50000, 49000)]
        )

        assert PaymentRecord.objects.filter(
            provider_payment_id=paid_record.provider_payment_id
        ).count() == 1


@pytest.mark.django_db
class TestSyncExtra:
    def test_matches_registration_by_reference(self, event):
        registration = RegistrationFactory(event=event, registration_id="REG-7777")
        payment = gateway_payment(registration_ref="REG-7777", email="someone@example.com")

        record = ReconciliationService.sync_extra(event, "stub", payment)

        assert record.registration == registration

    def test_falls_back_to_email(self, event):
        registration = RegistrationFactory(event=event, email="Payer@Example.com")
        payment = gateway_payment(registration_ref="REG-UNKNOWN", email="payer@example.com")

        record = ReconciliationService.sync_extra(event, "stub", payment)

        assert record.registration == registration

    def test_unmatched_payment_is_still_synced(self, event):
        record = ReconciliationService.sync_extra(event, "stub", gateway_payment(amount_cents=None))

        assert record.registration is None
        assert record.amount_cents == 0


# =============================================================================
# Test: Gateway Status Mapping
# =============================================================================


RAZORPAY_ORDER = {
    "id": "order_rzp_1",
    "amount": 50000,
    "currency": "INR",
    "created_at": 1772352000,
}


@pytest.fixture
def razorpay_event(db):
    return EventFactory(
        payment_config={
            "provider": "razorpay",
            "mode": "test",
            "credentials": GATEWAY_CREDENTIALS["razorpay"],
        }
    )


@pytest.mark.django_db
class TestRazorpayStatusReconciliation:
    @pytest.mark.parametrize(
        ("local_status", "order_status", "order_payments"),
        [
            (PaymentStatus.FAILED, "attempted", [{"id": "pay_1", "status": "failed"}]),
            (
                PaymentStatus.REFUNDED,
                "paid",
                [{"id": "pay_1", "status": "refunded", "amount": 50000, "amount_refunded": 50000}],
            ),
        ],
    )
    def test_local_state_matches_gateway(
        self, razorpay_event, window, local_status, order_status, order_payments
    ):
        record = PaymentRecordFactory(
            event=razorpay_event,
            provider="razorpay",
            provider_payment_id="order_rzp_1",
            amount_cents=50000,
            status=local_status,
        )

        with patch.object(requests.Session, "request") as request:
            request.side_effect = [
                make_response(json_data={"items": [{**RAZORPAY_ORDER, "status": order_status}]}),
                make_response(json_data={"items": order_payments}),
            ]
            result = ReconciliationService.reconcile_event_payments(razorpay_event, *window)

        record.refresh_from_db()
        assert result.comparison.counts() == {"matched": 1, "mismatched": 0, "missing": 0, "extra": 0}
        assert record.status == local_status
        assert not record.get_meta("needs_review")


# =============================================================================
# Test: Daily Run
# =============================================================================


@pytest.mark.django_db
class TestPerformDailyReconciliation:
    def test_writes_report(self, event, gateway_factory, mock_redis):
        record = PaidPaymentRecordFactory(event=event, amount_cents=1000)
        PaidPaymentRecordFactory(event=event)
        gateway_factory.payments = [gateway_payment(record), gateway_payment()]

        report = ReconciliationService.perform_daily_reconciliation(
            report_date=timezone.localdate(), actor="finance"
        )

        assert report.generated_by == "finance"
        assert report.summary == {
            "totalEvents": 1,
            "totalPayments": 3,
            "matched": 1,
            "mismatched": 0,
            "missing": 1,
            "extra": 1,
            "errors": 0,
        }
        [entry] = report.events
        assert entry["eventId"] == str(event.pk)
        assert entry["status"] == "reconciled"
        assert entry["comparison"]["extra"][0]["providerPaymentId"] == "stub_payment_gateway_only"

    def test_defaults_to_yesterday(self, db, gateway_factory, mock_redis):
        report = ReconciliationService.perform_daily_reconciliation()

        assert report.report_date == timezone.localdate() - timedelta(days=1)
        assert report.generated_by == "scheduler"

    def test_failing_event_does_not_abort_run(self, event, gateway_factory, mock_redis):
        other = EventFactory()
        PaidPaymentRecordFactory(event=other)

        def fetch(start, end, known_ids=()):
            if known_ids:
                raise GatewayUnavailableError("Gateway down", provider="stub")
            return []

        gateway_factory.fetch_payments.side_effect = fetch

        report = ReconciliationService.perform_daily_reconciliation(report_date=timezone.localdate())

        statuses = {entry["eventId"]: entry["status"] for entry in report.events}
        assert statuses == {str(event.pk): "reconciled", str(other.pk): "error"}
        assert report.summary["errors"] == 1
        assert report.summary["totalEvents"] == 2

    def test_misconfigured_event_is_skipped(self, event, mock_redis):
        EventFactory(payment_config={"provider": "razorpay", "credentials": {}})

        report = ReconciliationService.perform_daily_reconciliation(report_date=timezone.localdate())

        statuses = sorted(entry["status"] for entry in report.events)
        assert statuses == ["reconciled", "skipped"]

    def test_events_without_gateway_are_ignored(self, db, mock_redis):
        EventFactory(payment_config={})

        report = ReconciliationService.perform_daily_reconciliation(report_date=timezone.localdate())

        assert report.events == []
        assert report.summary["totalEvents"] == 0

    def test_concurrent_run_is_refused(self, db):
        with patch("payments.services.reconciliation_service.DistributedLock") as lock_class:
            lock_class.return_value.acquire.side_effect = LockAcquisitionError("held")

            with pytest.raises(ReconciliationLockError):
                ReconciliationService.perform_daily_reconciliation()

        assert ReconciliationReport.objects.count() == 0

    def test_lock_released_after_run(self, db):
        with patch("payments.services.reconciliation_service.DistributedLock") as lock_class:
            ReconciliationService.perform_daily_reconciliation()

        lock_class.return_value.release.assert_called_once()


# =============================================================================
# Test: Statistics
# =============================================================================


@pytest.mark.django_db
class TestReconciliationStats:
    def test_aggregates_range(self):
        ReconciliationReportFactory(
            report_date=date(2026, 3, 1),
            summary={"totalPayments": 4, "matched": 3, "missing": 1},
        )
        ReconciliationReportFactory(
            report_date=date(2026, 3, 2),
            summary={"totalPayments": 6, "matched": 6},
        )
        ReconciliationReportFactory(
            report_date=date(2026, 2, 1),
            summary={"totalPayments": 100, "matched": 0},
        )

        stats = ReconciliationService.reconciliation_stats(
            start_date=date(2026, 3, 1), end_date=date(2026, 3, 31)
        )

        assert stats["reports"] == 2
        assert stats["totalPayments"] == 10
        assert stats["matched"] == 9
        assert stats["missing"] == 1
        assert stats["matchRate"] == 90.0

    def test_scoped_to_event(self):
        ReconciliationReportFactory(
            report_date=date(2026, 3, 1),
            summary={"totalPayments": 5, "matched": 5},
            events=[
                {"eventId": "evt-a", "summary": {"totalPayments": 2, "matched": 1, "mismatched": 1}},
                {"eventId": "evt-b", "summary": {"totalPayments": 3, "matched": 3}},
            ],
        )

        stats = ReconciliationService.reconciliation_stats(
            event_id="evt-a", start_date=date(2026, 3, 1), end_date=date(2026, 3, 1)
        )

        assert stats["eventId"] == "evt-a"
        assert stats["totalPayments"] == 2
        assert stats["matchRate"] == 50.0

    def test_empty_range(self, db):
        stats = ReconciliationService.reconciliation_stats(
            start_date=date(2026, 3, 1), end_date=date(2026, 3, 2)
        )

        assert stats["reports"] == 0
        assert stats["matchRate"] == 100.0
