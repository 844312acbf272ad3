"""
Tests for PaymentRecordService: idempotent ledger writes, gateway updates,
refunds and paid side effects.
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from events.models import Registration, RegistrationPaymentStatus
from payments.adapters.base import LineItem, WebhookUpdate
from payments.exceptions import (
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from payments.models import Installment, PaymentPlan, PaymentRecord
from payments.services import PaymentRecordService, to_local_status
from payments.state_machines import InstallmentStatus, PaymentPlanStatus, PaymentStatus
from payments.tests.factories import PaidPaymentRecordFactory


class TestToLocalStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("captured", PaymentStatus.PAID),
            ("paid", PaymentStatus.PAID),
            ("created", PaymentStatus.INITIATED),
            ("cancelled", PaymentStatus.FAILED),
            ("refunded", PaymentStatus.REFUNDED),
            ("partial-refund", PaymentStatus.PARTIAL_REFUND),
        ],
    )
    def test_maps_gateway_vocabulary(self, raw, expected):
        assert to_local_status(raw) == expected

    def test_unknown_status_has_no_local_meaning(self):
        assert to_local_status("on_hold") is None
        assert to_local_status(None) is None


# =============================================================================
# Idempotent Logging
# =============================================================================


class TestLogPayment:
    def test_first_call_inserts(self, event, registration):
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            registration=registration,
            amount_cents=50000,
        )

        assert record.status == PaymentStatus.INITIATED
        assert record.currency == "INR"
        assert record.registration == registration
        assert PaymentRecord.objects.count() == 1

    def test_same_gateway_id_never_creates_two_records(self, event, registration):
        first = PaymentRecordService.log_payment(
            event=event, provider="stub", provider_payment_id="order_1", amount_cents=50000
        )
        second = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=50000,
            method="upi",
            fee_cents=1180,
        )

        assert first.pk == second.pk
        assert PaymentRecord.objects.count() == 1
        stored = PaymentRecord.objects.get(pk=first.pk)
        assert stored.method == "upi"
        assert stored.net_cents == 48820

    def test_merge_keeps_existing_values_for_empty_fields(self, event):
        PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=50000,
            method="card",
            raw_response={"id": "order_1"},
        )
        record = PaymentRecordService.log_payment(
            event=event, provider="stub", provider_payment_id="order_1", amount_cents=50000
        )

        assert record.method == "card"
        assert record.raw_response == {"id": "order_1"}

    def test_metadata_is_merged(self, event):
        PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            metadata={"source": "checkout"},
        )
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            metadata={"attempt": 2},
        )

        assert record.metadata == {"source": "checkout", "attempt": 2}

    def test_captured_at_set_once(self, event):
        first_capture = timezone.now() - timedelta(minutes=5)
        PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            status="captured",
            captured_at=first_capture,
        )
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            status="captured",
            captured_at=timezone.now(),
        )

        assert record.captured_at == first_capture

    def test_gateway_status_moves_record_forward(self, event, registration):
        PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            registration=registration,
            amount_cents=50000,
        )
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=50000,
            status="captured",
        )

        assert record.status == PaymentStatus.PAID
        assert record.captured_at is not None
        assert record.invoice_number.startswith(event.code[:3].upper())

    def test_status_never_regresses(self, event):
        PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            status="refunded",
        )
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            status="captured",
        )

        assert record.status == PaymentStatus.REFUNDED

    def test_refunded_from_initiated_goes_through_paid(self, event):
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            status="refunded",
        )

        assert record.status == PaymentStatus.REFUNDED
        assert record.refunded_cents == 100
        assert record.invoice_number

    def test_records_without_gateway_id_are_always_inserted(self, event):
        PaymentRecordService.log_payment(event=event, provider="stub", amount_cents=100)
        PaymentRecordService.log_payment(event=event, provider="stub", amount_cents=100)

        assert PaymentRecord.objects.count() == 2

    def test_synced_flag_only_set_on_insert(self, event):
        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="order_1",
            amount_cents=100,
            synced_from_gateway=True,
        )

        assert record.synced_from_gateway is True

    def test_currency_defaults_to_event_currency(self, event):
        event.currency = "usd"
        event.save()

        record = PaymentRecordService.log_payment(
            event=event, provider="stub", provider_payment_id="order_1", amount_cents=100
        )

        assert record.currency == "USD"


# =============================================================================
# Stub Checkout Journey
# =============================================================================


class TestStubCheckoutJourney:
    def test_checkout_then_success_webhook(self, stub_adapter, registration):
        checkout = stub_adapter.create_checkout(
            registration,
            [LineItem(name="Conference pass", amount_cents=50000)],
            "https://example.com/ok",
            "https://example.com/cancel",
        )

        record = PaymentRecord.objects.get(pk=checkout.payment_id)
        assert record.status == PaymentStatus.INITIATED
        assert record.amount_cents == 50000
        assert checkout.url.startswith("http")
        assert "mock-payment" in checkout.url

        result = stub_adapter.simulate_payment_success(checkout.provider_payment_id)

        assert result.processed is True
        assert result.changed is True
        record = PaymentRecord.objects.get(pk=checkout.payment_id)
        assert record.status == PaymentStatus.PAID
        assert record.captured_at is not None
        assert record.invoice_number
        assert (
            Registration.objects.get(pk=registration.pk).payment_status
            == RegistrationPaymentStatus.PAID
        )

    def test_duplicate_webhook_is_noop(self, stub_adapter, registration):
        checkout = stub_adapter.create_checkout(
            registration,
            [LineItem(name="Conference pass", amount_cents=50000)],
            "https://example.com/ok",
            "https://example.com/cancel",
        )
        payload = {
            "id": "evt_stub_duplicate",
            "event_type": "payment.captured",
            "payment_id": checkout.provider_payment_id,
            "status": "captured",
        }

        first = stub_adapter.handle_webhook(payload)
        paid = PaymentRecord.objects.get(pk=checkout.payment_id)
        second = stub_adapter.handle_webhook(payload)
        after = PaymentRecord.objects.get(pk=checkout.payment_id)

        assert first.changed is True
        assert second.processed is True
        assert second.changed is False
        assert after.status == PaymentStatus.PAID
        assert after.captured_at == paid.captured_at
        assert after.invoice_number == paid.invoice_number
        assert after.updated_at == paid.updated_at
        assert PaymentRecord.objects.count() == 1

    def test_failure_webhook(self, stub_adapter, registration):
        checkout = stub_adapter.create_checkout(
            registration,
            [LineItem(name="Conference pass", amount_cents=50000)],
            "https://example.com/ok",
            "https://example.com/cancel",
        )

        stub_adapter.simulate_payment_failure(checkout.provider_payment_id, reason="Card declined")

        record = PaymentRecord.objects.get(pk=checkout.payment_id)
        assert record.status == PaymentStatus.FAILED
        assert record.failure_reason == "Card declined"


# =============================================================================
# Gateway Updates
# =============================================================================


class TestApplyGatewayUpdate:
    def test_unknown_payment_returns_none(self, db):
        record, changed = PaymentRecordService.apply_gateway_update(
            "stub",
            WebhookUpdate(event_type="payment.captured", provider_payment_id="nope", status="paid"),
        )

        assert record is None
        assert changed is False

    def test_update_without_gateway_id_is_ignored(self, db):
        record, changed = PaymentRecordService.apply_gateway_update(
            "stub", WebhookUpdate(event_type="payment.captured", status="paid")
        )

        assert record is None
        assert changed is False

    def test_fee_and_method_merged(self, initiated_record):
        record, changed = PaymentRecordService.apply_gateway_update(
            "stub",
            WebhookUpdate(
                event_type="payment.captured",
                provider_payment_id=initiated_record.provider_payment_id,
                status="captured",
                fee_cents=1000,
                method="card",
            ),
        )

        assert changed is True
        assert record.status == PaymentStatus.PAID
        assert record.fee_cents == 1000
        assert record.net_cents == initiated_record.amount_cents - 1000
        assert record.method == "card"


# =============================================================================
# Explicit Transitions
# =============================================================================


class TestExplicitTransitions:
    def test_mark_paid(self, initiated_record):
        record = PaymentRecordService.mark_paid(initiated_record)

        assert record.status == PaymentStatus.PAID

    def test_mark_paid_twice_raises(self, paid_record):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            PaymentRecordService.mark_paid(paid_record)

        assert exc_info.value.http_status == 409

    def test_mark_failed(self, initiated_record):
        record = PaymentRecordService.mark_failed(initiated_record, reason="Expired")

        assert record.status == PaymentStatus.FAILED
        assert record.failure_reason == "Expired"

    def test_get_by_provider_id(self, initiated_record):
        found = PaymentRecordService.get_by_provider_id(
            "stub", initiated_record.provider_payment_id
        )

        assert found == initiated_record
        assert (
            PaymentRecordService.get_by_provider_id(
                "paystack", initiated_record.provider_payment_id
            )
            is None
        )

    def test_get_payment_unknown_id(self, db):
        with pytest.raises(PaymentNotFoundError):
            PaymentRecordService.get_payment("00000000-0000-0000-0000-000000000000")


# =============================================================================
# Refunds
# =============================================================================


class TestRecordRefund:
    def test_partial_then_full_refund(self, paid_record):
        first = PaymentRecordService.record_refund(
            paid_record, amount_cents=20000, refund_provider_id="rfnd_1"
        )

        assert first.amount_cents == -20000
        assert first.original_payment == paid_record
        assert first.status == PaymentStatus.REFUNDED
        original = PaymentRecord.objects.get(pk=paid_record.pk)
        assert original.status == PaymentStatus.PARTIAL_REFUND
        assert original.refunded_cents == 20000

        PaymentRecordService.record_refund(
            original, amount_cents=30000, refund_provider_id="rfnd_2"
        )

        original = PaymentRecord.objects.get(pk=paid_record.pk)
        assert original.status == PaymentStatus.REFUNDED
        assert original.refunded_cents == 50000
        assert (
            Registration.objects.get(pk=paid_record.registration_id).payment_status
            == RegistrationPaymentStatus.REFUNDED
        )

    def test_refund_more_than_refundable_rejected(self, paid_record):
        with pytest.raises(PaymentValidationError) as exc_info:
            PaymentRecordService.record_refund(
                paid_record, amount_cents=50001, refund_provider_id="rfnd_1"
            )

        assert exc_info.value.details["refundable_cents"] == 50000
        assert PaymentRecord.objects.refunds().count() == 0

    def test_refund_of_unpaid_record_rejected(self, initiated_record):
        with pytest.raises(PaymentValidationError):
            PaymentRecordService.record_refund(
                initiated_record, amount_cents=100, refund_provider_id="rfnd_1"
            )


# =============================================================================
# Paid Side Effects
# =============================================================================


class TestPaidSideEffects:
    def test_paid_installment_record_advances_plan(self, event, registration, plan):
        first = plan.installments.get(sequence=1)

        PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="stub_installment_1",
            registration=registration,
            installment=first,
            amount_cents=first.amount_cents,
            status="captured",
        )

        assert Installment.objects.get(pk=first.pk).status == InstallmentStatus.PAID
        assert plan.installments.get(sequence=2).status == InstallmentStatus.DUE

    def test_payment_for_cancelled_installment_is_kept_for_review(
        self, event, registration, plan
    ):
        from payments.services import PaymentPlanService

        PaymentPlanService.cancel_plan(plan, reason="Withdrawn")
        first = plan.installments.get(sequence=1)

        record = PaymentRecordService.log_payment(
            event=event,
            provider="stub",
            provider_payment_id="stub_installment_late",
            registration=registration,
            installment=first,
            amount_cents=first.amount_cents,
            status="captured",
        )

        assert record.status == PaymentStatus.PAID
        assert record.reconciliation_note.startswith("Installment not updated")
        assert PaymentPlan.objects.get(pk=plan.pk).status == PaymentPlanStatus.CANCELLED

    def test_send_payment_documents_generates_invoice_once(
        self, paid_record, document_generator, notification_gateway
    ):
        PaymentRecordService.send_payment_documents(paid_record.pk)
        PaymentRecordService.send_payment_documents(paid_record.pk)

        document_generator.generate_invoice.assert_called_once()
        assert (
            PaymentRecord.objects.get(pk=paid_record.pk).invoice_url
            == "invoices/TEST/invoice.txt"
        )
        assert notification_gateway.send.call_count == 2
        kwargs = notification_gateway.send.call_args.kwargs
        assert kwargs["template_type"] == "payment_confirmation"
        assert kwargs["recipients"][0]["email"] == paid_record.registration.email

    def test_notify_without_registration_sends_nothing(
        self, event, notification_gateway
    ):
        record = PaidPaymentRecordFactory(event=event, registration=None)

        assert PaymentRecordService.notify(record, "payment_confirmation") == []
        notification_gateway.send.assert_not_called()
