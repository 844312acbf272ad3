"""
Protocol definitions for collaborators the payment core consumes.

The payment core never sends email/SMS or renders documents itself. It calls
these interfaces after state transitions and leaves channel, template and
rendering choices to the implementation configured in settings:

    PAYMENT_NOTIFICATION_GATEWAY = "payments.integrations.EmailNotificationGateway"
    PAYMENT_DOCUMENT_GENERATOR = "payments.integrations.TextInvoiceGenerator"

Available Protocols:
    NotificationGateway: Multi-channel message sender
    DocumentGenerator: Invoice document renderer

Usage:
    from payments.integrations import get_notification_gateway

    gateway = get_notification_gateway()
    gateway.send(
        channel="email",
        template_type="payment_confirmation",
        event_id=str(event.pk),
        recipients=[{"email": registration.email, "name": registration.full_name}],
        template_data={"amount": "500.00", "currency": "INR"},
    )

Note:
    - @runtime_checkable allows isinstance() checks in tests
    - Implementations are plain classes; no inheritance required
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from typing import Any

    from events.models import Event, Registration
    from payments.models import PaymentRecord


@runtime_checkable
class NotificationGateway(Protocol):
    """
    Protocol for payment-related message delivery.

    Called after a payment is paid or refunded and when an installment
    becomes due or overdue.

    Example:
        class SmsGateway:
            def send(self, channel, template_type, event_id, recipients, template_data):
                return [{"recipient": r["phone"], "success": True} for r in recipients]
    """

    def send(
        self,
        channel: str,
        template_type: str,
        event_id: str,
        recipients: list[dict[str, Any]],
        template_data: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """
        Send one message per recipient.

        Args:
            channel: Delivery channel ("email", "sms", "whatsapp")
            template_type: Message template (e.g. "payment_confirmation")
            event_id: Event the message belongs to
            recipients: Dicts with at least "email" or "phone"
            template_data: Values substituted into the template

        Returns:
            Per-recipient result dicts: {"recipient", "success", "error"?}
        """
        ...


@runtime_checkable
class DocumentGenerator(Protocol):
    """
    Protocol for invoice rendering.

    Invoked once a PaymentRecord reaches "paid" and has no invoice yet.
    """

    def generate_invoice(
        self,
        payment: PaymentRecord,
        registration: Registration | None,
        event: Event,
    ) -> str:
        """
        Render and store an invoice.

        Returns:
            Storage path or URL of the generated document
        """
        ...
