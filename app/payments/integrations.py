"""
Default implementations of the payment core's consumed interfaces.

EmailNotificationGateway:
    Sends plain-text email through Django's configured EMAIL_BACKEND.
    Channels other than "email" are reported as unsupported per recipient.

TextInvoiceGenerator:
    Writes a plain-text invoice to default_storage under PAYMENT_INVOICE_DIR.

Deployments swap either one by pointing PAYMENT_NOTIFICATION_GATEWAY /
PAYMENT_DOCUMENT_GENERATOR at another dotted path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.core.mail import send_mail
from django.utils import timezone
from django.utils.module_loading import import_string

from payments.adapters.base import to_major_units

if TYPE_CHECKING:
    from typing import Any

    from events.models import Event, Registration
    from payments.models import PaymentRecord
    from payments.protocols import DocumentGenerator, NotificationGateway

logger = logging.getLogger(__name__)

SUBJECTS = {
    "payment_confirmation": "Payment received",
    "payment_refunded": "Refund processed",
    "installment_due": "Installment due",
    "installment_reminder": "Installment reminder",
    "installment_overdue": "Installment overdue",
    "payment_plan_defaulted": "Payment plan closed",
}


def get_notification_gateway() -> NotificationGateway:
    return import_string(settings.PAYMENT_NOTIFICATION_GATEWAY)()


def get_document_generator() -> DocumentGenerator:
    return import_string(settings.PAYMENT_DOCUMENT_GENERATOR)()


class EmailNotificationGateway:
    def send(
        self,
        channel: str,
        template_type: str,
        event_id: str,
        recipients: list[dict[str, Any]],
        template_data: dict[str, Any],
    ) -> list[dict[str, Any]]:
        if channel != "email":
            return [
                {"recipient": r, "success": False, "error": f"Unsupported channel '{channel}'"}
                for r in recipients
            ]

        subject = SUBJECTS.get(template_type, template_type.replace("_", " ").capitalize())
        event_name = template_data.get("event_name")
        if event_name:
            subject = f"{subject} - {event_name}"
        body = "\n".join(f"{key}: {value}" for key, value in sorted(template_data.items()))

        results = []
        for recipient in recipients:
            email = recipient.get("email")
            if not email:
                results.append({"recipient": recipient, "success": False, "error": "No email address"})
                continue
            try:
                send_mail(subject, body, settings.DEFAULT_FROM_EMAIL, [email])
            except OSError as exc:
                logger.error(
                    "Payment notification failed",
                    extra={"event_id": event_id, "template_type": template_type, "error": str(exc)},
                )
                results.append({"recipient": email, "success": False, "error": str(exc)})
            else:
                results.append({"recipient": email, "success": True})
        return results


class TextInvoiceGenerator:
    def generate_invoice(
        self,
        payment: PaymentRecord,
        registration: Registration | None,
        event: Event,
    ) -> str:
        number = payment.invoice_number or str(payment.pk)
        lines = [
            f"INVOICE {number}",
            f"Event: {event.name} ({event.code})",
            f"Date: {(payment.captured_at or timezone.now()):%Y-%m-%d}",
        ]
        if registration is not None:
            lines += [
                f"Registration: {registration.registration_id}",
                f"Billed to: {registration.full_name or registration.email} <{registration.email}>",
            ]
        for item in payment.get_meta("line_items", []) or []:
            lines.append(
                f"  {item.get('name')} x{item.get('quantity', 1)}: "
                f"{to_major_units(item.get('amount_cents', 0) * item.get('quantity', 1))}"
            )
        lines += [
            f"Total: {to_major_units(payment.amount_cents)} {payment.currency}",
            f"Paid via: {payment.provider} {payment.method}".rstrip(),
            f"Reference: {payment.provider_payment_id}",
        ]

        path = f"{settings.PAYMENT_INVOICE_DIR}/{event.code}/{number}.txt"
        return default_storage.save(path, ContentFile("\n".join(lines).encode()))
