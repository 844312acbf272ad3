"""
Payments app configuration.

This app provides the event payment core:
- Gateway adapters behind one contract, selected per event
- Idempotent payment ledger and installment plans
- Webhook handling and daily reconciliation
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"

    def ready(self):
        # Adapters register themselves with the provider registry on import
        from payments import adapters  # noqa: F401
