# =============================================================================
# Django Project Configuration Package
# =============================================================================
# Settings, URLs, WSGI application and the Celery app that runs the payment
# schedules (reconciliation, installment sweeps, reminders).
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
