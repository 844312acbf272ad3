"""
Celery configuration for the event payments backend.

Workers run the scheduled payment jobs defined in payments.tasks:
- Daily reconciliation against each gateway
- Installment overdue sweep, reminders and auto-charge
- Retention cleanup of reconciliation reports and webhook audit rows

Redis is both the message broker and result backend. Beat reads its schedule
from the database (django-celery-beat), seeded by a payments data migration.

Usage:
    celery -A config worker -l info
    celery -A config beat -l info
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
