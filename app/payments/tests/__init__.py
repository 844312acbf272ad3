"""
Tests for payments app.

This package contains test modules for:
- test_models.py: PaymentRecord, PaymentPlan, Installment, WebhookEvent
- test_payment_record_service.py / test_payment_plan_service.py: services
- test_tasks.py: Celery tasks
- test_views.py: API endpoint tests

Adapter, service and webhook tests live in the tests/ package beside each.

Usage:
    pytest payments/tests/
    pytest payments/tests/test_payment_plan_service.py
"""
