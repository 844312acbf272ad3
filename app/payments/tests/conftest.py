"""
Pytest fixtures for payment tests.

This module provides installment plans in the states the service tests
start from, plus API clients. Event, registration, payment record, plan,
gateway and Redis fixtures come from the root conftest.

Usage:
    def test_pay_first_installment(plan, paid_record):
        PaymentPlanService.mark_installment_paid(plan.installments.first(), paid_record)
"""

from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from payments.services import PaymentPlanService


# =============================================================================
# Payment Plan Fixtures
# =============================================================================


@pytest.fixture
def installments(plan):
    return list(plan.installments.order_by("sequence"))


@pytest.fixture
def auto_charge_plan(db, registration):
    return PaymentPlanService.create_plan(
        registration=registration,
        total_amount_cents=9000,
        installment_count=3,
        first_due_date=timezone.now() - timedelta(hours=1),
        auto_charge=True,
        saved_payment_method={
            "provider": "stub",
            "payment_method_id": "pm_stub_visa",
            "last4": "4242",
            "type": "card",
        },
    )


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="organizer", email="organizer@example.com", password="testpass123"
    )


@pytest.fixture
def staff_user(db):
    return get_user_model().objects.create_superuser(
        username="finance", email="finance@example.com", password="testpass123"
    )


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def authenticated_client(api_client, user):
    api_client.force_authenticate(user=user)
    return api_client


@pytest.fixture
def staff_client(api_client, staff_user):
    api_client.force_authenticate(user=staff_user)
    return api_client
