"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.

Fixtures shared by every payments test package (adapters, services,
webhooks, tests) live here because they all need an event, a registration,
a mocked Redis lock and a captured notification gateway.
"""

import os
from datetime import timedelta
from unittest.mock import MagicMock, patch

import django
import pytest
from django.utils import timezone

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Generated invoices go to memory, not the uploads directory
    settings.STORAGES = {
        **settings.STORAGES,
        "default": {"BACKEND": "django.core.files.storage.InMemoryStorage"},
    }
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full payment journeys)
    - test_views.py, test_*_service.py, test_tasks.py, etc. → integration
    - test_models.py, test_plan_schedule.py, test_locks.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    # Filename patterns for each category
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_checkout_service.py",
        "test_payment_record_service.py",
        "test_payment_plan_service.py",
        "test_reconciliation_service.py",
        "test_optimistic_locking.py",
        "test_integrations.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_serializers.py",
        "test_state_transitions.py",
        "test_locks.py",
        "test_plan_schedule.py",
        "test_reminder_policy.py",
        "test_registry.py",
        "test_exceptions.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filepath = str(item.fspath)
        filename = filepath.split("/")[-1]

        # Check patterns in priority order
        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Event Fixtures
# =============================================================================


@pytest.fixture
def event(db):
    """Event configured for the stub gateway."""
    from events.tests.factories import EventFactory

    return EventFactory()


@pytest.fixture
def registration(db, event):
    """Registration for `event` with a 50000 fee."""
    from events.tests.factories import RegistrationFactory

    return RegistrationFactory(event=event)


# =============================================================================
# Gateway Fixtures
# =============================================================================


@pytest.fixture
def stub_adapter(event):
    """Stub adapter bound to `event`."""
    from payments.adapters.registry import get_adapter_for_event

    return get_adapter_for_event(event)


@pytest.fixture(autouse=True)
def clear_stub_ledger():
    """The stub gateway ledger is process-wide; start every test empty."""
    from payments.adapters.stub_adapter import StubAdapter

    StubAdapter.ledger.clear()
    yield
    StubAdapter.ledger.clear()


# =============================================================================
# Payment Fixtures
# =============================================================================


@pytest.fixture
def initiated_record(db, event, registration):
    from payments.tests.factories import PaymentRecordFactory

    return PaymentRecordFactory(event=event, registration=registration, amount_cents=50000)


@pytest.fixture
def paid_record(db, event, registration):
    from payments.tests.factories import PaidPaymentRecordFactory

    return PaidPaymentRecordFactory(
        event=event,
        registration=registration,
        amount_cents=50000,
    )


@pytest.fixture
def plan(db, registration):
    """Three-installment plan over 10000: 3333 (due), 3333, 3334."""
    from payments.services import PaymentPlanService

    return PaymentPlanService.create_plan(
        registration=registration,
        total_amount_cents=10000,
        installment_count=3,
        first_due_date=timezone.now() + timedelta(days=1),
    )


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture
def mock_redis():
    """
    Redis connection used by payments.locks, replaced with a mock.

    set() succeeds and the Lua scripts report ownership, so every
    DistributedLock acquires, extends and releases cleanly.
    """
    with patch("payments.locks.get_redis_connection") as mock_get_conn:
        redis_instance = MagicMock()
        redis_instance.set.return_value = True
        redis_instance.eval.return_value = 1
        mock_get_conn.return_value = redis_instance
        yield redis_instance


@pytest.fixture
def notification_gateway():
    """
    Capture notifications instead of sending email.

    Every recipient is reported as delivered.
    """
    gateway = MagicMock()
    gateway.send.side_effect = lambda **kwargs: [
        {"recipient": r.get("email"), "success": True} for r in kwargs["recipients"]
    ]
    with patch("payments.integrations.get_notification_gateway", return_value=gateway):
        yield gateway


@pytest.fixture
def document_generator():
    generator = MagicMock()
    generator.generate_invoice.return_value = "invoices/TEST/invoice.txt"
    with patch("payments.integrations.get_document_generator", return_value=generator):
        yield generator


def _patch_postgresql_flush_for_cascade():
    """
    Patch PostgreSQL flush to always use CASCADE.

    This fixes the "cannot truncate a table referenced in a foreign key constraint"
    error that occurs when TransactionTestCase tries to flush the database.

    Django's TransactionTestCase uses TRUNCATE to reset the database, but without
    CASCADE this fails when tables have foreign key constraints.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush_with_cascade(
        self, style, tables, *, reset_sequences=False, allow_cascade=False
    ):
        # Force CASCADE for PostgreSQL to handle FK constraints
        return original_sql_flush(
            self, style, tables, reset_sequences=reset_sequences, allow_cascade=True
        )

    operations.DatabaseOperations.sql_flush = sql_flush_with_cascade


# Apply the patch when conftest is loaded
_patch_postgresql_flush_for_cascade()
