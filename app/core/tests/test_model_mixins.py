"""
Tests for the shared model mixins, exercised through PaymentPlan which
carries UUIDPrimaryKeyMixin, VersionedMixin and MetadataMixin.
"""

import uuid

from payments.models import PaymentPlan
from payments.tests.factories import PaymentPlanFactory


class TestUUIDPrimaryKeyMixin:
    def test_primary_key_is_uuid(self, db):
        plan = PaymentPlanFactory()

        assert isinstance(plan.pk, uuid.UUID)


class TestVersionedMixin:
    def test_insert_starts_at_one(self, db):
        assert PaymentPlanFactory().version == 1

    def test_each_update_increments(self, db):
        plan = PaymentPlanFactory()

        plan.save()
        plan.save()

        assert plan.version == 3
        assert PaymentPlan.objects.get(pk=plan.pk).version == 3

    def test_update_fields_include_version(self, db):
        plan = PaymentPlanFactory()

        plan.set_meta("source", "admin")

        assert plan.version == 2


class TestMetadataMixin:
    def test_get_meta_default(self, db):
        plan = PaymentPlanFactory()

        assert plan.get_meta("missing", "fallback") == "fallback"
        assert plan.has_meta("missing") is False

    def test_merge_meta_saves(self, db):
        plan = PaymentPlanFactory(metadata={"source": "checkout"})

        plan.merge_meta({"reminder_sent": True, "source": "admin"})

        stored = PaymentPlan.objects.get(pk=plan.pk)
        assert stored.metadata == {"source": "admin", "reminder_sent": True}

    def test_set_meta_without_save(self, db):
        plan = PaymentPlanFactory()

        plan.set_meta("draft", True, save=False)

        assert plan.get_meta("draft") is True
        assert PaymentPlan.objects.get(pk=plan.pk).metadata == {}
