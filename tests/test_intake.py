"""
Tests for the real-time notification intake.
"""

import pytest
from datetime import date

from payrecon.exceptions import RequestValidationError
from payrecon.models import (
    AuditAction,
    QueueStatus,
    TransactionSource,
    TransactionStatus,
)
from payrecon.reconciliation.intake import EventIntake

from .conftest import TENANT, notification


@pytest.fixture
def intake(store, settings):
    return EventIntake(store, settings)


class TestEventIntake:
    """Test suite for notification acceptance."""

    def test_notification_is_queued(self, intake, store, settings):
        ack = intake.accept(notification(
            amount_cents=250000,
            reference="ADM-001",
            bank_reference="QK12ABC",
            sender_phone="254711000000",
            sender_name="Jane Parent",
        ))

        assert ack.accepted is True
        assert ack.status == "queued"

        txn = store.get_transaction(ack.transaction_id)
        assert txn.status == TransactionStatus.UNMATCHED
        assert txn.source == TransactionSource.MOBILE_MONEY
        assert txn.amount_cents == 250000
        assert txn.reported_date == date.today()
        assert "Jane Parent" in txn.description

        item = store.get_queue_item(ack.queue_item_id)
        assert item.external_transaction_id == txn.id
        assert item.match_status == QueueStatus.PENDING
        assert item.retry_count == 0
        assert item.max_retries == settings.queue_max_retries

    def test_repeated_bank_reference_is_duplicate(self, intake, store):
        first = intake.accept(notification(bank_reference="QK12ABC"))
        second = intake.accept(notification(bank_reference="QK12ABC"))

        assert first.status == "queued"
        assert second.status == "duplicate"
        assert second.queue_item_id is None

        txn = store.get_transaction(second.transaction_id)
        assert txn.status == TransactionStatus.DUPLICATE
        assert first.transaction_id in txn.exception_notes
        assert store.get_queue_item_for_transaction(txn.id) is None
        assert len(store.list_queue_items(TENANT)) == 1

        actions = [e.action for e in store.list_audit(entity_id=txn.id)]
        assert actions == [AuditAction.DUPLICATE_DETECTED]

    def test_bank_reference_scoped_per_tenant(self, intake):
        intake.accept(notification(bank_reference="QK12ABC"))
        other = intake.accept(notification(bank_reference="QK12ABC", tenant_id="school-002"))

        assert other.status == "queued"

    def test_notifications_without_bank_reference_are_not_duplicates(self, intake):
        first = intake.accept(notification(reference="ADM-1"))
        second = intake.accept(notification(reference="ADM-1"))

        assert (first.status, second.status) == ("queued", "queued")

    @pytest.mark.parametrize("kwargs,message", [
        ({"tenant_id": ""}, "tenant_id is required"),
        ({"amount_cents": 0}, "amount must be positive"),
        ({"amount_cents": -500}, "amount must be positive"),
        ({"reference": None, "bank_reference": None}, "external_reference or bank_reference is required"),
        ({"reference": "  ", "bank_reference": None}, "external_reference or bank_reference is required"),
    ])
    def test_invalid_notification_rejected(self, intake, store, kwargs, message):
        with pytest.raises(RequestValidationError) as exc_info:
            intake.accept(notification(**kwargs))

        assert message in exc_info.value.errors
        assert store.list_transactions(TENANT) == []
        assert store.list_audit() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
