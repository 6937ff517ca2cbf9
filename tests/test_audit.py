"""
Tests for the Audit Recorder.
"""

import pytest

from payrecon.models import AuditAction, ExternalTransaction, TransactionStatus
from payrecon.utils.audit_logger import AuditRecorder, snapshot

from .conftest import TENANT


@pytest.fixture
def recorder(store):
    return AuditRecorder(store)


@pytest.fixture
def txn():
    return ExternalTransaction(tenant_id=TENANT, amount_cents=5000)


class TestAuditRecorder:
    """Test suite for the append-only audit trail."""

    def test_record_captures_before_and_after(self, recorder, txn):
        before = snapshot(txn)
        txn.status = TransactionStatus.MATCHED
        txn.matched_payment_id = "pay-1"
        txn.confidence = 95

        entry = recorder.record(
            AuditAction.MATCH_COMMITTED, txn, "Matched", before=before, actor="system"
        )

        assert entry.entity_id == txn.id
        assert entry.tenant_id == TENANT
        assert entry.before["status"] == "unmatched"
        assert entry.after == {
            "status": "matched",
            "matched_payment_id": "pay-1",
            "confidence": 95,
            "match_type": "none",
        }
        assert entry.success is True

    def test_error_entries_are_marked_unsuccessful(self, recorder, txn):
        entry = recorder.record(
            AuditAction.PROCESSING_ERROR, txn, "Failed", error_message="boom"
        )

        assert entry.success is False
        assert entry.error_message == "boom"

    def test_entries_in_insertion_order_with_filters(self, recorder, txn):
        other = ExternalTransaction(tenant_id="school-002", amount_cents=1)
        recorder.record(AuditAction.TRANSACTION_INGESTED, txn, "in")
        recorder.record(AuditAction.TRANSACTION_INGESTED, other, "in")
        recorder.record(AuditAction.IGNORED, txn, "ignored", actor="bursar")
        recorder.record(AuditAction.PROCESSING_ERROR, txn, "oops", error_message="x")

        assert [e.message for e in recorder.entries(tenant_id=TENANT)] == ["in", "ignored", "oops"]
        assert len(recorder.entries(entity_id=other.id)) == 1
        assert [e.actor for e in recorder.entries(action_filter=AuditAction.IGNORED)] == ["bursar"]
        assert len(recorder.entries(tenant_id=TENANT, success_only=True)) == 2

    def test_summary_counts_actions(self, recorder, txn):
        recorder.record(AuditAction.TRANSACTION_INGESTED, txn, "in")
        recorder.record(AuditAction.RETRY_SCHEDULED, txn, "retry")
        recorder.record(AuditAction.RETRY_SCHEDULED, txn, "retry")
        recorder.record(AuditAction.PROCESSING_ERROR, txn, "oops", error_message="x")

        summary = recorder.summary(TENANT)

        assert summary["total_entries"] == 4
        assert summary["success_count"] == 3
        assert summary["error_count"] == 1
        assert summary["action_counts"]["retry_scheduled"] == 2

    def test_recorder_has_no_mutation_api(self, recorder):
        assert not hasattr(recorder, "update")
        assert not hasattr(recorder, "delete")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
