"""
Tests for the SQLAlchemy store against a temporary SQLite database.
"""

import pytest
from datetime import date, timedelta

from payrecon.exceptions import ClaimConflict, ManualMatchConflict
from payrecon.models import (
    AuditAction,
    AuditEntry,
    ExternalTransaction,
    ProcessingQueueItem,
    QueueStatus,
    RecordFilters,
    TransactionStatus,
    utc_now,
)
from payrecon.reconciliation import ReconciliationService
from payrecon.storage import SqlStore

from .conftest import TENANT, line, notification, payment


@pytest.fixture
def sql_store(tmp_path):
    store = SqlStore(f"sqlite:///{tmp_path / 'data' / 'recon.db'}")
    store.init_schema()
    yield store
    store.engine.dispose()


def make_txn(**kwargs):
    defaults = dict(tenant_id=TENANT, amount_cents=5000, reported_date=date(2024, 3, 1))
    defaults.update(kwargs)
    return ExternalTransaction(**defaults)


class TestSqlStore:
    """Test suite for SqlStore persistence semantics."""

    def test_transaction_round_trip(self, sql_store):
        txn = make_txn(external_reference="INV-1", bank_reference="QK1", sender_phone="2547")
        sql_store.add_transactions([txn])

        loaded = sql_store.get_transaction(txn.id)

        assert loaded.external_reference == "INV-1"
        assert loaded.reported_date == date(2024, 3, 1)
        assert loaded.status == TransactionStatus.UNMATCHED
        assert loaded.created_at.tzinfo is not None
        assert sql_store.find_by_bank_reference(TENANT, "QK1").id == txn.id
        assert sql_store.find_by_bank_reference("other", "QK1") is None

    def test_conditional_save(self, sql_store):
        txn = make_txn()
        sql_store.add_transactions([txn])

        txn.status = TransactionStatus.MATCHED
        assert sql_store.save_transaction(
            txn, expected_statuses=[TransactionStatus.UNMATCHED]
        ) is True

        txn.status = TransactionStatus.IGNORED
        assert sql_store.save_transaction(
            txn, expected_statuses=[TransactionStatus.UNMATCHED]
        ) is False
        assert sql_store.get_transaction(txn.id).status == TransactionStatus.MATCHED

    def test_list_transactions_filters_and_order(self, sql_store):
        sql_store.add_transactions([
            make_txn(amount_cents=1, reported_date=date(2024, 3, 1)),
            make_txn(amount_cents=2, reported_date=date(2024, 3, 5)),
            make_txn(amount_cents=3, reported_date=date(2024, 3, 3), status=TransactionStatus.MATCHED),
        ])

        assert [t.amount_cents for t in sql_store.list_transactions(TENANT)] == [2, 3, 1]
        assert [
            t.amount_cents
            for t in sql_store.list_transactions(
                TENANT, RecordFilters(status=TransactionStatus.UNMATCHED)
            )
        ] == [2, 1]
        assert len(sql_store.list_transactions(TENANT, RecordFilters(limit=None))) == 3
        assert len(sql_store.list_transactions(
            TENANT, RecordFilters(date_from=date(2024, 3, 2), date_to=date(2024, 3, 4))
        )) == 1

    def test_claims_are_exclusive(self, sql_store):
        sql_store.claim_payment(TENANT, "pay-1", "txn-a")
        sql_store.claim_payment(TENANT, "pay-1", "txn-a")

        with pytest.raises(ClaimConflict) as exc_info:
            sql_store.claim_payment(TENANT, "pay-1", "txn-b")

        assert exc_info.value.claimed_by == "txn-a"
        assert sql_store.claim_owner(TENANT, "pay-1") == "txn-a"
        assert sql_store.claimed_payment_ids(TENANT) == {"pay-1"}
        assert sql_store.claimed_payment_ids(TENANT, exclude_transaction_id="txn-a") == set()

        sql_store.release_claim(TENANT, "pay-1", "txn-b")
        assert sql_store.claim_owner(TENANT, "pay-1") == "txn-a"
        sql_store.release_claim(TENANT, "pay-1", "txn-a")
        assert sql_store.claim_owner(TENANT, "pay-1") is None

    def test_due_queue_items(self, sql_store):
        now = utc_now()
        later = ProcessingQueueItem("t1", TENANT, next_retry_at=now + timedelta(minutes=5))
        old = ProcessingQueueItem("t2", TENANT, created_at=now - timedelta(hours=1))
        recent = ProcessingQueueItem("t3", TENANT, created_at=now - timedelta(minutes=1))
        exhausted = ProcessingQueueItem("t4", TENANT, retry_count=5, max_retries=5)
        done = ProcessingQueueItem("t5", TENANT, match_status=QueueStatus.MATCHED)
        for item in (later, old, recent, exhausted, done):
            sql_store.add_queue_item(item)

        due = sql_store.due_queue_items(now, limit=10)

        assert [i.id for i in due] == [old.id, recent.id]
        assert [i.id for i in sql_store.due_queue_items(now, limit=1)] == [old.id]
        assert len(sql_store.due_queue_items(now + timedelta(minutes=10), limit=10)) == 3
        assert sql_store.get_queue_item_for_transaction("t5").id == done.id

    def test_atomic_rolls_back(self, sql_store):
        txn = make_txn()

        with pytest.raises(RuntimeError):
            with sql_store.atomic():
                sql_store.add_transactions([txn])
                sql_store.claim_payment(TENANT, "pay-1", txn.id)
                raise RuntimeError("abort")

        assert sql_store.get_transaction(txn.id) is None
        assert sql_store.claim_owner(TENANT, "pay-1") is None

    def test_audit_round_trip(self, sql_store):
        entry = AuditEntry(
            tenant_id=TENANT,
            action=AuditAction.MANUAL_MATCH,
            actor="bursar",
            entity_id="txn-1",
            before={"status": "unmatched"},
            after={"status": "matched"},
            message="Matched",
            details={"payment_id": "pay-1"},
        )
        sql_store.append_audit(entry)

        loaded = sql_store.list_audit(tenant_id=TENANT)

        assert len(loaded) == 1
        assert loaded[0].id == entry.id
        assert loaded[0].action == AuditAction.MANUAL_MATCH
        assert loaded[0].before == {"status": "unmatched"}
        assert loaded[0].details == {"payment_id": "pay-1"}
        assert loaded[0].success is True


class TestServiceOnSql:
    """End-to-end flows with the SQL store."""

    def test_bulk_import_and_scheduler(self, sql_store, ledger, settings):
        service = ReconciliationService(sql_store, ledger, settings)
        ledger.add_payment(TENANT, payment("pay-1", 5000, date(2024, 3, 1), reference="INV-1"))
        ledger.add_payment(TENANT, payment("pay-2", 7000, date.today(), reference="MP-7"))

        summary = service.import_statement(TENANT, [line(5000, "INV-1", date(2024, 3, 1))])
        ack = service.receive_notification(notification(amount_cents=7000, reference="MP-7"))
        result = service.run_scheduler()

        assert summary.matched == 1
        assert result.matched == 1
        assert sql_store.get_transaction(ack.transaction_id).matched_payment_id == "pay-2"
        assert sql_store.claimed_payment_ids(TENANT) == {"pay-1", "pay-2"}

    def test_manual_match_conflict_on_sql(self, sql_store, ledger, settings):
        service = ReconciliationService(sql_store, ledger, settings)
        ledger.add_payment(TENANT, payment("pay-1", 5000, date(2024, 3, 1), reference="INV-1"))
        service.import_statement(TENANT, [line(5000, "INV-1", date(2024, 3, 1))])
        other = service.import_statement(TENANT, [line(10, "X", date(2024, 3, 1))])

        with pytest.raises(ManualMatchConflict):
            service.manual_match(other.results[0].transaction_id, "pay-1")

        txn = sql_store.get_transaction(other.results[0].transaction_id)
        assert txn.status == TransactionStatus.UNMATCHED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
