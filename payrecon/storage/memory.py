"""
In-memory reconciliation store.

Used by tests and local development. Records are copied on the way in and
out so callers never mutate stored state behind the store's back, and every
operation runs under one re-entrant lock, which serializes payment claims.
"""

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..exceptions import ClaimConflict
from ..models import (
    AuditEntry,
    ExternalTransaction,
    ProcessingQueueItem,
    QueueStatus,
    RecordFilters,
    TransactionStatus,
)
from .base import ReconciliationStore


class InMemoryStore(ReconciliationStore):
    """Dict-backed store with snapshot rollback for ``atomic()``."""

    def __init__(self):
        self._lock = threading.RLock()
        self._transactions: Dict[str, ExternalTransaction] = {}
        self._queue: Dict[str, ProcessingQueueItem] = {}
        self._claims: Dict[Tuple[str, str], str] = {}
        self._audit: List[AuditEntry] = []
        self._depth = 0

    # Transactions

    def add_transactions(self, transactions: List[ExternalTransaction]) -> None:
        with self._lock:
            for txn in transactions:
                self._transactions[txn.id] = copy.deepcopy(txn)

    def get_transaction(self, transaction_id: str) -> Optional[ExternalTransaction]:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            return copy.deepcopy(txn) if txn else None

    def list_transactions(
        self,
        tenant_id: str,
        filters: Optional[RecordFilters] = None,
    ) -> List[ExternalTransaction]:
        filters = filters or RecordFilters()
        with self._lock:
            rows = [t for t in self._transactions.values() if t.tenant_id == tenant_id]

        if filters.status:
            rows = [t for t in rows if t.status == filters.status]
        if filters.source:
            rows = [t for t in rows if t.source == filters.source]
        if filters.date_from:
            rows = [t for t in rows if t.effective_date >= filters.date_from]
        if filters.date_to:
            rows = [t for t in rows if t.effective_date <= filters.date_to]

        rows.sort(key=lambda t: (t.effective_date, t.created_at), reverse=True)
        return [copy.deepcopy(t) for t in rows[:filters.limit]]

    def find_by_bank_reference(
        self,
        tenant_id: str,
        bank_reference: str,
    ) -> Optional[ExternalTransaction]:
        with self._lock:
            for txn in self._transactions.values():
                if txn.tenant_id == tenant_id and txn.bank_reference == bank_reference:
                    return copy.deepcopy(txn)
        return None

    def save_transaction(
        self,
        transaction: ExternalTransaction,
        expected_statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> bool:
        with self._lock:
            current = self._transactions.get(transaction.id)
            if current is None:
                return False
            if expected_statuses is not None and current.status not in set(expected_statuses):
                return False
            self._transactions[transaction.id] = copy.deepcopy(transaction)
            return True

    # Queue

    def add_queue_item(self, item: ProcessingQueueItem) -> None:
        with self._lock:
            self._queue[item.id] = copy.deepcopy(item)

    def get_queue_item(self, item_id: str) -> Optional[ProcessingQueueItem]:
        with self._lock:
            item = self._queue.get(item_id)
            return copy.deepcopy(item) if item else None

    def get_queue_item_for_transaction(
        self,
        transaction_id: str,
    ) -> Optional[ProcessingQueueItem]:
        with self._lock:
            for item in self._queue.values():
                if item.external_transaction_id == transaction_id:
                    return copy.deepcopy(item)
        return None

    def due_queue_items(self, now: datetime, limit: int) -> List[ProcessingQueueItem]:
        with self._lock:
            due = [i for i in self._queue.values() if i.is_due(now)]
            due.sort(key=lambda i: i.due_at)
            return [copy.deepcopy(i) for i in due[:limit]]

    def list_queue_items(
        self,
        tenant_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> List[ProcessingQueueItem]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            items = [
                i for i in self._queue.values()
                if i.tenant_id == tenant_id and (wanted is None or i.match_status in wanted)
            ]
            items.sort(key=lambda i: i.created_at)
            return [copy.deepcopy(i) for i in items]

    def save_queue_item(self, item: ProcessingQueueItem) -> None:
        with self._lock:
            self._queue[item.id] = copy.deepcopy(item)

    # Claims

    def claim_payment(self, tenant_id: str, payment_id: str, transaction_id: str) -> None:
        with self._lock:
            owner = self._claims.get((tenant_id, payment_id))
            if owner is not None and owner != transaction_id:
                raise ClaimConflict(payment_id, owner)
            self._claims[(tenant_id, payment_id)] = transaction_id

    def release_claim(self, tenant_id: str, payment_id: str, transaction_id: str) -> None:
        with self._lock:
            if self._claims.get((tenant_id, payment_id)) == transaction_id:
                del self._claims[(tenant_id, payment_id)]

    def claim_owner(self, tenant_id: str, payment_id: str) -> Optional[str]:
        with self._lock:
            return self._claims.get((tenant_id, payment_id))

    def claimed_payment_ids(
        self,
        tenant_id: str,
        exclude_transaction_id: Optional[str] = None,
    ) -> Set[str]:
        with self._lock:
            return {
                payment_id
                for (tenant, payment_id), owner in self._claims.items()
                if tenant == tenant_id and owner != exclude_transaction_id
            }

    # Audit

    def append_audit(self, entry: AuditEntry) -> None:
        with self._lock:
            self._audit.append(copy.deepcopy(entry))

    def list_audit(
        self,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._audit)
        if tenant_id is not None:
            entries = [e for e in entries if e.tenant_id == tenant_id]
        if entity_id is not None:
            entries = [e for e in entries if e.entity_id == entity_id]
        return [copy.deepcopy(e) for e in entries]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            snapshot = None
            if self._depth == 0:
                snapshot = (
                    copy.deepcopy(self._transactions),
                    copy.deepcopy(self._queue),
                    dict(self._claims),
                    list(self._audit),
                )
            self._depth += 1
            try:
                yield
            except Exception:
                if snapshot is not None:
                    self._transactions, self._queue, self._claims, self._audit = snapshot
                raise
            finally:
                self._depth -= 1
