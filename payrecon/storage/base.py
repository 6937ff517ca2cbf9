"""
Persistence interface for the reconciliation engine.

Components receive a store instance in their constructor; there is no
module-level client. The only shared mutable resource between scheduler
passes is the store, so the conditional writes defined here
(``save_transaction`` with expected statuses, ``claim_payment``) are the
mutual-exclusion points.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, List, Optional, Set

from ..models import (
    AuditEntry,
    ExternalTransaction,
    ProcessingQueueItem,
    QueueStatus,
    RecordFilters,
    TransactionStatus,
)


class ReconciliationStore(ABC):
    """CRUD plus conditional writes over reconciliation records."""

    # Transactions

    @abstractmethod
    def add_transactions(self, transactions: List[ExternalTransaction]) -> None:
        """Insert new external transactions (all or nothing)."""

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Optional[ExternalTransaction]:
        """Load one external transaction."""

    @abstractmethod
    def list_transactions(
        self,
        tenant_id: str,
        filters: Optional[RecordFilters] = None,
    ) -> List[ExternalTransaction]:
        """List a tenant's transactions, newest reported first."""

    @abstractmethod
    def find_by_bank_reference(
        self,
        tenant_id: str,
        bank_reference: str,
    ) -> Optional[ExternalTransaction]:
        """Find an earlier transaction carrying the same bank reference."""

    @abstractmethod
    def save_transaction(
        self,
        transaction: ExternalTransaction,
        expected_statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> bool:
        """
        Write a transaction back.

        If ``expected_statuses`` is given, the write only happens when the
        stored status is one of them. Returns whether the write happened.
        """

    # Queue

    @abstractmethod
    def add_queue_item(self, item: ProcessingQueueItem) -> None:
        """Insert a new queue item."""

    @abstractmethod
    def get_queue_item(self, item_id: str) -> Optional[ProcessingQueueItem]:
        """Load one queue item."""

    @abstractmethod
    def get_queue_item_for_transaction(
        self,
        transaction_id: str,
    ) -> Optional[ProcessingQueueItem]:
        """Load the queue item wrapping a transaction, if any."""

    @abstractmethod
    def due_queue_items(self, now: datetime, limit: int) -> List[ProcessingQueueItem]:
        """Schedulable items due at ``now``, oldest due first."""

    @abstractmethod
    def list_queue_items(
        self,
        tenant_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> List[ProcessingQueueItem]:
        """List a tenant's queue items, optionally by status."""

    @abstractmethod
    def save_queue_item(self, item: ProcessingQueueItem) -> None:
        """Write a queue item back."""

    # Claims

    @abstractmethod
    def claim_payment(self, tenant_id: str, payment_id: str, transaction_id: str) -> None:
        """
        Claim a payment for a transaction.

        Succeeds if the payment is unclaimed or already claimed by the same
        transaction; raises ``ClaimConflict`` otherwise.
        """

    @abstractmethod
    def release_claim(self, tenant_id: str, payment_id: str, transaction_id: str) -> None:
        """Release a claim held by ``transaction_id`` (no-op otherwise)."""

    @abstractmethod
    def claim_owner(self, tenant_id: str, payment_id: str) -> Optional[str]:
        """Transaction id holding the claim on a payment."""

    @abstractmethod
    def claimed_payment_ids(
        self,
        tenant_id: str,
        exclude_transaction_id: Optional[str] = None,
    ) -> Set[str]:
        """Payments claimed in a tenant, optionally ignoring one transaction's claims."""

    # Audit

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry."""

    @abstractmethod
    def list_audit(
        self,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Read audit entries in insertion order."""

    # Transactions scope

    @abstractmethod
    def atomic(self) -> AbstractContextManager:
        """Group writes so they commit or roll back together."""
