"""
Manual reconciliation actions for operators.

Manual match, suggestions, exception flagging, ignore, listing and the
per-tenant summary. Every state change is audited and mirrored onto the
transaction's queue item so the scheduler stops working on it.
"""

from datetime import date
from typing import List, Optional

import structlog

from ..config import Settings, get_settings
from ..exceptions import (
    ClaimConflict,
    InvalidTransitionError,
    ManualMatchConflict,
    RecordNotFoundError,
)
from ..ledger import LedgerGateway
from ..models import (
    AuditAction,
    ExternalTransaction,
    QueueStatus,
    RecordFilters,
    ReconciliationSummary,
    ScoredCandidate,
    TransactionStatus,
    utc_now,
)
from ..storage import ReconciliationStore
from ..utils.audit_logger import AuditRecorder, snapshot
from .ledger_applier import LedgerApplier
from .matching import MatchingEngine
from .pool import CandidatePoolProvider

logger = structlog.get_logger()

MANUAL_CONFIDENCE = 100

# Statuses an operator may match from
MANUALLY_MATCHABLE = frozenset({
    TransactionStatus.UNMATCHED,
    TransactionStatus.PARTIAL_MATCH,
    TransactionStatus.EXCEPTION,
})


class ManualReconciliation:
    """Operator-facing actions on individual external transactions."""

    def __init__(
        self,
        store: ReconciliationStore,
        ledger: LedgerGateway,
        settings: Optional[Settings] = None,
        engine: Optional[MatchingEngine] = None,
        pool: Optional[CandidatePoolProvider] = None,
        audit: Optional[AuditRecorder] = None,
        applier: Optional[LedgerApplier] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.engine = engine or MatchingEngine(self.settings)
        self.pool = pool or CandidatePoolProvider(store, ledger, self.settings)
        self.audit = audit or AuditRecorder(store)
        self.applier = applier or LedgerApplier(store, ledger, self.audit, self.settings)

    def manual_match(
        self,
        transaction_id: str,
        payment_id: str,
        actor: str = "operator",
    ) -> ExternalTransaction:
        """
        Force a match regardless of confidence.

        Raises:
            RecordNotFoundError: unknown transaction or payment
            ManualMatchConflict: payment claimed by another transaction, or
                the transaction is already matched. Nothing is written.
            InvalidTransitionError: transaction is ignored or a duplicate
        """
        txn = self._get(transaction_id)

        if txn.status == TransactionStatus.MATCHED:
            raise ManualMatchConflict(
                payment_id,
                claimed_by=transaction_id,
                reason=f"Transaction {transaction_id} is already matched "
                       f"to payment {txn.matched_payment_id}",
            )
        if txn.status not in MANUALLY_MATCHABLE:
            raise InvalidTransitionError(
                transaction_id, txn.status.value, TransactionStatus.MATCHED.value
            )

        owner = self.store.claim_owner(txn.tenant_id, payment_id)
        if owner is not None and owner != txn.id:
            raise ManualMatchConflict(payment_id, claimed_by=owner)

        candidate = next(
            (p for p in self.pool.get_pool(txn.tenant_id, for_transaction_id=txn.id)
             if p.id == payment_id),
            None,
        )
        if candidate is None:
            raise RecordNotFoundError("CandidatePayment", payment_id)

        _, match_type = self.engine.score(txn, candidate)

        try:
            outcome = self.applier.apply(
                txn,
                payment_id,
                MANUAL_CONFIDENCE,
                match_type,
                actor=actor,
                action=AuditAction.MANUAL_MATCH,
                expected_statuses=MANUALLY_MATCHABLE,
            )
        except ClaimConflict as e:
            raise ManualMatchConflict(payment_id, claimed_by=e.claimed_by) from e

        if not outcome.applied:
            raise ManualMatchConflict(
                payment_id,
                claimed_by=transaction_id,
                reason=f"Transaction {transaction_id} changed while matching",
            )

        logger.info(
            "Manual match committed",
            transaction_id=transaction_id,
            payment_id=payment_id,
            actor=actor,
        )
        return txn

    def suggest_matches(
        self,
        transaction_id: str,
        limit: Optional[int] = None,
    ) -> List[ScoredCandidate]:
        """Ranked candidates for a transaction awaiting review."""
        txn = self._get(transaction_id)
        pool = self.pool.get_pool(txn.tenant_id, for_transaction_id=txn.id)
        return self.engine.rank(txn, pool, limit)

    def mark_exception(
        self,
        transaction_id: str,
        exception_type: str,
        notes: Optional[str] = None,
        actor: str = "operator",
    ) -> ExternalTransaction:
        """Flag a transaction for investigation."""
        txn = self._get(transaction_id)
        if txn.status == TransactionStatus.MATCHED:
            raise InvalidTransitionError(
                transaction_id, txn.status.value, TransactionStatus.EXCEPTION.value
            )

        def change(t: ExternalTransaction) -> None:
            t.status = TransactionStatus.EXCEPTION
            t.exception_type = exception_type
            t.exception_notes = notes

        return self._transition(
            txn,
            change,
            AuditAction.MARKED_EXCEPTION,
            f"Marked as exception: {exception_type}",
            actor,
            QueueStatus.EXCEPTION,
        )

    def ignore(self, transaction_id: str, actor: str = "operator") -> ExternalTransaction:
        """Dismiss a transaction. Matched records cannot be ignored."""
        txn = self._get(transaction_id)
        if txn.status == TransactionStatus.MATCHED:
            raise InvalidTransitionError(
                transaction_id, txn.status.value, TransactionStatus.IGNORED.value
            )

        def change(t: ExternalTransaction) -> None:
            t.status = TransactionStatus.IGNORED

        return self._transition(
            txn,
            change,
            AuditAction.IGNORED,
            "Ignored by operator",
            actor,
            QueueStatus.UNMATCHED,
        )

    def list_records(
        self,
        tenant_id: str,
        filters: Optional[RecordFilters] = None,
    ) -> List[ExternalTransaction]:
        filters = filters or RecordFilters(limit=self.settings.records_limit)
        return self.store.list_transactions(tenant_id, filters)

    def summary(
        self,
        tenant_id: str,
        on_date: Optional[date] = None,
    ) -> ReconciliationSummary:
        """
        Counts and totals of a tenant's records, optionally for one day.

        Variance is the sum of amounts not matched to a ledger payment.
        """
        records = self.store.list_transactions(
            tenant_id,
            RecordFilters(date_from=on_date, date_to=on_date, limit=None),
        )

        summary = ReconciliationSummary(total_records=len(records))
        for txn in records:
            summary.total_external_amount_cents += txn.amount_cents
            if txn.status == TransactionStatus.MATCHED:
                summary.matched += 1
                summary.total_matched_amount_cents += txn.amount_cents
            elif txn.status == TransactionStatus.UNMATCHED:
                summary.unmatched += 1
            elif txn.status == TransactionStatus.PARTIAL_MATCH:
                summary.partial_matches += 1
            elif txn.status == TransactionStatus.EXCEPTION:
                summary.exceptions += 1
            elif txn.status == TransactionStatus.DUPLICATE:
                summary.duplicates += 1
            elif txn.status == TransactionStatus.IGNORED:
                summary.ignored += 1

        summary.variance_cents = (
            summary.total_external_amount_cents - summary.total_matched_amount_cents
        )
        return summary

    def _transition(
        self,
        txn: ExternalTransaction,
        change,
        action: AuditAction,
        message: str,
        actor: str,
        queue_status: QueueStatus,
    ) -> ExternalTransaction:
        before = snapshot(txn)
        current = txn.status
        now = utc_now()

        change(txn)
        txn.reconciled_by = actor
        txn.updated_at = now

        with self.store.atomic():
            if not self.store.save_transaction(txn, expected_statuses=[current]):
                fresh = self._get(txn.id)
                raise InvalidTransitionError(txn.id, fresh.status.value, txn.status.value)

            item = self.store.get_queue_item_for_transaction(txn.id)
            if item is not None:
                item.match_status = queue_status
                item.processed_at = item.processed_at or now
                item.next_retry_at = None
                item.updated_at = now
                item.processing_notes = message
                self.store.save_queue_item(item)

            self.audit.record(action, txn, message, before=before, actor=actor)

        return txn

    def _get(self, transaction_id: str) -> ExternalTransaction:
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise RecordNotFoundError("ExternalTransaction", transaction_id)
        return txn
