"""
Queue Scheduler - periodic batch pass over the processing queue.

Each invocation picks up to ``batch_size`` due items, oldest due first, and
runs one matching attempt per item. Every attempt consumes one retry; an
item that reaches ``max_retries`` without an auto-match becomes terminal
``unmatched``. Errors are isolated per item so the rest of the batch keeps
moving.
"""

from datetime import datetime
from typing import Optional

import structlog

from ..config import Settings, get_settings
from ..exceptions import ClaimConflict, RecordNotFoundError, TransientIOError
from ..ledger import LedgerGateway
from ..models import (
    AuditAction,
    ExternalTransaction,
    MatchDecision,
    ProcessingQueueItem,
    QueueStatus,
    SchedulerRunResult,
    TransactionStatus,
    OPEN_TRANSACTION_STATUSES,
    utc_now,
)
from ..storage import ReconciliationStore
from ..utils.audit_logger import AuditRecorder, snapshot
from .ledger_applier import LedgerApplier
from .matching import DecisionPolicy, MatchingEngine
from .pool import CandidatePoolProvider

logger = structlog.get_logger()

# Per-item outcomes of one pass
MATCHED = "matched"
RETRY = "retry"
EXHAUSTED = "exhausted"
CLOSED = "closed"
UNAPPLIED = "unapplied"

# Queue status mirrored from a transaction closed outside the scheduler
_MIRRORED_STATUS = {
    TransactionStatus.MATCHED: QueueStatus.MATCHED,
    TransactionStatus.EXCEPTION: QueueStatus.EXCEPTION,
    TransactionStatus.IGNORED: QueueStatus.UNMATCHED,
    TransactionStatus.DUPLICATE: QueueStatus.UNMATCHED,
}


class QueueScheduler:
    """Runs bounded scheduler passes over due queue items."""

    def __init__(
        self,
        store: ReconciliationStore,
        ledger: LedgerGateway,
        settings: Optional[Settings] = None,
        engine: Optional[MatchingEngine] = None,
        policy: Optional[DecisionPolicy] = None,
        pool: Optional[CandidatePoolProvider] = None,
        audit: Optional[AuditRecorder] = None,
        applier: Optional[LedgerApplier] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.engine = engine or MatchingEngine(self.settings)
        self.policy = policy or DecisionPolicy(self.settings)
        self.pool = pool or CandidatePoolProvider(store, ledger, self.settings)
        self.audit = audit or AuditRecorder(store)
        self.applier = applier or LedgerApplier(store, ledger, self.audit, self.settings)

    def run(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SchedulerRunResult:
        """
        Run one scheduler pass.

        Args:
            batch_size: Max items to pick up (defaults to ``queue_batch_size``)
            now: Clock override, mainly for tests

        Returns:
            SchedulerRunResult with processed / matched / failed counts.
            ``failed`` covers items that exhausted their retries, items
            marked ``exception``, items skipped by a transient error and items
            whose new ledger payment could not be applied.
        """
        now = now or utc_now()
        batch_size = batch_size or self.settings.queue_batch_size
        result = SchedulerRunResult()

        items = self.store.due_queue_items(now, batch_size)
        logger.info("Scheduler pass started", due_items=len(items), batch_size=batch_size)

        for item in items:
            result.processed += 1
            try:
                outcome = self._process_item(item, now)
            except TransientIOError as e:
                result.failed += 1
                result.errors.append(f"{item.id}: {e}")
                logger.warning(
                    "Transient error, item left for next pass",
                    queue_item_id=item.id,
                    error=str(e),
                )
                continue
            except Exception as e:
                result.failed += 1
                result.errors.append(f"{item.id}: {e}")
                logger.exception("Queue item processing failed", queue_item_id=item.id)
                self._mark_exception(item, e, now)
                continue

            if outcome == MATCHED:
                result.matched += 1
            elif outcome == EXHAUSTED:
                result.failed += 1
            elif outcome == UNAPPLIED:
                result.failed += 1
                result.errors.append(f"{item.id}: ledger payment created but not applied")

        logger.info(
            "Scheduler pass finished",
            processed=result.processed,
            matched=result.matched,
            failed=result.failed,
        )
        return result

    def _process_item(self, item: ProcessingQueueItem, now: datetime) -> str:
        txn = self.store.get_transaction(item.external_transaction_id)
        if txn is None:
            raise RecordNotFoundError("ExternalTransaction", item.external_transaction_id)

        if not txn.is_open:
            return self._close_mirrored(item, txn, now)

        item.retry_count += 1

        pool = self.pool.get_pool(txn.tenant_id, for_transaction_id=txn.id)
        match = self.engine.match(txn, pool)
        pool_confidence = match.confidence

        if self.policy.decide(match) == MatchDecision.AUTO_MATCH:
            try:
                outcome = self.applier.apply(
                    txn,
                    match.candidate_id,
                    match.confidence,
                    match.match_type,
                    queue_item=item,
                )
            except ClaimConflict as e:
                logger.info(
                    "Candidate claimed concurrently, retrying later",
                    queue_item_id=item.id,
                    payment_id=e.payment_id,
                )
                pool_confidence = 0
            else:
                if outcome.applied:
                    return MATCHED
                return self._close_mirrored(item, self._reload(txn), now)

        account = self.ledger.resolve_account(
            txn.tenant_id,
            txn.external_reference,
            txn.sender_phone,
        )
        account_confidence = account.confidence if account else 0

        if account and self.policy.classify(account.confidence) == MatchDecision.AUTO_MATCH:
            try:
                outcome = self.applier.apply_new_payment(txn, account, queue_item=item)
            except ClaimConflict as e:
                logger.info(
                    "New payment claimed concurrently, retrying later",
                    queue_item_id=item.id,
                    payment_id=e.payment_id,
                )
                account_confidence = 0
            else:
                if outcome.applied:
                    return MATCHED
                self._close_mirrored(item, self._reload(txn), now)
                return UNAPPLIED if outcome.created_payment else CLOSED

        return self._defer(item, txn, max(pool_confidence, account_confidence), now)

    def _defer(
        self,
        item: ProcessingQueueItem,
        txn: ExternalTransaction,
        confidence: int,
        now: datetime,
    ) -> str:
        """Schedule the next attempt, or close the item once retries run out."""
        before = snapshot(txn)
        exhausted = item.retry_count >= item.max_retries

        txn.confidence = confidence
        txn.status = (
            TransactionStatus.PARTIAL_MATCH if confidence > 0 else TransactionStatus.UNMATCHED
        )
        txn.updated_at = now

        item.confidence = confidence
        item.updated_at = now
        if exhausted:
            item.match_status = QueueStatus.UNMATCHED
            item.processed_at = now
            item.next_retry_at = None
            item.processing_notes = (
                f"No auto-match after {item.retry_count} attempts; "
                f"best confidence {confidence}"
            )
            action = AuditAction.RETRIES_EXHAUSTED
        else:
            item.match_status = (
                QueueStatus.PARTIAL_MATCH if confidence > 0 else QueueStatus.PENDING
            )
            item.next_retry_at = now + self.settings.retry_delay
            item.processing_notes = (
                f"Attempt {item.retry_count}/{item.max_retries}: "
                f"best confidence {confidence}"
            )
            action = AuditAction.RETRY_SCHEDULED

        with self.store.atomic():
            if not self.store.save_transaction(txn, expected_statuses=OPEN_TRANSACTION_STATUSES):
                return self._close_mirrored(item, self._reload(txn), now)
            self.store.save_queue_item(item)
            self.audit.record(
                action,
                txn,
                item.processing_notes,
                before=before,
                details={
                    "queue_item_id": item.id,
                    "retry_count": item.retry_count,
                    "max_retries": item.max_retries,
                },
            )

        return EXHAUSTED if exhausted else RETRY

    def _close_mirrored(
        self,
        item: ProcessingQueueItem,
        txn: ExternalTransaction,
        now: datetime,
    ) -> str:
        """Close an item whose transaction was settled elsewhere."""
        item.match_status = _MIRRORED_STATUS.get(txn.status, QueueStatus.UNMATCHED)
        item.confidence = txn.confidence
        item.processed_at = item.processed_at or now
        item.next_retry_at = None
        item.updated_at = now
        item.processing_notes = f"Transaction already {txn.status.value}"
        self.store.save_queue_item(item)

        logger.info(
            "Queue item closed, transaction no longer open",
            queue_item_id=item.id,
            transaction_id=txn.id,
            status=txn.status.value,
        )
        return CLOSED

    def _mark_exception(self, item: ProcessingQueueItem, error: Exception, now: datetime) -> None:
        try:
            with self.store.atomic():
                item.match_status = QueueStatus.EXCEPTION
                item.processed_at = now
                item.next_retry_at = None
                item.updated_at = now
                item.processing_notes = f"{type(error).__name__}: {error}"
                self.store.save_queue_item(item)

                txn = self.store.get_transaction(item.external_transaction_id)
                if txn is None:
                    return

                before = snapshot(txn)
                txn.status = TransactionStatus.EXCEPTION
                txn.exception_type = "processing_error"
                txn.exception_notes = item.processing_notes
                txn.updated_at = now
                if self.store.save_transaction(txn, expected_statuses=OPEN_TRANSACTION_STATUSES):
                    self.audit.record(
                        AuditAction.PROCESSING_ERROR,
                        txn,
                        "Queue processing failed",
                        before=before,
                        details={"queue_item_id": item.id},
                        error_message=str(error),
                    )
        except Exception:
            logger.exception("Could not record queue item failure", queue_item_id=item.id)

    def _reload(self, txn: ExternalTransaction) -> ExternalTransaction:
        fresh = self.store.get_transaction(txn.id)
        if fresh is None:
            raise RecordNotFoundError("ExternalTransaction", txn.id)
        return fresh
