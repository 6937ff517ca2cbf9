"""
Ledger Applier - commits a decided match.

Claiming the payment, flipping the transaction to ``matched``, mirroring the
queue item and writing the audit entry happen inside one ``store.atomic()``
block. The transaction write is conditional on the transaction still being
open, so a retried or concurrent pass never applies the same transaction
twice.
"""

from typing import Iterable, Optional

import structlog

from ..config import Settings, get_settings
from ..ledger import LedgerGateway
from ..models import (
    AccountMatch,
    ApplyOutcome,
    AuditAction,
    ExternalTransaction,
    MatchType,
    ProcessingQueueItem,
    QueueStatus,
    TransactionStatus,
    OPEN_TRANSACTION_STATUSES,
    utc_now,
)
from ..storage import ReconciliationStore
from ..utils.audit_logger import AuditRecorder, snapshot

logger = structlog.get_logger()


class LedgerApplier:
    """Writes auto and manual matches to the store and the ledger."""

    def __init__(
        self,
        store: ReconciliationStore,
        ledger: LedgerGateway,
        audit: AuditRecorder,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self.settings = settings or get_settings()

    def apply(
        self,
        txn: ExternalTransaction,
        payment_id: str,
        confidence: int,
        match_type: MatchType,
        actor: str = "system",
        queue_item: Optional[ProcessingQueueItem] = None,
        action: AuditAction = AuditAction.MATCH_COMMITTED,
        expected_statuses: Iterable[TransactionStatus] = OPEN_TRANSACTION_STATUSES,
        details: Optional[dict] = None,
    ) -> ApplyOutcome:
        """
        Claim ``payment_id`` for ``txn`` and mark the transaction matched.

        Args:
            txn: Transaction as loaded by the caller (mutated on success)
            payment_id: Ledger payment to claim
            confidence: Confidence of the match being committed
            match_type: Rule that produced the match
            actor: Who is committing ("system" or an operator id)
            queue_item: Caller's copy of the queue item; loaded if omitted
            action: Audit action to record
            expected_statuses: Statuses the stored transaction must still have

        Returns:
            ApplyOutcome (applied False if the transaction was no longer open)

        Raises:
            ClaimConflict: payment already claimed by another transaction
        """
        expected = frozenset(expected_statuses)
        if txn.status not in expected:
            return ApplyOutcome(
                applied=False,
                transaction_id=txn.id,
                payment_id=txn.matched_payment_id,
                reason="already_applied",
            )

        before = snapshot(txn)
        now = utc_now()

        with self.store.atomic():
            held_before = self.store.claim_owner(txn.tenant_id, payment_id) == txn.id
            self.store.claim_payment(txn.tenant_id, payment_id, txn.id)

            txn.status = TransactionStatus.MATCHED
            txn.matched_payment_id = payment_id
            txn.confidence = confidence
            txn.match_type = match_type
            txn.reconciled_by = actor
            txn.reconciled_at = now
            txn.updated_at = now

            if not self.store.save_transaction(txn, expected_statuses=expected):
                if not held_before:
                    self.store.release_claim(txn.tenant_id, payment_id, txn.id)
                logger.info(
                    "Transaction changed before match was committed",
                    transaction_id=txn.id,
                    payment_id=payment_id,
                )
                return ApplyOutcome(
                    applied=False,
                    transaction_id=txn.id,
                    payment_id=payment_id,
                    reason="status_changed",
                )

            self._mirror_queue_item(txn, queue_item, now)
            self.audit.record(
                action,
                txn,
                f"Matched to payment {payment_id} ({confidence}%)",
                before=before,
                actor=actor,
                details={"payment_id": payment_id, **(details or {})},
            )

        return ApplyOutcome(applied=True, transaction_id=txn.id, payment_id=payment_id)

    def apply_new_payment(
        self,
        txn: ExternalTransaction,
        account: AccountMatch,
        actor: str = "system",
        queue_item: Optional[ProcessingQueueItem] = None,
    ) -> ApplyOutcome:
        """
        Record inbound money that has no ledger payment yet.

        The transaction is re-checked with a conditional write inside the
        same ``store.atomic()`` block that later commits the match, so the
        ledger is only called while the stored transaction is still open and
        concurrent writers wait for the commit. The payment is created with
        ``source_ref`` set to the transaction id, so a pass retried after a
        crash gets the same payment back instead of a second one.
        """
        if not txn.is_open:
            return ApplyOutcome(
                applied=False,
                transaction_id=txn.id,
                payment_id=txn.matched_payment_id,
                reason="already_applied",
            )

        with self.store.atomic():
            txn.updated_at = utc_now()
            if not self.store.save_transaction(txn, expected_statuses=OPEN_TRANSACTION_STATUSES):
                logger.info(
                    "Transaction changed before payment was recorded",
                    transaction_id=txn.id,
                    account_ref=account.account_ref,
                )
                return ApplyOutcome(
                    applied=False,
                    transaction_id=txn.id,
                    reason="status_changed",
                )

            payment_id = self.ledger.create_payment(
                txn.tenant_id,
                account.account_ref,
                txn.amount_cents,
                source_ref=txn.id,
            )
            self.ledger.recompute_balance(account.account_ref)

            logger.info(
                "Ledger payment recorded for notification",
                transaction_id=txn.id,
                payment_id=payment_id,
                account_ref=account.account_ref,
                matched_by=account.matched_by,
            )

            outcome = self.apply(
                txn,
                payment_id,
                account.confidence,
                MatchType.REFERENCE,
                actor=actor,
                queue_item=queue_item,
                action=AuditAction.PAYMENT_CREATED,
                details={
                    "account_ref": account.account_ref,
                    "matched_by": account.matched_by,
                    "invoice_id": account.invoice_id,
                },
            )
            if not outcome.applied:
                self._record_unapplied_payment(txn, account, payment_id, outcome.reason)
                outcome.reason = "payment_unapplied"

        outcome.created_payment = True
        return outcome

    def _record_unapplied_payment(
        self,
        txn: ExternalTransaction,
        account: AccountMatch,
        payment_id: str,
        reason: Optional[str],
    ) -> None:
        """Leave a failed audit entry naming a ledger payment no transaction owns."""
        logger.error(
            "Ledger payment created but not applied",
            transaction_id=txn.id,
            payment_id=payment_id,
            account_ref=account.account_ref,
            reason=reason,
        )
        current = self.store.get_transaction(txn.id) or txn
        self.audit.record(
            AuditAction.PROCESSING_ERROR,
            current,
            f"Ledger payment {payment_id} was created but not applied",
            details={
                "payment_id": payment_id,
                "account_ref": account.account_ref,
                "reason": reason,
            },
            error_message=f"Unapplied ledger payment {payment_id}",
        )

    def _mirror_queue_item(
        self,
        txn: ExternalTransaction,
        queue_item: Optional[ProcessingQueueItem],
        now,
    ) -> None:
        item = queue_item or self.store.get_queue_item_for_transaction(txn.id)
        if item is None:
            return

        item.match_status = QueueStatus.MATCHED
        item.confidence = txn.confidence
        item.processed_at = now
        item.next_retry_at = None
        item.updated_at = now
        item.processing_notes = f"Matched to payment {txn.matched_payment_id}"
        self.store.save_queue_item(item)
