"""
Bulk Statement Import - synchronous insert-then-sweep path.

Lines are validated as a whole before anything is written, inserted as
``unmatched`` transactions, and swept once against the current candidate
pool. There is no retry: whatever does not auto-match is left for manual
review, and every line's MatchResult is returned so the caller can show it.
"""

from datetime import date
from typing import List, Optional

import structlog

from ..config import Settings, get_settings
from ..exceptions import ClaimConflict, RequestValidationError
from ..ledger import LedgerGateway
from ..models import (
    AuditAction,
    BulkImportSummary,
    CandidatePayment,
    ExternalTransaction,
    MatchDecision,
    MatchResult,
    RecordFilters,
    StatementLine,
    TransactionStatus,
    OPEN_TRANSACTION_STATUSES,
    new_id,
    utc_now,
)
from ..storage import ReconciliationStore
from ..utils.audit_logger import AuditRecorder, snapshot
from .ledger_applier import LedgerApplier
from .matching import DecisionPolicy, MatchingEngine
from .pool import CandidatePoolProvider

logger = structlog.get_logger()


class BulkStatementImporter:
    """Imports statement lines and runs the one-shot auto-match sweep."""

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
        self.settings = settings or get_settings()
        self.engine = engine or MatchingEngine(self.settings)
        self.policy = policy or DecisionPolicy(self.settings)
        self.pool = pool or CandidatePoolProvider(store, ledger, self.settings)
        self.audit = audit or AuditRecorder(store)
        self.applier = applier or LedgerApplier(store, ledger, self.audit, self.settings)

    def import_lines(
        self,
        tenant_id: str,
        lines: List[StatementLine],
        batch_id: Optional[str] = None,
    ) -> BulkImportSummary:
        """
        Insert statement lines and auto-match what clears the threshold.

        Args:
            tenant_id: Tenant the statement belongs to
            lines: Parsed statement lines
            batch_id: Import batch id (generated if omitted)

        Returns:
            BulkImportSummary with one MatchResult per input line

        Raises:
            RequestValidationError: bad tenant or malformed line; nothing written
        """
        self._validate(tenant_id, lines)

        batch_id = batch_id or new_id()
        today = date.today()
        now = utc_now()

        transactions = [
            ExternalTransaction(
                tenant_id=tenant_id,
                source=line.source,
                batch_id=batch_id,
                amount_cents=line.amount_cents,
                external_reference=line.external_reference,
                reported_date=line.reported_date or today,
                description=line.description or "",
                created_at=now,
                updated_at=now,
            )
            for line in lines
        ]

        with self.store.atomic():
            self.store.add_transactions(transactions)
            for txn in transactions:
                self.audit.record(
                    AuditAction.TRANSACTION_INGESTED,
                    txn,
                    "Statement line imported",
                    details={"batch_id": batch_id},
                )

        logger.info(
            "Statement lines imported",
            tenant_id=tenant_id,
            batch_id=batch_id,
            lines=len(transactions),
        )

        summary = self._sweep(tenant_id, transactions)
        summary.batch_id = batch_id
        return summary

    def auto_reconcile(self, tenant_id: str) -> BulkImportSummary:
        """Sweep every unmatched record of a tenant, newest first."""
        if not tenant_id or not tenant_id.strip():
            raise RequestValidationError("tenant_id is required")

        transactions = self.store.list_transactions(
            tenant_id,
            RecordFilters(
                status=TransactionStatus.UNMATCHED,
                limit=self.settings.sweep_limit,
            ),
        )
        return self._sweep(tenant_id, transactions)

    def _sweep(
        self,
        tenant_id: str,
        transactions: List[ExternalTransaction],
    ) -> BulkImportSummary:
        pool = self.pool.get_pool(tenant_id)
        summary = BulkImportSummary(total=len(transactions))

        for txn in transactions:
            result = self.engine.match(txn, pool)
            decision = self.policy.decide(result)

            if decision == MatchDecision.AUTO_MATCH:
                result.applied = self._apply(txn, result)
                # Applied or lost to another writer, the payment is gone either way
                pool = self._without(pool, result.candidate_id)
            elif decision == MatchDecision.REVIEW:
                self._note_suggestion(txn, result)

            if result.applied:
                summary.matched += 1
            summary.results.append(result)

        summary.unmatched = summary.total - summary.matched

        logger.info(
            "Auto-match sweep finished",
            tenant_id=tenant_id,
            total=summary.total,
            matched=summary.matched,
            unmatched=summary.unmatched,
        )
        return summary

    def _apply(self, txn: ExternalTransaction, result: MatchResult) -> bool:
        try:
            outcome = self.applier.apply(
                txn,
                result.candidate_id,
                result.confidence,
                result.match_type,
            )
        except ClaimConflict as e:
            logger.info(
                "Candidate claimed concurrently, left for review",
                transaction_id=txn.id,
                payment_id=e.payment_id,
            )
            return False
        return outcome.applied

    def _note_suggestion(self, txn: ExternalTransaction, result: MatchResult) -> None:
        """Keep the best below-threshold score on the record for review."""
        if txn.confidence == result.confidence and txn.match_type == result.match_type:
            return

        before = snapshot(txn)
        txn.confidence = result.confidence
        txn.match_type = result.match_type
        txn.updated_at = utc_now()

        with self.store.atomic():
            if self.store.save_transaction(txn, expected_statuses=OPEN_TRANSACTION_STATUSES):
                self.audit.record(
                    AuditAction.REVIEW_REQUIRED,
                    txn,
                    f"Best candidate {result.candidate_id} below threshold ({result.confidence}%)",
                    before=before,
                    details={"payment_id": result.candidate_id},
                )

    @staticmethod
    def _without(pool: List[CandidatePayment], payment_id: Optional[str]) -> List[CandidatePayment]:
        return [p for p in pool if p.id != payment_id]

    @staticmethod
    def _validate(tenant_id: str, lines: List[StatementLine]) -> None:
        errors = []
        if not tenant_id or not tenant_id.strip():
            errors.append("tenant_id is required")

        for i, line in enumerate(lines, start=1):
            if not isinstance(line.amount_cents, int) or isinstance(line.amount_cents, bool):
                errors.append(f"line {i}: amount must be a whole number of minor units")
            elif line.amount_cents <= 0:
                errors.append(f"line {i}: amount must be positive")

        if errors:
            raise RequestValidationError(
                f"Statement import rejected ({len(errors)} errors)",
                errors=errors,
            )
