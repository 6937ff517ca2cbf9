"""
Reconciliation Service - wires the engine components around one store and
one ledger and exposes the entry points used by the API and the CLI:

1. Bulk statement import (synchronous sweep)
2. Real-time notification intake (queued)
3. Queue scheduler trigger
4. Manual actions (match, exception, ignore, listing, summary)
"""

from datetime import date
from typing import List, Optional

import structlog

from ..config import Settings, get_settings
from ..ledger import LedgerGateway
from ..models import (
    AuditAction,
    AuditEntry,
    BulkImportSummary,
    ExternalTransaction,
    IntakeAck,
    PaymentNotification,
    ProcessingQueueItem,
    QueueStatus,
    RecordFilters,
    ReconciliationSummary,
    SchedulerRunResult,
    ScoredCandidate,
    StatementLine,
)
from ..storage import ReconciliationStore
from ..utils.audit_logger import AuditRecorder
from .bulk_import import BulkStatementImporter
from .intake import EventIntake
from .ledger_applier import LedgerApplier
from .manual import ManualReconciliation
from .matching import DecisionPolicy, MatchingEngine
from .pool import CandidatePoolProvider
from .scheduler import QueueScheduler

logger = structlog.get_logger()


class ReconciliationService:
    """
    Facade over the reconciliation components.

    All components share the same store, ledger, audit recorder and
    settings, so a service instance is the unit a process works with.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        ledger: LedgerGateway,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.ledger = ledger

        self.audit = AuditRecorder(store)
        self.engine = MatchingEngine(self.settings)
        self.policy = DecisionPolicy(self.settings)
        self.pool = CandidatePoolProvider(store, ledger, self.settings)
        self.applier = LedgerApplier(store, ledger, self.audit, self.settings)

        shared = dict(
            settings=self.settings,
            engine=self.engine,
            pool=self.pool,
            audit=self.audit,
            applier=self.applier,
        )
        self.importer = BulkStatementImporter(store, ledger, policy=self.policy, **shared)
        self.scheduler = QueueScheduler(store, ledger, policy=self.policy, **shared)
        self.manual = ManualReconciliation(store, ledger, **shared)
        self.intake = EventIntake(store, settings=self.settings, audit=self.audit)

    # Entry points

    def import_statement(
        self,
        tenant_id: str,
        lines: List[StatementLine],
        batch_id: Optional[str] = None,
    ) -> BulkImportSummary:
        return self.importer.import_lines(tenant_id, lines, batch_id=batch_id)

    def auto_reconcile(self, tenant_id: str) -> BulkImportSummary:
        return self.importer.auto_reconcile(tenant_id)

    def receive_notification(self, notification: PaymentNotification) -> IntakeAck:
        ack = self.intake.accept(notification)
        logger.info(
            "Payment notification received",
            tenant_id=notification.tenant_id,
            transaction_id=ack.transaction_id,
            status=ack.status,
        )
        return ack

    def run_scheduler(self, batch_size: Optional[int] = None) -> SchedulerRunResult:
        return self.scheduler.run(batch_size=batch_size)

    def manual_match(
        self,
        transaction_id: str,
        payment_id: str,
        actor: str = "operator",
    ) -> ExternalTransaction:
        return self.manual.manual_match(transaction_id, payment_id, actor=actor)

    # Review

    def suggest_matches(
        self,
        transaction_id: str,
        limit: Optional[int] = None,
    ) -> List[ScoredCandidate]:
        return self.manual.suggest_matches(transaction_id, limit=limit)

    def mark_exception(
        self,
        transaction_id: str,
        exception_type: str,
        notes: Optional[str] = None,
        actor: str = "operator",
    ) -> ExternalTransaction:
        return self.manual.mark_exception(transaction_id, exception_type, notes, actor=actor)

    def ignore(self, transaction_id: str, actor: str = "operator") -> ExternalTransaction:
        return self.manual.ignore(transaction_id, actor=actor)

    def list_records(
        self,
        tenant_id: str,
        filters: Optional[RecordFilters] = None,
    ) -> List[ExternalTransaction]:
        return self.manual.list_records(tenant_id, filters)

    def summary(self, tenant_id: str, on_date: Optional[date] = None) -> ReconciliationSummary:
        return self.manual.summary(tenant_id, on_date=on_date)

    def list_queue(
        self,
        tenant_id: str,
        statuses: Optional[List[QueueStatus]] = None,
    ) -> List[ProcessingQueueItem]:
        return self.store.list_queue_items(tenant_id, statuses)

    def audit_entries(
        self,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ) -> List[AuditEntry]:
        return self.audit.entries(tenant_id=tenant_id, entity_id=entity_id, action_filter=action)
