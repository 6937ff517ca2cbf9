"""Data models for the payment reconciliation engine."""

from .enums import (
    TransactionSource,
    TransactionStatus,
    QueueStatus,
    MatchType,
    MatchDecision,
    AuditAction,
    OPEN_TRANSACTION_STATUSES,
    SCHEDULABLE_QUEUE_STATUSES,
)
from .transaction import (
    ExternalTransaction,
    CandidatePayment,
    AccountMatch,
    ProcessingQueueItem,
    utc_now,
    new_id,
)
from .reconciliation import (
    MatchResult,
    ScoredCandidate,
    StatementLine,
    PaymentNotification,
    IntakeAck,
    BulkImportSummary,
    SchedulerRunResult,
    ApplyOutcome,
    RecordFilters,
    PaymentFilters,
    AuditEntry,
    ReconciliationSummary,
)

__all__ = [
    # Enums
    "TransactionSource",
    "TransactionStatus",
    "QueueStatus",
    "MatchType",
    "MatchDecision",
    "AuditAction",
    "OPEN_TRANSACTION_STATUSES",
    "SCHEDULABLE_QUEUE_STATUSES",
    # Records
    "ExternalTransaction",
    "CandidatePayment",
    "AccountMatch",
    "ProcessingQueueItem",
    "utc_now",
    "new_id",
    # Reconciliation
    "MatchResult",
    "ScoredCandidate",
    "StatementLine",
    "PaymentNotification",
    "IntakeAck",
    "BulkImportSummary",
    "SchedulerRunResult",
    "ApplyOutcome",
    "RecordFilters",
    "PaymentFilters",
    "AuditEntry",
    "ReconciliationSummary",
]
