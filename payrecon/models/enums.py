"""Enumerations for the payment reconciliation engine."""

from enum import Enum


class TransactionSource(str, Enum):
    """Channel an external money movement was reported through."""
    BANK = "bank"                  # Bank statement line
    MOBILE_MONEY = "mobile_money"  # Instant payment notification (M-PESA etc.)
    CASH = "cash"
    CHEQUE = "cheque"
    OTHER = "other"


class TransactionStatus(str, Enum):
    """
    Status of an external transaction.

    UNMATCHED: Awaiting a match (initial state)
    MATCHED: Claimed a ledger payment
    PARTIAL_MATCH: Scored below the auto-match threshold, needs review
    EXCEPTION: Processing failed or flagged by an operator
    DUPLICATE: Same bank reference already reported
    IGNORED: Dismissed by an operator
    """
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PARTIAL_MATCH = "partial_match"
    EXCEPTION = "exception"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class QueueStatus(str, Enum):
    """Status of a processing queue item."""
    PENDING = "pending"
    MATCHED = "matched"
    PARTIAL_MATCH = "partial_match"
    UNMATCHED = "unmatched"
    EXCEPTION = "exception"


class MatchType(str, Enum):
    """Which rule produced a match."""
    REFERENCE = "reference"
    AMOUNT_DATE = "amount_date"
    NONE = "none"


class MatchDecision(str, Enum):
    """Outcome of the decision policy for a match result."""
    AUTO_MATCH = "auto_match"  # confidence >= threshold
    REVIEW = "review"          # 0 < confidence < threshold
    NO_MATCH = "no_match"      # confidence == 0


class AuditAction(str, Enum):
    """Type of audit action."""
    TRANSACTION_INGESTED = "transaction_ingested"
    DUPLICATE_DETECTED = "duplicate_detected"
    MATCH_COMMITTED = "match_committed"
    PAYMENT_CREATED = "payment_created"
    MANUAL_MATCH = "manual_match"
    REVIEW_REQUIRED = "review_required"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRIES_EXHAUSTED = "retries_exhausted"
    MARKED_EXCEPTION = "marked_exception"
    IGNORED = "ignored"
    PROCESSING_ERROR = "processing_error"


OPEN_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.UNMATCHED,
    TransactionStatus.PARTIAL_MATCH,
})

SCHEDULABLE_QUEUE_STATUSES = frozenset({
    QueueStatus.PENDING,
    QueueStatus.PARTIAL_MATCH,
})
