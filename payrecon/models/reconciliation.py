"""Reconciliation request, result and audit models."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, List, Dict, Any

from .enums import (
    AuditAction,
    MatchType,
    TransactionSource,
    TransactionStatus,
)
from .transaction import CandidatePayment, new_id, utc_now


@dataclass
class MatchResult:
    """Best match for one external transaction. Never persisted on its own."""
    transaction_id: Optional[str] = None
    candidate_id: Optional[str] = None
    confidence: int = 0
    match_type: MatchType = MatchType.NONE

    # Echoed from the transaction for the manual-match UI
    external_reference: str = ""
    amount_cents: int = 0
    reported_date: Optional[date] = None

    # Filled in by the caller once the decision policy ran
    applied: bool = False

    @property
    def has_candidate(self) -> bool:
        return self.candidate_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "candidate_id": self.candidate_id,
            "confidence": self.confidence,
            "match_type": self.match_type.value,
            "external_reference": self.external_reference,
            "amount_cents": self.amount_cents,
            "reported_date": self.reported_date.isoformat() if self.reported_date else None,
            "applied": self.applied,
        }


@dataclass
class ScoredCandidate:
    """A candidate payment with its individual score (manual review list)."""
    candidate: CandidatePayment
    confidence: int
    match_type: MatchType

    def to_dict(self) -> Dict[str, Any]:
        data = self.candidate.to_dict()
        data["confidence"] = self.confidence
        data["match_type"] = self.match_type.value
        return data


@dataclass
class StatementLine:
    """One line of a bulk statement import."""
    amount_cents: int
    source: TransactionSource = TransactionSource.BANK
    external_reference: Optional[str] = None
    reported_date: Optional[date] = None
    description: str = ""


@dataclass
class PaymentNotification:
    """One real-time payment notification (normalized IPN payload)."""
    tenant_id: str
    amount_cents: int
    currency: str = "KES"
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    sender_phone: Optional[str] = None
    sender_name: Optional[str] = None
    reported_date: Optional[date] = None
    source: TransactionSource = TransactionSource.MOBILE_MONEY


@dataclass
class IntakeAck:
    """Acceptance acknowledgment returned by the notification intake."""
    accepted: bool
    transaction_id: str
    status: str  # "queued" or "duplicate"
    queue_item_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "transaction_id": self.transaction_id,
            "queue_item_id": self.queue_item_id,
            "status": self.status,
        }


@dataclass
class BulkImportSummary:
    """Result of a bulk import or auto-reconcile sweep."""
    total: int = 0
    matched: int = 0
    unmatched: int = 0
    batch_id: Optional[str] = None
    results: List[MatchResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "batch_id": self.batch_id,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class SchedulerRunResult:
    """Counts for one queue scheduler pass."""
    processed: int = 0
    matched: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class ApplyOutcome:
    """Outcome of a ledger application attempt."""
    applied: bool
    transaction_id: str
    payment_id: Optional[str] = None
    created_payment: bool = False
    reason: str = ""


@dataclass
class RecordFilters:
    """Filters for listing external transactions."""
    status: Optional[TransactionStatus] = None
    source: Optional[TransactionSource] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: Optional[int] = 500


@dataclass
class PaymentFilters:
    """Filters passed to the ledger when listing claimable payments."""
    since: Optional[date] = None
    limit: int = 1000


@dataclass
class AuditEntry:
    """An immutable entry in the audit log."""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)
    tenant_id: str = ""

    # Action
    action: AuditAction = AuditAction.TRANSACTION_INGESTED
    actor: str = "system"

    # Context
    entity_id: Optional[str] = None
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    success: bool = True
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "tenant_id": self.tenant_id,
            "action": self.action.value,
            "actor": self.actor,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "message": self.message,
            "details": self.details,
            "success": self.success,
            "error_message": self.error_message,
        }


@dataclass
class ReconciliationSummary:
    """Summary statistics of a tenant's external transactions."""
    total_records: int = 0
    matched: int = 0
    unmatched: int = 0
    partial_matches: int = 0
    exceptions: int = 0
    duplicates: int = 0
    ignored: int = 0

    # Amounts (in cents)
    total_external_amount_cents: int = 0
    total_matched_amount_cents: int = 0
    variance_cents: int = 0

    @property
    def match_rate(self) -> float:
        """Percentage of records matched."""
        if self.total_records == 0:
            return 0.0
        return (self.matched / self.total_records) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "partial_matches": self.partial_matches,
            "exceptions": self.exceptions,
            "duplicates": self.duplicates,
            "ignored": self.ignored,
            "total_external_amount_cents": self.total_external_amount_cents,
            "total_matched_amount_cents": self.total_matched_amount_cents,
            "variance_cents": self.variance_cents,
            "match_rate": round(self.match_rate, 2),
        }
