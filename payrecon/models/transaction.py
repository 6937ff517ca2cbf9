"""Transaction models for the payment reconciliation engine."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4

from .enums import (
    TransactionSource,
    TransactionStatus,
    QueueStatus,
    MatchType,
    OPEN_TRANSACTION_STATUSES,
    SCHEDULABLE_QUEUE_STATUSES,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


@dataclass
class ExternalTransaction:
    """
    One externally reported money movement awaiting reconciliation.

    Created by a bulk statement import (bank lines) or by the real-time
    notification intake. All monetary amounts are stored in CENTS
    (minor units, integer) to avoid floating point errors.
    """
    # Identity
    id: str = field(default_factory=new_id)
    tenant_id: str = ""

    # Source
    source: TransactionSource = TransactionSource.BANK
    batch_id: Optional[str] = None

    # Financial data
    amount_cents: int = 0
    currency: str = "KES"

    # Reported details
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    reported_date: Optional[date] = None
    description: str = ""
    sender_phone: Optional[str] = None
    sender_name: Optional[str] = None

    # Reconciliation state
    status: TransactionStatus = TransactionStatus.UNMATCHED
    matched_payment_id: Optional[str] = None
    confidence: int = 0
    match_type: MatchType = MatchType.NONE
    exception_type: Optional[str] = None
    exception_notes: Optional[str] = None
    reconciled_by: Optional[str] = None
    reconciled_at: Optional[datetime] = None

    # Audit
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def effective_date(self) -> date:
        """Calendar date used for matching (reported date, else creation date)."""
        if self.reported_date is not None:
            return self.reported_date
        return self.created_at.date()

    @property
    def is_open(self) -> bool:
        """Check if this transaction can still be matched automatically."""
        return self.status in OPEN_TRANSACTION_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source": self.source.value,
            "batch_id": self.batch_id,
            "amount_cents": self.amount_cents,
            "amount": self.amount_cents / 100.0,
            "currency": self.currency,
            "external_reference": self.external_reference,
            "bank_reference": self.bank_reference,
            "reported_date": self.reported_date.isoformat() if self.reported_date else None,
            "description": self.description,
            "sender_phone": self.sender_phone,
            "sender_name": self.sender_name,
            "status": self.status.value,
            "matched_payment_id": self.matched_payment_id,
            "confidence": self.confidence,
            "match_type": self.match_type.value,
            "exception_type": self.exception_type,
            "exception_notes": self.exception_notes,
            "reconciled_by": self.reconciled_by,
            "reconciled_at": self.reconciled_at.isoformat() if self.reconciled_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class CandidatePayment:
    """
    Read-only view of a confirmed ledger payment that may be claimed
    as the internal counterpart of an external transaction.
    """
    id: str
    amount_cents: int
    date: date
    external_reference: Optional[str] = None
    account_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount_cents": self.amount_cents,
            "date": self.date.isoformat(),
            "external_reference": self.external_reference,
            "account_ref": self.account_ref,
        }


@dataclass
class AccountMatch:
    """A payer account resolved by the ledger from a notification's details."""
    account_ref: str
    confidence: int
    matched_by: str
    invoice_id: Optional[str] = None


@dataclass
class ProcessingQueueItem:
    """Retry bookkeeping for an external transaction on the async path."""
    external_transaction_id: str
    tenant_id: str
    id: str = field(default_factory=new_id)
    match_status: QueueStatus = QueueStatus.PENDING
    confidence: int = 0
    retry_count: int = 0
    max_retries: int = 5
    next_retry_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processing_notes: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_schedulable(self) -> bool:
        """Check if the scheduler may still pick this item up."""
        return (
            self.match_status in SCHEDULABLE_QUEUE_STATUSES
            and self.retry_count < self.max_retries
        )

    def is_due(self, now: datetime) -> bool:
        return self.is_schedulable and (
            self.next_retry_at is None or self.next_retry_at <= now
        )

    @property
    def due_at(self) -> datetime:
        """Sort key for oldest-due-first scheduling."""
        return self.next_retry_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_transaction_id": self.external_transaction_id,
            "tenant_id": self.tenant_id,
            "match_status": self.match_status.value,
            "confidence": self.confidence,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "processing_notes": self.processing_notes,
        }
