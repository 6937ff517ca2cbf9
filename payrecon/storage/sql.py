"""
SQLAlchemy-backed reconciliation store.

Tables:
- external_transactions: reported money movements and their match state
- processing_queue: retry bookkeeping for the async path
- payment_claims: one row per claimed ledger payment (primary key on
  tenant + payment, so a second claim fails at the database)
- audit_log: append-only state transition trail
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set

import structlog
from sqlalchemy import (
    BigInteger, Column, Date, DateTime, Integer, JSON, String, Text,
    create_engine, func, or_, select, update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ..exceptions import ClaimConflict, TransientIOError
from ..models import (
    AuditAction,
    AuditEntry,
    ExternalTransaction,
    MatchType,
    ProcessingQueueItem,
    QueueStatus,
    RecordFilters,
    SCHEDULABLE_QUEUE_STATUSES,
    TransactionSource,
    TransactionStatus,
    utc_now,
)
from .base import ReconciliationStore

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


class ExternalTransactionDB(Base):
    __tablename__ = "external_transactions"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    source = Column(String(32), nullable=False)
    batch_id = Column(String(36), nullable=True, index=True)

    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False, default="KES")

    external_reference = Column(Text, nullable=True)
    bank_reference = Column(String(128), nullable=True, index=True)
    reported_date = Column(Date, nullable=True, index=True)
    description = Column(Text, nullable=False, default="")
    sender_phone = Column(String(32), nullable=True)
    sender_name = Column(Text, nullable=True)

    status = Column(String(32), nullable=False, index=True)
    matched_payment_id = Column(String(64), nullable=True, index=True)
    confidence = Column(Integer, nullable=False, default=0)
    match_type = Column(String(32), nullable=False, default=MatchType.NONE.value)
    exception_type = Column(String(64), nullable=True)
    exception_notes = Column(Text, nullable=True)
    reconciled_by = Column(String(64), nullable=True)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ProcessingQueueDB(Base):
    __tablename__ = "processing_queue"

    id = Column(String(36), primary_key=True)
    external_transaction_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    match_status = Column(String(32), nullable=False, index=True)
    confidence = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class PaymentClaimDB(Base):
    __tablename__ = "payment_claims"

    tenant_id = Column(String(64), primary_key=True)
    payment_id = Column(String(64), primary_key=True)
    external_transaction_id = Column(String(36), nullable=False, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class AuditLogDB(Base):
    __tablename__ = "audit_log"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    tenant_id = Column(String(64), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    actor = Column(String(64), nullable=False)
    entity_id = Column(String(36), nullable=True, index=True)
    before = Column("state_before", JSON, nullable=False, default=dict)
    after = Column("state_after", JSON, nullable=False, default=dict)
    message = Column(Text, nullable=False, default="")
    details = Column(JSON, nullable=False, default=dict)
    success = Column(Integer, nullable=False, default=1)
    error_message = Column(Text, nullable=True)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _txn_columns(txn: ExternalTransaction) -> dict:
    return {
        "tenant_id": txn.tenant_id,
        "source": txn.source.value,
        "batch_id": txn.batch_id,
        "amount_cents": txn.amount_cents,
        "currency": txn.currency,
        "external_reference": txn.external_reference,
        "bank_reference": txn.bank_reference,
        "reported_date": txn.reported_date,
        "description": txn.description,
        "sender_phone": txn.sender_phone,
        "sender_name": txn.sender_name,
        "status": txn.status.value,
        "matched_payment_id": txn.matched_payment_id,
        "confidence": txn.confidence,
        "match_type": txn.match_type.value,
        "exception_type": txn.exception_type,
        "exception_notes": txn.exception_notes,
        "reconciled_by": txn.reconciled_by,
        "reconciled_at": txn.reconciled_at,
        "created_at": txn.created_at,
        "updated_at": txn.updated_at,
    }


def _to_txn(row: ExternalTransactionDB) -> ExternalTransaction:
    return ExternalTransaction(
        id=row.id,
        tenant_id=row.tenant_id,
        source=TransactionSource(row.source),
        batch_id=row.batch_id,
        amount_cents=row.amount_cents,
        currency=row.currency,
        external_reference=row.external_reference,
        bank_reference=row.bank_reference,
        reported_date=row.reported_date,
        description=row.description or "",
        sender_phone=row.sender_phone,
        sender_name=row.sender_name,
        status=TransactionStatus(row.status),
        matched_payment_id=row.matched_payment_id,
        confidence=row.confidence,
        match_type=MatchType(row.match_type),
        exception_type=row.exception_type,
        exception_notes=row.exception_notes,
        reconciled_by=row.reconciled_by,
        reconciled_at=_aware(row.reconciled_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _queue_columns(item: ProcessingQueueItem) -> dict:
    return {
        "external_transaction_id": item.external_transaction_id,
        "tenant_id": item.tenant_id,
        "match_status": item.match_status.value,
        "confidence": item.confidence,
        "retry_count": item.retry_count,
        "max_retries": item.max_retries,
        "next_retry_at": item.next_retry_at,
        "processed_at": item.processed_at,
        "processing_notes": item.processing_notes,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def _to_queue_item(row: ProcessingQueueDB) -> ProcessingQueueItem:
    return ProcessingQueueItem(
        id=row.id,
        external_transaction_id=row.external_transaction_id,
        tenant_id=row.tenant_id,
        match_status=QueueStatus(row.match_status),
        confidence=row.confidence,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        next_retry_at=_aware(row.next_retry_at),
        processed_at=_aware(row.processed_at),
        processing_notes=row.processing_notes,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_audit(row: AuditLogDB) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        timestamp=_aware(row.timestamp),
        tenant_id=row.tenant_id,
        action=AuditAction(row.action),
        actor=row.actor,
        entity_id=row.entity_id,
        before=row.before or {},
        after=row.after or {},
        message=row.message or "",
        details=row.details or {},
        success=bool(row.success),
        error_message=row.error_message,
    )


class SqlStore(ReconciliationStore):
    """
    Relational store over a synchronous SQLAlchemy engine.

    Each public call runs in its own session unless it happens inside
    ``atomic()``, in which case the thread's open session is reused and
    committed once at the end.
    """

    def __init__(self, database_url: str, echo: bool = False):
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        self._session_factory = sessionmaker(
            self.engine,
            expire_on_commit=False,
            autoflush=False,
        )
        self._local = threading.local()

    def init_schema(self) -> None:
        """Create tables if they do not exist."""
        try:
            Base.metadata.create_all(self.engine)
        except (OperationalError, InterfaceError) as e:
            raise TransientIOError(f"Database unreachable: {e}") from e
        logger.info("Reconciliation schema ready", url=str(self.engine.url))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        current = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError) as e:
            session.rollback()
            raise TransientIOError(f"Database unreachable: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return

        session = self._session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except (OperationalError, InterfaceError) as e:
            session.rollback()
            raise TransientIOError(f"Database unreachable: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    # Transactions

    def add_transactions(self, transactions: List[ExternalTransaction]) -> None:
        with self._session() as session:
            for txn in transactions:
                session.add(ExternalTransactionDB(id=txn.id, **_txn_columns(txn)))
            session.flush()

    def get_transaction(self, transaction_id: str) -> Optional[ExternalTransaction]:
        with self._session() as session:
            row = session.get(ExternalTransactionDB, transaction_id)
            return _to_txn(row) if row else None

    def list_transactions(
        self,
        tenant_id: str,
        filters: Optional[RecordFilters] = None,
    ) -> List[ExternalTransaction]:
        filters = filters or RecordFilters()
        query = select(ExternalTransactionDB).where(
            ExternalTransactionDB.tenant_id == tenant_id
        )
        if filters.status:
            query = query.where(ExternalTransactionDB.status == filters.status.value)
        if filters.source:
            query = query.where(ExternalTransactionDB.source == filters.source.value)
        if filters.date_from:
            query = query.where(ExternalTransactionDB.reported_date >= filters.date_from)
        if filters.date_to:
            query = query.where(ExternalTransactionDB.reported_date <= filters.date_to)

        query = query.order_by(
            ExternalTransactionDB.reported_date.desc(),
            ExternalTransactionDB.created_at.desc(),
        )
        if filters.limit is not None:
            query = query.limit(filters.limit)

        with self._session() as session:
            return [_to_txn(row) for row in session.scalars(query)]

    def find_by_bank_reference(
        self,
        tenant_id: str,
        bank_reference: str,
    ) -> Optional[ExternalTransaction]:
        query = select(ExternalTransactionDB).where(
            ExternalTransactionDB.tenant_id == tenant_id,
            ExternalTransactionDB.bank_reference == bank_reference,
        ).limit(1)
        with self._session() as session:
            row = session.scalars(query).first()
            return _to_txn(row) if row else None

    def save_transaction(
        self,
        transaction: ExternalTransaction,
        expected_statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> bool:
        stmt = update(ExternalTransactionDB).where(
            ExternalTransactionDB.id == transaction.id
        )
        if expected_statuses is not None:
            stmt = stmt.where(
                ExternalTransactionDB.status.in_([s.value for s in expected_statuses])
            )
        stmt = stmt.values(**_txn_columns(transaction))

        with self._session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    # Queue

    def add_queue_item(self, item: ProcessingQueueItem) -> None:
        with self._session() as session:
            session.add(ProcessingQueueDB(id=item.id, **_queue_columns(item)))
            session.flush()

    def get_queue_item(self, item_id: str) -> Optional[ProcessingQueueItem]:
        with self._session() as session:
            row = session.get(ProcessingQueueDB, item_id)
            return _to_queue_item(row) if row else None

    def get_queue_item_for_transaction(
        self,
        transaction_id: str,
    ) -> Optional[ProcessingQueueItem]:
        query = select(ProcessingQueueDB).where(
            ProcessingQueueDB.external_transaction_id == transaction_id
        ).limit(1)
        with self._session() as session:
            row = session.scalars(query).first()
            return _to_queue_item(row) if row else None

    def due_queue_items(self, now: datetime, limit: int) -> List[ProcessingQueueItem]:
        query = (
            select(ProcessingQueueDB)
            .where(
                ProcessingQueueDB.match_status.in_(
                    [s.value for s in SCHEDULABLE_QUEUE_STATUSES]
                ),
                ProcessingQueueDB.retry_count < ProcessingQueueDB.max_retries,
                or_(
                    ProcessingQueueDB.next_retry_at.is_(None),
                    ProcessingQueueDB.next_retry_at <= now,
                ),
            )
            .order_by(
                func.coalesce(ProcessingQueueDB.next_retry_at, ProcessingQueueDB.created_at)
            )
            .limit(limit)
        )
        with self._session() as session:
            return [_to_queue_item(row) for row in session.scalars(query)]

    def list_queue_items(
        self,
        tenant_id: str,
        statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> List[ProcessingQueueItem]:
        query = select(ProcessingQueueDB).where(ProcessingQueueDB.tenant_id == tenant_id)
        if statuses is not None:
            query = query.where(
                ProcessingQueueDB.match_status.in_([s.value for s in statuses])
            )
        query = query.order_by(ProcessingQueueDB.created_at)
        with self._session() as session:
            return [_to_queue_item(row) for row in session.scalars(query)]

    def save_queue_item(self, item: ProcessingQueueItem) -> None:
        stmt = (
            update(ProcessingQueueDB)
            .where(ProcessingQueueDB.id == item.id)
            .values(**_queue_columns(item))
        )
        with self._session() as session:
            session.execute(stmt)

    # Claims

    def claim_payment(self, tenant_id: str, payment_id: str, transaction_id: str) -> None:
        with self._session() as session:
            existing = session.get(PaymentClaimDB, (tenant_id, payment_id))
            if existing is not None:
                if existing.external_transaction_id != transaction_id:
                    raise ClaimConflict(payment_id, existing.external_transaction_id)
                return

            session.add(PaymentClaimDB(
                tenant_id=tenant_id,
                payment_id=payment_id,
                external_transaction_id=transaction_id,
                claimed_at=utc_now(),
            ))
            try:
                session.flush()
            except IntegrityError as e:
                # Lost the race to a concurrent writer
                raise ClaimConflict(payment_id) from e

    def release_claim(self, tenant_id: str, payment_id: str, transaction_id: str) -> None:
        with self._session() as session:
            existing = session.get(PaymentClaimDB, (tenant_id, payment_id))
            if existing is not None and existing.external_transaction_id == transaction_id:
                session.delete(existing)
                session.flush()

    def claim_owner(self, tenant_id: str, payment_id: str) -> Optional[str]:
        with self._session() as session:
            existing = session.get(PaymentClaimDB, (tenant_id, payment_id))
            return existing.external_transaction_id if existing else None

    def claimed_payment_ids(
        self,
        tenant_id: str,
        exclude_transaction_id: Optional[str] = None,
    ) -> Set[str]:
        query = select(PaymentClaimDB.payment_id).where(PaymentClaimDB.tenant_id == tenant_id)
        if exclude_transaction_id is not None:
            query = query.where(
                PaymentClaimDB.external_transaction_id != exclude_transaction_id
            )
        with self._session() as session:
            return set(session.scalars(query))

    # Audit

    def append_audit(self, entry: AuditEntry) -> None:
        with self._session() as session:
            session.add(AuditLogDB(
                id=entry.id,
                timestamp=entry.timestamp,
                tenant_id=entry.tenant_id,
                action=entry.action.value,
                actor=entry.actor,
                entity_id=entry.entity_id,
                before=entry.before,
                after=entry.after,
                message=entry.message,
                details=entry.details,
                success=1 if entry.success else 0,
                error_message=entry.error_message,
            ))
            session.flush()

    def list_audit(
        self,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        query = select(AuditLogDB)
        if tenant_id is not None:
            query = query.where(AuditLogDB.tenant_id == tenant_id)
        if entity_id is not None:
            query = query.where(AuditLogDB.entity_id == entity_id)
        query = query.order_by(AuditLogDB.seq)
        with self._session() as session:
            return [_to_audit(row) for row in session.scalars(query)]
