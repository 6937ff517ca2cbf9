"""
Real-time event intake - accepts one payment notification and queues it.

Matching does not happen here; the queue scheduler picks the item up on its
next pass. The acknowledgement only says whether the event was queued or
recognised as a duplicate of an earlier notification.
"""

from typing import Optional

import structlog

from ..config import Settings, get_settings
from ..exceptions import RequestValidationError
from ..models import (
    AuditAction,
    ExternalTransaction,
    IntakeAck,
    PaymentNotification,
    ProcessingQueueItem,
    TransactionStatus,
    utc_now,
)
from ..storage import ReconciliationStore
from ..utils.audit_logger import AuditRecorder

logger = structlog.get_logger()


class EventIntake:
    """Validates notifications and enqueues them for the scheduler."""

    def __init__(
        self,
        store: ReconciliationStore,
        settings: Optional[Settings] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.audit = audit or AuditRecorder(store)

    def accept(self, notification: PaymentNotification) -> IntakeAck:
        """
        Store a notification as an external transaction.

        A notification whose bank reference was already seen for the tenant
        is stored as ``duplicate`` and not queued.

        Raises:
            RequestValidationError: missing tenant, non-positive amount, or
                no reference at all
        """
        self._validate(notification)

        now = utc_now()
        sender = notification.sender_name or notification.sender_phone or "unknown sender"
        txn = ExternalTransaction(
            tenant_id=notification.tenant_id,
            source=notification.source,
            amount_cents=notification.amount_cents,
            currency=notification.currency,
            external_reference=notification.external_reference,
            bank_reference=notification.bank_reference,
            reported_date=notification.reported_date or now.date(),
            description=f"Payment from {sender}",
            sender_phone=notification.sender_phone,
            sender_name=notification.sender_name,
            created_at=now,
            updated_at=now,
        )

        earlier = None
        if notification.bank_reference:
            earlier = self.store.find_by_bank_reference(
                notification.tenant_id,
                notification.bank_reference,
            )

        if earlier is not None:
            txn.status = TransactionStatus.DUPLICATE
            txn.exception_notes = f"Duplicate of transaction {earlier.id}"
            with self.store.atomic():
                self.store.add_transactions([txn])
                self.audit.record(
                    AuditAction.DUPLICATE_DETECTED,
                    txn,
                    f"Bank reference {notification.bank_reference} already received",
                    details={"original_transaction_id": earlier.id},
                )
            return IntakeAck(accepted=True, transaction_id=txn.id, status="duplicate")

        item = ProcessingQueueItem(
            external_transaction_id=txn.id,
            tenant_id=txn.tenant_id,
            max_retries=self.settings.queue_max_retries,
            created_at=now,
            updated_at=now,
        )
        with self.store.atomic():
            self.store.add_transactions([txn])
            self.store.add_queue_item(item)
            self.audit.record(
                AuditAction.TRANSACTION_INGESTED,
                txn,
                "Payment notification queued",
                details={"queue_item_id": item.id, "source": txn.source.value},
            )

        return IntakeAck(
            accepted=True,
            transaction_id=txn.id,
            status="queued",
            queue_item_id=item.id,
        )

    @staticmethod
    def _validate(notification: PaymentNotification) -> None:
        errors = []
        if not notification.tenant_id or not notification.tenant_id.strip():
            errors.append("tenant_id is required")
        if isinstance(notification.amount_cents, bool) or not isinstance(notification.amount_cents, int):
            errors.append("amount must be a whole number of minor units")
        elif notification.amount_cents <= 0:
            errors.append("amount must be positive")
        if not (notification.external_reference or "").strip() and not (
            notification.bank_reference or ""
        ).strip():
            errors.append("external_reference or bank_reference is required")

        if errors:
            raise RequestValidationError("; ".join(errors), errors=errors)
