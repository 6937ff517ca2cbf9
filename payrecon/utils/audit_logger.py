"""
Audit trail for reconciliation state transitions.
"""

from collections import Counter
from typing import Any, Dict, List, Optional

import structlog

from ..models import AuditAction, AuditEntry, ExternalTransaction
from ..storage import ReconciliationStore

logger = structlog.get_logger()


def snapshot(txn: ExternalTransaction) -> Dict[str, Any]:
    """The match-relevant part of a transaction, for before/after records."""
    return {
        "status": txn.status.value,
        "matched_payment_id": txn.matched_payment_id,
        "confidence": txn.confidence,
        "match_type": txn.match_type.value,
    }


class AuditRecorder:
    """
    Append-only recorder of every state transition.

    Entries are written through the store and mirrored to structlog.
    Entries are never updated or deleted.
    """

    def __init__(self, store: ReconciliationStore):
        self.store = store

    def log(self, entry: AuditEntry) -> AuditEntry:
        """Append an audit entry."""
        self.store.append_audit(entry)

        log = logger.info if entry.success else logger.warning
        log(
            entry.message,
            action=entry.action.value,
            tenant_id=entry.tenant_id,
            entity_id=entry.entity_id,
            actor=entry.actor,
            success=entry.success,
        )
        return entry

    def record(
        self,
        action: AuditAction,
        txn: ExternalTransaction,
        message: str,
        before: Optional[Dict[str, Any]] = None,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> AuditEntry:
        """Record a transition of ``txn`` from ``before`` to its current state."""
        return self.log(AuditEntry(
            tenant_id=txn.tenant_id,
            action=action,
            actor=actor,
            entity_id=txn.id,
            before=before or {},
            after=snapshot(txn),
            message=message,
            details=details or {},
            success=error_message is None,
            error_message=error_message,
        ))

    def entries(
        self,
        tenant_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        action_filter: Optional[AuditAction] = None,
        success_only: bool = False,
    ) -> List[AuditEntry]:
        """Get filtered audit entries."""
        entries = self.store.list_audit(tenant_id=tenant_id, entity_id=entity_id)

        if action_filter:
            entries = [e for e in entries if e.action == action_filter]

        if success_only:
            entries = [e for e in entries if e.success]

        return entries

    def summary(self, tenant_id: Optional[str] = None) -> dict:
        """Get summary statistics of the audit log."""
        entries = self.store.list_audit(tenant_id=tenant_id)
        action_counts = Counter(e.action.value for e in entries)
        success_count = sum(1 for e in entries if e.success)

        return {
            "total_entries": len(entries),
            "success_count": success_count,
            "error_count": len(entries) - success_count,
            "action_counts": dict(action_counts),
        }
