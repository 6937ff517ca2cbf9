"""
Typed exceptions for the reconciliation engine.

Every exception carries a machine-readable ``code`` so the HTTP layer and
operators can act on the type rather than on message text.

    ReconciliationError (base)
    |
    +-- RequestValidationError
    +-- RecordNotFoundError
    +-- InvalidTransitionError
    +-- ClaimConflict
    |   +-- ManualMatchConflict
    +-- TransientIOError
    |   +-- LedgerUnavailableError
    +-- LedgerError
"""

from typing import Any, List, Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class RequestValidationError(ReconciliationError):
    """An entry-point request is malformed; nothing was written."""

    code: str = "INVALID_REQUEST"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)


class RecordNotFoundError(ReconciliationError):
    """A referenced record does not exist."""

    code: str = "RECORD_NOT_FOUND"

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class InvalidTransitionError(ReconciliationError):
    """A status change is not allowed from the record's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, transaction_id: str, current: str, requested: str):
        self.transaction_id = transaction_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Transaction {transaction_id} cannot move from {current} to {requested}"
        )


class ClaimConflict(ReconciliationError):
    """Payment is already claimed by a different external transaction."""

    code: str = "CLAIM_CONFLICT"

    def __init__(self, payment_id: str, claimed_by: Optional[str] = None):
        self.payment_id = payment_id
        self.claimed_by = claimed_by
        super().__init__(
            f"Payment {payment_id} already claimed by transaction {claimed_by}"
        )


class ManualMatchConflict(ClaimConflict):
    """Manual match rejected; no state was changed."""

    code: str = "MANUAL_MATCH_CONFLICT"

    def __init__(
        self,
        payment_id: str,
        claimed_by: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(payment_id, claimed_by)
        if reason:
            self.args = (reason,)


class TransientIOError(ReconciliationError):
    """Persistence layer or collaborator temporarily unreachable."""

    code: str = "TRANSIENT_IO"


class LedgerUnavailableError(TransientIOError):
    """Ledger API unreachable after retries."""

    code: str = "LEDGER_UNAVAILABLE"


class LedgerError(ReconciliationError):
    """Ledger API rejected a request."""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: str, status_code: int = 0, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details
