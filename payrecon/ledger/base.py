"""
Boundary to the invoice/payment ledger.

The reconciliation engine never writes the ledger schema directly; every
ledger read or mutation goes through a ``LedgerGateway``.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import AccountMatch, CandidatePayment, PaymentFilters


class LedgerGateway(ABC):
    """Operations the reconciliation engine needs from the ledger."""

    @abstractmethod
    def list_unclaimed_payments(
        self,
        tenant_id: str,
        filters: Optional[PaymentFilters] = None,
    ) -> List[CandidatePayment]:
        """Confirmed payments that may be matched, in ledger order."""

    @abstractmethod
    def create_payment(
        self,
        tenant_id: str,
        account_ref: str,
        amount_cents: int,
        source_ref: str,
    ) -> str:
        """
        Record a new payment against an account and return its id.

        Must be idempotent on ``source_ref``: a second call with the same
        reference returns the first payment's id.
        """

    @abstractmethod
    def recompute_balance(self, account_ref: str) -> None:
        """Recalculate an account's outstanding balance."""

    @abstractmethod
    def resolve_account(
        self,
        tenant_id: str,
        external_reference: Optional[str],
        sender_phone: Optional[str],
    ) -> Optional[AccountMatch]:
        """Find the payer account for an inbound payment, with a confidence."""
