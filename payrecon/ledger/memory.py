"""
In-memory ledger used for local development and tests.
"""

import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Tuple

import structlog

from ..exceptions import LedgerError
from ..models import AccountMatch, CandidatePayment, PaymentFilters, new_id
from .base import LedgerGateway

logger = structlog.get_logger()


@dataclass
class LedgerAccount:
    """A student fee account as far as payer resolution is concerned."""
    account_ref: str
    tenant_id: str
    admission_number: Optional[str] = None
    invoice_numbers: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    total_fees_cents: int = 0


class InMemoryLedger(LedgerGateway):
    """
    Dict-backed ``LedgerGateway``.

    Payments are listed in insertion order, which the matching engine uses
    as its tie-break order.
    """

    # Confidence per payer-resolution rule
    INVOICE_NUMBER_CONFIDENCE = 100
    ADMISSION_NUMBER_CONFIDENCE = 95
    PARTIAL_ADMISSION_CONFIDENCE = 70
    PARENT_PHONE_CONFIDENCE = 60

    def __init__(self):
        self._lock = threading.RLock()
        self._payments: Dict[str, List[CandidatePayment]] = {}
        self._accounts: Dict[str, List[LedgerAccount]] = {}
        self._by_source_ref: Dict[Tuple[str, str], str] = {}
        self.balances: Dict[str, int] = {}

    def add_payment(self, tenant_id: str, payment: CandidatePayment) -> None:
        with self._lock:
            self._payments.setdefault(tenant_id, []).append(payment)

    def add_account(self, account: LedgerAccount) -> None:
        with self._lock:
            self._accounts.setdefault(account.tenant_id, []).append(account)
            self.balances.setdefault(account.account_ref, account.total_fees_cents)

    def payments(self, tenant_id: str) -> List[CandidatePayment]:
        with self._lock:
            return list(self._payments.get(tenant_id, []))

    def list_unclaimed_payments(
        self,
        tenant_id: str,
        filters: Optional[PaymentFilters] = None,
    ) -> List[CandidatePayment]:
        filters = filters or PaymentFilters()
        payments = self.payments(tenant_id)
        if filters.since:
            payments = [p for p in payments if p.date >= filters.since]
        return payments[:filters.limit]

    def create_payment(
        self,
        tenant_id: str,
        account_ref: str,
        amount_cents: int,
        source_ref: str,
    ) -> str:
        with self._lock:
            existing = self._by_source_ref.get((tenant_id, source_ref))
            if existing is not None:
                logger.info(
                    "Payment already recorded for source",
                    source_ref=source_ref,
                    payment_id=existing,
                )
                return existing

            if not self._find_account(tenant_id, account_ref):
                raise LedgerError(f"Unknown account: {account_ref}", status_code=404)

            payment = CandidatePayment(
                id=new_id(),
                amount_cents=amount_cents,
                date=date.today(),
                account_ref=account_ref,
            )
            self._payments.setdefault(tenant_id, []).append(payment)
            self._by_source_ref[(tenant_id, source_ref)] = payment.id
            return payment.id

    def recompute_balance(self, account_ref: str) -> None:
        with self._lock:
            account = None
            for accounts in self._accounts.values():
                for candidate in accounts:
                    if candidate.account_ref == account_ref:
                        account = candidate
            if account is None:
                raise LedgerError(f"Unknown account: {account_ref}", status_code=404)

            paid = sum(
                p.amount_cents
                for p in self._payments.get(account.tenant_id, [])
                if p.account_ref == account_ref
            )
            self.balances[account_ref] = account.total_fees_cents - paid

    def resolve_account(
        self,
        tenant_id: str,
        external_reference: Optional[str],
        sender_phone: Optional[str],
    ) -> Optional[AccountMatch]:
        with self._lock:
            accounts = list(self._accounts.get(tenant_id, []))

        if external_reference:
            for account in accounts:
                if account.admission_number and account.admission_number == external_reference:
                    return AccountMatch(
                        account_ref=account.account_ref,
                        confidence=self.ADMISSION_NUMBER_CONFIDENCE,
                        matched_by="admission_number",
                    )
            for account in accounts:
                if external_reference in account.invoice_numbers:
                    return AccountMatch(
                        account_ref=account.account_ref,
                        confidence=self.INVOICE_NUMBER_CONFIDENCE,
                        matched_by="invoice_number",
                        invoice_id=external_reference,
                    )
            for account in accounts:
                if account.admission_number and account.admission_number in external_reference:
                    return AccountMatch(
                        account_ref=account.account_ref,
                        confidence=self.PARTIAL_ADMISSION_CONFIDENCE,
                        matched_by="partial_admission_match",
                    )

        if sender_phone:
            for account in accounts:
                if sender_phone in account.phones:
                    return AccountMatch(
                        account_ref=account.account_ref,
                        confidence=self.PARENT_PHONE_CONFIDENCE,
                        matched_by="parent_phone",
                    )

        return None

    def _find_account(self, tenant_id: str, account_ref: str) -> Optional[LedgerAccount]:
        for account in self._accounts.get(tenant_id, []):
            if account.account_ref == account_ref:
                return account
        return None
