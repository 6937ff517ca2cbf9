"""Candidate pool: ledger payments not yet claimed by another transaction."""

from typing import List, Optional

import structlog

from ..config import Settings, get_settings
from ..ledger import LedgerGateway
from ..models import CandidatePayment, PaymentFilters
from ..storage import ReconciliationStore

logger = structlog.get_logger()


class CandidatePoolProvider:
    """Builds the claimable candidate set for one tenant."""

    def __init__(
        self,
        store: ReconciliationStore,
        ledger: LedgerGateway,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.settings = settings or get_settings()

    def get_pool(
        self,
        tenant_id: str,
        for_transaction_id: Optional[str] = None,
    ) -> List[CandidatePayment]:
        """
        Confirmed ledger payments minus those claimed by any transaction
        other than ``for_transaction_id``, in ledger order.
        """
        payments = self.ledger.list_unclaimed_payments(
            tenant_id,
            PaymentFilters(limit=self.settings.candidate_pool_limit),
        )
        claimed = self.store.claimed_payment_ids(
            tenant_id,
            exclude_transaction_id=for_transaction_id,
        )
        pool = [p for p in payments if p.id not in claimed]

        logger.debug(
            "Candidate pool loaded",
            tenant_id=tenant_id,
            payments=len(payments),
            claimed=len(claimed),
            available=len(pool),
        )
        return pool
