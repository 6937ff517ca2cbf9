"""
Shared fixtures for the reconciliation tests.
"""

from datetime import date
from typing import Optional

import pytest

from payrecon.config import Settings
from payrecon.ledger import InMemoryLedger
from payrecon.models import CandidatePayment, PaymentNotification, StatementLine
from payrecon.reconciliation import ReconciliationService
from payrecon.storage import InMemoryStore

TENANT = "school-001"


def payment(
    payment_id: str,
    amount_cents: int,
    day: date,
    reference: Optional[str] = None,
    account_ref: Optional[str] = None,
) -> CandidatePayment:
    return CandidatePayment(
        id=payment_id,
        amount_cents=amount_cents,
        date=day,
        external_reference=reference,
        account_ref=account_ref,
    )


def line(
    amount_cents: int,
    reference: Optional[str] = None,
    day: Optional[date] = None,
) -> StatementLine:
    return StatementLine(
        amount_cents=amount_cents,
        external_reference=reference,
        reported_date=day,
    )


def notification(
    amount_cents: int = 5000,
    reference: Optional[str] = "ABC123",
    bank_reference: Optional[str] = None,
    tenant_id: str = TENANT,
    **kwargs,
) -> PaymentNotification:
    return PaymentNotification(
        tenant_id=tenant_id,
        amount_cents=amount_cents,
        external_reference=reference,
        bank_reference=bank_reference,
        **kwargs,
    )


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def service(store, ledger, settings):
    return ReconciliationService(store, ledger, settings)
