"""Ledger collaborator boundary."""

from .base import LedgerGateway
from .memory import InMemoryLedger, LedgerAccount
from .http import HttpLedgerGateway

__all__ = ["LedgerGateway", "InMemoryLedger", "LedgerAccount", "HttpLedgerGateway"]
