"""Persistence layer for reconciliation records."""

from .base import ReconciliationStore
from .memory import InMemoryStore
from .sql import SqlStore

__all__ = ["ReconciliationStore", "InMemoryStore", "SqlStore"]
