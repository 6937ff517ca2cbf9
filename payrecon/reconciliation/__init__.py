"""Reconciliation engine components."""

from .matching import MatchingEngine, DecisionPolicy
from .pool import CandidatePoolProvider
from .ledger_applier import LedgerApplier
from .scheduler import QueueScheduler
from .bulk_import import BulkStatementImporter
from .intake import EventIntake
from .manual import ManualReconciliation
from .service import ReconciliationService

__all__ = [
    "MatchingEngine",
    "DecisionPolicy",
    "CandidatePoolProvider",
    "LedgerApplier",
    "QueueScheduler",
    "BulkStatementImporter",
    "EventIntake",
    "ManualReconciliation",
    "ReconciliationService",
]
