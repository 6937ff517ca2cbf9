"""Utility modules."""

from .audit_logger import AuditRecorder, snapshot
from .money import normalize_reference, to_minor_units

__all__ = ["AuditRecorder", "snapshot", "normalize_reference", "to_minor_units"]
