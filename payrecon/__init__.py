"""
Payment reconciliation engine.

Matches externally reported money movements (bank statement lines, mobile
money notifications) to ledger payments and applies confident matches.
"""

__version__ = "1.0.0"
