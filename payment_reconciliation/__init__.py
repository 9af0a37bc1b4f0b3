"""
Payment Reconciliation

Matching engine that decides which bank transaction pays which invoice or
bill, including partial, combined, fee-adjusted and currency-converted
payments, and learns counterparty behaviour from confirmed matches.
"""

__version__ = "1.0.0"
__author__ = "Payment Reconciliation Contributors"

from payment_reconciliation.core.config import MatchingConfig, load_config
from payment_reconciliation.core.engine import ReconciliationEngine, ReconcileSummary
from payment_reconciliation.core.models import Document, MatchDecision, PaymentAllocation, Scope, Transaction
from payment_reconciliation.core.store import MemoryStore, SQLiteStore

__all__ = [
    "Document",
    "MatchDecision",
    "MatchingConfig",
    "MemoryStore",
    "PaymentAllocation",
    "ReconcileSummary",
    "ReconciliationEngine",
    "SQLiteStore",
    "Scope",
    "Transaction",
    "load_config",
]
