"""
Reconciliation engine: wires candidate generation, scoring, the decision
policy, the allocation ledger, pattern learning and escalation together.
"""

import datetime as dt
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from .candidates import CandidateGenerator
from .config import MatchingConfig
from .decision import decide, should_escalate
from .errors import ConcurrencyConflictError, EscalationError, ValidationError
from .escalation import EscalationAdapter, build_investigation_request
from .ledger import PaymentLedger
from .models import (
    AllocationMethod, DecisionAction, MatchCandidate, MatchDecision, PaymentAllocation, Scope,
    Transaction, VendorPattern, require_scope,
)
from .patterns import PatternLearner
from .store import ReconciliationStore
from .utils import counterparty_key, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    """Outcome of a batch reconciliation run."""
    total_transactions: int = 0
    auto_confirmed: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: {a.value: 0 for a in DecisionAction})
    decisions: List[MatchDecision] = field(default_factory=list)
    errors: List[Dict] = field(default_factory=list)

    @property
    def match_rate(self) -> float:
        """Percentage of scanned transactions that were auto-confirmed."""
        if not self.total_transactions:
            return 0.0
        return round(100.0 * self.auto_confirmed / self.total_transactions, 1)

    def to_dict(self) -> Dict:
        return {
            "total_transactions": self.total_transactions,
            "auto_confirmed": self.auto_confirmed,
            "match_rate": self.match_rate,
            "counts": dict(self.counts),
            "errors": list(self.errors),
            "decisions": [d.to_dict() for d in self.decisions],
        }


class ReconciliationEngine:
    """Entry point used by the CLI and by embedding applications."""

    def __init__(self, store: ReconciliationStore, config: Optional[MatchingConfig] = None,
                 adapter: Optional[EscalationAdapter] = None, now: Callable[[], dt.datetime] = utcnow):
        self.store = store
        self.config = config or MatchingConfig()
        self.adapter = adapter
        self.learner = PatternLearner(store, self.config, now)
        self.ledger = PaymentLedger(store, self.config, self.learner, now)
        self.generator = CandidateGenerator(self.config)

    # ---------- matching ----------

    def candidates_for_transaction(self, scope: Scope, transaction_id: str,
                                   allow_cross_currency: bool = False) -> List[MatchCandidate]:
        scope = require_scope(scope)
        tx = self.store.get_transaction(scope, transaction_id)
        return self.generator.for_transaction(
            scope, tx, self.store.list_documents(scope, open_only=True),
            self.store.list_vendor_patterns(scope), allow_cross_currency)

    def candidates_for_document(self, scope: Scope, document_id: str,
                                allow_cross_currency: bool = False) -> List[MatchCandidate]:
        scope = require_scope(scope)
        doc = self.store.get_document(scope, document_id)
        return self.generator.for_document(
            scope, doc, self.store.list_transactions(scope, open_only=True),
            self.store.list_vendor_patterns(scope), allow_cross_currency)

    def match_transaction(self, scope: Scope, transaction_id: str,
                          allow_cross_currency: bool = False) -> MatchDecision:
        candidates = self.candidates_for_transaction(scope, transaction_id, allow_cross_currency)
        return decide(candidates, self.config.decision, "transaction", transaction_id)

    def match_document(self, scope: Scope, document_id: str,
                       allow_cross_currency: bool = False) -> MatchDecision:
        candidates = self.candidates_for_document(scope, document_id, allow_cross_currency)
        return decide(candidates, self.config.decision, "document", document_id)

    # ---------- ledger ----------

    def confirm_candidate(self, scope: Scope, candidate: MatchCandidate,
                          method: AllocationMethod = AllocationMethod.MANUAL) -> List[PaymentAllocation]:
        """Apply every allocation a candidate proposes, atomically."""
        if not candidate.allocations:
            raise ValidationError("Candidate has nothing to allocate")
        return self.ledger.confirm_allocations(scope, candidate.allocations, method, candidate.confidence)

    def confirm_allocation(self, scope: Scope, transaction_id: str, document_id: str, amount: float,
                           method: AllocationMethod = AllocationMethod.MANUAL, **kwargs) -> PaymentAllocation:
        return self.ledger.confirm_allocation(scope, transaction_id, document_id, amount, method, **kwargs)

    def unlink_allocation(self, scope: Scope, transaction_id: str, document_id: str,
                          amount: Optional[float] = None) -> List[PaymentAllocation]:
        return self.ledger.unlink_allocation(scope, transaction_id, document_id, amount)

    def categorize_transaction(self, scope: Scope, transaction_id: str, category: str) -> Transaction:
        return self.ledger.categorize_transaction(scope, transaction_id, category)

    def uncategorize_transaction(self, scope: Scope, transaction_id: str) -> Transaction:
        return self.ledger.uncategorize_transaction(scope, transaction_id)

    # ---------- learning ----------

    def reject_match(self, scope: Scope, transaction_id: str, document_id: str) -> VendorPattern:
        """User said this suggestion is wrong; it will not be proposed again."""
        scope = require_scope(scope)
        tx = self.store.get_transaction(scope, transaction_id)
        doc = self.store.get_document(scope, document_id)
        return self.learner.record_rejection(scope, tx, doc)

    def add_vendor_alias(self, scope: Scope, counterparty_name: str, alias: str) -> VendorPattern:
        return self.learner.add_vendor_alias(scope, counterparty_name, alias)

    # ---------- escalation ----------

    def escalate(self, scope: Scope, decision: MatchDecision) -> MatchDecision:
        """
        Ask the investigator about an unresolved decision.

        Returns a copy of the decision carrying the verdict, or carrying
        `escalation_error` when the investigator is unavailable, late or
        untrustworthy. Never raises for escalation failures and never
        allocates.
        """
        scope = require_scope(scope)
        result = replace(decision)
        if self.adapter is None:
            result.escalation_error = "No investigator configured"
            return result

        if decision.anchor_type == "transaction":
            anchor = self.store.get_transaction(scope, decision.anchor_id)
        else:
            anchor = self.store.get_document(scope, decision.anchor_id)

        candidates = decision.candidates
        if candidates:
            counterparty = candidates[0].documents[0].counterparty_name
        else:
            counterparty = getattr(anchor, "counterparty_name", None)
        ec = self.config.escalation
        context, history = "", []
        if counterparty:
            context = self.learner.pattern_context(scope, counterparty, ec.history_limit)
            pattern = self.learner.find_pattern(scope, counterparty)
            history = self.store.list_match_history(
                scope, pattern.counterparty_key if pattern else counterparty_key(counterparty), ec.history_limit)

        request = build_investigation_request(decision, anchor, candidates, context, history)
        try:
            result.escalation = self.adapter.investigate(request)
        except EscalationError as e:
            logger.warning("Escalation of %s %s failed, keeping '%s': %s",
                           decision.anchor_type, decision.anchor_id, decision.action.value, e.message)
            result.escalation_error = e.message
        return result

    # ---------- batch ----------

    def reconcile(self, scope: Scope, auto_confirm: bool = True, escalate: bool = False) -> ReconcileSummary:
        """
        Scan open transactions oldest first, auto-confirming clear matches.

        Each transaction is matched against the state left by the previous
        confirmations in the same run.
        """
        scope = require_scope(scope)
        summary = ReconcileSummary()
        for tx in self.store.list_transactions(scope, open_only=True):
            current = self.store.get_transaction(scope, tx.id)
            if current.is_fully_allocated:
                continue
            summary.total_transactions += 1
            decision = self.match_transaction(scope, tx.id)

            if decision.action == DecisionAction.AUTO_MATCH and auto_confirm:
                try:
                    self.confirm_candidate(scope, decision.primary, AllocationMethod.AUTO)
                    summary.auto_confirmed += 1
                except (ValidationError, ConcurrencyConflictError) as e:
                    logger.warning("Auto-confirm of %s failed: %s", tx.id, e.message)
                    summary.errors.append({"transaction_id": tx.id, **e.to_dict()})
            elif escalate and should_escalate(decision, self.config.escalation):
                decision = self.escalate(scope, decision)

            summary.counts[decision.action.value] += 1
            summary.decisions.append(decision)

        logger.info("Reconciled %d transactions: %d auto-confirmed (%.1f%%)",
                    summary.total_transactions, summary.auto_confirmed, summary.match_rate)
        return summary
