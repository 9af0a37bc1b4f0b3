"""
Candidate generation: pair an anchor item with the open items it could settle.

Pure filtering and scoring over the supplied pools; nothing is written.
"""

import datetime as dt
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from .combinations import find_document_combination, find_payment_combination
from .config import MatchingConfig
from .currency import currencies_equivalent
from .errors import InvalidScopeError
from .models import Document, MatchCandidate, Scope, Transaction, VendorPattern, require_scope
from .patterns import match_pattern
from .scoring import score_candidate, score_document_combination, score_payment_combination

# Installments are only searched among payments made after this many days before issue
ADVANCE_WINDOW_DAYS = 30


def rejected_pairs(patterns: Iterable[VendorPattern]) -> Set[Tuple[str, str]]:
    pairs = set()
    for p in patterns:
        pairs.update(tuple(m) for m in p.rejected_matches)
    return pairs


def _count_same_amount(amount: float, amounts: Sequence[float]) -> int:
    return sum(1 for a in amounts if abs(a - amount) <= 0.01)


class CandidateGenerator:
    """Builds scored single and combination candidates for one anchor."""

    def __init__(self, config: MatchingConfig):
        self.config = config

    def _check_owner(self, scope: Scope, record):
        if record.user_id != scope.user_id:
            raise InvalidScopeError(f"{record.id} is outside the scope of user {scope.user_id}",
                                    details={"id": record.id})

    def _pattern_for(self, name: str, patterns: Sequence[VendorPattern]) -> Optional[VendorPattern]:
        return match_pattern(name, patterns, self.config.learning.fuzzy_lookup_threshold)

    def eligible_documents(self, scope: Scope, transaction: Transaction, documents: Iterable[Document],
                           allow_cross_currency: bool = False,
                           rejected: Optional[Set[Tuple[str, str]]] = None) -> List[Document]:
        """Open documents of the right type (and currency) for a transaction."""
        rejected = rejected or set()
        pegged = self.config.pegged_currencies
        return [d for d in documents
                if d.user_id == scope.user_id
                and d.expected_direction == transaction.direction
                and d.is_open
                and (transaction.id, d.id) not in rejected
                and (allow_cross_currency or currencies_equivalent(transaction.currency, d.currency, pegged))]

    def eligible_transactions(self, scope: Scope, document: Document, transactions: Iterable[Transaction],
                              allow_cross_currency: bool = False,
                              rejected: Optional[Set[Tuple[str, str]]] = None) -> List[Transaction]:
        """Unallocated transactions flowing the right way (and in the right currency) for a document."""
        rejected = rejected or set()
        pegged = self.config.pegged_currencies
        return [t for t in transactions
                if t.user_id == scope.user_id
                and scope.includes_account(t.account_id)
                and t.direction == document.expected_direction
                and not t.is_fully_allocated
                and t.category is None
                and (t.id, document.id) not in rejected
                and (allow_cross_currency or currencies_equivalent(t.currency, document.currency, pegged))]

    def _keep(self, candidate: MatchCandidate) -> bool:
        return bool(candidate.allocations) and candidate.confidence >= self.config.min_candidate_confidence

    def for_transaction(self, scope: Scope, transaction: Transaction, documents: Sequence[Document],
                        patterns: Sequence[VendorPattern] = (),
                        allow_cross_currency: bool = False) -> List[MatchCandidate]:
        """Singles plus document combinations (one payment, several invoices)."""
        scope = require_scope(scope)
        self._check_owner(scope, transaction)
        if transaction.is_fully_allocated or transaction.category:
            return []

        rejected = rejected_pairs(patterns)
        pool = self.eligible_documents(scope, transaction, documents, allow_cross_currency, rejected)
        remaining = [d.amount_remaining for d in pool]

        candidates = []
        for d in pool:
            unique = _count_same_amount(d.amount_remaining, remaining) == 1
            c = score_candidate(transaction, d, self.config, self._pattern_for(d.counterparty_name, patterns), unique)
            if self._keep(c):
                candidates.append(c)

        pegged = self.config.pegged_currencies
        groups = {}
        for d in pool:
            if currencies_equivalent(transaction.currency, d.currency, pegged):
                groups.setdefault(d.counterparty_key, []).append(d)

        sc = self.config.search
        found = []
        for key in sorted(groups):
            group = groups[key]
            if len(group) < 2:
                continue
            combos = find_document_combination(
                group, transaction.unallocated_amount, sc.tolerance, sc.max_items,
                max_results=sc.max_results, max_iterations=sc.max_iterations, min_items=sc.min_items)
            found.extend(combos)

        for combo in found:
            pattern = self._pattern_for(combo.items[0].counterparty_name, patterns)
            c = score_document_combination(transaction, combo, self.config, pattern, unique=len(found) == 1)
            if self._keep(c):
                candidates.append(c)
        return sorted(candidates, key=lambda c: c.sort_key())

    def for_document(self, scope: Scope, document: Document, transactions: Sequence[Transaction],
                     patterns: Sequence[VendorPattern] = (),
                     allow_cross_currency: bool = False) -> List[MatchCandidate]:
        """Singles plus payment combinations (installments settling one document)."""
        scope = require_scope(scope)
        self._check_owner(scope, document)
        if not document.is_open:
            return []

        rejected = rejected_pairs(patterns)
        pattern = self._pattern_for(document.counterparty_name, patterns)
        pool = self.eligible_transactions(scope, document, transactions, allow_cross_currency, rejected)
        unallocated = [t.unallocated_amount for t in pool]

        candidates = []
        for t in pool:
            unique = _count_same_amount(t.unallocated_amount, unallocated) == 1
            c = score_candidate(t, document, self.config, pattern, unique)
            if self._keep(c):
                candidates.append(c)

        earliest = document.issue_date - dt.timedelta(days=ADVANCE_WINDOW_DAYS)
        pegged = self.config.pegged_currencies
        installments = [t for t in pool
                        if t.date >= earliest and currencies_equivalent(t.currency, document.currency, pegged)]
        sc = self.config.search
        combos = find_payment_combination(
            installments, document.amount_remaining, sc.tolerance, sc.max_items,
            max_results=sc.max_results, max_iterations=sc.max_iterations, min_items=sc.min_items)
        for combo in combos:
            c = score_payment_combination(document, combo, self.config, pattern, unique=len(combos) == 1)
            if self._keep(c):
                candidates.append(c)
        return sorted(candidates, key=lambda c: c.sort_key())
