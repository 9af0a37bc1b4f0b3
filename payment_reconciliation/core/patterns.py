"""
Vendor pattern learning.

Every confirmed allocation is merged into the counterparty's VendorPattern
(running averages for numbers, set-union for keywords, aliases and
processors). Rejections only record negative signals; they never unlearn.
"""

import datetime as dt
import logging
from typing import Callable, List, Optional, Sequence

from .config import MatchingConfig
from .currency import currencies_equivalent
from .errors import ConcurrencyConflictError
from .models import (
    AllocationMethod, AmountMatchType, Document, MatchHistoryEntry, PaymentAllocation, Scope,
    Transaction, VendorPattern, require_scope,
)
from .scoring import ordered_fee_models
from .store import ReconciliationStore
from .utils import (
    counterparty_key, extract_keywords, money_fmt, normalize_text, round_money, string_similarity, utcnow,
)

logger = logging.getLogger(__name__)


def match_pattern(counterparty_name: str, patterns: Sequence[VendorPattern],
                  threshold: float = 0.85) -> Optional[VendorPattern]:
    """Find the pattern for a counterparty by key, alias, or fuzzy key similarity."""
    key = counterparty_key(counterparty_name)
    if not key:
        return None
    for p in patterns:
        if p.counterparty_key == key:
            return p
    for p in patterns:
        if key in {counterparty_key(a) for a in p.active_aliases}:
            return p
    best, best_score = None, 0.0
    for p in patterns:
        score = string_similarity(key, p.counterparty_key)
        if score >= threshold and score > best_score:
            best, best_score = p, score
    return best


def detect_processor(transaction: Transaction, document: Document, allocation: PaymentAllocation,
                     config: MatchingConfig):
    """
    Detect the processor whose fee explains the gap between the document
    amount and what actually arrived. Returns (name, fee percentage) or None.
    """
    received = allocation.transaction_side_amount
    if allocation.fx_rate not in (None, 1.0) or received >= allocation.amount:
        return None
    if not currencies_equivalent(transaction.currency, document.currency, config.pegged_currencies):
        return None
    for model in ordered_fee_models(transaction.description, config):
        expected = allocation.amount * (1 - model.rate) - model.fixed
        if abs(received - expected) <= config.amount.fee_tolerance:
            fee_pct = round((allocation.amount - received) / allocation.amount * 100, 3)
            return model.name, fee_pct
    return None


def classify_allocation(transaction: Transaction, document: Document, allocation: PaymentAllocation,
                        processor: Optional[str]) -> AmountMatchType:
    """Amount sub-type recorded in match history."""
    if allocation.fx_rate not in (None, 1.0):
        return AmountMatchType.FX_CONVERTED
    if processor:
        return AmountMatchType.FEE_ADJUSTED
    if len(document.allocations) > 1 and any(
            a.transaction_id != transaction.id for a in document.allocations):
        return AmountMatchType.SUM
    if abs(allocation.amount - document.total) <= 0.01:
        return AmountMatchType.EXACT
    if allocation.amount < document.total:
        return AmountMatchType.PARTIAL
    return AmountMatchType.APPROXIMATE


def _installment_pattern(document: Document) -> str:
    amounts = [a.amount for a in document.allocations]
    if len(amounts) < 2:
        return "partial payments"
    if max(amounts) - min(amounts) <= 0.01:
        return f"{len(amounts)} equal installments"
    return "irregular installments"


def merge_confirmation(pattern: VendorPattern, transaction: Transaction, document: Document,
                       allocation: PaymentAllocation, config: MatchingConfig, now: dt.datetime) -> VendorPattern:
    """Fold one confirmed allocation into a pattern (in place)."""
    lc = config.learning
    manual = allocation.method == AllocationMethod.MANUAL
    first = pattern.match_count == 0

    # Payment delay: running mean and population variance
    delay = (transaction.date - document.issue_date).days
    n = pattern.delay_observations + 1
    if pattern.typical_payment_delay_days is None:
        mean, variance = float(delay), 0.0
    else:
        old_mean = pattern.typical_payment_delay_days
        delta = delay - old_mean
        mean = old_mean + delta / n
        m2 = pattern.payment_delay_variance * (n - 1) + delta * (delay - mean)
        variance = m2 / n
    pattern.typical_payment_delay_days = round(mean, 2)
    pattern.payment_delay_variance = round(variance, 4)
    pattern.delay_observations = n
    if pattern.payment_delay_range is None:
        pattern.payment_delay_range = (delay, delay)
    else:
        low, high = pattern.payment_delay_range
        pattern.payment_delay_range = (min(low, delay), max(high, delay))

    for kw in extract_keywords(transaction.description):
        pattern.keyword_counts[kw] = pattern.keyword_counts.get(kw, 0) + 1
        if kw in pattern.rejected_keywords:
            pattern.rejected_keywords.remove(kw)
    ranked = sorted(pattern.keyword_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    pattern.transaction_keywords = [k for k, _ in ranked[:lc.max_keywords]]

    if document.counterparty_name and counterparty_key(document.counterparty_name) != pattern.counterparty_key:
        if document.counterparty_name not in pattern.known_aliases:
            pattern.known_aliases.append(document.counterparty_name)

    detected = detect_processor(transaction, document, allocation, config)
    if detected:
        name, fee_pct = detected
        if name not in pattern.payment_processors:
            pattern.payment_processors.append(name)
        pattern.payment_processor = name
        if pattern.typical_fee_percentage is None:
            pattern.typical_fee_percentage = fee_pct
        else:
            count = pattern.fee_observations + 1
            pattern.typical_fee_percentage = round(
                pattern.typical_fee_percentage + (fee_pct - pattern.typical_fee_percentage) / count, 3)
        pattern.fee_observations += 1

    total = round_money(document.total)
    if not any(abs(total - a) <= 0.01 * a for a in pattern.typical_amounts if a > 0):
        pattern.typical_amounts.append(total)
        pattern.typical_amounts = pattern.typical_amounts[-lc.max_typical_amounts:]

    if len(document.allocations) >= 2 or allocation.amount < document.total - 0.01:
        pattern.uses_installments = True
        pattern.installment_pattern = _installment_pattern(document)

    pattern.invoice_currency = document.currency
    pattern.payment_currency = transaction.currency

    pattern.match_count += 1
    if manual:
        pattern.manual_match_count += 1
    if first:
        pattern.learning_confidence = lc.initial_confidence_manual if manual else lc.initial_confidence_auto
    else:
        step = lc.manual_increment if manual else lc.auto_increment
        pattern.learning_confidence = min(lc.max_confidence, pattern.learning_confidence + step)

    pattern.created_at = pattern.created_at or now
    pattern.updated_at = now
    pattern.last_matched_at = now
    return pattern


def merge_rejection(pattern: VendorPattern, transaction: Transaction, document: Document,
                    now: dt.datetime) -> VendorPattern:
    """Record that the signals which suggested this pair were wrong (in place)."""
    desc = normalize_text(transaction.description)
    words = set(desc.split())
    for kw in pattern.active_keywords:
        if kw in words:
            pattern.rejected_keywords.append(kw)
    for alias in pattern.active_aliases:
        alias_norm = normalize_text(alias)
        if alias_norm and f" {alias_norm} " in f" {desc} ":
            pattern.rejected_aliases.append(alias)
    if not pattern.is_rejected(transaction.id, document.id):
        pattern.rejected_matches.append((transaction.id, document.id))
    pattern.rejection_count += 1
    pattern.created_at = pattern.created_at or now
    pattern.updated_at = now
    return pattern


class PatternLearner:
    """Reads and updates vendor patterns through the store's compare-and-swap."""

    def __init__(self, store: ReconciliationStore, config: MatchingConfig,
                 now: Callable[[], dt.datetime] = utcnow):
        self.store = store
        self.config = config
        self.now = now

    def find_pattern(self, scope: Scope, counterparty_name: str) -> Optional[VendorPattern]:
        scope = require_scope(scope)
        exact = self.store.get_vendor_pattern(scope, counterparty_key(counterparty_name))
        if exact is not None:
            return exact
        return match_pattern(counterparty_name, self.store.list_vendor_patterns(scope),
                             self.config.learning.fuzzy_lookup_threshold)

    def _load_or_create(self, scope: Scope, counterparty_name: str) -> VendorPattern:
        pattern = self.find_pattern(scope, counterparty_name)
        if pattern is None:
            pattern = VendorPattern(user_id=scope.user_id, counterparty_key=counterparty_key(counterparty_name),
                                    counterparty_name=counterparty_name)
        return pattern

    def _update(self, scope: Scope, counterparty_name: str, merge, history_for=None) -> VendorPattern:
        attempts = max(1, self.config.allocation.retry_attempts)
        attempt = 0
        while True:
            attempt += 1
            pattern = merge(self._load_or_create(scope, counterparty_name))
            history = history_for(pattern) if history_for else None
            try:
                self.store.save_vendor_pattern(scope, pattern, history)
                return pattern
            except ConcurrencyConflictError:
                if attempt >= attempts:
                    raise
                logger.info("Pattern %s changed concurrently, retrying (%d/%d)",
                            pattern.counterparty_key, attempt, attempts)

    def record_confirmation(self, scope: Scope, transaction: Transaction, document: Document,
                            allocation: PaymentAllocation) -> VendorPattern:
        """Learn from a newly confirmed allocation."""
        scope = require_scope(scope)
        now = self.now()
        detected = detect_processor(transaction, document, allocation, self.config)

        def history_for(pattern: VendorPattern) -> MatchHistoryEntry:
            return MatchHistoryEntry(
                user_id=scope.user_id,
                counterparty_key=pattern.counterparty_key,
                counterparty_name=document.counterparty_name,
                document_id=document.id,
                document_number=document.document_number,
                document_total=document.total,
                document_currency=document.currency,
                issue_date=document.issue_date,
                transaction_id=transaction.id,
                transaction_amount=transaction.absolute_amount,
                transaction_currency=transaction.currency,
                transaction_date=transaction.date,
                transaction_description=transaction.description,
                allocation_amount=allocation.amount,
                amount_match_type=classify_allocation(
                    transaction, document, allocation, detected[0] if detected else None).value,
                days_difference=(transaction.date - document.issue_date).days,
                method=allocation.method,
                confidence=allocation.confidence,
                matched_at=now,
            )

        pattern = self._update(
            scope, document.counterparty_name,
            lambda p: merge_confirmation(p, transaction, document, allocation, self.config, now),
            history_for)
        logger.info("Learned from %s -> %s for %s (matches=%d, confidence=%.0f)",
                    transaction.id, document.id, pattern.counterparty_name,
                    pattern.match_count, pattern.learning_confidence)
        return pattern

    def record_rejection(self, scope: Scope, transaction: Transaction, document: Document) -> VendorPattern:
        """Remember a rejected suggestion so the same false signal is not reused."""
        scope = require_scope(scope)
        now = self.now()
        pattern = self._update(scope, document.counterparty_name,
                               lambda p: merge_rejection(p, transaction, document, now))
        logger.info("Recorded rejection of %s -> %s for %s", transaction.id, document.id,
                    pattern.counterparty_name)
        return pattern

    def add_vendor_alias(self, scope: Scope, counterparty_name: str, alias: str) -> VendorPattern:
        """Teach that `alias` in bank descriptions refers to this counterparty."""
        scope = require_scope(scope)
        alias = alias.strip()
        now = self.now()

        def merge(pattern: VendorPattern) -> VendorPattern:
            if alias and alias not in pattern.known_aliases:
                pattern.known_aliases.append(alias)
            if alias in pattern.rejected_aliases:
                pattern.rejected_aliases.remove(alias)
            pattern.created_at = pattern.created_at or now
            pattern.updated_at = now
            return pattern

        return self._update(scope, counterparty_name, merge)

    def pattern_context(self, scope: Scope, counterparty_name: str, history_limit: int = 5) -> str:
        """Human-readable summary of what is known about a counterparty."""
        pattern = self.find_pattern(scope, counterparty_name)
        if pattern is None:
            return f"No learned pattern for {counterparty_name}."
        lines = [f"Known pattern for {pattern.counterparty_name} "
                 f"(learning confidence {pattern.learning_confidence:.0f}%, {pattern.match_count} matches):"]
        if pattern.payment_processor:
            fee = f" (fee ~{pattern.typical_fee_percentage:.2f}%)" if pattern.typical_fee_percentage else ""
            lines.append(f"- Usually pays via {pattern.payment_processor}{fee}")
        if pattern.typical_payment_delay_days is not None:
            low, high = pattern.payment_delay_range or (0, 0)
            lines.append(f"- Typical payment delay: {pattern.typical_payment_delay_days:.0f} days "
                         f"(range {low} to {high})")
        if pattern.active_keywords:
            lines.append(f"- Bank description keywords: {', '.join(pattern.active_keywords)}")
        if pattern.active_aliases:
            lines.append(f"- Also known as: {', '.join(pattern.active_aliases)}")
        if pattern.typical_amounts:
            lines.append("- Typical amounts: " + ", ".join(money_fmt(a, pattern.invoice_currency)
                                                           for a in pattern.typical_amounts))
        if pattern.uses_installments:
            lines.append(f"- Pays in installments ({pattern.installment_pattern})")
        if pattern.rejected_keywords:
            lines.append(f"- Misleading keywords (rejected): {', '.join(pattern.rejected_keywords)}")

        history = self.store.list_match_history(scope, pattern.counterparty_key, history_limit)
        if history:
            lines.append("Recent matches:")
            for h in history:
                lines.append(f"- {h.transaction_date.isoformat()} {h.document_number}: "
                             f"{money_fmt(h.allocation_amount, h.document_currency)} "
                             f"({h.amount_match_type}, {h.days_difference} days after issue)")
        return "\n".join(lines)

    def list_patterns(self, scope: Scope) -> List[VendorPattern]:
        return self.store.list_vendor_patterns(require_scope(scope))
