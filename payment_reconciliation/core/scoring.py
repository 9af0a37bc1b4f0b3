"""
Multi-signal confidence scoring for match candidates.

Each candidate gets five sub-scores on a 0-130 raw scale:

    reference  0-40   invoice/bill number found in the transaction
    amount     0-35   exact, fee-adjusted, FX-converted, approximate or partial
    identity   0-25   counterparty name or learned vendor pattern
    time       0-20   payment date relative to due / issue date
    context    0-10   duplicate-amount risk and counterparty history

which are normalized to a 0-100 confidence. Scoring is a pure function of
its inputs.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .config import MatchingConfig
from .currency import currencies_equivalent, get_rate
from .models import (
    AmountMatchType, CandidateKind, Combination, Document, MatchCandidate, MatchSignals,
    ProposedAllocation, Transaction, VendorPattern,
)
from .utils import (
    best_similarity, contains_reference, extract_reference_tokens, is_clean_fraction, money_fmt, normalize_reference,
    normalize_text, round_money, significant_words,
)

MAX_RAW_SCORE = 130
MAX_CONTEXT_SCORE = 10


def to_confidence(total_score: int) -> int:
    """Normalize a raw 0-130 score to 0-100."""
    return max(0, min(100, int(round(100.0 * total_score / MAX_RAW_SCORE))))


# ============================================
# Reference
# ============================================

def score_reference(transaction: Transaction, document: Document) -> Tuple[int, Optional[str], Optional[str]]:
    """Returns (score, token matched, reason)."""
    doc_ref = normalize_reference(document.document_number)
    if not doc_ref:
        return 0, None, None
    tokens = extract_reference_tokens(transaction.description, transaction.reference)

    for token in tokens:
        if token == doc_ref:
            return 40, token, f"Reference {token.upper()} matches document number {document.document_number}"

    for token in tokens:
        if min(len(token), len(doc_ref)) >= 3 and (contains_reference(token, doc_ref) or token in doc_ref):
            return 30, token, f"Reference {token.upper()} partially matches {document.document_number}"
    # Joining the whole description runs dates and amounts together; only lettered refs survive that
    if (len(doc_ref) >= 4 and not doc_ref.isdigit()
            and doc_ref in normalize_reference(transaction.description)):
        return 30, doc_ref, f"Document number {document.document_number} appears in description"

    if tokens:
        similarity = best_similarity(doc_ref, tokens)
        if similarity > 0.8:
            best = max(tokens, key=lambda t: best_similarity(doc_ref, [t]))
            return 25, best, f"Reference {best.upper()} is similar to {document.document_number} ({similarity:.0%})"
    return 0, None, None


# ============================================
# Amount
# ============================================

@dataclass
class AmountResult:
    score: int = 0
    match_type: AmountMatchType = AmountMatchType.NONE
    difference: float = 0.0
    difference_percent: float = 0.0
    processor: Optional[str] = None
    cross_currency: bool = False
    fx_rate: Optional[float] = None
    converted_amount: Optional[float] = None
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def ordered_fee_models(description: str, config: MatchingConfig):
    """Fee models ordered so processors named in the description come first."""
    words = set(normalize_text(description).split())
    hinted = [m for m in config.fee_models if m.name in words or words.intersection(m.keywords)]
    return hinted + [m for m in config.fee_models if m not in hinted]


def score_amount(amount: float, currency: str, document: Document, config: MatchingConfig,
                 description: str = "") -> AmountResult:
    """
    Score a payment amount against a document's remaining balance.

    Ladder: exact, FX-converted exact, fee-adjusted, approximate, partial.
    `amount` is the absolute payment amount in `currency`.
    """
    ac = config.amount
    target = document.amount_remaining
    result = AmountResult()
    if target <= 0:
        return result

    compare = amount
    if not currencies_equivalent(currency, document.currency, config.pegged_currencies):
        result.cross_currency = True
        rate = get_rate(currency, document.currency, config.fx_rates, config.pegged_currencies)
        if rate is None:
            result.warnings.append(f"No exchange rate available for {currency} to {document.currency}")
            return result
        compare = round_money(amount * rate)
        result.fx_rate = rate
        result.converted_amount = compare
        if abs(compare - target) / target <= ac.fx_tolerance:
            result.score = 30
            result.match_type = AmountMatchType.FX_CONVERTED
            result.difference = round_money(compare - target)
            result.difference_percent = abs(result.difference) / target * 100
            result.reason = (f"{money_fmt(amount, currency)} converts to {money_fmt(compare, document.currency)}, "
                             f"matching {money_fmt(target, document.currency)} at rate {rate:.4f}")
            result.warnings.append("Cross-currency match: verify the exchange rate used")
            return result

    diff = round_money(compare - target)
    result.difference = diff
    result.difference_percent = abs(diff) / target * 100

    if not result.cross_currency and abs(diff) <= ac.exact_tolerance:
        result.score = 35
        result.match_type = AmountMatchType.EXACT
        result.reason = f"Amount {money_fmt(target, document.currency)} matches exactly"
        return result

    best_model, best_gap = None, None
    for model in ordered_fee_models(description, config):
        expected = target * (1 - model.rate) - model.fixed
        gap = abs(compare - expected)
        if gap <= ac.fee_tolerance and (best_gap is None or gap < best_gap - ac.exact_tolerance):
            best_model, best_gap = model, gap
            if best_gap <= ac.exact_tolerance:
                break
    if best_model is not None:
        result.score = 30
        result.match_type = AmountMatchType.FEE_ADJUSTED
        result.processor = best_model.name
        result.reason = (f"Amount matches {money_fmt(target, document.currency)} less {best_model.name} fees "
                         f"({best_model.rate:.1%} + {money_fmt(best_model.fixed, document.currency)})")
        return result

    if abs(diff) / target < ac.approximate_tolerance:
        result.score = 20
        result.match_type = AmountMatchType.APPROXIMATE
        result.reason = f"Amount within {result.difference_percent:.1f}% of {money_fmt(target, document.currency)}"
        return result

    if compare < target and compare >= ac.partial_floor * target:
        ratio = compare / target
        result.match_type = AmountMatchType.PARTIAL
        if is_clean_fraction(ratio, ac.clean_fractions, ac.clean_fraction_tolerance):
            result.score = 25
            result.reason = f"Partial payment of {ratio:.0%}, a typical installment fraction"
        else:
            result.score = 15
            result.reason = f"Partial payment of {ratio:.0%} of {money_fmt(target, document.currency)}"
        return result

    return result


# ============================================
# Identity
# ============================================

def name_similarity(counterparty_name: str, description: str) -> float:
    """Average best edit-distance similarity of each name word against the description words."""
    name_words = significant_words(counterparty_name) or normalize_text(counterparty_name).split()
    desc_words = [w for w in normalize_text(description).split() if not w.isdigit()]
    if not name_words or not desc_words:
        return 0.0
    return sum(best_similarity(w, desc_words) for w in name_words) / len(name_words)


def pattern_identity(description: str, pattern: Optional[VendorPattern],
                     config: MatchingConfig) -> Tuple[int, Optional[str]]:
    """Identity evidence from a learned vendor pattern."""
    if pattern is None:
        return 0, None
    desc = normalize_text(description)
    words = set(desc.split())

    for alias in pattern.active_aliases:
        alias_norm = normalize_text(alias)
        if alias_norm and f" {alias_norm} " in f" {desc} ":
            return 20, f"Description matches known alias '{alias}' of {pattern.counterparty_name}"

    keywords = [k for k in pattern.active_keywords if k in words]
    processor_hit = False
    if pattern.payment_processor:
        model = config.fee_model(pattern.payment_processor)
        processor_words = {pattern.payment_processor} | set(model.keywords if model else [])
        processor_hit = bool(words & processor_words)

    if keywords and processor_hit:
        return 20, (f"Learned keywords ({', '.join(keywords)}) and processor "
                    f"{pattern.payment_processor} of {pattern.counterparty_name}")
    if keywords:
        return 15, f"Learned keywords ({', '.join(keywords)}) of {pattern.counterparty_name}"
    if processor_hit:
        return 15, f"Usual processor {pattern.payment_processor} of {pattern.counterparty_name}"
    return 0, None


def score_identity(transaction: Transaction, counterparty_name: str, pattern: Optional[VendorPattern],
                   config: MatchingConfig) -> Tuple[int, float, Optional[str]]:
    """Returns (score, name similarity, reason)."""
    name = normalize_text(counterparty_name)
    desc = normalize_text(transaction.description)
    if name and f" {name} " in f" {desc} ":
        return 25, 1.0, f"Counterparty '{counterparty_name}' appears in description"

    similarity = name_similarity(counterparty_name, transaction.description)
    if similarity > 0.8:
        return 22, similarity, f"Description closely resembles '{counterparty_name}' ({similarity:.0%})"
    if similarity > 0.6:
        return 15, similarity, f"Description resembles '{counterparty_name}' ({similarity:.0%})"

    score, reason = pattern_identity(transaction.description, pattern, config)
    return score, similarity, reason


# ============================================
# Time
# ============================================

def _issue_band(days_from_issue: int) -> int:
    if days_from_issue <= 7:
        return 15
    if days_from_issue <= 30:
        return 10
    if days_from_issue <= 60:
        return 5
    return 0


def _due_band(days_from_due: int) -> int:
    if abs(days_from_due) <= 3:
        return 20
    if abs(days_from_due) <= 7:
        return 15
    if -14 <= days_from_due <= 30:
        return 10
    if 30 < days_from_due <= 60:
        return 5
    return 0


def score_time(transaction: Transaction, document: Document) -> Tuple[int, int, Optional[int], bool, Optional[str]]:
    """Returns (score, days from issue, days from due, advance flag, reason)."""
    days_from_issue = (transaction.date - document.issue_date).days
    days_from_due = (transaction.date - document.due_date).days if document.due_date else None

    if days_from_issue < 0:
        if -days_from_issue <= 30:
            return 10, days_from_issue, days_from_due, True, \
                f"Paid {-days_from_issue} days before issue date (advance or deposit)"
        return 0, days_from_issue, days_from_due, False, None

    if days_from_due is not None:
        score = _due_band(days_from_due)
        if score:
            if days_from_due == 0:
                when = "on the due date"
            elif days_from_due < 0:
                when = f"{-days_from_due} days before due date"
            else:
                when = f"{days_from_due} days after due date"
            return score, days_from_issue, days_from_due, False, f"Paid {when}"

    score = _issue_band(days_from_issue)
    reason = f"Paid {days_from_issue} days after issue date" if score else None
    return score, days_from_issue, days_from_due, False, reason


# ============================================
# Context
# ============================================

def matches_typical_amount(amounts: Sequence[float], pattern: Optional[VendorPattern]) -> bool:
    if pattern is None:
        return False
    for typical in pattern.typical_amounts:
        for amount in amounts:
            if typical > 0 and abs(amount - typical) <= 0.01 * typical:
                return True
    return False


def score_context(unique_amount: bool, amounts: Sequence[float],
                  pattern: Optional[VendorPattern]) -> Tuple[int, List[str]]:
    """Returns (clamped score, reasons including the raw adjustments)."""
    raw = 0
    reasons = []
    if unique_amount:
        raw += 5
        reasons.append("Amount is unique among open items (+5)")
    else:
        raw -= 5
        reasons.append("Other open items share this amount (-5)")
    if matches_typical_amount(amounts, pattern):
        raw += 3
        reasons.append("Amount is typical for this counterparty (+3)")
    if pattern is None or pattern.match_count == 0:
        raw -= 2
        reasons.append("No match history for this counterparty (-2)")
    return max(0, min(MAX_CONTEXT_SCORE, raw)), reasons


# ============================================
# Candidates
# ============================================

def _finish(signals: MatchSignals) -> MatchSignals:
    signals.confidence = to_confidence(signals.total_score)
    return signals


def _single_allocation(transaction: Transaction, document: Document, amount: AmountResult) -> ProposedAllocation:
    tx_amount = transaction.unallocated_amount
    remaining = document.amount_remaining
    if amount.cross_currency and amount.fx_rate:
        if amount.match_type == AmountMatchType.FX_CONVERTED:
            return ProposedAllocation(transaction.id, document.id, remaining, tx_amount, amount.fx_rate)
        doc_amount = round_money(min(amount.converted_amount, remaining))
        tx_side = min(round_money(doc_amount / amount.fx_rate), tx_amount)
        return ProposedAllocation(transaction.id, document.id, doc_amount, tx_side, amount.fx_rate)
    if amount.match_type == AmountMatchType.FEE_ADJUSTED:
        # Settles the full balance; the processor fee is the difference
        return ProposedAllocation(transaction.id, document.id, remaining, tx_amount)
    return ProposedAllocation(transaction.id, document.id, round_money(min(tx_amount, remaining)))


def score_candidate(transaction: Transaction, document: Document, config: MatchingConfig,
                    pattern: Optional[VendorPattern] = None, unique_amount: bool = True) -> MatchCandidate:
    """Score one transaction against one document."""
    signals = MatchSignals()
    reasons: List[str] = []
    warnings: List[str] = []

    signals.reference_score, signals.reference_found, reason = score_reference(transaction, document)
    if reason:
        reasons.append(reason)

    amount = score_amount(transaction.unallocated_amount, transaction.currency, document, config,
                          transaction.description)
    signals.amount_score = amount.score
    signals.amount_match_type = amount.match_type
    signals.amount_difference = amount.difference
    signals.amount_difference_percent = round(amount.difference_percent, 2)
    signals.fee_processor = amount.processor
    signals.cross_currency = amount.cross_currency
    signals.fx_rate = amount.fx_rate
    signals.converted_amount = amount.converted_amount
    if amount.reason:
        reasons.append(amount.reason)
    warnings.extend(amount.warnings)

    signals.identity_score, signals.name_similarity, reason = score_identity(
        transaction, document.counterparty_name, pattern, config)
    signals.name_similarity = round(signals.name_similarity, 3)
    if reason:
        reasons.append(reason)

    (signals.time_score, signals.days_from_issue, signals.days_from_due,
     signals.advance_payment, reason) = score_time(transaction, document)
    if reason:
        reasons.append(reason)
    if signals.advance_payment:
        warnings.append("Payment predates the document: confirm it is a deposit or advance")

    signals.context_score, context_reasons = score_context(
        unique_amount, [document.amount_remaining, transaction.unallocated_amount], pattern)
    reasons.extend(context_reasons)

    if amount.match_type == AmountMatchType.PARTIAL:
        warnings.append(f"Leaves {money_fmt(round_money(-amount.difference), document.currency)} outstanding")

    return MatchCandidate(
        kind=CandidateKind.SINGLE,
        transactions=[transaction],
        documents=[document],
        signals=_finish(signals),
        reasons=reasons,
        warnings=warnings,
        allocations=[_single_allocation(transaction, document, amount)] if amount.score else [],
    )


def score_document_combination(transaction: Transaction, combination: Combination, config: MatchingConfig,
                               pattern: Optional[VendorPattern] = None, unique: bool = True) -> MatchCandidate:
    """Score one payment covering several documents of the same counterparty."""
    documents: List[Document] = list(combination.items)
    singles = [score_candidate(transaction, d, config, pattern) for d in documents]
    signals = MatchSignals(amount_match_type=AmountMatchType.SUM, amount_score=35,
                           amount_difference=combination.difference)
    reasons = [f"Sum of {len(documents)} documents "
               f"({', '.join(d.document_number or d.id for d in documents)}) "
               f"matches {money_fmt(transaction.unallocated_amount, transaction.currency)}"]

    best_ref = max(singles, key=lambda c: c.signals.reference_score)
    signals.reference_score = best_ref.signals.reference_score
    signals.reference_found = best_ref.signals.reference_found

    signals.identity_score, signals.name_similarity, reason = score_identity(
        transaction, documents[0].counterparty_name, pattern, config)
    if reason:
        reasons.append(reason)

    signals.time_score = int(round(sum(c.signals.time_score for c in singles) / len(singles)))
    signals.context_score, context_reasons = score_context(unique, [transaction.unallocated_amount], pattern)
    reasons.extend(context_reasons)

    allocations = []
    left = transaction.unallocated_amount
    for d in documents:
        amount = round_money(min(d.amount_remaining, left))
        left = round_money(left - amount)
        allocations.append(ProposedAllocation(transaction.id, d.id, amount))

    return MatchCandidate(
        kind=CandidateKind.DOCUMENT_COMBINATION,
        transactions=[transaction],
        documents=documents,
        signals=_finish(signals),
        reasons=reasons,
        warnings=["Single payment split across several documents"],
        allocations=allocations,
    )


def score_payment_combination(document: Document, combination: Combination, config: MatchingConfig,
                              pattern: Optional[VendorPattern] = None, unique: bool = True) -> MatchCandidate:
    """Score several payments (installments) that together settle one document."""
    transactions: List[Transaction] = list(combination.items)
    singles = [score_candidate(t, document, config, pattern) for t in transactions]
    signals = MatchSignals(amount_match_type=AmountMatchType.SUM, amount_score=35,
                           amount_difference=combination.difference)
    reasons = [f"{len(transactions)} payments sum to "
               f"{money_fmt(document.amount_remaining, document.currency)} remaining on "
               f"{document.document_number or document.id}"]

    best_ref = max(singles, key=lambda c: c.signals.reference_score)
    signals.reference_score = best_ref.signals.reference_score
    signals.reference_found = best_ref.signals.reference_found

    best_identity = max(singles, key=lambda c: c.signals.identity_score)
    signals.identity_score = best_identity.signals.identity_score
    signals.name_similarity = best_identity.signals.name_similarity

    signals.time_score = int(round(sum(c.signals.time_score for c in singles) / len(singles)))
    signals.context_score, context_reasons = score_context(unique, [document.amount_remaining], pattern)
    reasons.extend(context_reasons)

    allocations = []
    left = document.amount_remaining
    for t in transactions:
        amount = round_money(min(t.unallocated_amount, left))
        left = round_money(left - amount)
        allocations.append(ProposedAllocation(t.id, document.id, amount))

    return MatchCandidate(
        kind=CandidateKind.PAYMENT_COMBINATION,
        transactions=transactions,
        documents=[document],
        signals=_finish(signals),
        reasons=reasons,
        warnings=[f"Document settled by {len(transactions)} separate payments"],
        allocations=allocations,
    )
