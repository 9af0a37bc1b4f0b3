"""
Subset-sum search for split and combined payments.

Two symmetric operations: one payment covering several documents
(`find_document_combination`) and several payments settling one document
(`find_payment_combination`).
"""

import logging
from typing import Callable, List, Optional, Sequence

from .models import Combination, Document, Transaction
from .utils import counterparty_key, round_money

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


def _search(items: Sequence, amount_of: Callable, target: float, tolerance: float, max_items: int,
            max_results: int, max_iterations: int, min_items: int) -> List[Combination]:
    """
    Depth-first enumeration with iterative deepening over combination size.

    Items are sorted by ascending amount, so a branch stops as soon as its
    running sum passes target + tolerance. Sizes are explored smallest first,
    which means the result cap keeps the simplest combinations.
    """
    target = round_money(target)
    if target <= 0 or max_items < 1 or max_results < 1:
        return []

    pool = sorted((i for i in items if amount_of(i) > 0), key=lambda i: (amount_of(i), i.id))
    amounts = [amount_of(i) for i in pool]
    n = len(pool)
    upper = target + tolerance + _EPSILON
    lower = target - tolerance - _EPSILON

    results: List[Combination] = []
    iterations = 0
    truncated = False

    def dfs(start: int, chosen: List[int], total: float, size: int):
        nonlocal iterations, truncated
        if truncated or len(results) >= max_results:
            return
        slots = size - len(chosen)
        if slots == 0:
            if lower <= total <= upper:
                picked = [pool[i] for i in chosen]
                results.append(Combination(items=picked, total=round_money(total),
                                           difference=round_money(total - target)))
            return
        # the largest `slots` amounts cannot reach the target
        if total + sum(amounts[n - slots:]) < lower:
            return
        for i in range(start, n - slots + 1):
            iterations += 1
            if iterations > max_iterations:
                truncated = True
                return
            new_total = total + amounts[i]
            if new_total > upper:
                break
            dfs(i + 1, chosen + [i], new_total, size)
            if truncated or len(results) >= max_results:
                return

    for size in range(max(1, min_items), min(max_items, n) + 1):
        dfs(0, [], 0.0, size)
        if truncated or len(results) >= max_results:
            break

    if truncated:
        logger.warning("Combination search for %.2f stopped after %d iterations (%d results kept)",
                       target, max_iterations, len(results))

    results.sort(key=lambda c: (len(c.items), abs(c.difference), c.item_ids))
    return results


def find_document_combination(documents: Sequence[Document], target_amount: float, tolerance: float = 0.01,
                              max_items: int = 5, counterparty: Optional[str] = None, max_results: int = 5,
                              max_iterations: int = 20000, min_items: int = 2) -> List[Combination]:
    """
    Find sets of open documents whose remaining amounts sum to target_amount.

    Args:
        documents: Candidate documents
        target_amount: Payment amount to explain
        tolerance: Allowed absolute residual
        max_items: Largest combination size considered
        counterparty: Only consider documents of this counterparty
        max_results: Stop after this many combinations
        max_iterations: Hard ceiling on explored branches
        min_items: Smallest combination size considered

    Returns:
        Combinations ranked by item count, then residual
    """
    key = counterparty_key(counterparty) if counterparty else None
    pool = [d for d in documents if d.amount_remaining > 0 and (key is None or d.counterparty_key == key)]
    return _search(pool, lambda d: d.amount_remaining, target_amount, tolerance, max_items,
                   max_results, max_iterations, min_items)


def find_payment_combination(transactions: Sequence[Transaction], target_amount: float, tolerance: float = 0.01,
                             max_items: int = 5, max_results: int = 5, max_iterations: int = 20000,
                             min_items: int = 2) -> List[Combination]:
    """Find sets of unallocated transactions whose amounts sum to target_amount."""
    pool = [t for t in transactions if t.unallocated_amount > 0]
    return _search(pool, lambda t: t.unallocated_amount, target_amount, tolerance, max_items,
                   max_results, max_iterations, min_items)
