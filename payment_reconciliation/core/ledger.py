"""
Payment allocation ledger.

Confirming or unlinking an allocation reads the affected transaction and
document, validates, updates balances and statuses on both, and writes them
back in one store commit. A lost race is retried from a fresh read.
"""

import datetime as dt
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import MatchingConfig
from .currency import currencies_equivalent
from .errors import ConcurrencyConflictError, NotFoundError, ReconciliationError, ValidationError
from .models import (
    AllocationMethod, Document, PaymentAllocation, PaymentStatus, ProposedAllocation, ReconciliationStatus,
    Scope, Transaction, require_scope,
)
from .patterns import PatternLearner
from .store import ReconciliationStore
from .utils import MONEY_TOLERANCE, money_fmt, round_money, utcnow

logger = logging.getLogger(__name__)

TRANSACTION_CATEGORIES = [
    "bank_fees", "transfer", "subscription", "interest", "refund", "payroll", "tax", "other",
]

# Half a cent: amounts are compared at cent precision
_CENT_EPSILON = 0.005


def refresh_document_status(document: Document):
    """Recompute remaining balance and statuses from amount_paid."""
    document.amount_paid = round_money(document.amount_paid)
    document.amount_remaining = round_money(document.total - document.amount_paid)
    document.payment_status = PaymentStatus.for_balance(document.total, document.amount_paid)

    if document.payment_status in (PaymentStatus.PAID, PaymentStatus.OVERPAID):
        document.reconciliation_status = ReconciliationStatus.MATCHED
    elif document.allocations:
        document.reconciliation_status = ReconciliationStatus.PARTIAL
    else:
        document.reconciliation_status = ReconciliationStatus.UNMATCHED


def refresh_transaction_status(transaction: Transaction):
    if transaction.category:
        transaction.status = ReconciliationStatus.CATEGORIZED
    elif not transaction.allocations:
        transaction.status = ReconciliationStatus.UNMATCHED
    elif transaction.unallocated_amount > MONEY_TOLERANCE:
        transaction.status = ReconciliationStatus.PARTIAL
    else:
        transaction.status = ReconciliationStatus.MATCHED


def find_allocation(transaction: Transaction, document_id: str,
                    amount: Optional[float] = None) -> Optional[PaymentAllocation]:
    for a in transaction.allocations:
        if a.document_id == document_id and (amount is None or abs(a.amount - amount) < _CENT_EPSILON):
            return a
    return None


def apply_allocation(transaction: Transaction, document: Document, allocation: PaymentAllocation):
    """Append an allocation to both sides and refresh balances (in place)."""
    transaction.allocations.append(allocation)
    document.allocations.append(allocation)
    document.amount_paid = round_money(document.amount_paid + allocation.amount)
    refresh_document_status(document)
    refresh_transaction_status(transaction)


def remove_allocation(transaction: Transaction, document: Document, allocation: PaymentAllocation):
    """Exact inverse of apply_allocation (in place)."""
    transaction.allocations = [a for a in transaction.allocations if a.key() != allocation.key()]
    document.allocations = [a for a in document.allocations if a.key() != allocation.key()]
    document.amount_paid = round_money(document.amount_paid - allocation.amount)
    refresh_document_status(document)
    refresh_transaction_status(transaction)


def check_received_amount(amount: float, received: float, document: Document, config: MatchingConfig):
    """
    Same-currency allocations move equal amounts on both sides, unless the
    shortfall on the transaction side is a configured processor fee.
    """
    gap = round_money(amount - received)
    if abs(gap) <= config.allocation.tolerance:
        return
    if gap < 0:
        raise ValidationError(
            f"Transaction amount {money_fmt(received, document.currency)} is more than the "
            f"{money_fmt(amount, document.currency)} allocated to {document.document_number or document.id}",
            details={"document_id": document.id, "amount": amount, "transaction_amount": received})
    for model in config.fee_models:
        expected = amount * (1 - model.rate) - model.fixed
        if abs(received - expected) <= config.amount.fee_tolerance:
            return
    raise ValidationError(
        f"Transaction amount {money_fmt(received, document.currency)} is {money_fmt(gap, document.currency)} "
        f"short of {money_fmt(amount, document.currency)} and no processor fee explains the difference",
        details={"document_id": document.id, "amount": amount, "transaction_amount": received})


def validate_allocation(transaction: Transaction, document: Document, amount: float,
                        transaction_amount: Optional[float], fx_rate: Optional[float],
                        allow_overpayment: bool, config: MatchingConfig) -> Tuple[float, float]:
    """
    Check an allocation against both balances.

    Returns (transaction-side amount, fx rate). Raises ValidationError with a
    message suitable for showing to the user.
    """
    if amount is None or amount <= 0:
        raise ValidationError("Allocation amount must be greater than zero", details={"amount": amount})
    if transaction.category:
        raise ValidationError(f"Transaction {transaction.id} is categorized as '{transaction.category}'; "
                              f"uncategorize it before matching")
    if transaction.direction != document.expected_direction:
        raise ValidationError(
            f"A {transaction.direction.value} transaction cannot settle a {document.document_type.value}",
            details={"transaction_id": transaction.id, "document_id": document.id})

    if currencies_equivalent(transaction.currency, document.currency, config.pegged_currencies):
        rate = 1.0
        tx_side = transaction_amount if transaction_amount is not None else amount
        check_received_amount(amount, round_money(tx_side), document, config)
    else:
        if not fx_rate or fx_rate <= 0:
            raise ValidationError(
                f"An exchange rate is required to allocate {transaction.currency} to {document.currency}",
                details={"transaction_currency": transaction.currency, "document_currency": document.currency})
        rate = fx_rate
        tx_side = transaction_amount if transaction_amount is not None else round_money(amount / fx_rate)
    tx_side = round_money(tx_side)

    if tx_side <= 0:
        raise ValidationError("Allocated transaction amount must be greater than zero")
    available = transaction.unallocated_amount
    if tx_side - available > _CENT_EPSILON:
        if available <= MONEY_TOLERANCE:
            raise ValidationError("This transaction has already been fully allocated",
                                  details={"transaction_id": transaction.id})
        raise ValidationError(
            f"Amount {money_fmt(tx_side, transaction.currency)} exceeds the transaction's unallocated "
            f"remainder of {money_fmt(available, transaction.currency)}",
            details={"transaction_id": transaction.id, "available": available})

    remaining = document.amount_remaining
    if not allow_overpayment and amount - remaining > _CENT_EPSILON:
        if remaining <= MONEY_TOLERANCE:
            raise ValidationError(f"Document {document.document_number or document.id} is already fully paid",
                                  details={"document_id": document.id})
        raise ValidationError(
            f"Amount {money_fmt(amount, document.currency)} exceeds the remaining balance of "
            f"{money_fmt(remaining, document.currency)} on {document.document_number or document.id}",
            details={"document_id": document.id, "remaining": remaining})
    return tx_side, rate


class PaymentLedger:
    """Applies confirmed matches and keeps both sides' balances consistent."""

    def __init__(self, store: ReconciliationStore, config: MatchingConfig,
                 learner: Optional[PatternLearner] = None, now: Callable[[], dt.datetime] = utcnow):
        self.store = store
        self.config = config
        self.learner = learner
        self.now = now

    def _with_retry(self, operation, label: str):
        attempts = max(1, self.config.allocation.retry_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except ConcurrencyConflictError:
                if attempt >= attempts:
                    logger.warning("%s lost %d races, giving up", label, attempts)
                    raise
                logger.info("%s conflicted, retrying (%d/%d)", label, attempt, attempts)

    def confirm_allocation(self, scope: Scope, transaction_id: str, document_id: str, amount: float,
                           method: AllocationMethod = AllocationMethod.MANUAL, confidence: int = 100,
                           transaction_amount: Optional[float] = None, fx_rate: Optional[float] = None,
                           allow_overpayment: bool = False) -> PaymentAllocation:
        """
        Allocate `amount` (document currency) of a transaction to a document.

        Re-confirming the same (transaction, document, amount) returns the
        existing allocation without writing anything.
        """
        proposal = ProposedAllocation(transaction_id, document_id, round_money(amount),
                                      transaction_amount, fx_rate)
        return self.confirm_allocations(scope, [proposal], method, confidence, allow_overpayment)[0]

    def confirm_allocations(self, scope: Scope, proposals: Sequence[ProposedAllocation],
                            method: AllocationMethod = AllocationMethod.MANUAL, confidence: int = 100,
                            allow_overpayment: bool = False) -> List[PaymentAllocation]:
        """Apply several allocations (e.g. a combination) as one atomic commit."""
        scope = require_scope(scope)
        if not proposals:
            raise ValidationError("No allocations to confirm")

        def attempt():
            transactions: Dict[str, Transaction] = {}
            documents: Dict[str, Document] = {}
            results: List[PaymentAllocation] = []
            created: List[PaymentAllocation] = []
            for p in proposals:
                if p.transaction_id not in transactions:
                    transactions[p.transaction_id] = self.store.get_transaction(scope, p.transaction_id)
                if p.document_id not in documents:
                    documents[p.document_id] = self.store.get_document(scope, p.document_id)
                tx, doc = transactions[p.transaction_id], documents[p.document_id]

                existing = find_allocation(tx, doc.id, p.amount)
                if existing is not None:
                    results.append(existing)
                    continue

                tx_side, rate = validate_allocation(tx, doc, p.amount, p.transaction_amount, p.fx_rate,
                                                    allow_overpayment, self.config)
                allocation = PaymentAllocation(
                    transaction_id=tx.id,
                    document_id=doc.id,
                    amount=round_money(p.amount),
                    method=method,
                    confidence=confidence,
                    allocated_at=self.now(),
                    transaction_amount=tx_side if tx_side != round_money(p.amount) or rate != 1.0 else None,
                    fx_rate=rate,
                )
                apply_allocation(tx, doc, allocation)
                results.append(allocation)
                created.append(allocation)

            if created:
                touched_tx = {a.transaction_id for a in created}
                touched_doc = {a.document_id for a in created}
                self.store.commit(scope,
                                  [t for t in transactions.values() if t.id in touched_tx],
                                  [d for d in documents.values() if d.id in touched_doc])
            return results, created, transactions, documents

        results, created, transactions, documents = self._with_retry(attempt, "Allocation")
        for a in created:
            logger.info("Allocated %.2f of %s to %s (%s, confidence %d)",
                        a.amount, a.transaction_id, a.document_id, a.method.value, a.confidence)
            self._learn(scope, transactions[a.transaction_id], documents[a.document_id], a)
        return results

    def _learn(self, scope: Scope, transaction: Transaction, document: Document, allocation: PaymentAllocation):
        if self.learner is None:
            return
        try:
            self.learner.record_confirmation(scope, transaction, document, allocation)
        except ReconciliationError as e:
            # allocation is already committed; the pattern update can be replayed later
            logger.warning("Pattern learning failed for %s -> %s: %s",
                           allocation.transaction_id, allocation.document_id, e.message)

    def unlink_allocation(self, scope: Scope, transaction_id: str, document_id: str,
                          amount: Optional[float] = None) -> List[PaymentAllocation]:
        """
        Reverse allocation(s) between a transaction and a document.

        With `amount`, only the allocation of that amount is removed;
        without it, every allocation between the pair is removed.
        """
        scope = require_scope(scope)

        def attempt():
            tx = self.store.get_transaction(scope, transaction_id)
            doc = self.store.get_document(scope, document_id)
            matching = [a for a in tx.allocations if a.document_id == document_id
                        and (amount is None or abs(a.amount - amount) < _CENT_EPSILON)]
            if not matching:
                raise NotFoundError(f"No allocation between {transaction_id} and {document_id}",
                                    details={"transaction_id": transaction_id, "document_id": document_id})
            for a in matching:
                remove_allocation(tx, doc, a)
            self.store.commit(scope, [tx], [doc])
            return matching

        removed = self._with_retry(attempt, "Unlink")
        for a in removed:
            logger.info("Unlinked %.2f of %s from %s", a.amount, transaction_id, document_id)
        return removed

    def categorize_transaction(self, scope: Scope, transaction_id: str, category: str) -> Transaction:
        """Mark a transaction that has no document (fees, transfers, ...) as categorized."""
        scope = require_scope(scope)
        if category not in TRANSACTION_CATEGORIES:
            raise ValidationError(f"Unknown category '{category}'; expected one of: "
                                  f"{', '.join(TRANSACTION_CATEGORIES)}", details={"category": category})

        def attempt():
            tx = self.store.get_transaction(scope, transaction_id)
            if tx.allocations:
                raise ValidationError(f"Transaction {transaction_id} has allocations; unlink them first")
            tx.category = category
            refresh_transaction_status(tx)
            self.store.commit(scope, [tx], [])
            return tx

        tx = self._with_retry(attempt, "Categorize")
        logger.info("Categorized %s as %s", transaction_id, category)
        return tx

    def uncategorize_transaction(self, scope: Scope, transaction_id: str) -> Transaction:
        scope = require_scope(scope)

        def attempt():
            tx = self.store.get_transaction(scope, transaction_id)
            tx.category = None
            refresh_transaction_status(tx)
            self.store.commit(scope, [tx], [])
            return tx

        return self._with_retry(attempt, "Uncategorize")
