import pytest

from payment_reconciliation.core.config import MatchingConfig
from payment_reconciliation.core.engine import ReconciliationEngine
from payment_reconciliation.core.errors import ConcurrencyConflictError, InvalidScopeError, NotFoundError, ValidationError
from payment_reconciliation.core.ledger import PaymentLedger
from payment_reconciliation.core.models import (
    AllocationMethod, PaymentStatus, ProposedAllocation, ReconciliationStatus, Scope,
)
from payment_reconciliation.core.store import MemoryStore

from conftest import FIXED_NOW, USER, make_doc, make_tx


def seed(store, scope, txs=(), docs=()):
    if txs:
        store.add_transactions(scope, list(txs))
    if docs:
        store.add_documents(scope, list(docs))


def assert_balanced(store, scope):
    """Every allocation appears on both sides and balances agree with it."""
    txs = {t.id: t for t in store.list_transactions(scope)}
    docs = {d.id: d for d in store.list_documents(scope)}
    for d in docs.values():
        assert d.amount_paid == pytest.approx(sum(a.amount for a in d.allocations), abs=0.005)
        assert d.amount_remaining == pytest.approx(d.total - d.amount_paid, abs=0.005)
        for a in d.allocations:
            assert a.key() in {x.key() for x in txs[a.transaction_id].allocations}
    for t in txs.values():
        assert t.allocated_amount <= t.absolute_amount + 0.01
        for a in t.allocations:
            assert a.key() in {x.key() for x in docs[a.document_id].allocations}


@pytest.fixture
def ledger(any_store, config):
    return PaymentLedger(any_store, config, now=lambda: FIXED_NOW)


def test_full_allocation_settles_both_sides(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    alloc = ledger.confirm_allocation(scope, "t1", "d1", 500)
    assert alloc.amount == 500
    assert alloc.allocated_at == FIXED_NOW

    doc = any_store.get_document(scope, "d1")
    tx = any_store.get_transaction(scope, "t1")
    assert doc.payment_status == PaymentStatus.PAID
    assert doc.reconciliation_status == ReconciliationStatus.MATCHED
    assert doc.amount_remaining == 0
    assert tx.status == ReconciliationStatus.MATCHED
    assert tx.version == 1 and doc.version == 1
    assert_balanced(any_store, scope)


def test_reconfirming_is_idempotent(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    first = ledger.confirm_allocation(scope, "t1", "d1", 500)
    again = ledger.confirm_allocation(scope, "t1", "d1", 500)
    assert again.key() == first.key()
    doc = any_store.get_document(scope, "d1")
    assert len(doc.allocations) == 1
    assert doc.version == 1


def test_partial_allocation_and_unlink_round_trip(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 200)], [make_doc("d1", 500)])
    before = any_store.get_document(scope, "d1")

    ledger.confirm_allocation(scope, "t1", "d1", 200)
    doc = any_store.get_document(scope, "d1")
    assert doc.payment_status == PaymentStatus.PARTIAL
    assert doc.reconciliation_status == ReconciliationStatus.PARTIAL
    assert doc.amount_remaining == 300

    removed = ledger.unlink_allocation(scope, "t1", "d1")
    assert [a.amount for a in removed] == [200]
    doc = any_store.get_document(scope, "d1")
    tx = any_store.get_transaction(scope, "t1")
    assert (doc.amount_paid, doc.amount_remaining, doc.payment_status) == \
        (before.amount_paid, before.amount_remaining, before.payment_status)
    assert doc.allocations == [] and tx.allocations == []
    assert tx.status == ReconciliationStatus.UNMATCHED


def test_unlink_unknown_pair(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 200)], [make_doc("d1", 500)])
    with pytest.raises(NotFoundError):
        ledger.unlink_allocation(scope, "t1", "d1")


def test_one_payment_split_across_documents(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 3000)],
         [make_doc("r1", 1000, counterparty="RetailCo"), make_doc("r2", 2000, counterparty="RetailCo")])
    ledger.confirm_allocations(scope, [ProposedAllocation("t1", "r1", 1000), ProposedAllocation("t1", "r2", 2000)])
    tx = any_store.get_transaction(scope, "t1")
    assert tx.is_fully_allocated
    assert len(tx.allocations) == 2
    assert_balanced(any_store, scope)


def test_failed_combination_commits_nothing(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 1500)],
         [make_doc("r1", 1000), make_doc("r2", 400)])
    with pytest.raises(ValidationError):
        ledger.confirm_allocations(scope, [ProposedAllocation("t1", "r1", 1000),
                                           ProposedAllocation("t1", "r2", 500)])
    assert any_store.get_document(scope, "r1").amount_paid == 0
    assert any_store.get_transaction(scope, "t1").allocations == []


def test_overpayment_is_rejected_unless_allowed(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 600)], [make_doc("d1", 500)])
    with pytest.raises(ValidationError, match="exceeds the remaining balance"):
        ledger.confirm_allocation(scope, "t1", "d1", 600)

    ledger.confirm_allocation(scope, "t1", "d1", 600, allow_overpayment=True)
    doc = any_store.get_document(scope, "d1")
    assert doc.payment_status == PaymentStatus.OVERPAID
    assert doc.amount_remaining == -100


def test_fully_allocated_transaction(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500), make_doc("d2", 500)])
    ledger.confirm_allocation(scope, "t1", "d1", 500)
    with pytest.raises(ValidationError, match="already been fully allocated"):
        ledger.confirm_allocation(scope, "t1", "d2", 100)


def test_amount_above_unallocated_remainder(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 300)], [make_doc("d1", 500)])
    with pytest.raises(ValidationError, match="unallocated remainder"):
        ledger.confirm_allocation(scope, "t1", "d1", 400)


def test_transaction_side_must_cover_document_side(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 100)], [make_doc("d1", 5000)])
    with pytest.raises(ValidationError, match="no processor fee explains"):
        ledger.confirm_allocation(scope, "t1", "d1", 5000, transaction_amount=0.01)
    doc = any_store.get_document(scope, "d1")
    assert doc.payment_status == PaymentStatus.UNPAID
    assert doc.allocations == []


def test_transaction_side_above_document_side(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 600)], [make_doc("d1", 500)])
    with pytest.raises(ValidationError, match="is more than"):
        ledger.confirm_allocation(scope, "t1", "d1", 500, transaction_amount=600)


def test_processor_fee_shortfall_is_accepted(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 9709.70, description="STRIPE TRANSFER")],
         [make_doc("d1", 10000, counterparty="Globex Ltd")])
    alloc = ledger.confirm_allocation(scope, "t1", "d1", 10000, transaction_amount=9709.70)
    assert alloc.transaction_side_amount == 9709.70
    assert any_store.get_document(scope, "d1").payment_status == PaymentStatus.PAID
    assert any_store.get_transaction(scope, "t1").is_fully_allocated


def test_allocation_tolerance_is_configurable(any_store, scope):
    config = MatchingConfig()
    config.allocation.tolerance = 0.50
    ledger = PaymentLedger(any_store, config, now=lambda: FIXED_NOW)
    seed(any_store, scope, [make_tx("t1", 499.75)], [make_doc("d1", 500)])
    alloc = ledger.confirm_allocation(scope, "t1", "d1", 500, transaction_amount=499.75)
    assert alloc.transaction_side_amount == 499.75


def test_zero_amount(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 300)], [make_doc("d1", 500)])
    with pytest.raises(ValidationError):
        ledger.confirm_allocation(scope, "t1", "d1", 0)


def test_direction_must_match_document_type(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", -500)], [make_doc("d1", 500)])
    with pytest.raises(ValidationError, match="cannot settle"):
        ledger.confirm_allocation(scope, "t1", "d1", 500)


def test_cross_currency_needs_rate(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 1080)], [make_doc("d1", 1000, currency="EUR")])
    with pytest.raises(ValidationError, match="exchange rate"):
        ledger.confirm_allocation(scope, "t1", "d1", 1000)

    alloc = ledger.confirm_allocation(scope, "t1", "d1", 1000, transaction_amount=1080, fx_rate=1.08)
    assert alloc.fx_rate == 1.08
    assert alloc.transaction_side_amount == 1080
    assert any_store.get_transaction(scope, "t1").is_fully_allocated
    assert any_store.get_document(scope, "d1").payment_status == PaymentStatus.PAID


def test_stale_write_is_a_conflict(any_store, scope):
    seed(any_store, scope, [make_tx("t1", 100)])
    a = any_store.get_transaction(scope, "t1")
    b = any_store.get_transaction(scope, "t1")
    a.category = "other"
    any_store.commit(scope, [a], [])
    b.category = "transfer"
    with pytest.raises(ConcurrencyConflictError):
        any_store.commit(scope, [b], [])
    assert any_store.get_transaction(scope, "t1").category == "other"


class FlakyStore(MemoryStore):
    """Loses the first `failures` commits to a simulated concurrent writer."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.commits = 0

    def commit(self, scope, transactions, documents):
        self.commits += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConcurrencyConflictError("simulated race")
        return super().commit(scope, transactions, documents)


def test_lost_race_is_retried(scope):
    store = FlakyStore(failures=1)
    seed(store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    PaymentLedger(store, MatchingConfig()).confirm_allocation(scope, "t1", "d1", 500)
    assert store.commits == 2
    assert store.get_document(scope, "d1").payment_status == PaymentStatus.PAID


def test_retries_are_bounded(scope):
    store = FlakyStore(failures=10)
    seed(store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    with pytest.raises(ConcurrencyConflictError):
        PaymentLedger(store, MatchingConfig()).confirm_allocation(scope, "t1", "d1", 500)
    assert store.commits == 3


def test_categorize_and_uncategorize(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", -12.5, description="MONTHLY SERVICE FEE")], [])
    tx = ledger.categorize_transaction(scope, "t1", "bank_fees")
    assert tx.status == ReconciliationStatus.CATEGORIZED
    assert any_store.list_transactions(scope, open_only=True) == []

    tx = ledger.uncategorize_transaction(scope, "t1")
    assert tx.category is None
    assert tx.status == ReconciliationStatus.UNMATCHED
    assert [t.id for t in any_store.list_transactions(scope, open_only=True)] == ["t1"]


def test_categorized_transaction_cannot_be_allocated(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    ledger.categorize_transaction(scope, "t1", "transfer")
    with pytest.raises(ValidationError, match="categorized"):
        ledger.confirm_allocation(scope, "t1", "d1", 500)


def test_allocated_transaction_cannot_be_categorized(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    ledger.confirm_allocation(scope, "t1", "d1", 500)
    with pytest.raises(ValidationError):
        ledger.categorize_transaction(scope, "t1", "transfer")


def test_unknown_category(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [])
    with pytest.raises(ValidationError, match="Unknown category"):
        ledger.categorize_transaction(scope, "t1", "groceries")


def test_other_users_records_are_invisible(any_store, ledger, scope):
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    other = Scope(user_id="user-2")
    with pytest.raises(NotFoundError):
        ledger.confirm_allocation(other, "t1", "d1", 500)
    assert any_store.list_transactions(other) == []


def test_missing_scope(ledger):
    with pytest.raises(InvalidScopeError):
        ledger.confirm_allocation(None, "t1", "d1", 500)
    with pytest.raises(InvalidScopeError):
        ledger.confirm_allocation(Scope(user_id=" "), "t1", "d1", 500)


def test_confirmation_feeds_pattern_learning(any_store, config, scope):
    engine = ReconciliationEngine(any_store, config, now=lambda: FIXED_NOW)
    seed(any_store, scope, [make_tx("t1", 500, description="ACME CORP PAYMENT")], [make_doc("d1", 500)])
    engine.confirm_allocation(scope, "t1", "d1", 500)

    pattern = any_store.get_vendor_pattern(scope, "acme corp")
    assert pattern.match_count == 1
    assert pattern.manual_match_count == 1
    assert pattern.learning_confidence == 70
    history = any_store.list_match_history(scope, "acme corp")
    assert [h.transaction_id for h in history] == ["t1"]
    assert history[0].user_id == USER


def test_auto_method_starts_lower(any_store, config, scope):
    engine = ReconciliationEngine(any_store, config, now=lambda: FIXED_NOW)
    seed(any_store, scope, [make_tx("t1", 500)], [make_doc("d1", 500)])
    engine.confirm_allocation(scope, "t1", "d1", 500, method=AllocationMethod.AUTO, confidence=95)
    assert any_store.get_vendor_pattern(scope, "acme corp").learning_confidence == 50
