import pytest

from payment_reconciliation.core.candidates import CandidateGenerator, rejected_pairs
from payment_reconciliation.core.errors import InvalidScopeError
from payment_reconciliation.core.models import (
    CandidateKind, DocumentType, PaymentAllocation, Scope, VendorPattern,
)

from conftest import USER, make_doc, make_tx


@pytest.fixture
def generator(config):
    return CandidateGenerator(config)


def test_direction_filter(generator, scope):
    docs = [make_doc("inv", 500), make_doc("bill", 500, document_type=DocumentType.BILL)]
    incoming = generator.for_transaction(scope, make_tx("t1", 500), docs)
    outgoing = generator.for_transaction(scope, make_tx("t2", -500), docs)
    assert {c.document_ids[0] for c in incoming} == {"inv"}
    assert {c.document_ids[0] for c in outgoing} == {"bill"}


def test_paid_documents_are_not_candidates(generator, scope):
    docs = [make_doc("d1", 500, amount_paid=500), make_doc("d2", 500)]
    found = generator.for_transaction(scope, make_tx("t1", 500), docs)
    assert [c.document_ids for c in found] == [["d2"]]


def test_other_currency_needs_opt_in(generator, scope):
    docs = [make_doc("d1", 1000, currency="EUR")]
    tx = make_tx("t1", 1080, description="ACME CORP PAYMENT")
    assert generator.for_transaction(scope, tx, docs) == []
    found = generator.for_transaction(scope, tx, docs, allow_cross_currency=True)
    assert found[0].signals.cross_currency


def test_fully_allocated_transaction_has_no_candidates(generator, scope):
    tx = make_tx("t1", 500)
    tx.allocations.append(PaymentAllocation("t1", "x", 500))
    assert generator.for_transaction(scope, tx, [make_doc("d1", 500)]) == []


def test_categorized_transaction_has_no_candidates(generator, scope):
    tx = make_tx("t1", 500, category="transfer")
    assert generator.for_transaction(scope, tx, [make_doc("d1", 500)]) == []


def test_rejected_pair_is_excluded(generator, scope):
    pattern = VendorPattern(user_id=USER, counterparty_key="acme corp", counterparty_name="Acme Corp",
                            rejected_matches=[("t1", "d1")])
    assert rejected_pairs([pattern]) == {("t1", "d1")}
    docs = [make_doc("d1", 500), make_doc("d2", 500)]
    found = generator.for_transaction(scope, make_tx("t1", 500), docs, [pattern])
    assert all("d1" not in c.document_ids for c in found)
    found = generator.for_document(scope, docs[0], [make_tx("t1", 500)], [pattern])
    assert found == []


def test_document_combination_within_counterparty(generator, scope):
    docs = [make_doc("r1", 1000, counterparty="RetailCo"), make_doc("r2", 2000, counterparty="RetailCo"),
            make_doc("x1", 1000, counterparty="Other Inc")]
    found = generator.for_transaction(scope, make_tx("t1", 3000, description="RETAILCO MONTHLY"), docs)
    combos = [c for c in found if c.kind == CandidateKind.DOCUMENT_COMBINATION]
    assert [sorted(c.document_ids) for c in combos] == [["r1", "r2"]]
    assert sum(a.amount for a in combos[0].allocations) == pytest.approx(3000)


def test_installments_for_document(generator, scope):
    doc = make_doc("d1", 1000, issue="2024-01-01")
    txs = [make_tx("t1", 500, date="2024-01-10"), make_tx("t2", 500, date="2024-02-10"),
           make_tx("t0", 500, date="2023-10-01")]
    found = generator.for_document(scope, doc, txs)
    combos = [c for c in found if c.kind == CandidateKind.PAYMENT_COMBINATION]
    assert combos
    for c in combos:
        assert "t0" not in c.transaction_ids


def test_candidates_are_ranked(generator, scope):
    docs = [make_doc("d1", 5000, number="INV-001"), make_doc("d2", 4990, number="INV-777")]
    found = generator.for_transaction(scope, make_tx("t1", 5000, description="ACME CORP PAYMENT INV001"), docs)
    confidences = [c.confidence for c in found]
    assert confidences == sorted(confidences, reverse=True)
    assert found[0].document_ids == ["d1"]


def test_record_outside_scope(generator):
    with pytest.raises(InvalidScopeError):
        generator.for_transaction(Scope(user_id="someone-else"), make_tx("t1", 500), [])
    with pytest.raises(InvalidScopeError):
        generator.for_document(None, make_doc("d1", 500), [])


def test_other_users_documents_are_ignored(generator, scope):
    docs = [make_doc("d1", 500, user_id="user-2")]
    assert generator.for_transaction(scope, make_tx("t1", 500), docs) == []


def test_account_scope_limits_transactions(generator):
    scope = Scope(user_id=USER, account_id="checking")
    txs = [make_tx("t1", 500, account_id="checking"), make_tx("t2", 500, account_id="savings")]
    found = generator.for_document(scope, make_doc("d1", 500), txs)
    assert {tid for c in found for tid in c.transaction_ids} == {"t1"}
