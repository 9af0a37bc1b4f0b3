import logging

import pytest

from payment_reconciliation.core.combinations import find_document_combination, find_payment_combination

from conftest import make_doc, make_tx


def test_combined_payment_scenario():
    docs = [make_doc("r1", 1000, counterparty="RetailCo"), make_doc("r2", 2000, counterparty="RetailCo")]
    combos = find_document_combination(docs, 3000, tolerance=0.01, max_items=5)
    assert len(combos) == 1
    assert sorted(combos[0].item_ids) == ["r1", "r2"]
    assert combos[0].difference == pytest.approx(0.0)


def test_results_respect_tolerance_and_max_items():
    amounts = [120.0, 80.0, 45.5, 54.5, 200.0, 30.0, 70.0, 100.0, 25.25, 74.75]
    docs = [make_doc(f"d{i}", a) for i, a in enumerate(amounts)]
    combos = find_document_combination(docs, 200.0, tolerance=0.01, max_items=3, max_results=10)
    assert combos
    for c in combos:
        assert len(c) <= 3
        assert abs(sum(d.amount_remaining for d in c.items) - 200.0) <= 0.01
        assert c.total == pytest.approx(sum(d.amount_remaining for d in c.items))


def test_fewer_items_ranked_first():
    docs = [make_doc("a", 100), make_doc("b", 200), make_doc("c", 300), make_doc("d", 50), make_doc("e", 250)]
    combos = find_document_combination(docs, 300, max_items=3, max_results=10)
    sizes = [len(c) for c in combos]
    assert sizes == sorted(sizes)
    assert sizes[0] == 2


def test_min_items_allows_single_document():
    docs = [make_doc("a", 300), make_doc("b", 100), make_doc("c", 200)]
    combos = find_document_combination(docs, 300, min_items=1)
    assert combos[0].item_ids == ["a"]


def test_counterparty_filter():
    docs = [make_doc("a", 100, counterparty="RetailCo"), make_doc("b", 200, counterparty="Other Inc")]
    assert find_document_combination(docs, 300, counterparty="RetailCo") == []
    assert len(find_document_combination(docs, 300)) == 1


def test_paid_documents_are_ignored():
    paid = make_doc("a", 100, amount_paid=100)
    docs = [paid, make_doc("b", 100), make_doc("c", 100)]
    combos = find_document_combination(docs, 200)
    assert all("a" not in c.item_ids for c in combos)


def test_no_result_is_empty_list():
    docs = [make_doc("a", 100), make_doc("b", 200)]
    assert find_document_combination(docs, 1234.56) == []
    assert find_document_combination([], 100) == []
    assert find_document_combination(docs, 0) == []


def test_result_cap():
    docs = [make_doc(f"d{i}", 10) for i in range(12)]
    combos = find_document_combination(docs, 20, max_results=5)
    assert len(combos) == 5


def test_iteration_ceiling_stops_search(caplog):
    docs = [make_doc(f"d{i:02d}", 1.0) for i in range(40)]
    with caplog.at_level(logging.WARNING):
        combos = find_document_combination(docs, 4.5, max_items=5, max_iterations=50)
    assert combos == []
    assert "stopped after 50 iterations" in caplog.text


def test_payment_combination_installments():
    txs = [make_tx("t1", 500, date="2024-01-10"), make_tx("t2", 500, date="2024-02-10"),
           make_tx("t3", 75, date="2024-02-11")]
    combos = find_payment_combination(txs, 1000)
    assert len(combos) == 1
    assert sorted(combos[0].item_ids) == ["t1", "t2"]


def test_payment_combination_skips_allocated_transactions():
    from payment_reconciliation.core.models import PaymentAllocation

    used = make_tx("t1", 500)
    used.allocations.append(PaymentAllocation("t1", "other", 500))
    txs = [used, make_tx("t2", 500), make_tx("t3", 500)]
    combos = find_payment_combination(txs, 1000)
    assert [sorted(c.item_ids) for c in combos] == [["t2", "t3"]]
