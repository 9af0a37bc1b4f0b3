import json

import pytest

from payment_reconciliation.core.engine import ReconciliationEngine
from payment_reconciliation.core.escalation import EscalationAdapter
from payment_reconciliation.core.models import (
    AllocationMethod, CandidateKind, DecisionAction, PaymentStatus, VendorPattern,
)

from conftest import FIXED_NOW, USER, make_doc, make_tx


def seed(store, scope, txs=(), docs=()):
    if txs:
        store.add_transactions(scope, list(txs))
    if docs:
        store.add_documents(scope, list(docs))


def test_exact_match_is_auto_confirmed(any_store, config, scope):
    engine = ReconciliationEngine(any_store, config, now=lambda: FIXED_NOW)
    seed(any_store, scope,
         [make_tx("t1", 5000, date="2024-01-14", description="ACME CORP PAYMENT INV001")],
         [make_doc("d1", 5000, number="INV-001", counterparty="Acme Corp")])

    decision = engine.match_transaction(scope, "t1")
    assert decision.action == DecisionAction.AUTO_MATCH
    assert decision.confidence >= 90

    summary = engine.reconcile(scope)
    assert summary.auto_confirmed == 1
    doc = any_store.get_document(scope, "d1")
    assert doc.payment_status == PaymentStatus.PAID
    assert doc.allocations[0].method == AllocationMethod.AUTO
    assert any_store.get_vendor_pattern(scope, "acme corp").learning_confidence == 50


def test_fee_adjusted_payment_is_suggested_with_history(store, engine, scope):
    store.save_vendor_pattern(scope, VendorPattern(
        user_id=USER, counterparty_key="globex ltd", counterparty_name="Globex Ltd",
        transaction_keywords=["stripe"], payment_processor="stripe", payment_processors=["stripe"],
        typical_amounts=[10000.0], match_count=3, learning_confidence=56.0))
    seed(store, scope, [make_tx("t1", 9710, date="2024-01-15", description="STRIPE TRANSFER")],
         [make_doc("d1", 10000, number="GX-77", counterparty="Globex Ltd")])

    decision = engine.match_transaction(scope, "t1")
    assert decision.action == DecisionAction.SUGGEST
    assert decision.primary.signals.amount_match_type.value == "fee_adjusted"

    engine.confirm_candidate(scope, decision.primary)
    doc = store.get_document(scope, "d1")
    tx = store.get_transaction(scope, "t1")
    assert doc.payment_status == PaymentStatus.PAID
    assert tx.is_fully_allocated


def test_combined_payment(store, engine, scope):
    seed(store, scope, [make_tx("t1", 3000, date="2024-01-15", description="RETAILCO MONTHLY")],
         [make_doc("r1", 1000, counterparty="RetailCo"), make_doc("r2", 2000, counterparty="RetailCo")])

    decision = engine.match_transaction(scope, "t1")
    assert decision.action in (DecisionAction.SUGGEST, DecisionAction.AUTO_MATCH)
    assert decision.primary.kind == CandidateKind.DOCUMENT_COMBINATION
    assert sorted(decision.primary.document_ids) == ["r1", "r2"]

    allocations = engine.confirm_candidate(scope, decision.primary)
    assert len(allocations) == 2
    assert all(store.get_document(scope, d).payment_status == PaymentStatus.PAID for d in ("r1", "r2"))


def test_duplicate_amounts_present_options(store, engine, scope):
    seed(store, scope, [make_tx("t1", 500, date="2024-01-15", description="DEPOSIT")],
         [make_doc("d1", 500, counterparty="Alpha Inc"), make_doc("d2", 500, counterparty="Beta LLC"),
          make_doc("d3", 500, counterparty="Gamma Co")])

    decision = engine.match_transaction(scope, "t1")
    assert decision.action == DecisionAction.PRESENT_OPTIONS
    assert sorted(c.document_ids[0] for c in decision.candidates) == ["d1", "d2", "d3"]

    engine.reconcile(scope)
    assert all(store.get_document(scope, d).payment_status == PaymentStatus.UNPAID for d in ("d1", "d2", "d3"))


def test_match_from_the_document_side(store, engine, scope):
    seed(store, scope, [make_tx("t1", 5000, description="ACME CORP PAYMENT INV001"), make_tx("t2", 120)],
         [make_doc("d1", 5000, number="INV-001")])
    decision = engine.match_document(scope, "d1")
    assert decision.anchor_type == "document"
    assert decision.primary.transaction_ids == ["t1"]


def test_reconcile_sees_earlier_confirmations(store, engine, scope):
    seed(store, scope,
         [make_tx("t1", 500, date="2024-01-14", description="ACME CORP PAYMENT INV9"),
          make_tx("t2", 500, date="2024-01-20", description="ACME CORP PAYMENT INV9")],
         [make_doc("d1", 500, number="INV-9")])
    summary = engine.reconcile(scope)
    assert summary.total_transactions == 2
    assert summary.auto_confirmed == 1
    assert [d.action for d in summary.decisions] == [DecisionAction.AUTO_MATCH, DecisionAction.NO_MATCH]
    assert store.get_document(scope, "d1").allocations[0].transaction_id == "t1"


def test_reconcile_summary_without_auto_confirm(store, engine, scope):
    seed(store, scope,
         [make_tx("t1", 5000, description="ACME CORP PAYMENT INV001"),
          make_tx("fee", -12.5, date="2024-01-31", description="MONTHLY SERVICE FEE")],
         [make_doc("d1", 5000, number="INV-001")])
    summary = engine.reconcile(scope, auto_confirm=False)
    assert summary.total_transactions == 2
    assert summary.auto_confirmed == 0
    assert summary.counts["auto_match"] == 1
    assert summary.counts["no_match"] == 1
    assert summary.match_rate == 0.0
    assert store.get_document(scope, "d1").payment_status == PaymentStatus.UNPAID
    assert json.dumps(summary.to_dict())


def test_reconcile_escalates_unresolved(store, config, scope):
    prompts = []

    def investigator(prompt):
        prompts.append(prompt)
        return json.dumps({"status": "explanation_found", "confidence": 90,
                           "explanation": "Monthly account fee", "suggested_action": "ignore",
                           "matched_transaction_ids": [], "matched_document_ids": []})

    adapter = EscalationAdapter(transport=investigator, sleep=lambda s: None)
    engine = ReconciliationEngine(store, config, adapter, now=lambda: FIXED_NOW)
    seed(store, scope, [make_tx("fee", -12.5, description="MONTHLY SERVICE FEE")], [])
    summary = engine.reconcile(scope, escalate=True)
    decision = summary.decisions[0]
    assert decision.action == DecisionAction.NO_MATCH
    assert decision.escalation.suggested_action == "ignore"
    assert "MONTHLY SERVICE FEE" in prompts[0]


def test_rejected_suggestion_is_not_offered_again(store, engine, scope):
    seed(store, scope, [make_tx("t1", 5000, description="ACME CORP PAYMENT INV001")],
         [make_doc("d1", 5000, number="INV-001")])
    assert engine.match_transaction(scope, "t1").primary is not None
    engine.reject_match(scope, "t1", "d1")
    assert engine.match_transaction(scope, "t1").action == DecisionAction.NO_MATCH


def test_learning_raises_confidence_for_the_next_payment(store, engine, scope):
    seed(store, scope, [make_tx("s1", 9709.70, date="2024-01-15", description="STRIPE TRANSFER")],
         [make_doc("g1", 10000, number="GX-1", counterparty="Globex Ltd")])
    before = engine.match_transaction(scope, "s1")
    engine.confirm_allocation(scope, "s1", "g1", 10000, transaction_amount=9709.70)

    pattern = store.get_vendor_pattern(scope, "globex ltd")
    assert pattern.payment_processor == "stripe"
    assert "stripe" in pattern.transaction_keywords

    seed(store, scope, [make_tx("s2", 9709.70, date="2024-02-15", description="STRIPE TRANSFER")],
         [make_doc("g2", 10000, number="GX-2", counterparty="Globex Ltd", issue="2024-02-01", due="2024-02-15")])
    after = engine.match_transaction(scope, "s2")
    assert after.primary.document_ids == ["g2"]
    assert after.confidence > before.confidence
    assert after.primary.signals.identity_score == 20


def test_unlink_reopens_document(store, engine, scope):
    seed(store, scope, [make_tx("t1", 5000, description="ACME CORP PAYMENT INV001")],
         [make_doc("d1", 5000, number="INV-001")])
    engine.reconcile(scope)
    engine.unlink_allocation(scope, "t1", "d1")
    assert store.get_document(scope, "d1").payment_status == PaymentStatus.UNPAID
    assert engine.match_transaction(scope, "t1").action == DecisionAction.AUTO_MATCH


@pytest.mark.parametrize("category", ["bank_fees", "transfer"])
def test_categorized_transactions_are_skipped(store, engine, scope, category):
    seed(store, scope, [make_tx("t1", -12.5, description="MONTHLY SERVICE FEE")], [])
    engine.categorize_transaction(scope, "t1", category)
    assert engine.reconcile(scope).total_transactions == 0
