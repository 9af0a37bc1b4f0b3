import pytest

from payment_reconciliation.core.config import DecisionConfig, EscalationConfig
from payment_reconciliation.core.decision import decide, rank_candidates, should_escalate
from payment_reconciliation.core.models import CandidateKind, DecisionAction, MatchCandidate, MatchSignals

from conftest import make_doc, make_tx


def candidate(doc_id, confidence, kind=CandidateKind.SINGLE):
    return MatchCandidate(kind=kind, transactions=[make_tx("t1", 100)], documents=[make_doc(doc_id, 100)],
                          signals=MatchSignals(confidence=confidence))


@pytest.fixture
def rules():
    return DecisionConfig()


def test_no_candidates(rules):
    d = decide([], rules, "transaction", "t1")
    assert d.action == DecisionAction.NO_MATCH
    assert d.primary is None


def test_low_confidence_is_no_match(rules):
    d = decide([candidate("a", 39)], rules)
    assert d.action == DecisionAction.NO_MATCH
    assert [c.document_ids for c in d.alternatives] == [["a"]]


def test_auto_match_alone(rules):
    d = decide([candidate("a", 95)], rules)
    assert d.action == DecisionAction.AUTO_MATCH
    assert d.primary.document_ids == ["a"]


def test_auto_match_needs_margin(rules):
    assert decide([candidate("a", 95), candidate("b", 74)], rules).action == DecisionAction.AUTO_MATCH
    assert decide([candidate("a", 95), candidate("b", 75)], rules).action == DecisionAction.SUGGEST


def test_suggest_lists_alternatives(rules):
    cands = [candidate("a", 70), candidate("b", 50), candidate("c", 45), candidate("d", 30), candidate("e", 25)]
    d = decide(cands, rules)
    assert d.action == DecisionAction.SUGGEST
    assert [c.document_ids[0] for c in d.alternatives] == ["b", "c", "d"]


def test_tie_presents_every_close_candidate(rules):
    cands = [candidate("a", 42), candidate("b", 42), candidate("c", 42), candidate("d", 20)]
    d = decide(cands, rules)
    assert d.action == DecisionAction.PRESENT_OPTIONS
    assert d.primary.document_ids == ["a"]
    assert [c.document_ids[0] for c in d.alternatives] == ["b", "c"]


def test_high_confidence_tie_is_never_auto_matched(rules):
    d = decide([candidate("a", 96), candidate("b", 90)], rules)
    assert d.action == DecisionAction.PRESENT_OPTIONS


def test_warning_band(rules):
    assert decide([candidate("a", 50)], rules).action == DecisionAction.SUGGEST_WITH_WARNING


def test_thresholds_are_configurable():
    strict = DecisionConfig(auto_match_threshold=98)
    assert decide([candidate("a", 95)], strict).action == DecisionAction.SUGGEST


def test_ranking_prefers_fewer_items_on_equal_confidence():
    combo = MatchCandidate(kind=CandidateKind.DOCUMENT_COMBINATION, transactions=[make_tx("t1", 300)],
                           documents=[make_doc("a", 100), make_doc("b", 200)], signals=MatchSignals(confidence=70))
    single = candidate("z", 70)
    assert rank_candidates([combo, single])[0] is single


@pytest.mark.parametrize("others", [[], [30], [50, 20], [60, 61, 10]])
def test_monotonic_in_own_confidence(rules, others):
    """Raising one candidate's confidence never lowers its category once auto-matched."""
    reached_auto = False
    for conf in range(0, 101):
        cands = [candidate("x", conf)] + [candidate(f"o{i}", c) for i, c in enumerate(others)]
        d = decide(cands, rules)
        if d.primary is not None and d.primary.document_ids == ["x"] and d.action == DecisionAction.AUTO_MATCH:
            reached_auto = True
        elif reached_auto:
            pytest.fail(f"confidence {conf} dropped out of auto_match to {d.action}")
    assert reached_auto


def test_should_escalate():
    esc = EscalationConfig(escalate_below=60)
    rules = DecisionConfig()
    assert should_escalate(decide([], rules), esc)
    assert should_escalate(decide([candidate("a", 42), candidate("b", 41)], rules), esc)
    assert not should_escalate(decide([candidate("a", 95)], rules), esc)
    assert not should_escalate(decide([candidate("a", 70)], rules), esc)
