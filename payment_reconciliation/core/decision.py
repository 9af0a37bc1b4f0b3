"""
Decision policy: map ranked candidates for one anchor item to an action.
"""

from typing import List, Sequence

from .config import DecisionConfig, EscalationConfig
from .models import DecisionAction, MatchCandidate, MatchDecision


def rank_candidates(candidates: Sequence[MatchCandidate]) -> List[MatchCandidate]:
    """Order by confidence, then fewer items, then ids."""
    return sorted(candidates, key=lambda c: c.sort_key())


def decide(candidates: Sequence[MatchCandidate], config: DecisionConfig,
           anchor_type: str = "transaction", anchor_id: str = "") -> MatchDecision:
    """
    Choose an action for one anchor.

    Rules, first that applies:
      1. no candidates, or best below warning_threshold -> no_match
      2. best >= auto_match_threshold and more than auto_match_margin ahead
         of the closest runner-up -> auto_match
      3. closest runner-up within tie_margin -> present_options
         (every candidate within tie_margin of the best is listed)
      4. best >= suggest_threshold -> suggest
      5. otherwise -> suggest_with_warning

    The closest runner-up is the highest-scoring of all other candidates,
    so a cluster of near-equal candidates is never resolved silently.
    """
    ranked = rank_candidates(candidates)
    decision = MatchDecision(action=DecisionAction.NO_MATCH, anchor_type=anchor_type, anchor_id=anchor_id)

    if not ranked:
        decision.reasons.append("No candidates found")
        return decision

    top = ranked[0]
    others = ranked[1:]
    if top.confidence < config.warning_threshold:
        decision.alternatives = ranked[:config.max_alternatives]
        decision.reasons.append(
            f"Best candidate confidence {top.confidence} is below {config.warning_threshold}")
        return decision

    decision.primary = top
    runner_up = others[0] if others else None
    margin = top.confidence - runner_up.confidence if runner_up else None

    if top.confidence >= config.auto_match_threshold and (margin is None or margin > config.auto_match_margin):
        decision.action = DecisionAction.AUTO_MATCH
        if runner_up:
            decision.reasons.append(f"Confidence {top.confidence}, {margin} points ahead of the next candidate")
        else:
            decision.reasons.append(f"Confidence {top.confidence} with no competing candidate")
        return decision

    if margin is not None and margin <= config.tie_margin:
        decision.action = DecisionAction.PRESENT_OPTIONS
        decision.alternatives = [c for c in others if top.confidence - c.confidence <= config.tie_margin]
        decision.reasons.append(
            f"{len(decision.alternatives) + 1} candidates within {config.tie_margin} points "
            f"of each other; choose one")
        return decision

    decision.alternatives = others[:config.max_alternatives]
    if top.confidence >= config.suggest_threshold:
        decision.action = DecisionAction.SUGGEST
        decision.reasons.append(f"Confidence {top.confidence}; confirm the suggested match")
    else:
        decision.action = DecisionAction.SUGGEST_WITH_WARNING
        decision.reasons.append(f"Low confidence {top.confidence}; review carefully before confirming")
    return decision


def should_escalate(decision: MatchDecision, config: EscalationConfig) -> bool:
    """No match, or a tie among low-confidence options."""
    if decision.action == DecisionAction.NO_MATCH:
        return True
    return decision.action == DecisionAction.PRESENT_OPTIONS and decision.confidence < config.escalate_below
