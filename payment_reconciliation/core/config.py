"""
Matching configuration loaded from a JSON rules file.

Example ``matching_rules.json``::

    {
      "decision": {"auto_match_threshold": 90},
      "fee_models": [
        {"name": "stripe", "rate": 0.029, "fixed": 0.30, "keywords": ["stripe"]}
      ],
      "fx_rates": {"EUR_USD": 1.08}
    }

Keys present in the file override the defaults below; missing keys keep them.
"""

import json
import os
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ValidationError

DEFAULT_RULES_PATH = Path("./matching_rules.json")


@dataclass
class FeeModel:
    """Processor fee schedule: received = amount * (1 - rate) - fixed."""
    name: str
    rate: float
    fixed: float = 0.0
    keywords: List[str] = field(default_factory=list)


DEFAULT_FEE_MODELS = [
    FeeModel("stripe", 0.029, 0.30, ["stripe"]),
    FeeModel("paypal", 0.029, 0.30, ["paypal", "pp"]),
    FeeModel("square", 0.026, 0.10, ["square", "sq"]),
    FeeModel("wise", 0.01, 0.0, ["wise", "transferwise"]),
    FeeModel("card", 0.03, 0.0, ["card", "visa", "mastercard", "amex"]),
]

# Approximate rates used when the caller supplies none, keyed "FROM_TO"
DEFAULT_FX_RATES = {
    "EUR_USD": 1.08, "GBP_USD": 1.27, "CHF_USD": 1.13, "CAD_USD": 0.74,
    "AUD_USD": 0.66, "JPY_USD": 0.0067, "SEK_USD": 0.095, "NOK_USD": 0.093,
    "DKK_USD": 0.145, "PLN_USD": 0.25, "MXN_USD": 0.058, "BRL_USD": 0.20,
    "INR_USD": 0.012, "SGD_USD": 0.74, "HKD_USD": 0.128, "NZD_USD": 0.61,
    "ZAR_USD": 0.055, "CNY_USD": 0.14,
}

# Currencies held at a fixed 1:1 parity with an anchor currency
DEFAULT_PEGGED_CURRENCIES = {
    "USD": ["AWG", "ANG", "XCG", "BSD", "BBD", "BZD", "BMD", "KYD", "XCD", "PAB"],
    "EUR": ["XOF", "XAF", "KMF"],
}


@dataclass
class DecisionConfig:
    auto_match_threshold: int = 85
    auto_match_margin: int = 20
    suggest_threshold: int = 60
    warning_threshold: int = 40
    tie_margin: int = 10
    max_alternatives: int = 3


@dataclass
class AmountConfig:
    exact_tolerance: float = 0.01
    fee_tolerance: float = 1.00
    partial_floor: float = 0.10
    clean_fractions: List[float] = field(default_factory=lambda: [0.5, 1 / 3, 0.25, 0.2])
    clean_fraction_tolerance: float = 0.02
    approximate_tolerance: float = 0.05
    fx_tolerance: float = 0.02


@dataclass
class SearchConfig:
    tolerance: float = 0.01
    max_items: int = 5
    max_results: int = 5
    max_iterations: int = 20000
    min_items: int = 2


@dataclass
class LearningConfig:
    initial_confidence_manual: float = 70.0
    initial_confidence_auto: float = 50.0
    manual_increment: float = 5.0
    auto_increment: float = 2.0
    max_confidence: float = 100.0
    max_typical_amounts: int = 10
    max_keywords: int = 15
    fuzzy_lookup_threshold: float = 0.85


@dataclass
class EscalationConfig:
    provider: str = field(default_factory=lambda: os.getenv("LLM_PROVIDER", "openai"))
    model: Optional[str] = field(default_factory=lambda: os.getenv("LLM_MODEL"))
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    history_limit: int = 5
    escalate_below: int = 60


@dataclass
class AllocationConfig:
    retry_attempts: int = 3
    tolerance: float = 0.01


@dataclass
class MatchingConfig:
    """All tunable thresholds and tables used by the engine."""
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    amount: AmountConfig = field(default_factory=AmountConfig)
    fee_models: List[FeeModel] = field(default_factory=lambda: list(DEFAULT_FEE_MODELS))
    fx_rates: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_FX_RATES))
    pegged_currencies: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_PEGGED_CURRENCIES.items()})
    search: SearchConfig = field(default_factory=SearchConfig)
    min_candidate_confidence: int = 20
    learning: LearningConfig = field(default_factory=LearningConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)

    def fee_model(self, name: str) -> Optional[FeeModel]:
        for m in self.fee_models:
            if m.name == name:
                return m
        return None

    def to_dict(self) -> Dict:
        return asdict(self)


def _merge_section(cls, raw: Optional[Dict], section: str):
    """Build a section dataclass from defaults overridden by raw keys."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ValidationError(f"Config section '{section}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValidationError(f"Unknown keys in config section '{section}': {', '.join(sorted(unknown))}",
                              details={"section": section, "keys": sorted(unknown)})
    return cls(**raw)


def config_from_dict(data: Dict) -> MatchingConfig:
    """Build a MatchingConfig from a parsed rules document."""
    config = MatchingConfig(
        decision=_merge_section(DecisionConfig, data.get("decision"), "decision"),
        amount=_merge_section(AmountConfig, data.get("amount"), "amount"),
        search=_merge_section(SearchConfig, data.get("search"), "search"),
        learning=_merge_section(LearningConfig, data.get("learning"), "learning"),
        escalation=_merge_section(EscalationConfig, data.get("escalation"), "escalation"),
        allocation=_merge_section(AllocationConfig, data.get("allocation"), "allocation"),
    )
    if "fee_models" in data:
        try:
            config.fee_models = [FeeModel(**m) for m in data["fee_models"]]
        except TypeError as e:
            raise ValidationError(f"Invalid fee model: {e}")
    if "fx_rates" in data:
        config.fx_rates.update({k.upper(): float(v) for k, v in data["fx_rates"].items()})
    if "pegged_currencies" in data:
        config.pegged_currencies = {k.upper(): [c.upper() for c in v]
                                    for k, v in data["pegged_currencies"].items()}
    if "min_candidate_confidence" in data:
        config.min_candidate_confidence = int(data["min_candidate_confidence"])

    d = config.decision
    if not (d.warning_threshold <= d.suggest_threshold <= d.auto_match_threshold):
        raise ValidationError("Decision thresholds must satisfy warning <= suggest <= auto_match")
    return config


def load_config(path: Optional[Path] = None) -> MatchingConfig:
    """Load matching configuration from JSON file (defaults when the file is absent)."""
    path = Path(path) if path else DEFAULT_RULES_PATH
    if not path.exists():
        return MatchingConfig()
    with path.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Could not parse {path}: {e}")
    return config_from_dict(data)
