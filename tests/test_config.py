import json

import pytest

from payment_reconciliation.core.config import MatchingConfig, config_from_dict, load_config
from payment_reconciliation.core.errors import ValidationError


def write_rules(tmp_path, data):
    path = tmp_path / "matching_rules.json"
    path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")
    return path


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "nope.json")
    assert config.decision.auto_match_threshold == 85
    assert config.search.max_items == 5
    assert config.fee_model("stripe").rate == 0.029


def test_partial_override_keeps_other_defaults(tmp_path):
    config = load_config(write_rules(tmp_path, {"decision": {"auto_match_threshold": 90}}))
    assert config.decision.auto_match_threshold == 90
    assert config.decision.suggest_threshold == 60
    assert config.learning.initial_confidence_manual == 70


def test_fee_models_replace_and_fx_rates_merge():
    config = config_from_dict({
        "fee_models": [{"name": "adyen", "rate": 0.02, "fixed": 0.1, "keywords": ["adyen"]}],
        "fx_rates": {"usd_mxn": 17.1},
    })
    assert [m.name for m in config.fee_models] == ["adyen"]
    assert config.fx_rates["USD_MXN"] == 17.1
    assert config.fx_rates["EUR_USD"] == 1.08


def test_pegged_currencies_are_configurable():
    config = config_from_dict({"pegged_currencies": {"usd": ["bsd"]}})
    assert config.pegged_currencies == {"USD": ["BSD"]}


def test_unknown_key_is_an_error():
    with pytest.raises(ValidationError, match="auto_threshold"):
        config_from_dict({"decision": {"auto_threshold": 90}})


def test_invalid_fee_model():
    with pytest.raises(ValidationError, match="Invalid fee model"):
        config_from_dict({"fee_models": [{"name": "x", "percent": 3}]})


def test_thresholds_must_be_ordered():
    with pytest.raises(ValidationError):
        config_from_dict({"decision": {"suggest_threshold": 90, "auto_match_threshold": 85}})


def test_unparseable_file(tmp_path):
    with pytest.raises(ValidationError, match="Could not parse"):
        load_config(write_rules(tmp_path, "{not json"))


def test_provider_from_environment(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "anthropic")
    monkeypatch.setenv("LLM_MODEL", "claude-3-5-sonnet-20241022")
    config = MatchingConfig()
    assert config.escalation.provider == "anthropic"
    assert config.escalation.model == "claude-3-5-sonnet-20241022"


def test_sample_rules_file_loads():
    from pathlib import Path

    path = Path(__file__).resolve().parent.parent / "matching_rules.json"
    config = load_config(path)
    assert config.fee_model("square").fixed == 0.10
