"""tests/test_safety_gate.py: Pre-trade limits and the execution gate.

Covers:
  - cost / contracts boundaries (exactly at the limit passes, just above fails)
  - spread checks only block while safe mode is on
  - validate_trade_before_execution() reason priority
  - load_safety_config() precedence: environment > YAML > defaults
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from models.trade_spec import Leg, TradePreview, TradeSpec
from risk_engine.safety_gate import (
    calculate_spread_percent,
    load_safety_config,
    run_safety_checks,
    validate_trade_before_execution,
)


def _spec(amount: float = 1.0, max_loss: float = 150.0) -> TradeSpec:
    return TradeSpec(
        underlying="ETH",
        strategy="Long Call",
        expiry="20250110",
        legs=[Leg(instrument_name="ETH-20250110-3500-C", side="buy", amount=amount)],
        max_cost_usd=150.0,
        max_loss_usd=max_loss,
        explanation="test",
    )


def _preview(spec: TradeSpec, checks) -> TradePreview:
    return TradePreview(
        trade_spec=spec,
        legs=[],
        total_estimated_cost=0.0,
        max_loss=0.0,
        safety_checks=checks,
    )


class TestSpreadPercent:
    def test_relative_to_mid(self):
        assert calculate_spread_percent(98.0, 102.0) == pytest.approx(4.0)

    @pytest.mark.parametrize("bid,ask", [(None, 10.0), (10.0, None), (0.0, 10.0)])
    def test_none_without_two_sided_quote(self, bid, ask):
        assert calculate_spread_percent(bid, ask) is None


class TestCostLimit:
    def test_exactly_at_limit_passes(self, safety_config):
        result = run_safety_checks(_spec(), 200.0, 1.0, safety_config)
        assert result.passes_max_cost
        assert result.all_passed

    def test_one_cent_over_fails(self, safety_config):
        result = run_safety_checks(_spec(), 200.01, 1.0, safety_config)
        assert not result.passes_max_cost
        assert not result.all_passed
        assert result.errors == ["Trade cost ($200.01) exceeds maximum allowed ($200)"]

    def test_cost_failure_blocks_even_without_safe_mode(self, safety_config):
        config = replace(safety_config, safe_mode_enabled=False)
        assert not run_safety_checks(_spec(), 250.0, 1.0, config).all_passed


class TestContractLimit:
    def test_exactly_at_limit_passes(self, safety_config):
        assert run_safety_checks(_spec(amount=10.0), 100.0, 1.0, safety_config).passes_max_contracts

    def test_above_limit_fails(self, safety_config):
        result = run_safety_checks(_spec(amount=10.5), 100.0, 1.0, safety_config)
        assert not result.passes_max_contracts
        assert not result.all_passed
        assert "Max contracts per leg (10.5) exceeds limit (10)" in result.errors


class TestSpreadCheck:
    def test_wide_spread_blocks_in_safe_mode_as_warning(self, safety_config):
        result = run_safety_checks(_spec(), 100.0, 6.0, safety_config)

        assert not result.passes_spread_check
        assert not result.all_passed
        assert result.errors == []
        assert result.warnings == ["Bid-ask spread (6.0%) exceeds threshold (5%)"]

    def test_wide_spread_allowed_when_safe_mode_off(self, safety_config):
        config = replace(safety_config, safe_mode_enabled=False)
        result = run_safety_checks(_spec(), 100.0, 6.0, config)

        assert not result.passes_spread_check
        assert result.all_passed

    def test_missing_spread_warns_but_passes(self, safety_config):
        result = run_safety_checks(_spec(), 100.0, None, safety_config)

        assert result.passes_spread_check
        assert result.all_passed
        assert result.spread_percent is None
        assert "Could not calculate bid-ask spread - no liquidity data" in result.warnings

    def test_max_loss_above_cost_limit_is_only_a_warning(self, safety_config):
        result = run_safety_checks(_spec(max_loss=500.0), 100.0, 1.0, safety_config)

        assert result.all_passed
        assert result.warnings == ["Max loss ($500) exceeds safety threshold ($200)"]


class TestValidateBeforeExecution:
    def test_safe_mode_off_always_allows(self, safety_config):
        config = replace(safety_config, safe_mode_enabled=False)
        checks = run_safety_checks(_spec(amount=50.0), 999.0, 50.0, config)

        decision = validate_trade_before_execution(_preview(_spec(amount=50.0), checks), config)
        assert decision.can_execute
        assert decision.reason is None

    def test_cost_reason_takes_priority(self, safety_config):
        checks = run_safety_checks(_spec(amount=50.0), 999.0, 1.0, safety_config)
        decision = validate_trade_before_execution(_preview(_spec(amount=50.0), checks), safety_config)

        assert not decision.can_execute
        assert decision.reason == "Trade cost exceeds maximum of $200"

    def test_contracts_reason(self, safety_config):
        checks = run_safety_checks(_spec(amount=50.0), 100.0, 1.0, safety_config)
        decision = validate_trade_before_execution(_preview(_spec(amount=50.0), checks), safety_config)

        assert decision.reason == "Contracts per leg exceeds maximum of 10"

    def test_other_errors_are_joined(self, safety_config):
        checks = run_safety_checks(_spec(), 100.0, 1.0, safety_config).model_copy(
            update={"errors": ["first problem", "second problem"]}
        )
        decision = validate_trade_before_execution(_preview(_spec(), checks), safety_config)

        assert decision.reason == "first problem; second problem"

    def test_spread_only_failure_is_not_denied_here(self, safety_config):
        # The spread verdict is enforced through all_passed by the caller.
        checks = run_safety_checks(_spec(), 100.0, 6.0, safety_config)
        assert not checks.all_passed
        assert validate_trade_before_execution(_preview(_spec(), checks), safety_config).can_execute


class TestLoadSafetyConfig:
    def test_defaults_without_env_or_file(self, tmp_path: Path):
        config = load_safety_config(tmp_path / "missing.yaml")

        assert config.max_trade_cost_usd == 200.0
        assert config.max_contracts_per_leg == 10.0
        assert config.max_spread_percent == 5.0
        assert config.safe_mode_enabled is True

    def test_yaml_overrides_defaults(self, tmp_path: Path):
        path = tmp_path / "limits.yaml"
        path.write_text("limits:\n  max_trade_cost_usd: 300\n  safe_mode_enabled: false\n")

        config = load_safety_config(path)
        assert config.max_trade_cost_usd == 300.0
        assert config.max_contracts_per_leg == 10.0
        assert config.safe_mode_enabled is False

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_path / "limits.yaml"
        path.write_text("limits:\n  max_trade_cost_usd: 300\n")
        monkeypatch.setenv("MAX_TRADE_COST_USD", "500")
        monkeypatch.setenv("MAX_SPREAD_PERCENT", "2.5")

        config = load_safety_config(path)
        assert config.max_trade_cost_usd == 500.0
        assert config.max_spread_percent == 2.5

    def test_path_from_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_path / "limits.yaml"
        path.write_text("limits:\n  max_contracts_per_leg: 3\n")
        monkeypatch.setenv("SAFETY_LIMITS_PATH", str(path))

        assert load_safety_config().max_contracts_per_leg == 3.0

    @pytest.mark.parametrize("raw,expected", [("false", False), ("FALSE", False), ("true", True), ("0", True), ("", True)])
    def test_safe_mode_only_disabled_by_false(self, raw, expected, tmp_path, monkeypatch):
        monkeypatch.setenv("SAFE_MODE", raw)
        assert load_safety_config(tmp_path / "missing.yaml").safe_mode_enabled is expected

    def test_unreadable_yaml_falls_back(self, tmp_path: Path):
        path = tmp_path / "limits.yaml"
        path.write_text("limits: [unclosed\n")

        assert load_safety_config(path).max_trade_cost_usd == 200.0

    def test_non_numeric_env_is_ignored(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MAX_TRADE_COST_USD", "lots")
        assert load_safety_config(tmp_path / "missing.yaml").max_trade_cost_usd == 200.0

    def test_non_numeric_yaml_limit_falls_back_to_default(self, tmp_path: Path):
        path = tmp_path / "limits.yaml"
        path.write_text("limits:\n  max_trade_cost_usd: lots\n  max_spread_percent: 7\n")

        config = load_safety_config(path)
        assert config.max_trade_cost_usd == 200.0
        assert config.max_spread_percent == 7.0

    @pytest.mark.parametrize(
        "yaml_value,expected",
        [('"false"', False), ('"FALSE"', False), ('"true"', True), ("false", False), ("[1]", True)],
    )
    def test_yaml_safe_mode_parsed_like_env(self, yaml_value, expected, tmp_path: Path):
        path = tmp_path / "limits.yaml"
        path.write_text(f"limits:\n  safe_mode_enabled: {yaml_value}\n")

        assert load_safety_config(path).safe_mode_enabled is expected
