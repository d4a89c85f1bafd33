"""risk_engine/safety_gate.py: Pre-trade risk limits.

Two entry points:

  run_safety_checks()              : side-effect-free verdict for a trade
                                     (cost, contracts per leg, bid/ask spread).
  validate_trade_before_execution(): hard gate consumed right before orders
                                     are submitted; re-reads a preview's verdict.

Limits come from ``load_safety_config()``, which is read fresh on every call
so that a changed environment or ``config/safety_limits.yaml`` takes effect on
the next check.  Precedence: environment variable > YAML file > default.

Spread failures only block while safe mode is on.  Cost and contract-count
failures always block.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from models.trade_spec import SafetyCheckResult, TradePreview, TradeSpec

logger = logging.getLogger(__name__)

_SAFETY_LIMITS_PATH = Path(__file__).parent.parent / "config" / "safety_limits.yaml"

_DEFAULTS: dict[str, Any] = {
    "max_trade_cost_usd": 200.0,
    "max_contracts_per_leg": 10.0,
    "max_spread_percent": 5.0,
    "safe_mode_enabled": True,
}


@dataclass(frozen=True)
class SafetyConfig:
    max_trade_cost_usd: float
    max_contracts_per_leg: float
    max_spread_percent: float
    safe_mode_enabled: bool


@dataclass(frozen=True)
class ExecutionDecision:
    can_execute: bool
    reason: Optional[str] = None


def _load_yaml_limits(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as fh:
            loaded = yaml.safe_load(fh) or {}
        limits = loaded.get("limits", loaded) if isinstance(loaded, dict) else {}
        return limits if isinstance(limits, dict) else {}
    except Exception as exc:
        logger.warning("Could not load safety limits from %s: %s, using defaults", path, exc)
        return {}


def _as_float(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _as_flag(raw: Any) -> Optional[bool]:
    # anything but "false" keeps safe mode on
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() != "false"
    return None


def load_safety_config(path: str | Path | None = None) -> SafetyConfig:
    """Read limits from environment, then YAML, then built-in defaults.

    Values that do not parse are logged and skipped, falling through to the
    next source.
    """
    yaml_path = Path(path or os.getenv("SAFETY_LIMITS_PATH") or _SAFETY_LIMITS_PATH)
    yaml_limits = _load_yaml_limits(yaml_path)

    def _number(env_name: str, key: str) -> float:
        sources = ((env_name, os.getenv(env_name)), (f"{yaml_path.name}:{key}", yaml_limits.get(key)))
        for label, raw in sources:
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                continue
            value = _as_float(raw)
            if value is not None:
                return value
            logger.warning("Ignoring non-numeric %s=%r", label, raw)
        return float(_DEFAULTS[key])

    safe_mode = _as_flag(os.getenv("SAFE_MODE"))
    if safe_mode is None and "safe_mode_enabled" in yaml_limits:
        safe_mode = _as_flag(yaml_limits["safe_mode_enabled"])
        if safe_mode is None:
            logger.warning(
                "Ignoring invalid %s:safe_mode_enabled=%r", yaml_path.name, yaml_limits["safe_mode_enabled"]
            )
    if safe_mode is None:
        safe_mode = bool(_DEFAULTS["safe_mode_enabled"])

    return SafetyConfig(
        max_trade_cost_usd=_number("MAX_TRADE_COST_USD", "max_trade_cost_usd"),
        max_contracts_per_leg=_number("MAX_CONTRACTS_PER_LEG", "max_contracts_per_leg"),
        max_spread_percent=_number("MAX_SPREAD_PERCENT", "max_spread_percent"),
        safe_mode_enabled=safe_mode,
    )


def calculate_spread_percent(bid: Optional[float], ask: Optional[float]) -> Optional[float]:
    """Bid/ask spread as a percentage of mid; ``None`` without a live two-sided quote."""
    if bid is None or ask is None or bid <= 0:
        return None
    mid = (bid + ask) / 2
    if mid <= 0:
        return None
    return (ask - bid) / mid * 100


def run_safety_checks(
    trade_spec: TradeSpec,
    estimated_cost: float,
    spread_percent: Optional[float],
    config: Optional[SafetyConfig] = None,
) -> SafetyCheckResult:
    config = config or load_safety_config()
    warnings: list[str] = []
    errors: list[str] = []

    passes_max_cost = estimated_cost <= config.max_trade_cost_usd
    if not passes_max_cost:
        errors.append(
            f"Trade cost (${estimated_cost:.2f}) exceeds maximum allowed "
            f"(${config.max_trade_cost_usd:g})"
        )

    max_contracts = max(leg.amount for leg in trade_spec.legs)
    passes_max_contracts = max_contracts <= config.max_contracts_per_leg
    if not passes_max_contracts:
        errors.append(
            f"Max contracts per leg ({max_contracts:g}) exceeds limit "
            f"({config.max_contracts_per_leg:g})"
        )

    passes_spread_check = True
    if spread_percent is None:
        warnings.append("Could not calculate bid-ask spread - no liquidity data")
    else:
        passes_spread_check = spread_percent <= config.max_spread_percent
        if not passes_spread_check:
            warnings.append(
                f"Bid-ask spread ({spread_percent:.1f}%) exceeds threshold "
                f"({config.max_spread_percent:g}%)"
            )

    if trade_spec.max_loss_usd > config.max_trade_cost_usd:
        warnings.append(
            f"Max loss (${trade_spec.max_loss_usd:g}) exceeds safety threshold "
            f"(${config.max_trade_cost_usd:g})"
        )

    all_passed = (
        passes_max_cost
        and passes_max_contracts
        and (passes_spread_check or not config.safe_mode_enabled)
    )
    if not all_passed:
        logger.info("Safety checks failed: errors=%s warnings=%s", errors, warnings)

    return SafetyCheckResult(
        passes_max_cost=passes_max_cost,
        passes_max_contracts=passes_max_contracts,
        passes_spread_check=passes_spread_check,
        spread_percent=spread_percent,
        all_passed=all_passed,
        warnings=warnings,
        errors=errors,
    )


def validate_trade_before_execution(
    preview: TradePreview,
    config: Optional[SafetyConfig] = None,
) -> ExecutionDecision:
    config = config or load_safety_config()
    if not config.safe_mode_enabled:
        return ExecutionDecision(can_execute=True)

    checks = preview.safety_checks
    if not checks.passes_max_cost:
        return ExecutionDecision(
            can_execute=False,
            reason=f"Trade cost exceeds maximum of ${config.max_trade_cost_usd:g}",
        )
    if not checks.passes_max_contracts:
        return ExecutionDecision(
            can_execute=False,
            reason=f"Contracts per leg exceeds maximum of {config.max_contracts_per_leg:g}",
        )
    if checks.errors:
        return ExecutionDecision(can_execute=False, reason="; ".join(checks.errors))
    return ExecutionDecision(can_execute=True)
