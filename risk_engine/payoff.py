"""risk_engine/payoff.py: Expiry payoff and risk summary for option legs.

Pure and deterministic: no I/O, no clock.  Given a ``TradeSpec``, a mapping
of instrument name → premium per contract, and a reference underlying price,
produces a ``PayoffAnalysis`` (sampled P&L curve, breakevens, max loss/gain)
and the net entry cost.

    leg_pnl(S) = (intrinsic(S) - premium) × amount × (+1 buy / -1 sell)
    intrinsic  = max(0, S - K) for calls, max(0, K - S) for puts

Usage example::

    analysis = calculate_payoff(spec, {"ETH-20250110-3500-C": 150.0}, 3400.0)
    analysis.breakevens   # [3650.0]
    analysis.max_gain     # None (unbounded)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from models.analysis import ParsedInstrument, PayoffAnalysis, PayoffPoint
from models.trade_spec import INSTRUMENT_NAME_PATTERN, Leg, TradeSpec

logger = logging.getLogger(__name__)

CURVE_POINTS = 100           # intervals → 101 samples
BREAKEVEN_SCAN_STEPS = 1000
BREAKEVEN_TOLERANCE = 0.01
SINGLE_STRIKE_RANGE_PCT = 0.20


@dataclass(frozen=True)
class PricedLeg:
    """A leg whose instrument name parsed, with its premium attached."""

    leg: Leg
    strike: float
    option_type: str
    premium: float

    @property
    def direction(self) -> int:
        return 1 if self.leg.side == "buy" else -1


def parse_instrument_name(name: str) -> Optional[ParsedInstrument]:
    """Split ``ETH-20250110-3500-C`` into its parts; ``None`` if malformed."""
    match = INSTRUMENT_NAME_PATTERN.match(name)
    if not match:
        return None
    underlying, expiry, strike, option_type = match.groups()
    return ParsedInstrument(
        underlying=underlying,
        expiry=expiry,
        strike=float(strike),
        option_type=option_type,  # type: ignore[arg-type]
    )


def price_legs(legs: Iterable[Leg], premiums: Mapping[str, float]) -> list[PricedLeg]:
    priced: list[PricedLeg] = []
    for leg in legs:
        parsed = parse_instrument_name(leg.instrument_name)
        if parsed is None:
            logger.debug("Dropping leg with unparseable instrument name %r", leg.instrument_name)
            continue
        priced.append(
            PricedLeg(
                leg=leg,
                strike=parsed.strike,
                option_type=parsed.option_type,
                premium=premiums.get(leg.instrument_name) or 0.0,
            )
        )
    return priced


def leg_pnl(leg: PricedLeg, underlying_price: float) -> float:
    if leg.option_type == "C":
        intrinsic = max(0.0, underlying_price - leg.strike)
    else:
        intrinsic = max(0.0, leg.strike - underlying_price)
    return (intrinsic - leg.premium) * leg.leg.amount * leg.direction


def total_pnl(legs: Iterable[PricedLeg], underlying_price: float) -> float:
    return sum(leg_pnl(leg, underlying_price) for leg in legs)


def _crossed(prev_pnl: float, pnl: float) -> bool:
    return (prev_pnl < 0 <= pnl) or (prev_pnl >= 0 > pnl)


def find_breakevens(
    legs: list[PricedLeg],
    min_price: float,
    max_price: float,
    tolerance: float = BREAKEVEN_TOLERANCE,
) -> list[float]:
    """Scan left to right for P&L sign changes and bisect each one."""
    breakevens: list[float] = []
    step = (max_price - min_price) / BREAKEVEN_SCAN_STEPS
    if step <= 0:
        return breakevens

    prev_pnl = total_pnl(legs, min_price)
    for i in range(1, BREAKEVEN_SCAN_STEPS + 1):
        price = min_price + step * i
        pnl = total_pnl(legs, price)
        if _crossed(prev_pnl, pnl):
            low, high = price - step, price
            left_negative = prev_pnl < 0
            while high - low > tolerance:
                mid = (low + high) / 2
                if (total_pnl(legs, mid) < 0) == left_negative:
                    low = mid
                else:
                    high = mid
            breakevens.append(round((low + high) / 2, 2))
        prev_pnl = pnl
    return breakevens


def calculate_payoff(
    trade_spec: TradeSpec,
    premiums: Mapping[str, float],
    reference_price: float,
) -> PayoffAnalysis:
    """Return the expiry payoff curve and risk summary for *trade_spec*.

    Legs with malformed instrument names are ignored.  When none remain, the
    analysis is empty and ``max_loss`` falls back to ``trade_spec.max_loss_usd``.
    """
    legs = price_legs(trade_spec.legs, premiums)
    if not legs:
        return PayoffAnalysis(points=[], max_loss=trade_spec.max_loss_usd, max_gain=None, breakevens=[])

    strikes = [leg.strike for leg in legs]
    min_strike, max_strike = min(strikes), max(strikes)
    price_range = (max_strike - min_strike) or reference_price * SINGLE_STRIKE_RANGE_PCT

    min_price = max(0.0, min_strike - price_range * 0.5)
    max_price = max_strike + price_range * 0.5

    points: list[PayoffPoint] = []
    min_pnl = float("inf")
    max_pnl = float("-inf")
    for i in range(CURVE_POINTS + 1):
        price = min_price + (max_price - min_price) * (i / CURVE_POINTS)
        pnl = total_pnl(legs, price)
        points.append(PayoffPoint(price=round(price, 2), pnl=round(pnl, 2)))
        min_pnl = min(min_pnl, pnl)
        max_pnl = max(max_pnl, pnl)

    breakevens = find_breakevens(legs, min_price, max_price)

    def _has(side: str, option_type: str) -> bool:
        return any(l.leg.side == side and l.option_type == option_type for l in legs)

    max_gain: Optional[float] = max_pnl
    if _has("buy", "C") and not _has("sell", "C"):
        max_gain = None
    if _has("buy", "P") and not _has("sell", "P"):
        # Long put gain peaks as the underlying approaches zero.
        max_gain = max(max_gain or 0.0, total_pnl(legs, 0.0))

    return PayoffAnalysis(
        points=points,
        max_loss=round(abs(min_pnl), 2),
        max_gain=round(max_gain, 2) if max_gain is not None else None,
        breakevens=breakevens,
    )


def calculate_entry_cost(trade_spec: TradeSpec, premiums: Mapping[str, float]) -> float:
    """Net premium to enter: debits add, credits (sell legs) subtract."""
    total = 0.0
    for leg in trade_spec.legs:
        premium = premiums.get(leg.instrument_name) or 0.0
        if leg.side == "buy":
            total += premium * leg.amount
        else:
            total -= premium * leg.amount
    return round(total, 2)
