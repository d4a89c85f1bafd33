"""models/analysis.py: Derived, in-memory results of the risk engine.

These are recomputed whenever prices change and never persisted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional


@dataclass(frozen=True)
class ParsedInstrument:
    """Components of an ``UNDERLYING-YYYYMMDD-STRIKE-C|P`` instrument name."""

    underlying: str
    expiry: str
    strike: float
    option_type: Literal["C", "P"]


@dataclass(frozen=True)
class PayoffPoint:
    price: float
    pnl: float


@dataclass
class PayoffAnalysis:
    """Expiry payoff curve plus its risk summary."""

    points: List[PayoffPoint] = field(default_factory=list)
    max_loss: float = 0.0
    max_gain: Optional[float] = None  # None = unbounded
    breakevens: List[float] = field(default_factory=list)

    @property
    def is_gain_unbounded(self) -> bool:
        return self.max_gain is None
