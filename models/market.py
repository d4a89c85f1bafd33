"""
models/market.py
─────────────────
Normalized Derive (formerly Lyra) exchange payloads.

The exchange encodes decimals as strings ("1523.4"); the ``bid`` / ``ask`` /
``mark`` / ``index`` properties parse them, treating a zero or missing best
bid/ask as "no liquidity" (``None``).
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


def _to_float(value: Optional[str]) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _live_price(value: Optional[str]) -> Optional[float]:
    parsed = _to_float(value)
    if parsed is None or parsed <= 0:
        return None
    return parsed


class OptionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    expiry: int  # unix seconds
    strike: str
    option_type: Literal["C", "P"]
    index: Optional[str] = None
    settlement_price: Optional[str] = None

    @property
    def strike_value(self) -> float:
        return float(self.strike)

    @property
    def expiry_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expiry, tz=timezone.utc)


class DeriveInstrument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instrument_name: str
    instrument_type: str = "option"
    is_active: bool = True
    base_currency: Optional[str] = None
    quote_currency: Optional[str] = None
    tick_size: Optional[str] = None
    minimum_amount: Optional[str] = None
    maximum_amount: Optional[str] = None
    option_details: Optional[OptionDetails] = None


class OptionPricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delta: Optional[str] = None
    gamma: Optional[str] = None
    theta: Optional[str] = None
    vega: Optional[str] = None
    iv: Optional[str] = None


class DeriveTicker(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instrument_name: str
    best_bid_price: Optional[str] = None
    best_bid_amount: Optional[str] = None
    best_ask_price: Optional[str] = None
    best_ask_amount: Optional[str] = None
    mark_price: str
    index_price: str
    timestamp: Optional[int] = None
    option_pricing: Optional[OptionPricing] = None

    @property
    def bid(self) -> Optional[float]:
        return _live_price(self.best_bid_price)

    @property
    def ask(self) -> Optional[float]:
        return _live_price(self.best_ask_price)

    @property
    def mark(self) -> float:
        return _to_float(self.mark_price) or 0.0

    @property
    def index(self) -> float:
        return _to_float(self.index_price) or 0.0

    @property
    def delta(self) -> Optional[float]:
        return _to_float(self.option_pricing.delta) if self.option_pricing else None

    @property
    def iv(self) -> Optional[float]:
        return _to_float(self.option_pricing.iv) if self.option_pricing else None


class InstrumentPricing(BaseModel):
    bid: Optional[float] = None
    ask: Optional[float] = None
    mark: float
    spread_percent: Optional[float] = None
    delta: Optional[float] = None
    iv: Optional[float] = None


class PricedInstrument(DeriveInstrument):
    """An instrument with its live pricing attached (``find_liquid_options``)."""

    pricing: InstrumentPricing


class PriceQuote(BaseModel):
    """Parsed quote used by the preview/execute flow."""

    bid: Optional[float] = None
    ask: Optional[float] = None
    mark: float
    index: float
    spread_percent: Optional[float] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order_id: str
    instrument_name: str
    direction: Literal["buy", "sell"]
    amount: str
    limit_price: str
    order_status: str
    filled_amount: str = "0"
    average_price: Optional[str] = None
    creation_timestamp: Optional[int] = None
