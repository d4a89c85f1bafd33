from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from adapters.base_adapter import MarketDataPort
from adapters.derive_adapter import DeriveAPIError
from models.market import DeriveInstrument, DeriveTicker, OptionDetails, OrderResponse
from models.trade_spec import Leg, TradeSpec
from risk_engine.safety_gate import SafetyConfig

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

_SAFETY_ENV = ("MAX_TRADE_COST_USD", "MAX_CONTRACTS_PER_LEG", "MAX_SPREAD_PERCENT", "SAFE_MODE", "SAFETY_LIMITS_PATH")


class FakePort(MarketDataPort):
    """In-memory exchange: tickers by name, a fixed instrument list, recorded orders."""

    def __init__(self) -> None:
        self.tickers: dict[str, DeriveTicker] = {}
        self.instruments: list[DeriveInstrument] = []
        self.order_errors: dict[str, Exception] = {}
        self.ticker_calls: list[str] = []
        self.orders: list[tuple[str, str, str, str]] = []

    async def get_instruments(self, currency: str, *, expired: bool = False) -> list[DeriveInstrument]:
        return list(self.instruments)

    async def get_ticker(self, instrument_name: str) -> DeriveTicker:
        self.ticker_calls.append(instrument_name)
        if instrument_name not in self.tickers:
            raise DeriveAPIError(f"Instrument not found: {instrument_name}")
        return self.tickers[instrument_name]

    async def submit_order(self, instrument_name: str, side: str, amount: str, limit_price: str) -> OrderResponse:
        self.orders.append((instrument_name, side, amount, limit_price))
        if instrument_name in self.order_errors:
            raise self.order_errors[instrument_name]
        return OrderResponse(
            order_id=f"ord-{len(self.orders)}",
            instrument_name=instrument_name,
            direction=side,  # type: ignore[arg-type]
            amount=amount,
            limit_price=limit_price,
            order_status="open",
        )


@pytest.fixture(autouse=True)
def _clean_safety_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _SAFETY_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fake_port() -> FakePort:
    return FakePort()


@pytest.fixture
def make_ticker() -> Callable[..., DeriveTicker]:
    def _make(
        name: str,
        bid: Optional[float] = None,
        ask: Optional[float] = None,
        mark: float = 100.0,
        index: float = 3400.0,
    ) -> DeriveTicker:
        return DeriveTicker(
            instrument_name=name,
            best_bid_price=None if bid is None else str(bid),
            best_ask_price=None if ask is None else str(ask),
            mark_price=str(mark),
            index_price=str(index),
        )

    return _make


@pytest.fixture
def make_instrument() -> Callable[..., DeriveInstrument]:
    def _make(strike: int, option_type: str = "C", days: float = 14, active: bool = True) -> DeriveInstrument:
        expiry = NOW + timedelta(days=days)
        return DeriveInstrument(
            instrument_name=f"ETH-{expiry:%Y%m%d}-{strike}-{option_type}",
            is_active=active,
            option_details=OptionDetails(
                expiry=int(expiry.timestamp()),
                strike=str(strike),
                option_type=option_type,  # type: ignore[arg-type]
            ),
        )

    return _make


@pytest.fixture
def safety_config() -> SafetyConfig:
    return SafetyConfig(
        max_trade_cost_usd=200.0,
        max_contracts_per_leg=10.0,
        max_spread_percent=5.0,
        safe_mode_enabled=True,
    )


@pytest.fixture
def long_call_spec() -> TradeSpec:
    return TradeSpec(
        underlying="ETH",
        strategy="Long Call",
        expiry="20250110",
        legs=[Leg(instrument_name="ETH-20250110-3500-C", side="buy", amount=1.0)],
        max_cost_usd=150.0,
        max_loss_usd=150.0,
        explanation="Bullish ETH into January",
    )


@pytest.fixture
def bull_call_spread_spec() -> TradeSpec:
    return TradeSpec(
        underlying="ETH",
        strategy="Bull Call Spread",
        expiry="20250110",
        legs=[
            Leg(instrument_name="ETH-20250110-3500-C", side="buy", amount=1.0),
            Leg(instrument_name="ETH-20250110-4000-C", side="sell", amount=1.0),
        ],
        max_cost_usd=100.0,
        max_loss_usd=100.0,
        explanation="Defined-risk upside",
    )
