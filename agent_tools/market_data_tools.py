"""
agent_tools/market_data_tools.py
─────────────────────────────────
Market-data tools the intent agent can call before choosing instruments.

Each tool is a ``ToolSpec`` (name, description, pydantic input model, async
handler).  ``MarketDataTools.definitions()`` yields the function-calling
schemas sent to the model, and ``MarketDataTools.execute()`` validates the
model's arguments and dispatches through the registry.

Tools:
    get_instruments       active options for an underlying (optional DTE cap)
    get_ticker            bid/ask/mark/index (+ Greeks) for one instrument
    get_multiple_tickers  concurrent ticker fetch; failed lookups map to None
    get_index_price       spot/index price via the ``<UNDERLYING>-PERP`` ticker
    find_liquid_options   strike/expiry/spread filtered candidates, tightest first
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from adapters.base_adapter import MarketDataPort
from agents.errors import ToolExecutionError
from models.market import DeriveInstrument, DeriveTicker, InstrumentPricing, PricedInstrument
from risk_engine.safety_gate import calculate_spread_percent

logger = logging.getLogger(__name__)

Underlying = Literal["ETH", "BTC"]

DEFAULT_STRIKE_RANGE_PERCENT = 15.0
DEFAULT_MAX_SPREAD_PERCENT = 10.0
_UNPRICED_SPREAD_SORT_KEY = 100.0


# ── Tool inputs ──────────────────────────────────────────────────────────────

class GetInstrumentsInput(BaseModel):
    underlying: Underlying = Field(description="The underlying asset (ETH or BTC)")
    expiry_days_max: Optional[float] = Field(
        default=None, description="Optional: only instruments expiring within this many days"
    )


class GetTickerInput(BaseModel):
    instrument_name: str = Field(description="Full instrument name, e.g. ETH-20251227-3000-C")


class GetMultipleTickersInput(BaseModel):
    instrument_names: list[str] = Field(description="Instrument names to fetch prices for")


class GetIndexPriceInput(BaseModel):
    underlying: Underlying = Field(description="The underlying asset (ETH or BTC)")


class FindLiquidOptionsInput(BaseModel):
    underlying: Underlying = Field(description="The underlying asset (ETH or BTC)")
    option_type: Literal["C", "P"] = Field(description="Call (C) or Put (P)")
    min_days_to_expiry: float = Field(description="Minimum days until expiry")
    max_days_to_expiry: float = Field(description="Maximum days until expiry")
    strike_range_percent: Optional[float] = Field(
        default=DEFAULT_STRIKE_RANGE_PERCENT,
        description="Percentage range around the index price to search (10 = +/-10%)",
    )
    max_spread_percent: Optional[float] = Field(
        default=DEFAULT_MAX_SPREAD_PERCENT,
        description="Maximum bid-ask spread percentage to consider liquid",
    )


# ── Registry ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[Any]]

    def definition(self) -> dict[str, Any]:
        """OpenAI-style function declaration for this tool."""
        schema = self.input_model.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class MarketDataTools:
    """Model-facing market-data tools backed by a ``MarketDataPort``."""

    def __init__(
        self,
        port: MarketDataPort,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._port = port
        self._now = now
        self._registry: dict[str, ToolSpec] = {
            spec.name: spec
            for spec in (
                ToolSpec(
                    "get_instruments",
                    "Fetch all active options instruments for an underlying (ETH or BTC). "
                    "Returns strikes, expiries and option types. Use this to discover what "
                    "instruments are available.",
                    GetInstrumentsInput,
                    self._run_get_instruments,
                ),
                ToolSpec(
                    "get_ticker",
                    "Get real-time pricing and Greeks for one instrument: bid/ask, mark, "
                    "index price, IV and delta. Use this to check liquidity before selecting it.",
                    GetTickerInput,
                    self._run_get_ticker,
                ),
                ToolSpec(
                    "get_multiple_tickers",
                    "Get pricing for several instruments at once. More efficient than calling "
                    "get_ticker repeatedly; instruments that fail to load map to null.",
                    GetMultipleTickersInput,
                    self._run_get_multiple_tickers,
                ),
                ToolSpec(
                    "get_index_price",
                    "Get the current spot/index price for an underlying. Use this to find "
                    "at-the-money strikes.",
                    GetIndexPriceInput,
                    self._run_get_index_price,
                ),
                ToolSpec(
                    "find_liquid_options",
                    "Find options with good liquidity for an underlying, expiry window and "
                    "option type. Filters out instruments without a live bid and ask or with "
                    "wide spreads. Returns candidates sorted by spread, tightest first.",
                    FindLiquidOptionsInput,
                    self._run_find_liquid_options,
                ),
            )
        }

    # ------------------------------------------------------------------ #
    # Registry access                                                    #
    # ------------------------------------------------------------------ #

    @property
    def names(self) -> list[str]:
        return list(self._registry)

    def definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self._registry.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """Validate *arguments*, run tool *name*, and return a JSON-ready result.

        Raises:
            ToolExecutionError: unknown tool, invalid arguments, or upstream failure.
        """
        spec = self._registry.get(name)
        if spec is None:
            raise ToolExecutionError(name, f"Unknown tool: {name}")

        try:
            params = spec.input_model.model_validate(arguments or {})
        except ValidationError as exc:
            raise ToolExecutionError(name, f"Invalid arguments: {exc.errors(include_url=False)}") from exc

        started = time.perf_counter()
        logger.debug(
            "Tool: %s",
            name,
            extra={"debug_type": "tool_call", "debug_source": "MarketDataTools", "debug_data": arguments},
        )
        try:
            result = _jsonable(await spec.handler(params))
        except ToolExecutionError:
            raise
        except Exception as exc:
            logger.error("%s failed: %s", name, exc)
            raise ToolExecutionError(name, str(exc)) from exc

        duration_ms = (time.perf_counter() - started) * 1000
        summary = {"count": len(result)} if isinstance(result, (list, dict)) else {"value": result}
        logger.debug(
            "Tool: %s completed",
            name,
            extra={
                "debug_type": "tool_response",
                "debug_source": "MarketDataTools",
                "debug_data": summary,
                "duration_ms": duration_ms,
            },
        )
        return result

    # ------------------------------------------------------------------ #
    # Tool implementations                                               #
    # ------------------------------------------------------------------ #

    async def get_instruments(
        self, underlying: str, expiry_days_max: Optional[float] = None
    ) -> list[DeriveInstrument]:
        instruments = await self._port.get_instruments(underlying)
        active = [i for i in instruments if i.is_active and i.option_details is not None]

        if expiry_days_max:
            now = self._now()
            cutoff = now + timedelta(days=expiry_days_max)
            active = [
                i for i in active
                if now < i.option_details.expiry_datetime <= cutoff  # type: ignore[union-attr]
            ]
        return active

    async def get_ticker(self, instrument_name: str) -> DeriveTicker:
        return await self._port.get_ticker(instrument_name)

    async def get_multiple_tickers(self, instrument_names: list[str]) -> dict[str, Optional[DeriveTicker]]:
        results = await asyncio.gather(
            *(self._port.get_ticker(name) for name in instrument_names),
            return_exceptions=True,
        )
        tickers: dict[str, Optional[DeriveTicker]] = {}
        for name, result in zip(instrument_names, results):
            if isinstance(result, BaseException):
                logger.debug("Ticker lookup failed for %s: %s", name, result)
                tickers[name] = None
            else:
                tickers[name] = result
        return tickers

    async def get_index_price(self, underlying: str) -> dict[str, Any]:
        ticker = await self._port.get_ticker(f"{underlying.upper()}-PERP")
        return {
            "underlying": underlying.upper(),
            "index_price": ticker.index,
            "mark_price": ticker.mark,
        }

    async def find_liquid_options(
        self,
        underlying: str,
        option_type: str,
        min_days_to_expiry: float,
        max_days_to_expiry: float,
        strike_range_percent: Optional[float] = DEFAULT_STRIKE_RANGE_PERCENT,
        max_spread_percent: Optional[float] = DEFAULT_MAX_SPREAD_PERCENT,
    ) -> list[PricedInstrument]:
        strike_range = strike_range_percent or DEFAULT_STRIKE_RANGE_PERCENT
        max_spread = max_spread_percent or DEFAULT_MAX_SPREAD_PERCENT

        index_price = (await self.get_index_price(underlying))["index_price"]
        instruments = await self.get_instruments(underlying, expiry_days_max=max_days_to_expiry)

        now = self._now()
        min_expiry = now + timedelta(days=min_days_to_expiry)
        max_expiry = now + timedelta(days=max_days_to_expiry)
        min_strike = index_price * (1 - strike_range / 100)
        max_strike = index_price * (1 + strike_range / 100)

        candidates = []
        for instrument in instruments:
            details = instrument.option_details
            if details is None or details.option_type != option_type:
                continue
            if not (min_expiry <= details.expiry_datetime <= max_expiry):
                continue
            if not (min_strike <= details.strike_value <= max_strike):
                continue
            candidates.append(instrument)

        tickers = await self.get_multiple_tickers([i.instrument_name for i in candidates])

        liquid: list[PricedInstrument] = []
        for instrument in candidates:
            ticker = tickers.get(instrument.instrument_name)
            if ticker is None:
                continue
            bid, ask = ticker.bid, ticker.ask
            if bid is None or ask is None:
                continue
            spread = calculate_spread_percent(bid, ask)
            if spread is not None and spread > max_spread:
                continue
            liquid.append(
                PricedInstrument(
                    **instrument.model_dump(),
                    pricing=InstrumentPricing(
                        bid=bid,
                        ask=ask,
                        mark=ticker.mark,
                        spread_percent=spread,
                        delta=ticker.delta,
                        iv=ticker.iv,
                    ),
                )
            )

        liquid.sort(
            key=lambda p: p.pricing.spread_percent
            if p.pricing.spread_percent is not None
            else _UNPRICED_SPREAD_SORT_KEY
        )
        logger.info(
            "find_liquid_options %s %s %g-%gd: %d/%d liquid",
            underlying, option_type, min_days_to_expiry, max_days_to_expiry, len(liquid), len(candidates),
        )
        return liquid

    # ── registry adapters ────────────────────────────────────────────────────

    async def _run_get_instruments(self, p: GetInstrumentsInput) -> Any:
        return await self.get_instruments(p.underlying, p.expiry_days_max)

    async def _run_get_ticker(self, p: GetTickerInput) -> Any:
        return await self.get_ticker(p.instrument_name)

    async def _run_get_multiple_tickers(self, p: GetMultipleTickersInput) -> Any:
        return await self.get_multiple_tickers(p.instrument_names)

    async def _run_get_index_price(self, p: GetIndexPriceInput) -> Any:
        return await self.get_index_price(p.underlying)

    async def _run_find_liquid_options(self, p: FindLiquidOptionsInput) -> Any:
        return await self.find_liquid_options(
            p.underlying,
            p.option_type,
            p.min_days_to_expiry,
            p.max_days_to_expiry,
            p.strike_range_percent,
            p.max_spread_percent,
        )
