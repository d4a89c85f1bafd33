"""core/execution.py: quotes, trade preview and order submission for a TradeSpec.

SAFETY CONTRACT
===============
This module can place LIVE orders on the exchange.

  get_prices()    : READ-ONLY. Ticker lookups only.
  preview_trade() : READ-ONLY. Quotes + payoff + safety verdict.
  execute_trade() : LIVE ORDERS. Requires an ``ExecuteTradeRequest`` whose
                    ``confirmed`` flag is an explicit ``True`` (enforced by the
                    model), re-fetches prices, and re-runs the safety gate.
                    NEVER auto-triggered; a failed gate means zero orders.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from adapters.base_adapter import MarketDataPort
from models.market import PriceQuote
from models.trade_spec import (
    ExecuteTradeRequest,
    ExecutionResult,
    Leg,
    LegQuote,
    OrderResult,
    TradePreview,
    TradeSpec,
)
from risk_engine.payoff import calculate_payoff
from risk_engine.safety_gate import (
    SafetyConfig,
    calculate_spread_percent,
    load_safety_config,
    run_safety_checks,
    validate_trade_before_execution,
)

logger = logging.getLogger(__name__)

# Fallback offsets when the book is empty on the side we need
_BUY_MARK_MARKUP = 1.05
_SELL_MARK_MARKDOWN = 0.95
_TICK = 0.1


@dataclass
class PriceLookup:
    prices: dict[str, PriceQuote] = field(default_factory=dict)
    not_found: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pricing helpers
# ---------------------------------------------------------------------------


def execution_price(leg: Leg, quote: PriceQuote) -> float:
    """Price paid (buy) or received (sell) per contract: touch, else mark."""
    if leg.side == "buy":
        return quote.ask if quote.ask and quote.ask > 0 else quote.mark
    return quote.bid if quote.bid and quote.bid > 0 else quote.mark


def limit_price_for(leg: Leg, quote: PriceQuote) -> float:
    """Marketable limit on the 0.1 tick: buys round up, sells round down."""
    if leg.side == "buy":
        raw = quote.ask if quote.ask and quote.ask > 0 else quote.mark * _BUY_MARK_MARKUP
        return round(math.ceil(round(raw / _TICK, 9)) * _TICK, 1)
    raw = quote.bid if quote.bid and quote.bid > 0 else quote.mark * _SELL_MARK_MARKDOWN
    return round(math.floor(round(raw / _TICK, 9)) * _TICK, 1)


def signed_leg_cost(leg: Leg, quote: PriceQuote) -> float:
    cost = execution_price(leg, quote) * leg.amount
    return cost if leg.side == "buy" else -cost


def worst_spread(quotes: Iterable[PriceQuote]) -> Optional[float]:
    spreads = [q.spread_percent for q in quotes if q.spread_percent is not None]
    return max(spreads) if spreads else None


# ---------------------------------------------------------------------------
# TradeExecutionService
# ---------------------------------------------------------------------------


class TradeExecutionService:
    """Prices, previews and executes a ``TradeSpec`` against a ``MarketDataPort``.

    Parameters
    ----------
    port:
        The exchange adapter (``DeriveAdapter`` in production).
    safety_config_provider:
        Called on every preview/execute so limit changes apply immediately.
    """

    def __init__(
        self,
        port: MarketDataPort,
        safety_config_provider: Callable[[], SafetyConfig] = load_safety_config,
    ) -> None:
        self._port = port
        self._safety_config = safety_config_provider

    # ------------------------------------------------------------------
    # get_prices(): READ-ONLY
    # ------------------------------------------------------------------

    async def get_prices(self, instrument_names: list[str]) -> PriceLookup:
        results = await asyncio.gather(
            *(self._port.get_ticker(name) for name in instrument_names),
            return_exceptions=True,
        )
        lookup = PriceLookup()
        for name, result in zip(instrument_names, results):
            if isinstance(result, BaseException):
                logger.warning("No ticker for %s: %s", name, result)
                lookup.not_found.append(name)
                continue
            spread = calculate_spread_percent(result.bid, result.ask)
            lookup.prices[name] = PriceQuote(
                bid=result.bid,
                ask=result.ask,
                mark=result.mark,
                index=result.index,
                spread_percent=round(spread, 2) if spread is not None else None,
            )
        return lookup

    async def get_index_price(self, underlying: str) -> float:
        ticker = await self._port.get_ticker(f"{underlying.upper()}-PERP")
        return ticker.index

    # ------------------------------------------------------------------
    # preview_trade(): READ-ONLY
    # ------------------------------------------------------------------

    async def preview_trade(self, trade_spec: TradeSpec) -> TradePreview:
        """Quote every leg, run the payoff model and the safety gate."""
        index_price, lookup = await asyncio.gather(
            self.get_index_price(trade_spec.underlying),
            self.get_prices([leg.instrument_name for leg in trade_spec.legs]),
            return_exceptions=True,
        )
        for outcome in (lookup, index_price):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
        if isinstance(lookup, Exception):
            raise lookup
        if isinstance(index_price, Exception):
            # Option tickers carry the index too; 0.0 only when nothing was quoted
            exc = index_price
            index_price = next((q.index for q in lookup.prices.values() if q.index), 0.0)
            logger.warning(
                "No %s-PERP index price (%s); using %.2f from leg quotes",
                trade_spec.underlying.upper(),
                exc,
                index_price,
            )

        leg_quotes: list[LegQuote] = []
        premiums: dict[str, float] = {}
        total_cost = 0.0
        for leg in trade_spec.legs:
            quote = lookup.prices.get(leg.instrument_name)
            if quote is None:
                continue
            cost = signed_leg_cost(leg, quote)
            total_cost += cost
            premiums[leg.instrument_name] = quote.mark
            leg_quotes.append(
                LegQuote(
                    instrument_name=leg.instrument_name,
                    side=leg.side,
                    amount=leg.amount,
                    bid_price=quote.bid,
                    ask_price=quote.ask,
                    mark_price=quote.mark,
                    estimated_cost=round(cost, 2),
                )
            )

        analysis = calculate_payoff(trade_spec, premiums, index_price)
        checks = run_safety_checks(
            trade_spec,
            total_cost,
            worst_spread(lookup.prices.values()),
            self._safety_config(),
        )
        logger.info(
            "Preview %s: cost=$%.2f max_loss=$%.2f",
            trade_spec.strategy,
            total_cost,
            analysis.max_loss,
            extra={
                "debug_type": "info",
                "debug_source": "TradePreview",
                "debug_data": {"breakevens": analysis.breakevens, "not_found": lookup.not_found},
            },
        )
        return TradePreview(
            trade_spec=trade_spec,
            legs=leg_quotes,
            total_estimated_cost=round(total_cost, 2),
            max_loss=analysis.max_loss,
            max_gain=analysis.max_gain,
            breakevens=analysis.breakevens,
            safety_checks=checks,
        )

    # ------------------------------------------------------------------
    # execute_trade(): LIVE ORDERS
    # ------------------------------------------------------------------

    async def execute_trade(self, request: ExecuteTradeRequest) -> ExecutionResult:
        """Re-price, re-check and submit one limit order per leg.

        Per-leg submission failures are recorded on that leg's ``OrderResult``
        and never stop the remaining legs.
        """
        trade_spec = request.trade_spec
        config = self._safety_config()

        lookup = await self.get_prices([leg.instrument_name for leg in trade_spec.legs])
        if lookup.not_found:
            return ExecutionResult(
                success=False,
                error=f"Failed to fetch price for instrument: {', '.join(lookup.not_found)}",
            )

        total_cost = sum(
            signed_leg_cost(leg, lookup.prices[leg.instrument_name]) for leg in trade_spec.legs
        )
        checks = run_safety_checks(trade_spec, total_cost, worst_spread(lookup.prices.values()), config)
        rounded_cost = round(total_cost, 2)

        if not checks.all_passed and config.safe_mode_enabled:
            logger.warning("Execution refused, safety checks failed: %s", checks.errors or checks.warnings)
            return ExecutionResult(
                success=False,
                total_estimated_cost=rounded_cost,
                safety_checks=checks,
                error="Safety checks failed",
            )

        decision = validate_trade_before_execution(
            TradePreview(
                trade_spec=trade_spec,
                legs=[],
                total_estimated_cost=rounded_cost,
                max_loss=trade_spec.max_loss_usd,
                safety_checks=checks,
            ),
            config,
        )
        if not decision.can_execute:
            logger.warning("Execution refused: %s", decision.reason)
            return ExecutionResult(
                success=False,
                total_estimated_cost=rounded_cost,
                safety_checks=checks,
                error=decision.reason,
            )

        orders: list[OrderResult] = []
        for leg in trade_spec.legs:
            quote = lookup.prices[leg.instrument_name]
            limit_price = limit_price_for(leg, quote)
            try:
                response = await self._port.submit_order(
                    leg.instrument_name,
                    leg.side,
                    f"{leg.amount:.2f}",
                    f"{limit_price:.1f}",
                )
            except Exception as exc:
                logger.error("Order for %s failed: %s", leg.instrument_name, exc)
                orders.append(
                    OrderResult(instrument_name=leg.instrument_name, status="failed", error=str(exc))
                )
                continue
            orders.append(
                OrderResult(
                    instrument_name=leg.instrument_name,
                    order_id=response.order_id,
                    status=response.order_status,
                )
            )

        success = all(o.status != "failed" and o.order_id for o in orders)
        logger.info(
            "Executed %s: %d/%d legs accepted",
            trade_spec.strategy,
            sum(1 for o in orders if o.status != "failed" and o.order_id),
            len(orders),
        )
        return ExecutionResult(
            success=success,
            orders=orders,
            total_estimated_cost=rounded_cost,
            safety_checks=checks,
        )
