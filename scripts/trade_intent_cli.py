#!/usr/bin/env python3
"""
trade_intent_cli.py: intent-to-trade pipeline from the terminal.

Sub-commands
------------
  parse        Resolve a free-text intent into a TradeSpec (model + live market data).
  preview      Resolve an intent, then show quotes, payoff and the safety verdict.
  execute      Resolve, preview, ask for confirmation, then submit one limit order
               per leg (--yes skips the prompt).
  instruments  List active options for an underlying.
  price        Index and mark price for an underlying.

Quick examples
--------------
  python scripts/trade_intent_cli.py parse "bullish ETH, 2 weeks, max loss $200"
  python scripts/trade_intent_cli.py preview "bear put spread on BTC next month" --json
  python scripts/trade_intent_cli.py execute "buy an ETH call for about $150"
  python scripts/trade_intent_cli.py instruments ETH --days 14
  python scripts/trade_intent_cli.py price BTC

Order submission needs an OrderSigner on the adapter; without one every leg
is reported as failed and nothing reaches the exchange.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

# ── add repo root to path so local imports work when run from any cwd ──────────
_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO))

import httpx
from openai import AsyncOpenAI

from adapters.derive_adapter import DeriveAdapter, DeriveAPIError
from agent_config import AppEnvironmentConfig, build_agent_system_prompt, load_environment
from agent_tools.market_data_tools import MarketDataTools
from agents.errors import IntentResolutionError
from agents.intent_parser import IntentResolutionLoop
from agents.llm_client import OpenAIToolChat
from core.debug_log import DebugLog, entries_as_dicts
from core.execution import TradeExecutionService
from logging_config import quiet_third_party_loggers, setup_logging
from models.trade_spec import ExecuteTradeRequest, TradePreview, TradeSpec

# ═══════════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════════

LINE_FILL = "─"


def _hr(width: int = 72) -> str:
    return LINE_FILL * width


def _money(value: float | None) -> str:
    return "unbounded" if value is None else f"${value:,.2f}"


def _print_kv(key: str, value, width: int = 22) -> None:
    print(f"  {key:<{width}}: {value}")


def _dump(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_spec(spec: TradeSpec) -> None:
    print(_hr())
    print(f"  {spec.strategy} on {spec.underlying}, expiry {spec.expiry}")
    print(_hr())
    for leg in spec.legs:
        print(f"  {leg.side.upper():<5} {leg.amount:>6.2f} x {leg.instrument_name}")
    _print_kv("max cost", _money(spec.max_cost_usd))
    _print_kv("max loss", _money(spec.max_loss_usd))
    print(f"\n  {spec.explanation}")


def _print_preview(preview: TradePreview) -> None:
    _print_spec(preview.trade_spec)
    print(_hr())
    for q in preview.legs:
        bid = "N/A" if q.bid_price is None else f"{q.bid_price:.2f}"
        ask = "N/A" if q.ask_price is None else f"{q.ask_price:.2f}"
        print(
            f"  {q.instrument_name:<24} bid {bid:>9}  ask {ask:>9}  "
            f"mark {q.mark_price:>9.2f}  cost {q.estimated_cost:>10.2f}"
        )
    print(_hr())
    _print_kv("estimated cost", _money(preview.total_estimated_cost))
    _print_kv("max loss", _money(preview.max_loss))
    _print_kv("max gain", _money(preview.max_gain))
    _print_kv("breakevens", ", ".join(f"{b:,.2f}" for b in preview.breakevens) or "none")
    checks = preview.safety_checks
    spread = "N/A" if checks.spread_percent is None else f"{checks.spread_percent:.1f}%"
    _print_kv("worst spread", spread)
    _print_kv("safety", "PASSED" if checks.all_passed else "FAILED")
    for err in checks.errors:
        print(f"  ✗ {err}")
    for warn in checks.warnings:
        print(f"  ! {warn}")


# ═══════════════════════════════════════════════════════════════════════════════
# Composition root
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class Services:
    adapter: DeriveAdapter
    tools: MarketDataTools
    executor: TradeExecutionService
    env: AppEnvironmentConfig
    chat: OpenAIToolChat | None = None

    def intent_loop(self) -> IntentResolutionLoop:
        if self.chat is None:
            raise IntentResolutionError("OPENAI_API_KEY is not set")
        return IntentResolutionLoop(
            self.chat,
            self.tools,
            max_iterations=self.env.agent_max_iterations,
            system_prompt=build_agent_system_prompt(),
        )


@asynccontextmanager
async def _services(env: AppEnvironmentConfig) -> AsyncIterator[Services]:
    async with httpx.AsyncClient(timeout=env.derive_timeout_seconds) as http:
        adapter = DeriveAdapter(http, base_url=env.derive_api_base_url)
        chat = None
        if env.openai_api_key:
            chat = OpenAIToolChat(
                AsyncOpenAI(api_key=env.openai_api_key, base_url=env.openai_base_url),
                model=env.llm_model,
                max_tokens=env.llm_max_tokens,
            )
        yield Services(
            adapter=adapter,
            tools=MarketDataTools(adapter),
            executor=TradeExecutionService(adapter),
            env=env,
            chat=chat,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════════════════


async def cmd_parse(args: argparse.Namespace, svc: Services) -> int:
    spec = await svc.intent_loop().resolve(args.intent)
    if args.as_json:
        _dump(spec.model_dump(mode="json"))
    else:
        _print_spec(spec)
    return 0


async def cmd_preview(args: argparse.Namespace, svc: Services) -> int:
    spec = await svc.intent_loop().resolve(args.intent)
    preview = await svc.executor.preview_trade(spec)
    if args.as_json:
        _dump(preview.model_dump(mode="json"))
    else:
        _print_preview(preview)
    return 0


def _confirm_submission(order_count: int) -> bool:
    try:
        answer = input(f"Submit {order_count} order{'s' if order_count != 1 else ''}? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


async def cmd_execute(args: argparse.Namespace, svc: Services) -> int:
    spec = await svc.intent_loop().resolve(args.intent)
    preview = await svc.executor.preview_trade(spec)
    if not args.as_json or not args.yes:
        _print_preview(preview)

    if not args.yes and not _confirm_submission(len(spec.legs)):
        print("Cancelled; no orders submitted.", file=sys.stderr)
        return 2

    result = await svc.executor.execute_trade(ExecuteTradeRequest(trade_spec=spec, confirmed=True))
    if args.as_json:
        _dump(result.model_dump(mode="json"))
    else:
        print(_hr())
        if result.error:
            print(f"  ✗ {result.error}")
        for order in result.orders:
            status = order.status if not order.error else f"{order.status}: {order.error}"
            print(f"  {order.instrument_name:<24} {order.order_id or '-':<20} {status}")
        _print_kv("success", result.success)
    return 0 if result.success else 1


async def cmd_instruments(args: argparse.Namespace, svc: Services) -> int:
    instruments = await svc.tools.get_instruments(args.underlying, args.days)
    if args.as_json:
        _dump([i.model_dump(mode="json", exclude_none=True) for i in instruments])
        return 0
    print(f"  {len(instruments)} active {args.underlying} options")
    print(_hr())
    for inst in sorted(
        instruments,
        key=lambda i: (i.option_details.expiry, i.option_details.strike_value),  # type: ignore[union-attr]
    ):
        d = inst.option_details
        print(f"  {inst.instrument_name:<26} {d.expiry_datetime:%Y-%m-%d}  {d.strike_value:>10,.0f}  {d.option_type}")  # type: ignore[union-attr]
    return 0


async def cmd_price(args: argparse.Namespace, svc: Services) -> int:
    price = await svc.tools.get_index_price(args.underlying)
    if args.as_json:
        _dump(price)
    else:
        _print_kv("underlying", price["underlying"])
        _print_kv("index price", f"{price['index_price']:,.2f}")
        _print_kv("mark price", f"{price['mark_price']:,.2f}")
    return 0


# ═══════════════════════════════════════════════════════════════════════════════
# Argument parsing
# ═══════════════════════════════════════════════════════════════════════════════


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", dest="as_json", action="store_true", help="Machine-readable output")
    common.add_argument("--debug-log", action="store_true", help="Print the pipeline activity log afterwards")

    p = argparse.ArgumentParser(
        prog="trade_intent_cli",
        description="Turn trading intents into previewed, safety-checked option orders.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--env-file", default=".env")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name, help_text in (
        ("parse", "Resolve an intent into a TradeSpec"),
        ("preview", "Resolve an intent and preview pricing, payoff and safety"),
        ("execute", "Resolve, preview and submit orders"),
    ):
        s = sub.add_parser(name, help=help_text, parents=[common])
        s.add_argument("intent", help='e.g. "bullish ETH, 2 weeks, max loss $200"')
        if name == "execute":
            s.add_argument("--yes", action="store_true", help="Submit without the interactive confirmation")

    i = sub.add_parser("instruments", help="List active options", parents=[common])
    i.add_argument("underlying", type=str.upper, choices=["ETH", "BTC"])
    i.add_argument("--days", type=float, default=None, help="Only expiries within N days")

    pr = sub.add_parser("price", help="Index price for an underlying", parents=[common])
    pr.add_argument("underlying", type=str.upper, choices=["ETH", "BTC"])
    return p


# ═══════════════════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════════════════

_COMMANDS = {
    "parse":       cmd_parse,
    "preview":     cmd_preview,
    "execute":     cmd_execute,
    "instruments": cmd_instruments,
    "price":       cmd_price,
}


async def _run(args: argparse.Namespace, env: AppEnvironmentConfig) -> int:
    async with _services(env) as svc:
        return await _COMMANDS[args.cmd](args, svc)


def _print_debug_log(debug_log: DebugLog, as_json: bool = False) -> None:
    entries = list(reversed(debug_log.entries()))
    if as_json:
        print(json.dumps(entries_as_dicts(entries), indent=2, default=str), file=sys.stderr)
        return
    print(_hr(), file=sys.stderr)
    for entry in entries:
        took = f" ({entry.duration_ms:.0f} ms)" if entry.duration_ms is not None else ""
        print(
            f"  {entry.timestamp:%H:%M:%S} {entry.type:<13} {entry.source:<16} {entry.message}{took}",
            file=sys.stderr,
        )


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env = load_environment(args.env_file)

    debug_log = DebugLog(capacity=env.debug_log_capacity) if args.debug_log else None
    if debug_log is not None:
        setup_logging(None, debug_log)
    else:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    quiet_third_party_loggers()

    try:
        return asyncio.run(_run(args, env))
    except (IntentResolutionError, DeriveAPIError, httpx.HTTPError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        if debug_log is not None:
            _print_debug_log(debug_log, args.as_json)


if __name__ == "__main__":
    sys.exit(main())
