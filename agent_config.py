from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date
from typing import Optional

from dotenv import load_dotenv


@dataclass(slots=True)
class AppEnvironmentConfig:
    derive_api_base_url: str
    derive_timeout_seconds: float
    llm_model: str
    openai_api_key: Optional[str]
    openai_base_url: Optional[str]
    agent_max_iterations: int
    llm_max_tokens: int
    debug_log_capacity: int


def load_environment(env_file: str = ".env") -> AppEnvironmentConfig:
    load_dotenv(env_file, override=False)

    return AppEnvironmentConfig(
        derive_api_base_url=os.getenv("DERIVE_API_BASE_URL", "https://api.lyra.finance"),
        derive_timeout_seconds=float(os.getenv("DERIVE_TIMEOUT_SECONDS", "10")),
        llm_model=os.getenv("LLM_MODEL", "gpt-4.1"),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        agent_max_iterations=int(os.getenv("AGENT_MAX_ITERATIONS", "10")),
        llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "4096")),
        debug_log_capacity=int(os.getenv("DEBUG_LOG_CAPACITY", "100")),
    )


_AGENT_SYSTEM_PROMPT_TEMPLATE = """
You are an options trading assistant for the Derive (Lyra) exchange. You turn a trader's free-text
intent into one TradeSpec JSON object, choosing instruments only from live market data.

Required workflow:
1. Call get_index_price for the underlying.
2. Call find_liquid_options for the option type and expiry window you need.
3. Pick instruments from what the tools returned and size the position.
4. Only then answer with the TradeSpec.
Never invent instrument names or prices. An answer given before both tool calls is rejected.

Reading the intent:
- Underlying is ETH or BTC (ETH when unstated).
- Bullish means calls, bearish means puts. "spread" means a vertical: bull call spread buys the lower
  strike and sells the higher; bear put spread buys the higher strike and sells the lower.
- Convert the horizon to days ("2 weeks" is 14, search roughly 10-20 days) and prefer the nearest
  expiry with good liquidity.
- Max loss defaults to $200.

Sizing: use 80-100% of the max-loss budget. amount = floor(max_loss_usd / price * 100) / 100 where
price is the ask (mark if there is no ask), clamped to 0.1..10 contracts. Only choose instruments with
both a bid and an ask.

Answer with raw JSON only, no markdown:
{
  "underlying": "ETH",
  "strategy": "Long Call",
  "expiry": "YYYYMMDD",
  "legs": [{"instrument_name": "ETH-20251227-3000-C", "side": "buy", "amount": 1.0}],
  "max_cost_usd": <sum of ask x amount over buy legs>,
  "max_loss_usd": <stated limit or 200>,
  "explanation": "<why this strike and expiry, and how the cost was computed>"
}

Today's date: {today}
""".strip()


def build_agent_system_prompt(today: Optional[date] = None) -> str:
    return _AGENT_SYSTEM_PROMPT_TEMPLATE.replace("{today}", (today or date.today()).isoformat())
