"""
agents/intent_parser.py
────────────────────────
Turns a free-text trading intent into a validated ``TradeSpec`` by letting a
tool-calling model query live market data first.

State machine (one iteration = one model round trip):

    REQUEST_MODEL ──new tool calls──▶ EXECUTE_TOOLS ──▶ REQUEST_MODEL
          │
          ├─ final text, < MIN_TOOL_CALLS tools used ─▶ corrective turn ─▶ REQUEST_MODEL
          ├─ final text, enough tools used ──────────▶ EXTRACT_OUTPUT ─▶ DONE | FAILED
          └─ anything else ──────────────────────────▶ FAILED (ProtocolViolation)

The loop is bounded by ``max_iterations``; running out raises
``IterationBudgetExceeded`` and no partial TradeSpec is ever returned.
Processed tool ids live on the explicit ``LoopAccumulator`` so a repeated id
is never executed twice.

Usage::

    loop = IntentResolutionLoop(chat, MarketDataTools(adapter))
    spec = await loop.resolve("bullish ETH, 2 weeks, max loss $200")
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from agent_config import build_agent_system_prompt
from agent_tools.market_data_tools import MarketDataTools
from agents.errors import (
    ExtractionError,
    InsufficientToolUsage,
    IterationBudgetExceeded,
    ProtocolViolation,
    SchemaValidationError,
    ToolExecutionError,
)
from agents.llm_client import STOP_END_TURN, ChatModel, ModelTurn, ToolCall
from models.trade_spec import TradeSpec

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10
MIN_TOOL_CALLS = 2
MAX_TOOL_RESULT_ITEMS = 20
TOOL_RESULT_SAMPLE_SIZE = 10

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


class LoopState(str, Enum):
    REQUEST_MODEL = "REQUEST_MODEL"
    EXECUTE_TOOLS = "EXECUTE_TOOLS"
    EXTRACT_OUTPUT = "EXTRACT_OUTPUT"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class LoopAccumulator:
    """Conversation-scoped state threaded through every iteration."""

    messages: list[dict[str, Any]]
    processed_tool_ids: set[str] = field(default_factory=set)
    iterations: int = 0
    corrective_turns: int = 0
    state: LoopState = LoopState.REQUEST_MODEL
    result: Optional[TradeSpec] = None
    error: Optional[str] = None

    @property
    def tool_call_count(self) -> int:
        return len(self.processed_tool_ids)


# ------------------------------------------------------------------ #
# Output extraction                                                  #
# ------------------------------------------------------------------ #


def _first_object_span(text: str) -> Optional[str]:
    """Return the first brace-balanced ``{...}`` span, ignoring braces in strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_candidate_json(text: str) -> str:
    """Pick the JSON candidate from free-form model output.

    Order: fenced code block → first brace-matched object → raw trimmed text.
    """
    fence = _FENCED_BLOCK.search(text)
    if fence:
        return fence.group(1).strip()
    span = _first_object_span(text)
    if span is not None:
        return span
    return text.strip()


def parse_trade_spec(text: str) -> TradeSpec:
    """Extract, parse and validate a TradeSpec from the model's final answer.

    Raises:
        ExtractionError: no parseable JSON in *text*.
        SchemaValidationError: JSON parsed but violates the TradeSpec contract.
    """
    candidate = extract_candidate_json(text)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        logger.error(
            "Failed to parse JSON from agent response",
            extra={"debug_type": "error", "debug_source": "IntentParser", "debug_data": {"text": text[:500]}},
        )
        raise ExtractionError(f"Failed to parse agent response as JSON: {text[:200]}") from exc

    try:
        return TradeSpec.model_validate(parsed)
    except ValidationError as exc:
        issues = [
            f"{'.'.join(str(part) for part in err['loc']) or '(root)'}: {err['msg']}"
            for err in exc.errors(include_url=False)
        ]
        logger.error("TradeSpec validation failed: %s", issues)
        raise SchemaValidationError(issues) from exc


def summarize_tool_result(result: Any) -> str:
    """Serialize a tool result, collapsing large lists to a count plus a sample."""
    if isinstance(result, list) and len(result) > MAX_TOOL_RESULT_ITEMS:
        result = {
            "total_count": len(result),
            "sample": result[:TOOL_RESULT_SAMPLE_SIZE],
            "message": (
                f"Showing first {TOOL_RESULT_SAMPLE_SIZE} of {len(result)} results. "
                "Use more specific filters if needed."
            ),
        }
    return json.dumps(result, indent=2, default=str)


# ------------------------------------------------------------------ #
# The loop                                                           #
# ------------------------------------------------------------------ #


class IntentResolutionLoop:
    """Drives the model through market-data tool calls to a TradeSpec.

    Args:
        chat:           A ``ChatModel`` (constructed once by the caller).
        tools:          The ``MarketDataTools`` registry to expose.
        max_iterations: Hard bound on model round trips.
        min_tool_calls: Distinct tool invocations required before an answer is accepted.
        system_prompt:  Override for the agent system prompt.
    """

    def __init__(
        self,
        chat: ChatModel,
        tools: MarketDataTools,
        *,
        max_iterations: int = MAX_ITERATIONS,
        min_tool_calls: int = MIN_TOOL_CALLS,
        system_prompt: Optional[str] = None,
    ) -> None:
        self._chat = chat
        self._tools = tools
        self.max_iterations = max_iterations
        self.min_tool_calls = min_tool_calls
        self._system_prompt = system_prompt or build_agent_system_prompt()

    def start(self, intent: str) -> LoopAccumulator:
        return LoopAccumulator(
            messages=[
                self._chat.user_message(
                    "Parse this trading intent and create an optimal trade using real market data:\n\n"
                    f'"{intent}"\n\n'
                    "Remember: You MUST call get_index_price and find_liquid_options "
                    "BEFORE outputting any TradeSpec."
                )
            ]
        )

    async def resolve(self, intent: str) -> TradeSpec:
        started = time.perf_counter()
        logger.info(
            "Starting agent loop for: %.50s",
            intent,
            extra={"debug_type": "ai_request", "debug_source": "IntentParser", "debug_data": {"intent": intent}},
        )
        acc = self.start(intent)

        while acc.iterations < self.max_iterations:
            await self.step(acc)
            if acc.state is LoopState.DONE and acc.result is not None:
                duration_ms = (time.perf_counter() - started) * 1000
                logger.info(
                    "Agent completed in %d iterations with %d tool calls",
                    acc.iterations,
                    acc.tool_call_count,
                    extra={
                        "debug_type": "ai_response",
                        "debug_source": "IntentParser",
                        "debug_data": {"strategy": acc.result.strategy, "legs": len(acc.result.legs)},
                        "duration_ms": duration_ms,
                    },
                )
                return acc.result

        acc.state = LoopState.FAILED
        error = IterationBudgetExceeded(self.max_iterations)
        acc.error = str(error)
        logger.error(str(error))
        raise error

    async def step(self, acc: LoopAccumulator) -> LoopAccumulator:
        """Run one model round trip and the transition it triggers."""
        acc.iterations += 1
        acc.state = LoopState.REQUEST_MODEL
        logger.debug("Agent iteration %d/%d", acc.iterations, self.max_iterations)

        turn = await self._chat.complete(
            acc.messages,
            tools=self._tools.definitions(),
            system=self._system_prompt,
        )

        new_calls = self._new_tool_calls(turn, acc)
        if new_calls:
            acc.state = LoopState.EXECUTE_TOOLS
            await self._execute_tools(acc, turn, new_calls)
            acc.state = LoopState.REQUEST_MODEL
            return acc

        if turn.stop_reason == STOP_END_TURN and turn.text:
            if acc.tool_call_count < self.min_tool_calls:
                self._request_more_tools(acc, turn)
                return acc

            acc.state = LoopState.EXTRACT_OUTPUT
            try:
                acc.result = parse_trade_spec(turn.text)
            except (ExtractionError, SchemaValidationError) as exc:
                acc.state = LoopState.FAILED
                acc.error = str(exc)
                raise
            acc.state = LoopState.DONE
            logger.info("TradeSpec extracted: %s on %s", acc.result.strategy, acc.result.underlying)
            return acc

        acc.state = LoopState.FAILED
        error = ProtocolViolation(
            f"Unexpected agent state: stop_reason={turn.stop_reason}, has_text={bool(turn.text)}"
        )
        acc.error = str(error)
        logger.error(str(error))
        raise error

    # ------------------------------------------------------------------ #
    # Transitions                                                        #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _new_tool_calls(turn: ModelTurn, acc: LoopAccumulator) -> list[ToolCall]:
        seen: set[str] = set()
        fresh: list[ToolCall] = []
        for call in turn.tool_calls:
            if call.id in acc.processed_tool_ids or call.id in seen:
                continue
            seen.add(call.id)
            fresh.append(call)
        return fresh

    async def _execute_tools(self, acc: LoopAccumulator, turn: ModelTurn, calls: list[ToolCall]) -> None:
        acc.messages.append(
            self._chat.assistant_message(ModelTurn(text=turn.text, tool_calls=calls, stop_reason=turn.stop_reason))
        )
        for call in calls:
            acc.processed_tool_ids.add(call.id)
            try:
                result = await self._tools.execute(call.name, call.input)
                content, is_error = summarize_tool_result(result), False
            except ToolExecutionError as exc:
                logger.warning("Tool %s failed: %s", call.name, exc.detail)
                content, is_error = json.dumps({"error": exc.detail}), True
            acc.messages.append(self._chat.tool_result_message(call, content, is_error=is_error))

    def _request_more_tools(self, acc: LoopAccumulator, turn: ModelTurn) -> None:
        shortfall = InsufficientToolUsage(acc.tool_call_count, self.min_tool_calls)
        logger.warning(
            str(shortfall),
            extra={"debug_type": "error", "debug_source": "IntentParser", "debug_data": {"text": turn.text[:200]}},
        )
        acc.messages.append(self._chat.assistant_message(ModelTurn(text=turn.text)))
        acc.messages.append(
            self._chat.user_message(
                "ERROR: You must call get_index_price AND find_liquid_options before outputting "
                f"a TradeSpec. You have only made {acc.tool_call_count} tool calls. "
                "Please call the required tools now."
            )
        )
        acc.corrective_turns += 1
        acc.state = LoopState.REQUEST_MODEL
