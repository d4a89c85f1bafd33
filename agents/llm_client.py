"""agents/llm_client.py: Tool-calling chat capability for the intent agent.

The intent loop only depends on the ``ChatModel`` protocol: one round trip
takes the running conversation plus tool declarations and returns a
``ModelTurn`` (free text, tool calls, stop reason).  The protocol also owns
the provider's message shapes so the loop never builds raw provider dicts.

``OpenAIToolChat`` implements it on ``openai.AsyncOpenAI``.  Any
OpenAI-compatible endpoint works via ``base_url``.

Usage::

    from openai import AsyncOpenAI
    from agents.llm_client import OpenAIToolChat

    chat = OpenAIToolChat(AsyncOpenAI(api_key=...), model="gpt-4.1")
    turn = await chat.complete(messages, tools=tools, system=build_agent_system_prompt())
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

# Normalized stop reasons
STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"

_FINISH_REASON_MAP = {
    "stop": STOP_END_TURN,
    "tool_calls": STOP_TOOL_USE,
    "function_call": STOP_TOOL_USE,
}


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the model (id is unique per turn)."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ModelTurn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None


class ChatModel(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]],
        system: str = "",
    ) -> ModelTurn: ...

    def user_message(self, text: str) -> dict[str, Any]: ...

    def assistant_message(self, turn: ModelTurn) -> dict[str, Any]: ...

    def tool_result_message(self, call: ToolCall, content: str, *, is_error: bool = False) -> dict[str, Any]: ...


# ------------------------------------------------------------------ #
# OpenAI backend                                                       #
# ------------------------------------------------------------------ #


def _parse_arguments(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {"_unparsed_arguments": raw}
    return parsed if isinstance(parsed, dict) else {"_unparsed_arguments": raw}


class OpenAIToolChat:
    """``ChatModel`` over the OpenAI chat-completions API with function tools.

    Args:
        client:      A shared ``AsyncOpenAI`` instance owned by the caller.
        model:       Model identifier (``LLM_MODEL``, default ``"gpt-4.1"``).
        max_tokens:  Completion token cap per round trip.
        timeout:     Seconds to wait for one completion.
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str = "gpt-4.1",
        max_tokens: int = 4096,
        timeout: float = 60.0,
        temperature: float = 0.2,
    ) -> None:
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.temperature = temperature

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]],
        system: str = "",
    ) -> ModelTurn:
        payload: list[dict[str, Any]] = []
        if system:
            payload.append({"role": "system", "content": system})
        payload.extend(messages)

        response = await asyncio.wait_for(
            self._client.chat.completions.create(
                model=self.model,
                messages=payload,  # type: ignore[arg-type]
                tools=tools,  # type: ignore[arg-type]
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            ),
            timeout=self.timeout,
        )
        if not response.choices:
            return ModelTurn(stop_reason=None)

        choice = response.choices[0]
        message = choice.message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, input=_parse_arguments(tc.function.arguments))
            for tc in (message.tool_calls or [])
        ]
        stop_reason = _FINISH_REASON_MAP.get(choice.finish_reason or "", choice.finish_reason)
        return ModelTurn(
            text=message.content or "",
            tool_calls=calls,
            stop_reason=stop_reason,
        )

    # ── message shapes ───────────────────────────────────────────────────────

    def user_message(self, text: str) -> dict[str, Any]:
        return {"role": "user", "content": text}

    def assistant_message(self, turn: ModelTurn) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": turn.text or None}
        if turn.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.input)},
                }
                for call in turn.tool_calls
            ]
        return message

    def tool_result_message(self, call: ToolCall, content: str, *, is_error: bool = False) -> dict[str, Any]:
        # Chat completions has no error flag; errors travel as {"error": ...} content.
        return {"role": "tool", "tool_call_id": call.id, "content": content}
