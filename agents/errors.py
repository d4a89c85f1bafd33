"""agents/errors.py: Failure taxonomy for intent resolution.

Fatal:       ProtocolViolation, ExtractionError, SchemaValidationError,
             IterationBudgetExceeded
Recoverable: InsufficientToolUsage (one corrective turn), ToolExecutionError
             (fed back to the model as an error-tagged tool result)
"""
from __future__ import annotations

from typing import List


class IntentResolutionError(Exception):
    """Base class for every failure raised while resolving an intent."""


class ProtocolViolation(IntentResolutionError):
    """The model returned a response shape the loop does not recognize."""


class InsufficientToolUsage(IntentResolutionError):
    """The model tried to answer before querying enough market data."""

    def __init__(self, tool_calls: int, required: int) -> None:
        super().__init__(
            f"Agent tried to output without using enough tools "
            f"(used {tool_calls}, need at least {required})"
        )
        self.tool_calls = tool_calls
        self.required = required


class ToolExecutionError(IntentResolutionError):
    """A market-data tool failed; surfaced to the model, never aborts the loop."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name} failed: {message}")
        self.tool_name = tool_name
        self.detail = message


class ExtractionError(IntentResolutionError):
    """No parseable JSON was found in the model's final answer."""


class SchemaValidationError(IntentResolutionError):
    """Parsed JSON does not satisfy the TradeSpec contract."""

    def __init__(self, issues: List[str]) -> None:
        super().__init__(f"TradeSpec schema validation failed: {', '.join(issues)}")
        self.issues = issues


class IterationBudgetExceeded(IntentResolutionError):
    """The loop did not settle within its maximum number of model round trips."""

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Agent exceeded maximum iterations ({max_iterations})")
        self.max_iterations = max_iterations
