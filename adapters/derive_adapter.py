"""
adapters/derive_adapter.py: Derive (formerly Lyra) exchange REST client.

Public endpoints (no auth):
    POST /public/get_instruments   {currency, instrument_type, expired}
    POST /public/get_ticker        {instrument_name}

Private endpoint (authenticated):
    POST /private/order            signed limit order

Request signing and session-key management belong to the wallet layer and
are injected as an ``OrderSigner``; this adapter only transports the result.

Usage::

    async with httpx.AsyncClient(timeout=10) as http:
        adapter = DeriveAdapter(http, base_url="https://api.lyra.finance")
        ticker = await adapter.get_ticker("ETH-PERP")
"""
from __future__ import annotations

import logging
import time
from typing import Any, List, Optional, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from adapters.base_adapter import MarketDataPort
from models.market import DeriveInstrument, DeriveTicker, OrderResponse

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.lyra.finance"

_M = TypeVar("_M", bound=BaseModel)


class DeriveAPIError(Exception):
    """Raised when the exchange returns a non-2xx status or an error body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OrderSigner(Protocol):
    """Wallet-side collaborator that authenticates private requests."""

    async def auth_headers(self) -> dict[str, str]: ...

    async def sign_order(self, order: dict[str, Any]) -> dict[str, Any]: ...


class DeriveAdapter(MarketDataPort):
    """Thin async wrapper over the Derive JSON-RPC-over-HTTP API.

    Args:
        http:     A shared ``httpx.AsyncClient`` owned by the caller.
        base_url: API root (``DERIVE_API_BASE_URL``).
        signer:   Optional ``OrderSigner``; required only for ``submit_order``.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str = DEFAULT_BASE_URL,
        signer: Optional[OrderSigner] = None,
    ) -> None:
        self._http = http
        self.base_url = base_url.rstrip("/")
        self._signer = signer

    # ------------------------------------------------------------------ #
    # Transport                                                          #
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        endpoint: str,
        params: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        started = time.perf_counter()
        logger.debug(
            "POST %s",
            endpoint,
            extra={"debug_type": "api_call", "debug_source": "Derive", "debug_data": params},
        )
        response = await self._http.post(
            f"{self.base_url}{endpoint}",
            json=params,
            headers={"Content-Type": "application/json", **(headers or {})},
        )
        if response.status_code >= 400:
            logger.error("Derive API error %s on %s: %.200s", response.status_code, endpoint, response.text)
            raise DeriveAPIError(
                f"Derive API error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise DeriveAPIError(f"Could not parse Derive response from {endpoint}: {exc}") from exc

        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise DeriveAPIError(f"Derive API error: {message}", status_code=response.status_code)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            "Response from %s (%.0f ms)",
            endpoint,
            duration_ms,
            extra={"debug_type": "api_response", "debug_source": "Derive", "duration_ms": duration_ms},
        )
        return payload.get("result") if isinstance(payload, dict) else payload

    @staticmethod
    def _validate(model: type[_M], result: Any, endpoint: str) -> _M:
        if result is None:
            raise DeriveAPIError(f"Derive response from {endpoint} has no result")
        try:
            return model.model_validate(result)
        except ValidationError as exc:
            raise DeriveAPIError(f"Unexpected Derive response from {endpoint}: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Public endpoints                                                   #
    # ------------------------------------------------------------------ #

    async def get_instruments(self, currency: str, *, expired: bool = False) -> List[DeriveInstrument]:
        result = await self._request(
            "/public/get_instruments",
            {"currency": currency.upper(), "instrument_type": "option", "expired": expired},
        )
        return [DeriveInstrument.model_validate(item) for item in result or []]

    async def get_ticker(self, instrument_name: str) -> DeriveTicker:
        result = await self._request("/public/get_ticker", {"instrument_name": instrument_name})
        return self._validate(DeriveTicker, result, "/public/get_ticker")

    # ------------------------------------------------------------------ #
    # Private endpoints                                                  #
    # ------------------------------------------------------------------ #

    async def submit_order(
        self,
        instrument_name: str,
        side: str,
        amount: str,
        limit_price: str,
    ) -> OrderResponse:
        if self._signer is None:
            raise DeriveAPIError("No order signer configured; cannot submit private orders")

        order = {
            "instrument_name": instrument_name,
            "direction": side,
            "amount": amount,
            "limit_price": limit_price,
            "order_type": "limit",
            "time_in_force": "gtc",
        }
        signed = await self._signer.sign_order(order)
        headers = await self._signer.auth_headers()
        result = await self._request("/private/order", signed, headers=headers)
        # /private/order wraps the order under "order"
        payload = result.get("order", result) if isinstance(result, dict) else result
        response = self._validate(OrderResponse, payload, "/private/order")
        logger.info(
            "Order %s submitted: %s %s %s @ %s (%s)",
            response.order_id, side, amount, instrument_name, limit_price, response.order_status,
        )
        return response
