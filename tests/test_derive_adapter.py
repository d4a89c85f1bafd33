"""tests/test_derive_adapter.py: DeriveAdapter over httpx.MockTransport (no network)."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from adapters.derive_adapter import DeriveAdapter, DeriveAPIError

BASE_URL = "https://api.test.derive"


def _adapter(handler: Callable[[httpx.Request], httpx.Response], signer=None) -> tuple[DeriveAdapter, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeriveAdapter(http, base_url=BASE_URL + "/", signer=signer), http


class _Recorder:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


class _Signer:
    async def auth_headers(self) -> dict[str, str]:
        return {"X-LyraWallet": "0xabc", "X-LyraSignature": "sig"}

    async def sign_order(self, order: dict[str, Any]) -> dict[str, Any]:
        return {**order, "signature": "0xsigned", "subaccount_id": 42}


TICKER = {
    "instrument_name": "ETH-20250110-3500-C",
    "best_bid_price": "0",
    "best_ask_price": "152.5",
    "mark_price": "150.1",
    "index_price": "3401.25",
    "option_pricing": {"delta": "0.41", "iv": "0.62"},
}


@pytest.mark.asyncio
async def test_get_ticker_posts_json_and_parses_prices():
    recorder = _Recorder({"result": TICKER})
    adapter, http = _adapter(recorder)
    async with http:
        ticker = await adapter.get_ticker("ETH-20250110-3500-C")

    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/public/get_ticker"
    assert recorder.body == {"instrument_name": "ETH-20250110-3500-C"}
    assert ticker.bid is None  # "0" means no bid
    assert ticker.ask == 152.5
    assert ticker.mark == 150.1
    assert ticker.index == 3401.25
    assert ticker.delta == 0.41


@pytest.mark.asyncio
async def test_get_instruments_request_shape():
    recorder = _Recorder(
        {
            "result": [
                {
                    "instrument_name": "ETH-20250110-3500-C",
                    "is_active": True,
                    "option_details": {"expiry": 1736496000, "strike": "3500", "option_type": "C"},
                    "some_new_field": "ignored",
                }
            ]
        }
    )
    adapter, http = _adapter(recorder)
    async with http:
        instruments = await adapter.get_instruments("eth")

    assert recorder.body == {"currency": "ETH", "instrument_type": "option", "expired": False}
    assert len(instruments) == 1
    assert instruments[0].option_details.strike_value == 3500.0


@pytest.mark.asyncio
async def test_http_error_raises_with_status():
    adapter, http = _adapter(lambda request: httpx.Response(503, text="upstream down"))
    async with http:
        with pytest.raises(DeriveAPIError) as exc_info:
            await adapter.get_ticker("ETH-PERP")

    assert exc_info.value.status_code == 503
    assert "503" in str(exc_info.value)


@pytest.mark.asyncio
async def test_error_body_raises():
    recorder = _Recorder({"error": {"code": 11000, "message": "Instrument not found"}})
    adapter, http = _adapter(recorder)
    async with http:
        with pytest.raises(DeriveAPIError, match="Instrument not found"):
            await adapter.get_ticker("ETH-20990101-1-C")


@pytest.mark.asyncio
async def test_non_json_body_raises():
    adapter, http = _adapter(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    async with http:
        with pytest.raises(DeriveAPIError, match="Could not parse"):
            await adapter.get_ticker("ETH-PERP")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, match",
    [
        ({"id": 1}, "has no result"),
        ({"result": None}, "has no result"),
        ({"result": {"instrument_name": "ETH-PERP"}}, "Unexpected Derive response"),
    ],
)
async def test_ticker_without_usable_result_raises(payload, match):
    adapter, http = _adapter(_Recorder(payload))
    async with http:
        with pytest.raises(DeriveAPIError, match=match):
            await adapter.get_ticker("ETH-PERP")


@pytest.mark.asyncio
async def test_submit_order_requires_signer():
    recorder = _Recorder({"result": {}})
    adapter, http = _adapter(recorder)
    async with http:
        with pytest.raises(DeriveAPIError, match="No order signer configured"):
            await adapter.submit_order("ETH-20250110-3500-C", "buy", "1.00", "152.5")

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_submit_order_signs_and_unwraps():
    recorder = _Recorder(
        {
            "result": {
                "order": {
                    "order_id": "abc-123",
                    "instrument_name": "ETH-20250110-3500-C",
                    "direction": "buy",
                    "amount": "1.00",
                    "limit_price": "152.5",
                    "order_status": "open",
                },
                "trades": [],
            }
        }
    )
    adapter, http = _adapter(recorder, signer=_Signer())
    async with http:
        response = await adapter.submit_order("ETH-20250110-3500-C", "buy", "1.00", "152.5")

    request = recorder.requests[0]
    assert str(request.url) == f"{BASE_URL}/private/order"
    assert request.headers["X-LyraSignature"] == "sig"
    assert recorder.body["signature"] == "0xsigned"
    assert recorder.body["order_type"] == "limit"
    assert recorder.body["amount"] == "1.00"
    assert response.order_id == "abc-123"
    assert response.order_status == "open"
