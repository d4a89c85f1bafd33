from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from models.market import DeriveInstrument, DeriveTicker, OrderResponse


class MarketDataPort(ABC):
    """Abstract contract for exchange discovery, pricing and order submission."""

    @abstractmethod
    async def get_instruments(self, currency: str, *, expired: bool = False) -> List[DeriveInstrument]:
        """Return option instruments listed for *currency*."""

        raise NotImplementedError

    @abstractmethod
    async def get_ticker(self, instrument_name: str) -> DeriveTicker:
        """Return best bid/ask, mark, index and Greeks for one instrument."""

        raise NotImplementedError

    @abstractmethod
    async def submit_order(
        self,
        instrument_name: str,
        side: str,
        amount: str,
        limit_price: str,
    ) -> OrderResponse:
        """Place a limit order; *amount* and *limit_price* are exchange-formatted decimals."""

        raise NotImplementedError
