"""Collaborator interfaces the engine consumes.

The exchange protocol lives behind these; the engine only ever sees scaled
integer strings (``human_value * 10**decimals``) for prices and quantities.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from mm_engine.models.market import AssetBalance, Market, OrderBook, Ticker
    from mm_engine.models.order import Order, OrderSide, OrderType


class OrderGateway(Protocol):
    async def place_order(
        self,
        market: Market,
        side: OrderSide,
        order_type: OrderType,
        scaled_price: str,
        scaled_quantity: str,
        owner: str,
    ) -> Order: ...

    async def get_order(self, order_id: str, market_id: str, owner: str) -> Order | None: ...

    async def get_open_orders(self, market_id: str, owner: str) -> list[Order]: ...

    async def cancel_order(self, order_id: str, market_id: str, owner: str) -> None: ...


class MarketDataSource(Protocol):
    async def get_market(self, market_id: str) -> Market | None: ...

    async def get_ticker(self, market_id: str) -> Ticker | None: ...

    async def get_order_book(self, market_id: str) -> OrderBook | None: ...


class BalanceSource(Protocol):
    async def get_balance(self, asset_id: str, account_id: str) -> AssetBalance: ...


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
