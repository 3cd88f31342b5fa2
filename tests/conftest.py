"""Fixtures for mm-engine tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from mm_engine.config import Settings
from mm_engine.models.market import AssetBalance, AssetInfo, Market, OrderBook, Ticker
from mm_engine.models.order import Order, OrderSide, OrderStatus, OrderType
from mm_engine.models.strategy import StrategyConfig

START_MS = 1_700_000_000_000  # 2023-11-14T22:13:20Z


# --- Test doubles ---


class FakeClock:
    """Manual clock. ``sleep`` advances time; with ``park=True`` any positive sleep blocks until cancelled."""

    def __init__(self, now_ms: int = START_MS, park: bool = False) -> None:
        self.now = now_ms
        self.park = park
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.park and seconds > 0:
            await asyncio.Event().wait()
        self.now += int(seconds * 1000)
        await asyncio.sleep(0)


class InMemoryDocumentStore:
    """Dict-backed stand-in with the DocumentStore contract."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict]] = {}

    async def get(self, collection: str, key: str) -> dict | None:
        doc = self.collections.get(collection, {}).get(key)
        return dict(doc) if doc is not None else None

    async def put(self, collection: str, key: str, document: dict) -> None:
        self.collections.setdefault(collection, {})[key] = dict(document)

    async def update(self, collection: str, key: str, changes: dict) -> dict:
        docs = self.collections.get(collection, {})
        if key not in docs:
            raise KeyError(f"{collection}/{key}")
        docs[key] = {**docs[key], **changes}
        return dict(docs[key])

    async def delete(self, collection: str, key: str) -> bool:
        return self.collections.get(collection, {}).pop(key, None) is not None

    async def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        predicate: Callable[[dict], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        documents = [dict(d) for d in self.collections.get(collection, {}).values()]
        if where:
            documents = [
                d for d in documents if all(d.get(field) == value for field, value in where.items())
            ]
        if predicate is not None:
            documents = [d for d in documents if predicate(d)]
        if order_by is not None:
            documents.sort(key=lambda d: d.get(order_by) or 0, reverse=descending)
        if limit is not None:
            documents = documents[:limit]
        return documents


# --- Model helpers ---


def _make_market(
    market_id: str = "m1",
    base_decimals: int = 9,
    quote_decimals: int = 6,
    base_max_precision: int | None = 3,
    quote_max_precision: int | None = None,
    tick_size: str | None = None,
    step_size: str | None = None,
    min_order: str | None = None,
) -> Market:
    return Market(
        market_id=market_id,
        contract_id="0xcontract",
        base=AssetInfo(
            symbol="ETH", asset_id="0xeth", decimals=base_decimals, max_precision=base_max_precision
        ),
        quote=AssetInfo(
            symbol="USDC",
            asset_id="0xusdc",
            decimals=quote_decimals,
            max_precision=quote_max_precision,
        ),
        tick_size=tick_size,
        step_size=step_size,
        min_order=min_order,
    )


def _make_config(market_id: str = "m1", **overrides) -> StrategyConfig:
    """StrategyConfig with nested sections given as dicts, e.g. risk_management={...}."""
    data: dict[str, Any] = {
        "market_id": market_id,
        "name": "Test Strategy",
        "created_at": START_MS,
        "updated_at": START_MS,
    }
    data.update(overrides)
    return StrategyConfig.model_validate(data)


def _make_order(
    order_id: str = "o1",
    market_id: str = "m1",
    side: OrderSide = OrderSide.BUY,
    price: str = "100000000",
    quantity: str = "1000000000",
    filled_quantity: str = "0",
    price_fill: str | None = None,
    status: OrderStatus = OrderStatus.OPEN,
    order_type: OrderType = OrderType.SPOT,
    created_at: int = START_MS,
) -> Order:
    return Order(
        order_id=order_id,
        market_id=market_id,
        side=side,
        order_type=order_type,
        price=price,
        price_fill=price_fill,
        quantity=quantity,
        filled_quantity=filled_quantity,
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )


def _make_ticker(last_price: str = "100000000", market_id: str = "m1") -> Ticker:
    return Ticker(market_id=market_id, last_price=last_price)


def _make_order_book(
    bids: list[tuple[str, str]] | None = None,
    asks: list[tuple[str, str]] | None = None,
    market_id: str = "m1",
) -> OrderBook:
    """Defaults to a 99.9 / 100.1 book, 10 ETH deep per level (quote 6dp, base 9dp)."""
    return OrderBook(
        market_id=market_id,
        bids=bids if bids is not None else [("99900000", "10000000000")],
        asks=asks if asks is not None else [("100100000", "10000000000")],
    )


def _make_balance_source(base_unlocked: str = "1000000000", quote_unlocked: str = "500000000"):
    """BalanceSource double: 1 ETH and 500 USDC by default."""
    balances = {
        "0xeth": AssetBalance(asset_id="0xeth", unlocked=base_unlocked, total=base_unlocked),
        "0xusdc": AssetBalance(asset_id="0xusdc", unlocked=quote_unlocked, total=quote_unlocked),
    }
    source = AsyncMock()
    source.get_balance = AsyncMock(side_effect=lambda asset_id, account_id: balances[asset_id])
    source.balances = balances
    return source


def _make_settings(**overrides) -> Settings:
    values = {"FILL_FETCH_DELAY_SECONDS": 0.0, "FILL_SETTLE_DELAY_SECONDS": 0.0}
    values.update(overrides)
    return Settings(**values)


# --- Fixtures ---


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def market() -> Market:
    return _make_market()


@pytest.fixture
def settings() -> Settings:
    return _make_settings()
