"""Unit tests for FillTracker: fill deltas reported exactly once."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from mm_engine.db.repository import OrderRepository, ProcessedFillRepository
from mm_engine.models.order import OrderSide, OrderStatus, ProcessedFill
from mm_engine.models.strategy import FillPrice
from mm_engine.trade.fill_tracker import FillTracker
from tests.conftest import START_MS, _make_config, _make_market, _make_order


@pytest.fixture
def gateway():
    gw = AsyncMock()
    gw.get_open_orders.return_value = []
    gw.get_order.return_value = None
    return gw


@pytest.fixture
def order_repo(store):
    return OrderRepository(store)


@pytest.fixture
def processed_repo(store):
    return ProcessedFillRepository(store)


@pytest.fixture
def tracker(gateway, order_repo, processed_repo, clock):
    return FillTracker(gateway, order_repo, processed_repo, clock)


# ---------------------------------------------------------------------------
# track_order_fills
# ---------------------------------------------------------------------------


class TestTrackOrderFills:
    @pytest.mark.asyncio
    async def test_partial_fill_on_live_order(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="400000000", status=OrderStatus.PARTIALLY_FILLED)
        ]

        fills = await tracker.track_order_fills("m1", "0xowner")

        assert list(fills) == ["o1"]
        assert fills["o1"].previous_filled_quantity == "0"
        assert fills["o1"].delta_quantity == Decimal("400000000")

    @pytest.mark.asyncio
    async def test_same_fill_reported_once(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="400000000", status=OrderStatus.PARTIALLY_FILLED)
        ]

        assert len(await tracker.track_order_fills("m1", "0xowner")) == 1
        assert await tracker.track_order_fills("m1", "0xowner") == {}

    @pytest.mark.asyncio
    async def test_second_partial_reports_increment(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="400000000", status=OrderStatus.PARTIALLY_FILLED)
        ]
        await tracker.track_order_fills("m1", "0xowner")

        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="700000000", status=OrderStatus.PARTIALLY_FILLED)
        ]
        fills = await tracker.track_order_fills("m1", "0xowner")
        assert fills["o1"].previous_filled_quantity == "400000000"
        assert fills["o1"].delta_quantity == Decimal("300000000")

    @pytest.mark.asyncio
    async def test_vanished_order_fetched_and_reported(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_order.return_value = _make_order(
            "o1", filled_quantity="1000000000", status=OrderStatus.FILLED
        )

        fills = await tracker.track_order_fills("m1", "0xowner")
        assert fills["o1"].delta_quantity == Decimal("1000000000")

        # Stored copy is now filled, so it is no longer tracked
        gateway.get_order.reset_mock()
        assert await tracker.track_order_fills("m1", "0xowner") == {}
        gateway.get_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_after_partial_fill(self, tracker, gateway, order_repo):
        await order_repo.upsert(
            _make_order("o1", filled_quantity="300000000", status=OrderStatus.PARTIALLY_FILLED)
        )
        gateway.get_order.return_value = _make_order(
            "o1", filled_quantity="500000000", status=OrderStatus.CANCELLED
        )

        fills = await tracker.track_order_fills("m1", "0xowner")
        assert fills["o1"].previous_filled_quantity == "300000000"
        assert fills["o1"].delta_quantity == Decimal("200000000")

    @pytest.mark.asyncio
    async def test_persisted_record_survives_cache_clear(
        self, tracker, gateway, order_repo, processed_repo
    ):
        await order_repo.upsert(_make_order("o1"))
        await processed_repo.put(
            ProcessedFill(
                order_id="o1", market_id="m1", filled_quantity="1000000000", updated_at=START_MS
            )
        )
        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="1000000000", status=OrderStatus.PARTIALLY_FILLED)
        ]

        tracker.clear_processed_fills()
        assert await tracker.track_order_fills("m1", "0xowner") == {}

    @pytest.mark.asyncio
    async def test_released_fill_reported_again(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_order.return_value = _make_order(
            "o1", filled_quantity="1000000000", status=OrderStatus.FILLED
        )
        fills = await tracker.track_order_fills("m1", "0xowner")

        await tracker.release(fills["o1"])
        tracker.clear_processed_fills()

        again = await tracker.track_order_fills("m1", "0xowner")
        assert again["o1"].previous_filled_quantity == "0"
        assert again["o1"].delta_quantity == Decimal("1000000000")

    @pytest.mark.asyncio
    async def test_release_keeps_earlier_partial_baseline(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="400000000", status=OrderStatus.PARTIALLY_FILLED)
        ]
        await tracker.track_order_fills("m1", "0xowner")

        gateway.get_open_orders.return_value = [
            _make_order("o1", filled_quantity="700000000", status=OrderStatus.PARTIALLY_FILLED)
        ]
        second = await tracker.track_order_fills("m1", "0xowner")
        await tracker.release(second["o1"])

        again = await tracker.track_order_fills("m1", "0xowner")
        assert again["o1"].previous_filled_quantity == "400000000"
        assert again["o1"].delta_quantity == Decimal("300000000")

    @pytest.mark.asyncio
    async def test_unknown_live_order_is_stored(self, tracker, gateway, order_repo):
        gateway.get_open_orders.return_value = [_make_order("o9")]
        assert await tracker.track_order_fills("m1", "0xowner") == {}
        assert await order_repo.get("o9") is not None

    @pytest.mark.asyncio
    async def test_unfetchable_order_skipped(self, tracker, gateway, order_repo):
        await order_repo.upsert(_make_order("o1"))
        gateway.get_order.return_value = None
        assert await tracker.track_order_fills("m1", "0xowner") == {}


# ---------------------------------------------------------------------------
# Fill prices
# ---------------------------------------------------------------------------


class TestUpdateFillPrices:
    def test_appends_buy_fill_and_sets_average(self, tracker):
        market = _make_market()
        order = _make_order(filled_quantity="500000000", price_fill="100000000")
        config = tracker.update_fill_prices(_make_config(), order, market, "0")

        assert config.last_fill_prices.buy[0].price == "100"
        assert config.last_fill_prices.buy[0].quantity == "0.5"
        assert Decimal(config.average_buy_price) == Decimal("100")
        assert config.average_sell_price is None

    def test_weighted_average_across_fills(self, tracker):
        market = _make_market()
        config = tracker.update_fill_prices(
            _make_config(), _make_order(filled_quantity="500000000", price_fill="100000000"), market
        )
        config = tracker.update_fill_prices(
            config,
            _make_order("o2", filled_quantity="1500000000", price_fill="110000000"),
            market,
        )
        # 0.5 @ 100 + 1.5 @ 110 -> 107.5
        assert Decimal(config.average_buy_price) == Decimal("107.5")

    def test_sell_fill_uses_limit_price_without_fill_price(self, tracker):
        order = _make_order(side=OrderSide.SELL, filled_quantity="500000000", price="120000000")
        config = tracker.update_fill_prices(_make_config(), order, _make_market())
        assert config.last_fill_prices.sell[0].price == "120"
        assert Decimal(config.average_sell_price) == Decimal("120")

    def test_no_increment_returns_same_config(self, tracker):
        config = _make_config()
        order = _make_order(filled_quantity="500000000")
        assert tracker.update_fill_prices(config, order, _make_market(), "500000000") is config


class TestCalculateAveragePrice:
    FILLS = [
        FillPrice(price="100", quantity="1", timestamp=1),
        FillPrice(price="110", quantity="3", timestamp=2),
    ]

    def test_weighted(self):
        assert Decimal(FillTracker.calculate_average_price(self.FILLS)) == Decimal("107.5")

    def test_simple(self):
        assert Decimal(FillTracker.calculate_average_price(self.FILLS, "simple")) == Decimal("105")

    def test_empty(self):
        assert FillTracker.calculate_average_price([]) is None
