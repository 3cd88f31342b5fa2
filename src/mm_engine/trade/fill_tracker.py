"""Detect new fill deltas by diffing live order state against local knowledge."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Literal

import structlog
from pydantic import BaseModel

from mm_engine.models.order import Order, OrderSide, OrderStatus, ProcessedFill
from mm_engine.models.strategy import FillPrice
from mm_engine.pricing.precision import from_scaled

if TYPE_CHECKING:
    from mm_engine.db.repository import OrderRepository, ProcessedFillRepository
    from mm_engine.gateway import Clock, OrderGateway
    from mm_engine.models.market import Market
    from mm_engine.models.strategy import StrategyConfig

logger = structlog.get_logger()


class FillDelta(BaseModel):
    order: Order
    previous_filled_quantity: str  # scaled

    @property
    def delta_quantity(self) -> Decimal:
        return Decimal(self.order.filled_quantity or "0") - Decimal(self.previous_filled_quantity)


class FillTracker:
    """Reports each (order, filled-quantity increment) exactly once.

    The baseline for an order is the larger of the stored order's
    ``filled_quantity`` and the processed-fill record. Both are advanced as
    soon as a delta is reported, so repeated polling with no new exchange-side
    fill yields an empty result.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        order_repo: OrderRepository,
        processed_fill_repo: ProcessedFillRepository,
        clock: Clock,
    ) -> None:
        self.gateway = gateway
        self.order_repo = order_repo
        self.processed_fill_repo = processed_fill_repo
        self.clock = clock
        self._processed: dict[str, Decimal] = {}

    async def track_order_fills(self, market_id: str, owner: str) -> dict[str, FillDelta]:
        live_orders = await self.gateway.get_open_orders(market_id, owner)
        tracked = {o.order_id: o for o in await self.order_repo.get_tracked(market_id)}
        live_ids = {o.order_id for o in live_orders}

        candidates: list[tuple[Order, Order | None]] = [
            (live, tracked.get(live.order_id)) for live in live_orders
        ]
        for order_id, stored in tracked.items():
            if order_id in live_ids:
                continue
            # No longer open: filled, cancelled after a partial fill, or unknown
            current = await self.gateway.get_order(order_id, market_id, owner)
            if current is None:
                continue
            candidates.append((current, stored))

        fills: dict[str, FillDelta] = {}
        for current, stored in candidates:
            baseline = await self._baseline(current.order_id, stored)
            filled = Decimal(current.filled_quantity or "0")
            if filled > baseline:
                fills[current.order_id] = FillDelta(
                    order=current, previous_filled_quantity=str(baseline)
                )
                await self._remember(current, filled)
            elif stored is None or current.status != stored.status:
                await self.order_repo.upsert(current)

        if fills:
            logger.info("fills_detected", market_id=market_id, count=len(fills))
        return fills

    async def _baseline(self, order_id: str, stored: Order | None) -> Decimal:
        baseline = Decimal(stored.filled_quantity or "0") if stored is not None else Decimal("0")
        if order_id not in self._processed:
            record = await self.processed_fill_repo.get(order_id)
            if record is not None:
                self._processed[order_id] = Decimal(record.filled_quantity)
        return max(baseline, self._processed.get(order_id, Decimal("0")))

    async def _remember(self, order: Order, filled: Decimal) -> None:
        self._processed[order.order_id] = filled
        await self.processed_fill_repo.put(
            ProcessedFill(
                order_id=order.order_id,
                market_id=order.market_id,
                filled_quantity=str(filled),
                updated_at=self.clock.now_ms(),
            )
        )
        await self.order_repo.upsert(order)

    async def release(self, delta: FillDelta) -> None:
        """Rewind an order to its pre-delta baseline so the next poll reports the fill again.

        Used when the delta could not be booked downstream.
        """
        order = delta.order
        previous = Decimal(delta.previous_filled_quantity)
        self._processed[order.order_id] = previous
        await self.processed_fill_repo.put(
            ProcessedFill(
                order_id=order.order_id,
                market_id=order.market_id,
                filled_quantity=str(previous),
                updated_at=self.clock.now_ms(),
            )
        )
        await self.order_repo.upsert(
            order.model_copy(
                update={"status": OrderStatus.OPEN, "filled_quantity": str(previous)}
            )
        )
        logger.warning(
            "fill_released", order_id=order.order_id, filled_quantity=str(previous)
        )

    def clear_processed_fills(self) -> None:
        """Drop the in-memory de-dup cache. Persisted records are re-read on demand."""
        self._processed.clear()

    def get_fill_price(self, order: Order, market: Market) -> Decimal:
        """Human-readable execution price, falling back to the order's limit price."""
        if order.price_fill and order.price_fill != "0":
            return from_scaled(order.price_fill, market.quote.decimals)
        return from_scaled(order.price, market.quote.decimals)

    def update_fill_prices(
        self,
        config: StrategyConfig,
        order: Order,
        market: Market,
        previous_filled_quantity: str = "0",
    ) -> StrategyConfig:
        """Append the fill delta to the config's fill history and refresh averages."""
        current = Decimal(order.filled_quantity or "0")
        previous = Decimal(previous_filled_quantity or "0")
        if current <= previous:
            return config

        entry = FillPrice(
            price=str(self.get_fill_price(order, market)),
            quantity=str(from_scaled(current - previous, market.base.decimals)),
            timestamp=self.clock.now_ms(),
        )
        history = config.last_fill_prices.model_copy(deep=True)
        if order.side == OrderSide.BUY:
            history.buy.append(entry)
        else:
            history.sell.append(entry)

        return config.model_copy(
            update={
                "last_fill_prices": history,
                "average_buy_price": self.calculate_average_price(history.buy),
                "average_sell_price": self.calculate_average_price(history.sell),
                "updated_at": self.clock.now_ms(),
            }
        )

    @staticmethod
    def calculate_average_price(
        fills: list[FillPrice], method: Literal["weighted", "simple"] = "weighted"
    ) -> str | None:
        if not fills:
            return None
        if method == "simple":
            total = sum((Decimal(f.price) for f in fills), Decimal("0"))
            return str(total / len(fills))

        total_value = Decimal("0")
        total_quantity = Decimal("0")
        for fill in fills:
            quantity = Decimal(fill.quantity)
            total_value += Decimal(fill.price) * quantity
            total_quantity += quantity
        if total_quantity.is_zero():
            return None
        return str(total_value / total_quantity)
