"""Per-cycle buy/sell decision and order submission for one market."""

from __future__ import annotations

import random
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from mm_engine.models.market import MarketBalances, OrderBook, Ticker
from mm_engine.models.order import (
    ExecutionResult,
    Order,
    OrderExecution,
    OrderSide,
    OrderStatus,
    OrderType,
)
from mm_engine.pricing.formatting import format_price, trim_decimal
from mm_engine.pricing.orderbook import best_ask, best_bid, calculate_effective_spread
from mm_engine.pricing.precision import (
    from_scaled,
    is_valid_price,
    round_down_to_market_precision,
    scale_up_and_truncate_to_int,
    to_scaled,
)

if TYPE_CHECKING:
    from mm_engine.db.repository import OrderRepository, StrategyConfigRepository
    from mm_engine.gateway import Clock, MarketDataSource, OrderGateway
    from mm_engine.models.market import Market
    from mm_engine.models.strategy import OrderConfig, PositionSizing, StrategyConfig
    from mm_engine.trade.balance_cache import BalanceCache
    from mm_engine.trade.order_validator import OrderValidator

logger = structlog.get_logger()

MARKET_ORDER_SLIPPAGE_BUFFER = Decimal("0.98")
DEFAULT_SPREAD_REFERENCE_USD = Decimal("10")


def _dec(value: float | int) -> Decimal:
    return Decimal(str(value))


def jittered_delay_ms(config: StrategyConfig, rng: random.Random | None = None) -> int:
    """Uniform integer delay in [min, max] ms."""
    low = config.timing.cycle_interval_min_ms
    high = config.timing.cycle_interval_max_ms
    draw = (rng or random).random()
    return low + int(draw * (high - low + 1))


class PrefetchedData(BaseModel):
    """Market data already gathered by the caller for this cycle."""

    ticker: Ticker | None = None
    order_book: OrderBook | None = None
    balances: MarketBalances | None = None
    open_orders: list[Order] | None = None


class OrderSize(BaseModel):
    quantity: Decimal
    value_usd: Decimal


class StrategyExecutor:
    """
    Cycle steps, in order:
    1. Stop-loss (short-circuits everything else)
    2. Ticker required
    3. Effective-spread gate
    4. Balances + open-order counts (max open orders per side)
    5. Prices per price mode
    6. Sizing
    7. Profit floor for sells
    8. Precision + validation
    9. Submit

    Placement failures come back as failed ``OrderExecution`` records and are
    never raised to the scheduler.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        market_data: MarketDataSource,
        balances: BalanceCache,
        order_repo: OrderRepository,
        strategy_repo: StrategyConfigRepository,
        validator: OrderValidator,
        clock: Clock,
        rng: random.Random | None = None,
    ) -> None:
        self.gateway = gateway
        self.market_data = market_data
        self.balances = balances
        self.order_repo = order_repo
        self.strategy_repo = strategy_repo
        self.validator = validator
        self.clock = clock
        self.rng = rng or random.Random()

    async def execute(
        self,
        market: Market,
        config: StrategyConfig,
        owner: str,
        account_id: str,
        prefetched: PrefetchedData | None = None,
    ) -> ExecutionResult:
        prefetched = prefetched or PrefetchedData()
        next_run_at = self.clock.now_ms() + jittered_delay_ms(config, self.rng)

        try:
            ticker = prefetched.ticker or await self.market_data.get_ticker(market.market_id)
            if ticker is None or not ticker.last_price:
                logger.warning("no_ticker_data", market_id=market.market_id)
                return ExecutionResult(
                    executed=False,
                    next_run_at=next_run_at,
                    skip_reason=f"{market.pair}: No ticker data available, skipping",
                )
            current_price = from_scaled(ticker.last_price, market.quote.decimals)

            stop_loss = await self.check_stop_loss(market, config, owner, account_id, current_price)
            if stop_loss is not None:
                stop_loss.next_run_at = next_run_at
                return stop_loss

            order_book = prefetched.order_book or await self.market_data.get_order_book(
                market.market_id
            )
            skip_reason = self._check_spread(market, config, order_book)
            if skip_reason is not None:
                logger.info("spread_gate_skip", market_id=market.market_id, reason=skip_reason)
                return ExecutionResult(
                    executed=False, next_run_at=next_run_at, skip_reason=skip_reason
                )

            if prefetched.balances is not None:
                balances = prefetched.balances
            else:
                self.balances.clear()
                balances = await self.balances.get_market_balances(market, account_id)

            side = config.order_config.side
            want_buy = side in ("Buy", "Both")
            want_sell = side in ("Sell", "Both")

            max_open = config.order_management.max_open_orders
            if max_open > 0:
                open_orders = prefetched.open_orders
                if open_orders is None:
                    open_orders = await self.gateway.get_open_orders(market.market_id, owner)
                open_buys = sum(1 for o in open_orders if o.side == OrderSide.BUY)
                open_sells = sum(1 for o in open_orders if o.side == OrderSide.SELL)
                if want_buy and open_buys >= max_open:
                    logger.info("max_buy_orders_reached", market_id=market.market_id, open=open_buys)
                    want_buy = False
                if want_sell and open_sells >= max_open:
                    logger.info(
                        "max_sell_orders_reached", market_id=market.market_id, open=open_sells
                    )
                    want_sell = False

            buy_price, sell_price = self.calculate_prices(
                market, ticker, order_book, config.order_config
            )

            orders: list[OrderExecution] = []
            if want_buy:
                buy = await self._place_buy(market, config, buy_price, balances, order_book, owner)
                if buy is not None:
                    orders.append(buy)
            if want_sell:
                sell = await self._place_sell(market, config, sell_price, balances, owner)
                if sell is not None:
                    orders.append(sell)

            logger.info(
                "strategy_executed",
                market_id=market.market_id,
                orders=len(orders),
                next_run_at=next_run_at,
            )
            return ExecutionResult(executed=len(orders) > 0, orders=orders, next_run_at=next_run_at)
        except Exception as e:
            logger.exception("strategy_execution_error", market_id=market.market_id)
            return ExecutionResult(
                executed=False,
                orders=[
                    OrderExecution(
                        side=OrderSide.BUY, success=False, error=str(e), market_pair=market.pair
                    )
                ],
            )

    # ------------------------------------------------------------------
    # Stop-loss
    # ------------------------------------------------------------------

    async def check_stop_loss(
        self,
        market: Market,
        config: StrategyConfig,
        owner: str,
        account_id: str,
        current_price: Decimal,
    ) -> ExecutionResult | None:
        """Exit the whole position with a market sell once price < avg * (1 - pct/100).

        Returns None when the stop-loss did not fire.
        """
        risk = config.risk_management
        if not risk.stop_loss_enabled or not risk.stop_loss_percent:
            return None
        if not config.has_average_buy_price():
            return None

        avg_buy_price = Decimal(config.average_buy_price)
        threshold = avg_buy_price * (1 - _dec(risk.stop_loss_percent) / 100)
        if current_price >= threshold:
            return None

        logger.warning(
            "stop_loss_triggered",
            market_id=market.market_id,
            current_price=str(current_price),
            average_buy_price=str(avg_buy_price),
            threshold=str(threshold),
        )

        await self._cancel_all_orders(market, owner)
        self.balances.clear()
        balances = await self.balances.get_market_balances(market, account_id)
        base_available = from_scaled(balances.base.unlocked, market.base.decimals)

        orders: list[OrderExecution] = []
        min_order_usd = _dec(config.position_sizing.min_order_size_usd)
        if base_available <= 0:
            logger.info("stop_loss_no_base_balance", market_id=market.market_id)
        elif base_available * current_price < min_order_usd:
            logger.info(
                "stop_loss_below_minimum",
                market_id=market.market_id,
                value=str(base_available * current_price),
                minimum=str(min_order_usd),
            )
        else:
            quantity = round_down_to_market_precision(base_available, market)
            execution = await self._submit(
                market, OrderSide.SELL, OrderType.MARKET, current_price, quantity, owner, False
            )
            if not execution.success:
                execution.error = f"Stop loss sell failed: {execution.error}"
            orders.append(execution)

        config_changed = False
        if all(o.success for o in orders):
            cleared = config.model_copy(
                update={
                    "average_buy_price": None,
                    "last_fill_prices": config.last_fill_prices.model_copy(update={"buy": []}),
                    "updated_at": self.clock.now_ms(),
                }
            )
            await self.strategy_repo.save(cleared)
            config_changed = True
            logger.info("stop_loss_cleared_average_buy_price", market_id=market.market_id)

        return ExecutionResult(
            executed=len(orders) > 0,
            orders=orders,
            stop_loss_triggered=True,
            config_changed=config_changed,
        )

    async def _cancel_all_orders(self, market: Market, owner: str) -> None:
        try:
            open_orders = await self.gateway.get_open_orders(market.market_id, owner)
        except Exception:
            logger.exception("stop_loss_fetch_open_orders_failed", market_id=market.market_id)
            return
        for order in open_orders:
            try:
                await self.gateway.cancel_order(order.order_id, market.market_id, owner)
                await self.order_repo.mark_cancelled(order.order_id, self.clock.now_ms())
            except Exception:
                logger.warning(
                    "stop_loss_cancel_failed", order_id=order.order_id, market_id=market.market_id
                )

    # ------------------------------------------------------------------
    # Spread gate + pricing
    # ------------------------------------------------------------------

    def _check_spread(
        self, market: Market, config: StrategyConfig, order_book: OrderBook | None
    ) -> str | None:
        max_spread = _dec(config.order_config.max_spread_percent)
        if order_book is None or max_spread <= 0:
            return None

        reference = _dec(config.position_sizing.min_order_size_usd) or DEFAULT_SPREAD_REFERENCE_USD
        spread = calculate_effective_spread(order_book, market, reference)
        if spread is None or spread.spread_percent <= max_spread:
            return None

        pair = market.pair
        ref_text = trim_decimal(reference, 2)
        max_text = trim_decimal(max_spread, 4)
        if not spread.sufficient_liquidity:
            return f"{pair}: Insufficient liquidity - cannot fill ${ref_text} order, skipping"
        if spread.depth_issue:
            return (
                f"{pair}: Effective spread {spread.spread_percent:.2f}% for ${ref_text} order "
                f"exceeds max {max_text}% "
                f"(top-of-book: {spread.top_of_book_spread_percent:.2f}%), skipping"
            )
        return f"{pair}: Spread {spread.spread_percent:.2f}% exceeds max {max_text}%, skipping"

    def calculate_prices(
        self,
        market: Market,
        ticker: Ticker,
        order_book: OrderBook | None,
        order_config: OrderConfig,
    ) -> tuple[Decimal, Decimal]:
        """Reference price per price mode, offset down for buys and up for sells."""
        last = from_scaled(ticker.last_price, market.quote.decimals)
        bid = best_bid(order_book, market)
        ask = best_ask(order_book, market)

        mode = order_config.price_mode
        if mode == "market":
            reference = last
        elif mode == "offset_from_bid":
            reference = bid if bid is not None else last
        elif mode == "offset_from_ask":
            reference = ask if ask is not None else last
        else:
            reference = (bid + ask) / 2 if bid is not None and ask is not None else last

        offset = _dec(order_config.price_offset_percent) / 100
        return reference * (1 - offset), reference * (1 + offset)

    # ------------------------------------------------------------------
    # Buy / sell paths
    # ------------------------------------------------------------------

    async def _place_buy(
        self,
        market: Market,
        config: StrategyConfig,
        price: Decimal,
        balances: MarketBalances,
        order_book: OrderBook | None,
        owner: str,
    ) -> OrderExecution | None:
        is_limit = config.order_config.order_type == "Spot"

        ask = best_ask(order_book, market)
        if ask is not None and price > ask:
            if is_limit:
                logger.warning(
                    "buy_price_capped_to_best_ask",
                    market_id=market.market_id,
                    price=str(price),
                    best_ask=str(ask),
                )
                price = ask
            else:
                logger.info(
                    "buy_price_above_best_ask",
                    market_id=market.market_id,
                    price=str(price),
                    best_ask=str(ask),
                )

        size = self.calculate_order_size(
            market, config.position_sizing, balances, OrderSide.BUY, price, not is_limit
        )
        if size is None or size.quantity <= 0:
            logger.info("buy_skipped_insufficient_balance", market_id=market.market_id)
            return None

        order_type = OrderType.SPOT if is_limit else OrderType.MARKET
        return await self._validate_and_submit(
            market, config, OrderSide.BUY, order_type, price, size.quantity, owner, is_limit
        )

    async def _place_sell(
        self,
        market: Market,
        config: StrategyConfig,
        price: Decimal,
        balances: MarketBalances,
        owner: str,
    ) -> OrderExecution | None:
        protect = config.order_management.only_sell_above_buy_price
        force_limit = False

        if protect:
            if not config.has_average_buy_price():
                logger.info("sell_skipped_no_average_buy_price", market_id=market.market_id)
                return None
            floor = Decimal(config.average_buy_price) * (
                1 + _dec(config.risk_management.take_profit_percent) / 100
            )
            if price < floor:
                logger.info(
                    "sell_price_raised_to_profit_floor",
                    market_id=market.market_id,
                    original=str(price),
                    floor=str(floor),
                )
                price = floor
                force_limit = True

        is_limit = force_limit or config.order_config.order_type == "Spot"
        size = self.calculate_order_size(
            market, config.position_sizing, balances, OrderSide.SELL, price, not is_limit
        )
        if size is None or size.quantity <= 0:
            logger.info("sell_skipped_insufficient_balance", market_id=market.market_id)
            return None

        order_type = OrderType.SPOT if is_limit else OrderType.MARKET
        return await self._validate_and_submit(
            market, config, OrderSide.SELL, order_type, price, size.quantity, owner, is_limit
        )

    async def place_sell_after_buy_fill(
        self,
        market: Market,
        config: StrategyConfig,
        order: Order,
        owner: str,
        account_id: str,
        previous_filled_quantity: str = "0",
    ) -> OrderExecution | None:
        """Resting take-profit sell for the base quantity a buy just filled."""
        filled_delta = Decimal(order.filled_quantity or "0") - Decimal(previous_filled_quantity)
        if filled_delta <= 0:
            return None

        take_profit = 1 + _dec(config.risk_management.take_profit_percent) / 100
        fill_price = from_scaled(order.price_fill or order.price, market.quote.decimals)
        price = fill_price * take_profit
        if config.order_management.only_sell_above_buy_price and config.has_average_buy_price():
            price = max(price, Decimal(config.average_buy_price) * take_profit)

        self.balances.clear()
        balances = await self.balances.get_market_balances(market, account_id)
        available = from_scaled(balances.base.unlocked, market.base.decimals)
        quantity = min(from_scaled(filled_delta, market.base.decimals), available)
        if quantity <= 0:
            logger.info("follow_up_sell_skipped_no_balance", order_id=order.order_id)
            return None

        return await self._validate_and_submit(
            market, config, OrderSide.SELL, OrderType.SPOT, price, quantity, owner, True
        )

    async def _validate_and_submit(
        self,
        market: Market,
        config: StrategyConfig,
        side: OrderSide,
        order_type: OrderType,
        price: Decimal,
        quantity: Decimal,
        owner: str,
        is_limit: bool,
    ) -> OrderExecution | None:
        quantity = round_down_to_market_precision(quantity, market)
        value = quantity * price
        minimum = _dec(config.position_sizing.min_order_size_usd)
        if value < minimum:
            logger.info(
                "order_below_minimum",
                market_id=market.market_id,
                side=side.value,
                value=str(value),
                minimum=str(minimum),
            )
            return None

        validation = self.validator.validate(price, quantity, market)
        if not validation.valid:
            return OrderExecution(
                side=side,
                success=False,
                error="; ".join(validation.errors),
                market_pair=market.pair,
                is_limit_order=is_limit,
            )

        return await self._submit(
            market,
            side,
            order_type,
            validation.adjusted_price,
            validation.adjusted_quantity,
            owner,
            is_limit,
        )

    async def _submit(
        self,
        market: Market,
        side: OrderSide,
        order_type: OrderType,
        price: Decimal,
        quantity: Decimal,
        owner: str,
        is_limit: bool,
    ) -> OrderExecution:
        scaled_price = str(
            int(
                scale_up_and_truncate_to_int(
                    price, market.quote.decimals, market.quote.max_precision, market.tick_size
                )
            )
        )
        scaled_quantity = str(int(to_scaled(quantity, market.base.decimals)))

        try:
            order = await self.gateway.place_order(
                market, side, order_type, scaled_price, scaled_quantity, owner
            )
        except Exception as e:
            logger.exception(
                "order_placement_failed", market_id=market.market_id, side=side.value
            )
            return OrderExecution(
                side=side,
                success=False,
                error=str(e),
                market_pair=market.pair,
                is_limit_order=is_limit,
            )

        self.balances.clear()
        try:
            # Zero-fill baseline: an immediate fill is still reported by the fill tracker
            await self.order_repo.upsert(
                order.model_copy(update={"status": OrderStatus.OPEN, "filled_quantity": "0"})
            )
        except Exception:
            logger.warning("order_store_failed", order_id=order.order_id)

        logger.info(
            "order_placed",
            market_id=market.market_id,
            order_id=order.order_id,
            side=side.value,
            order_type=order_type.value,
            price=str(price),
            quantity=str(quantity),
        )
        return OrderExecution(
            order_id=order.order_id,
            side=side,
            success=True,
            price=scaled_price,
            quantity=scaled_quantity,
            price_human=format_price(price),
            quantity_human=trim_decimal(quantity, min(market.base.decimals, 8)),
            market_pair=market.pair,
            is_limit_order=is_limit,
        )

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def calculate_order_size(
        self,
        market: Market,
        sizing: PositionSizing,
        balances: MarketBalances,
        side: OrderSide,
        price: Decimal,
        is_market_order: bool = False,
    ) -> OrderSize | None:
        """Human-readable order quantity for ``side`` at ``price``.

        Market orders keep a 2% slippage buffer on the usable balance.
        """
        if not is_valid_price(price):
            logger.warning("invalid_sizing_price", market_id=market.market_id, price=str(price))
            return None

        buffer = MARKET_ORDER_SLIPPAGE_BUFFER if is_market_order else Decimal("1")
        max_usd = _dec(sizing.max_order_size_usd) if sizing.max_order_size_usd else None
        quote_usable = from_scaled(balances.quote.unlocked, market.quote.decimals) * buffer
        base_usable = from_scaled(balances.base.unlocked, market.base.decimals) * buffer

        if sizing.size_mode == "fixed_usd":
            if not sizing.fixed_usd_amount or sizing.fixed_usd_amount <= 0:
                return None
            value = _dec(sizing.fixed_usd_amount)
            if max_usd is not None and value > max_usd:
                value = max_usd
            quantity = value / price

            if side == OrderSide.BUY and quantity * price > quote_usable:
                quantity = quote_usable / price
                return OrderSize(quantity=quantity, value_usd=quantity * price)
            if side == OrderSide.SELL and quantity > base_usable:
                return OrderSize(quantity=base_usable, value_usd=base_usable * price)
            return OrderSize(quantity=quantity, value_usd=value)

        if side == OrderSide.BUY:
            pct = sizing.quote_balance_percentage
            fraction = _dec(pct if pct is not None else sizing.balance_percentage) / 100
            value = quote_usable * fraction
            if max_usd is not None and value > max_usd:
                value = max_usd
            value = min(value, quote_usable)
            return OrderSize(quantity=value / price, value_usd=value)

        pct = sizing.base_balance_percentage
        fraction = _dec(pct if pct is not None else sizing.balance_percentage) / 100
        quantity = base_usable * fraction
        value = quantity * price
        if max_usd is not None and value > max_usd:
            value = max_usd
            quantity = value / price
        if quantity > base_usable:
            quantity = base_usable
            value = quantity * price
        return OrderSize(quantity=quantity, value_usd=value)
