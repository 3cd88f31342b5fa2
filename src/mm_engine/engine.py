"""Trading engine: one self-rescheduling loop per active market."""

from __future__ import annotations

import asyncio
import enum
import random
from decimal import Decimal
from typing import TYPE_CHECKING, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from mm_engine.errors import EngineNotInitializedError, IllegalTransitionError, MarketNotFoundError
from mm_engine.events import EventChannel, KeyedEventChannel
from mm_engine.models.context import (
    MarketConfig,
    PendingSellOrder,
    Severity,
    StatusMessage,
    TradingContext,
)
from mm_engine.models.order import OrderSide, OrderStatus
from mm_engine.models.session import ConfirmedFill, ContextSnapshot
from mm_engine.models.trade import Trade, TradeStatus
from mm_engine.pricing.formatting import format_raw_quantity, trim_decimal
from mm_engine.pricing.precision import from_scaled
from mm_engine.trade.strategy_executor import PrefetchedData, jittered_delay_ms

if TYPE_CHECKING:
    from mm_engine.config import Settings
    from mm_engine.db.repository import OrderRepository, StrategyConfigRepository, TradeRepository
    from mm_engine.gateway import Clock, MarketDataSource, OrderGateway
    from mm_engine.models.market import Market
    from mm_engine.models.order import Order, OrderExecution
    from mm_engine.models.session import FillAccounting, TradingSession
    from mm_engine.models.strategy import StrategyConfig
    from mm_engine.risk_gate import RiskGate
    from mm_engine.session_ledger import SessionLedger
    from mm_engine.trade.balance_cache import BalanceCache
    from mm_engine.trade.fill_tracker import FillDelta, FillTracker
    from mm_engine.trade.strategy_executor import StrategyExecutor

logger = structlog.get_logger()


class EngineState(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class MarketState(enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    PAUSED = "paused"
    REMOVED = "removed"


ENGINE_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.STOPPED: frozenset({EngineState.RUNNING}),
    EngineState.RUNNING: frozenset({EngineState.STOPPED}),
}

# Self-transitions on SCHEDULED/PAUSED are lock backoffs that keep the market parked.
MARKET_TRANSITIONS: dict[MarketState, frozenset[MarketState]] = {
    MarketState.IDLE: frozenset({MarketState.SCHEDULED, MarketState.REMOVED}),
    MarketState.SCHEDULED: frozenset(
        {MarketState.SCHEDULED, MarketState.EXECUTING, MarketState.REMOVED}
    ),
    MarketState.EXECUTING: frozenset(
        {MarketState.SCHEDULED, MarketState.PAUSED, MarketState.REMOVED}
    ),
    MarketState.PAUSED: frozenset(
        {MarketState.PAUSED, MarketState.SCHEDULED, MarketState.EXECUTING, MarketState.REMOVED}
    ),
    MarketState.REMOVED: frozenset(),
}

# Timers in these states are sleeping and safe to cancel
_CANCELLABLE_STATES = (MarketState.SCHEDULED, MarketState.PAUSED)

_TRADE_STATUS_BY_ORDER_STATUS = {
    OrderStatus.FILLED: TradeStatus.FILLED,
    OrderStatus.CANCELLED: TradeStatus.CANCELLED,
    OrderStatus.OPEN: TradeStatus.PENDING,
    OrderStatus.PARTIALLY_FILLED: TradeStatus.PENDING,
}


def _has_value(raw: str | None) -> bool:
    return bool(raw) and raw != "0"


def _no_fill_yet(order: Order | None) -> bool:
    return order is None or not (_has_value(order.price_fill) or _has_value(order.filled_quantity))


def _last_order_or_none(retry_state: RetryCallState) -> Order | None:
    outcome = retry_state.outcome
    if outcome is None or outcome.failed:
        return None
    return outcome.result()


class TradingEngine:
    """
    Per-market cycle (``_execute_trade``):
    1.  Engine stopped -> drop; account lock held -> retry after LOCK_BACKOFF_SECONDS
    2.  Re-read StrategyConfig
    3.  Risk gate -> PAUSED, retry after PAUSED_RESCHEDULE_SECONDS
    4.  Cancel timed-out orders
    5.  Gather context (balances, open orders, ticker, order book), emit + persist
    6.  StrategyExecutor.execute
    7.  Record each placement (fetch order with retry, trade record, status)
    8.  Fill tracking -> session ledger; buy fills get a follow-up sell
    9.  Sync pending trades
    10. Reschedule with jitter; any uncaught error -> ERROR_BACKOFF_SECONDS
    """

    def __init__(
        self,
        settings: Settings,
        gateway: OrderGateway,
        market_data: MarketDataSource,
        balances: BalanceCache,
        strategy_repo: StrategyConfigRepository,
        session_ledger: SessionLedger,
        trade_repo: TradeRepository,
        order_repo: OrderRepository,
        executor: StrategyExecutor,
        fill_tracker: FillTracker,
        risk_gate: RiskGate,
        clock: Clock,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.market_data = market_data
        self.balances = balances
        self.strategy_repo = strategy_repo
        self.ledger = session_ledger
        self.trade_repo = trade_repo
        self.order_repo = order_repo
        self.executor = executor
        self.fill_tracker = fill_tracker
        self.risk_gate = risk_gate
        self.clock = clock
        self.rng = rng or random.Random()

        self.state = EngineState.STOPPED
        self.owner: str | None = None
        self.account_id: str | None = None

        self._markets: dict[str, MarketConfig] = {}
        self._market_states: dict[str, MarketState] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._deadlock_warned: set[str] = set()
        self._stopping = asyncio.Event()

        self.status_channel: EventChannel[StatusMessage] = EventChannel("status")
        self.context_channel: EventChannel[TradingContext] = EventChannel(
            "context", replay_last=True
        )
        self.multi_context_channel: KeyedEventChannel[TradingContext] = KeyedEventChannel(
            "multi_context"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, new_state: EngineState) -> None:
        old = self.state
        if new_state not in ENGINE_TRANSITIONS[old]:
            raise IllegalTransitionError("engine", old.value, new_state.value)
        self.state = new_state
        logger.info("state_transition", old=old.value, new=new_state.value)

    def _set_market_state(self, market_id: str, new_state: MarketState) -> None:
        old = self._market_states.get(market_id, MarketState.IDLE)
        if new_state not in MARKET_TRANSITIONS[old]:
            raise IllegalTransitionError("market", old.value, new_state.value)
        self._market_states[market_id] = new_state
        if old != new_state:
            logger.debug(
                "state_transition", market_id=market_id, old=old.value, new=new_state.value
            )

    def market_state(self, market_id: str) -> MarketState | None:
        return self._market_states.get(market_id)

    def _account_lock(self) -> asyncio.Lock:
        key = (self.owner or "", self.account_id or "")
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def initialize(self, owner: str, account_id: str) -> None:
        self.owner = owner.lower()
        self.account_id = account_id

    async def start(self, resume_session: bool = False) -> None:
        if self.state == EngineState.RUNNING:
            logger.info("engine_already_running")
            return
        if not self.owner or not self.account_id:
            raise EngineNotInitializedError()

        self._stopping.clear()
        self._set_state(EngineState.RUNNING)

        configs = await self.strategy_repo.get_active()
        if not configs:
            logger.warning("no_active_strategies")
            self._emit_status(
                "No active strategies configured. Please set up a strategy first.",
                Severity.WARNING,
            )
            return

        for config in configs:
            try:
                await self._activate_market(config, resume_session)
            except MarketNotFoundError:
                logger.warning("market_not_found_skipping", market_id=config.market_id)

        logger.info("engine_started", markets=len(self._markets), resume_session=resume_session)

    async def stop(self) -> None:
        """Idempotent. In-flight cycles finish but never reschedule."""
        if self.state == EngineState.STOPPED:
            return
        self._set_state(EngineState.STOPPED)
        self._stopping.set()

        markets = list(self._markets.items())
        self._markets.clear()
        for market_id, binding in markets:
            await self._detach_market(market_id, binding)

        self.fill_tracker.clear_processed_fills()
        self._deadlock_warned.clear()
        logger.info("engine_stopped", markets=len(markets))

    async def stop_market_trading(self, market_id: str) -> None:
        binding = self._markets.pop(market_id, None)
        if binding is None:
            logger.info("market_not_active", market_id=market_id)
            return

        await self._detach_market(market_id, binding)
        self.multi_context_channel.remove(market_id)
        self._deadlock_warned.discard(market_id)
        self._emit_status(f"{binding.market.pair}: Strategy deactivated")
        logger.info("market_trading_stopped", market_id=market_id, remaining=len(self._markets))

        if not self._markets:
            await self.stop()

    async def add_market_trading(self, market_id: str) -> None:
        if self.state != EngineState.RUNNING:
            logger.info("engine_not_running_skip_add", market_id=market_id)
            return
        if market_id in self._markets:
            return
        config = await self.strategy_repo.get(market_id)
        if config is None or not config.is_active:
            logger.warning("no_active_strategy_for_market", market_id=market_id)
            return
        await self._activate_market(config, resume_session=False)
        logger.info("market_trading_added", market_id=market_id)

    def is_active(self) -> bool:
        return self.state == EngineState.RUNNING and bool(self._markets)

    def get_next_run_time(self, market_id: str | None = None) -> int | None:
        if market_id is not None:
            binding = self._markets.get(market_id)
            return binding.next_run_at if binding else None
        times = [b.next_run_at for b in self._markets.values() if b.next_run_at]
        return min(times) if times else None

    def get_context(self, market_id: str) -> TradingContext | None:
        return self.multi_context_channel.get(market_id)

    def get_all_contexts(self) -> dict[str, TradingContext]:
        return self.multi_context_channel.snapshot()

    def on_status(self, callback: Callable[[StatusMessage], None]) -> Callable[[], None]:
        return self.status_channel.subscribe(callback)

    def on_context(self, callback: Callable[[TradingContext], None]) -> Callable[[], None]:
        return self.context_channel.subscribe(callback)

    def on_multi_context(
        self, callback: Callable[[dict[str, TradingContext]], None]
    ) -> Callable[[], None]:
        return self.multi_context_channel.subscribe(callback)

    # ------------------------------------------------------------------
    # Market activation
    # ------------------------------------------------------------------

    async def _activate_market(self, config: StrategyConfig, resume_session: bool) -> None:
        market = await self.market_data.get_market(config.market_id)
        if market is None:
            raise MarketNotFoundError(config.market_id)

        session: TradingSession | None = None
        if resume_session:
            existing = await self.ledger.get_resumable_session(self.owner, market.market_id)
            if existing is not None:
                session = await self.ledger.resume_session(existing.id)
                logger.info(
                    "session_resumed_for_market",
                    session_id=session.id,
                    trades=session.trade_count,
                )

        if session is None:
            base, quote = await self._capture_starting_balances(market)
            session = await self.ledger.create_session(
                self.owner,
                market.market_id,
                market.pair,
                starting_base_balance=base,
                starting_quote_balance=quote,
                strategy_name=config.name or "Custom",
            )

        binding = MarketConfig(market=market, config=config, session_id=session.id)
        self._markets[market.market_id] = binding
        self._market_states[market.market_id] = MarketState.IDLE
        # First cycle runs immediately
        self._schedule(market.market_id, binding, 0, MarketState.SCHEDULED)

    async def _capture_starting_balances(self, market: Market) -> tuple[str | None, str | None]:
        try:
            balances = await self.balances.get_market_balances(market, self.account_id)
        except Exception:
            logger.warning("starting_balance_capture_failed", market_id=market.market_id)
            self._emit_status(f"{market.pair}: Could not capture starting balance", Severity.WARNING)
            return None, None
        base = from_scaled(balances.base.unlocked, market.base.decimals)
        quote = from_scaled(balances.quote.unlocked, market.quote.decimals)
        return trim_decimal(base, 6), f"{quote:.2f}"

    async def _detach_market(self, market_id: str, binding: MarketConfig) -> None:
        state = self._market_states.get(market_id, MarketState.IDLE)
        timer = binding.timer
        binding.timer = None
        if state in _CANCELLABLE_STATES and timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

        self._set_market_state(market_id, MarketState.REMOVED)
        self._market_states.pop(market_id, None)

        if binding.session_id:
            try:
                await self.ledger.pause_session(binding.session_id)
            except Exception:
                logger.exception("session_pause_failed", session_id=binding.session_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(
        self, market_id: str, binding: MarketConfig, delay_ms: int, state: MarketState
    ) -> None:
        """Arm the next cycle unless the engine stopped or the market was removed."""
        if self.state != EngineState.RUNNING or self._markets.get(market_id) is not binding:
            logger.debug("reschedule_skipped", market_id=market_id)
            return
        self._set_market_state(market_id, state)
        binding.next_run_at = self.clock.now_ms() + delay_ms
        binding.timer = asyncio.create_task(self._run_after(market_id, delay_ms / 1000))

    async def _run_after(self, market_id: str, delay_seconds: float) -> None:
        await self.clock.sleep(delay_seconds)
        await self._execute_trade(market_id)

    async def _execute_trade(self, market_id: str) -> None:
        binding = self._markets.get(market_id)
        if binding is None or self.state != EngineState.RUNNING:
            return

        lock = self._account_lock()
        if lock.locked():
            current = self._market_states.get(market_id, MarketState.SCHEDULED)
            parked = current if current in _CANCELLABLE_STATES else MarketState.SCHEDULED
            self._schedule(
                market_id, binding, int(self.settings.LOCK_BACKOFF_SECONDS * 1000), parked
            )
            return

        async with lock:
            self._set_market_state(market_id, MarketState.EXECUTING)
            try:
                delay_ms, next_state = await self._run_cycle(market_id, binding)
            except Exception as e:
                logger.exception("market_cycle_error", market_id=market_id)
                self._emit_status(f"[{market_id}] Error: {e}", Severity.ERROR)
                delay_ms = int(self.settings.ERROR_BACKOFF_SECONDS * 1000)
                next_state = MarketState.SCHEDULED

        self._schedule(market_id, binding, delay_ms, next_state)

    async def _run_cycle(self, market_id: str, binding: MarketConfig) -> tuple[int, MarketState]:
        market = binding.market

        stored = await self.strategy_repo.get(market_id)
        if stored is not None:
            binding.config = stored

        session = await self.ledger.get_session(binding.session_id) if binding.session_id else None
        risk = self.risk_gate.check(binding.config, session)
        if not risk.approved:
            rules = {f.rule for f in risk.failures}
            reason = "max daily loss" if "max_daily_loss" in rules else "max session loss"
            self._emit_status(f"{market.pair}: Trading paused ({reason} exceeded)", Severity.WARNING)
            return int(self.settings.PAUSED_RESCHEDULE_SECONDS * 1000), MarketState.PAUSED

        await self._check_order_timeouts(binding)

        prefetched = await self._gather_context(binding, session)

        result = await self.executor.execute(
            market, binding.config, self.owner, self.account_id, prefetched
        )
        if result.config_changed:
            binding.config = await self.strategy_repo.get(market_id) or binding.config
        if result.skip_reason:
            self._emit_status(result.skip_reason, Severity.INFO, verbosity=2)

        for execution in result.orders:
            await self._record_execution(binding, execution)

        await self._process_fills(binding)
        await self._sync_pending_trades(market_id)

        now = self.clock.now_ms()
        next_run_at = result.next_run_at or now + jittered_delay_ms(binding.config, self.rng)
        return max(0, next_run_at - now), MarketState.SCHEDULED

    # ------------------------------------------------------------------
    # Cycle steps
    # ------------------------------------------------------------------

    async def _check_order_timeouts(self, binding: MarketConfig) -> int:
        risk = binding.config.risk_management
        if not risk.order_timeout_enabled or not risk.order_timeout_minutes:
            return 0

        market_id = binding.market.market_id
        open_orders = await self.gateway.get_open_orders(market_id, self.owner)
        cancelled = 0
        for order in self.risk_gate.timed_out_orders(binding.config, open_orders):
            try:
                await self.gateway.cancel_order(order.order_id, market_id, self.owner)
            except Exception:
                logger.warning("order_timeout_cancel_failed", order_id=order.order_id)
                continue
            cancelled += 1
            await self.order_repo.mark_cancelled(order.order_id, self.clock.now_ms())
            await self.trade_repo.update_by_order_id(
                order.order_id, {"status": TradeStatus.CANCELLED.value, "success": False}
            )
            logger.info(
                "order_timed_out",
                order_id=order.order_id,
                age_minutes=(self.clock.now_ms() - order.created_at) // 60_000,
            )

        if cancelled:
            self.balances.clear()
            self._emit_status(f"Cancelled {cancelled} order(s) due to timeout", Severity.WARNING)
        return cancelled

    async def _gather_context(
        self, binding: MarketConfig, session: TradingSession | None
    ) -> PrefetchedData:
        market = binding.market
        config = binding.config
        balances, open_orders, ticker, order_book = await asyncio.gather(
            self.balances.get_market_balances(market, self.account_id),
            self.gateway.get_open_orders(market.market_id, self.owner),
            self.market_data.get_ticker(market.market_id),
            self.market_data.get_order_book(market.market_id),
        )

        quote_decimals = market.quote.decimals
        base_human = from_scaled(balances.base.unlocked, market.base.decimals)
        quote_human = from_scaled(balances.quote.unlocked, quote_decimals)
        price = from_scaled(ticker.last_price, quote_decimals) if ticker and ticker.last_price else None
        buys = [o for o in open_orders if o.side == OrderSide.BUY]
        sells = [o for o in open_orders if o.side == OrderSide.SELL]

        self._check_deadlock(binding, base_human, quote_human, price, len(open_orders))

        pending_sell = None
        if sells and config.order_management.only_sell_above_buy_price:
            pending_sell = PendingSellOrder(
                price=trim_decimal(from_scaled(sells[0].price, quote_decimals), quote_decimals),
                quantity=format_raw_quantity(sells[0].quantity, market.base.decimals),
            )

        current_price = trim_decimal(price, quote_decimals) if price is not None else None
        last_buy = (
            trim_decimal(config.average_buy_price, quote_decimals)
            if config.has_average_buy_price()
            else None
        )
        symbol = market.base.symbol
        context = TradingContext(
            pair=market.pair,
            base_balance=f"{trim_decimal(base_human, 6)} {symbol}",
            quote_balance=f"${quote_human:.2f}",
            last_buy_price=f"${last_buy}" if last_buy else None,
            current_price=f"${current_price}" if current_price else None,
            open_buy_orders=len(buys),
            open_sell_orders=len(sells),
            pending_sell_order=pending_sell,
            profit_protection_enabled=config.order_management.only_sell_above_buy_price,
            next_run_in=max(0, round((binding.next_run_at - self.clock.now_ms()) / 1000)),
            session_id=session.id if session else None,
            total_volume=session.total_volume if session else Decimal("0"),
            total_fees=session.total_fees if session else Decimal("0"),
            realized_pnl=session.realized_pnl if session else Decimal("0"),
            trade_count=session.trade_count if session else 0,
            starting_base_balance=(
                f"{session.starting_base_balance} {symbol}"
                if session and session.starting_base_balance
                else None
            ),
            starting_quote_balance=(
                f"${session.starting_quote_balance}"
                if session and session.starting_quote_balance
                else None
            ),
            strategy_name=config.name or (session.strategy_name if session else None),
        )
        self.context_channel.publish(context)
        self.multi_context_channel.put(market.market_id, context)

        if session is not None:
            await self.ledger.update_context(
                session.id,
                ContextSnapshot(
                    pair=market.pair,
                    current_price=current_price or "",
                    base_balance=f"{base_human:.6f}",
                    quote_balance=f"{quote_human:.2f}",
                    last_buy_price=config.average_buy_price,
                ),
            )
            if price is not None:
                await self.ledger.update_unrealized_pnl(session.id, price)

        return PrefetchedData(
            ticker=ticker, order_book=order_book, balances=balances, open_orders=open_orders
        )

    def _check_deadlock(
        self,
        binding: MarketConfig,
        base_human: Decimal,
        quote_human: Decimal,
        price: Decimal | None,
        open_order_count: int,
    ) -> None:
        """Warn once when neither side can place an order and nothing is resting."""
        market_id = binding.market.market_id
        if price is None:
            return
        minimum = Decimal(str(binding.config.position_sizing.min_order_size_usd))
        stuck = base_human * price < minimum and quote_human < minimum and open_order_count == 0
        if not stuck:
            self._deadlock_warned.discard(market_id)
            return
        if market_id in self._deadlock_warned:
            return
        self._deadlock_warned.add(market_id)
        logger.warning("balance_deadlock", market_id=market_id, minimum=str(minimum))
        self._emit_status(
            f"{binding.market.pair}: Both balances below minimum order size "
            f"(${trim_decimal(minimum, 2)}) and no open orders",
            Severity.WARNING,
        )

    async def _record_execution(self, binding: MarketConfig, execution: OrderExecution) -> None:
        market = binding.market
        pair = execution.market_pair or market.pair
        kind = "LIMIT" if execution.is_limit_order else "MARKET"
        side = execution.side.value

        if not execution.success or not execution.order_id:
            error = execution.error or "Unknown error"
            logger.warning("order_failed", market_id=market.market_id, side=side, error=error)
            message = f"{pair} {kind}: {side} order failed - {error}"
            self._emit_status(message, Severity.ERROR)
            if binding.session_id:
                await self.ledger.add_console_message(binding.session_id, message, "error")
            return

        fetched = await self._fetch_placed_order(execution.order_id, market.market_id)
        price_fill = fetched.price_fill if fetched and _has_value(fetched.price_fill) else None
        filled_quantity = (
            fetched.filled_quantity if fetched and _has_value(fetched.filled_quantity) else None
        )

        if fetched is not None and fetched.status in _TRADE_STATUS_BY_ORDER_STATUS:
            status = _TRADE_STATUS_BY_ORDER_STATUS[fetched.status]
        else:
            status = TradeStatus.PENDING if execution.is_limit_order else TradeStatus.FILLED

        await self.trade_repo.add(
            Trade(
                timestamp=self.clock.now_ms(),
                market_id=market.market_id,
                order_id=execution.order_id,
                session_id=binding.session_id,
                side=execution.side,
                order_type="Limit" if execution.is_limit_order else "Market",
                price=execution.price or "0",
                price_fill=price_fill,
                quantity=execution.quantity or "0",
                filled_quantity=filled_quantity,
                status=status,
            )
        )

        symbol = market.base.symbol
        order_price = f"${execution.price_human}" if execution.price_human else "N/A"
        fill_price = (
            trim_decimal(from_scaled(price_fill, market.quote.decimals), market.quote.decimals)
            if price_fill
            else None
        )
        fill_qty = format_raw_quantity(filled_quantity, market.base.decimals) if filled_quantity else None

        if fill_price and fill_qty:
            message = (
                f"{pair} {kind}: {side} order placed at {order_price}, "
                f"filled {fill_qty} {symbol} at ${fill_price}"
            )
        elif fill_price:
            message = f"{pair} {kind}: {side} order placed at {order_price}, filled at ${fill_price}"
        else:
            amount = execution.quantity_human or "N/A"
            message = f"{pair} {kind}: {side} order placed for {amount} {symbol} at {order_price}"

        self._emit_status(message, Severity.SUCCESS)
        if binding.session_id:
            await self.ledger.add_console_message(binding.session_id, message, "success")

    async def _fetch_placed_order(self, order_id: str, market_id: str) -> Order | None:
        """Poll a just-placed order until it reports fill data or attempts run out."""
        if self.state != EngineState.RUNNING:
            return None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.FILL_FETCH_ATTEMPTS)
            | stop_when_event_set(self._stopping),
            wait=wait_fixed(self.settings.FILL_FETCH_DELAY_SECONDS),
            retry=retry_if_exception_type(Exception) | retry_if_result(_no_fill_yet),
            retry_error_callback=_last_order_or_none,
            sleep=self.clock.sleep,
        )
        return await retrying(self.gateway.get_order, order_id, market_id, self.owner)

    async def _process_fills(self, binding: MarketConfig) -> None:
        market = binding.market
        try:
            await self.clock.sleep(self.settings.FILL_SETTLE_DELAY_SECONDS)
            fills = await self.fill_tracker.track_order_fills(market.market_id, self.owner)
        except Exception:
            logger.exception("fill_tracking_error", market_id=market.market_id)
            return
        if not fills:
            return

        booked: list[tuple[FillDelta, FillAccounting | None]] = []
        for order_id, delta in fills.items():
            try:
                accounting = await self._book_fill(binding, delta)
            except Exception:
                logger.exception("fill_booking_failed", order_id=order_id)
                await self.fill_tracker.release(delta)
                continue
            booked.append((delta, accounting))
        if not booked:
            return

        if binding.config.order_management.track_fill_prices:
            config = binding.config
            for delta, _ in booked:
                config = self.fill_tracker.update_fill_prices(
                    config, delta.order, market, delta.previous_filled_quantity
                )
            await self.strategy_repo.save(config)
            binding.config = config
            logger.info(
                "fill_prices_updated",
                market_id=market.market_id,
                fills=len(booked),
                average_buy_price=config.average_buy_price,
            )

        for delta, accounting in booked:
            try:
                await self._handle_fill(binding, delta, accounting)
            except Exception:
                logger.exception("fill_processing_error", order_id=delta.order.order_id)

    async def _book_fill(self, binding: MarketConfig, delta: FillDelta) -> FillAccounting | None:
        if not binding.session_id:
            return None
        market = binding.market
        order = delta.order
        return await self.ledger.record_confirmed_fill(
            binding.session_id,
            ConfirmedFill(
                order_id=order.order_id,
                side=order.side,
                fill_price=self.fill_tracker.get_fill_price(order, market),
                fill_quantity=from_scaled(delta.delta_quantity, market.base.decimals),
                market_pair=market.pair,
            ),
        )

    async def _handle_fill(
        self, binding: MarketConfig, delta: FillDelta, accounting: FillAccounting | None
    ) -> None:
        if delta.order.side == OrderSide.BUY:
            await self._place_follow_up_sell(binding, delta)
            return

        if accounting is None:
            return
        update = self.risk_gate.record_realized_pnl(binding.config, accounting.pnl_contribution)
        if update.config is not binding.config:
            await self.strategy_repo.save(update.config)
            binding.config = update.config
        if update.paused:
            limit = trim_decimal(
                Decimal(str(binding.config.risk_management.max_daily_loss_usd)), 2
            )
            self._emit_status(
                f"Max daily loss (${limit}) exceeded! Trading paused until midnight.",
                Severity.ERROR,
            )

    async def _place_follow_up_sell(self, binding: MarketConfig, delta: FillDelta) -> None:
        market = binding.market
        execution = await self.executor.place_sell_after_buy_fill(
            market,
            binding.config,
            delta.order,
            self.owner,
            self.account_id,
            delta.previous_filled_quantity,
        )
        if execution is None:
            return
        if not execution.success:
            await self._record_execution(binding, execution)
            return

        await self.trade_repo.add(
            Trade(
                timestamp=self.clock.now_ms(),
                market_id=market.market_id,
                order_id=execution.order_id,
                session_id=binding.session_id,
                side=OrderSide.SELL,
                order_type="Limit",
                price=execution.price or "0",
                quantity=execution.quantity or "0",
                status=TradeStatus.PENDING,
            )
        )
        quantity = format_raw_quantity(execution.quantity or "0", market.base.decimals)
        price = trim_decimal(
            from_scaled(execution.price or "0", market.quote.decimals), market.quote.decimals
        )
        self._emit_status(
            f"{market.pair}: Sell {quantity} {market.base.symbol} @ ${price} (limit)",
            Severity.SUCCESS,
        )

    async def _sync_pending_trades(self, market_id: str) -> None:
        """Reconcile trade status only; P&L comes from the fill tracker."""
        pending = await self.trade_repo.get_pending(market_id)
        for trade in pending:
            try:
                order = await self.gateway.get_order(trade.order_id, market_id, self.owner)
            except Exception:
                logger.warning("pending_trade_sync_failed", order_id=trade.order_id)
                continue
            if order is None:
                continue
            if order.status == OrderStatus.CANCELLED:
                await self.trade_repo.update_by_order_id(
                    trade.order_id, {"status": TradeStatus.CANCELLED.value, "success": False}
                )
            elif order.status == OrderStatus.FILLED:
                await self.trade_repo.update_by_order_id(
                    trade.order_id,
                    {
                        "status": TradeStatus.FILLED.value,
                        "price_fill": order.price_fill,
                        "filled_quantity": order.filled_quantity,
                    },
                )

    def _emit_status(self, message: str, severity: Severity = Severity.INFO, verbosity: int = 1) -> None:
        self.status_channel.publish(
            StatusMessage(
                message=message,
                severity=severity,
                verbosity=verbosity,
                timestamp=self.clock.now_ms(),
            )
        )
