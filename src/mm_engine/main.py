"""Wiring helpers: build a TradingEngine over the document store and run it until signalled."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from mm_engine.config import Settings
from mm_engine.db.document_store import DocumentStore
from mm_engine.db.engine import create_db_engine, create_session_factory, init_schema
from mm_engine.db.repository import (
    OrderRepository,
    ProcessedFillRepository,
    StrategyConfigRepository,
    TradeRepository,
    TradingSessionRepository,
)
from mm_engine.engine import TradingEngine
from mm_engine.gateway import SystemClock
from mm_engine.risk_gate import RiskGate
from mm_engine.session_ledger import SessionLedger
from mm_engine.trade.balance_cache import BalanceCache
from mm_engine.trade.fill_tracker import FillTracker
from mm_engine.trade.order_validator import OrderValidator
from mm_engine.trade.strategy_executor import StrategyExecutor

if TYPE_CHECKING:
    from mm_engine.gateway import BalanceSource, Clock, MarketDataSource, OrderGateway

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


def build_engine(
    settings: Settings,
    gateway: OrderGateway,
    market_data: MarketDataSource,
    balance_source: BalanceSource,
    session_factory: async_sessionmaker,
    clock: Clock | None = None,
) -> TradingEngine:
    clock = clock or SystemClock()
    store = DocumentStore(session_factory)

    strategy_repo = StrategyConfigRepository(store)
    order_repo = OrderRepository(store)
    balances = BalanceCache(balance_source, clock, settings.BALANCE_CACHE_TTL_SECONDS)

    executor = StrategyExecutor(
        gateway=gateway,
        market_data=market_data,
        balances=balances,
        order_repo=order_repo,
        strategy_repo=strategy_repo,
        validator=OrderValidator(),
        clock=clock,
    )
    return TradingEngine(
        settings=settings,
        gateway=gateway,
        market_data=market_data,
        balances=balances,
        strategy_repo=strategy_repo,
        session_ledger=SessionLedger(TradingSessionRepository(store), clock, settings),
        trade_repo=TradeRepository(store),
        order_repo=order_repo,
        executor=executor,
        fill_tracker=FillTracker(gateway, order_repo, ProcessedFillRepository(store), clock),
        risk_gate=RiskGate(clock),
        clock=clock,
    )


async def run_engine(
    owner: str,
    account_id: str,
    gateway: OrderGateway,
    market_data: MarketDataSource,
    balance_source: BalanceSource,
    settings: Settings | None = None,
    resume_session: bool = False,
) -> None:
    """Run until SIGINT/SIGTERM, then stop the engine and dispose the DB pool."""
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL)

    db_engine = create_db_engine(
        settings.DATABASE_URL,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_timeout=settings.DB_POOL_TIMEOUT,
    )
    await init_schema(db_engine)

    engine = build_engine(
        settings, gateway, market_data, balance_source, create_session_factory(db_engine)
    )
    engine.initialize(owner, account_id)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _signal_handler)
    else:
        signal.signal(signal.SIGINT, lambda *_: _signal_handler())

    try:
        await engine.start(resume_session=resume_session)
        await stop_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await engine.stop()
        await db_engine.dispose()
        logger.info("shutdown_complete")
