"""Typed repositories over the document store: configs, sessions, trades, orders, fills."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from mm_engine.models.order import TRACKED_STATUSES, Order, OrderStatus, ProcessedFill
from mm_engine.models.session import TradingSession
from mm_engine.models.strategy import StrategyConfig
from mm_engine.models.trade import Trade, TradeStatus

if TYPE_CHECKING:
    from mm_engine.db.document_store import DocumentStore
    from mm_engine.models.session import SessionStatus

logger = structlog.get_logger()

STRATEGY_CONFIGS = "strategy_configs"
TRADING_SESSIONS = "trading_sessions"
TRADES = "trades"
ORDERS = "orders"
PROCESSED_FILLS = "processed_fills"


class StrategyConfigRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, market_id: str) -> StrategyConfig | None:
        doc = await self.store.get(STRATEGY_CONFIGS, market_id)
        if doc is None:
            return None
        return StrategyConfig.model_validate(doc)

    async def get_active(self) -> list[StrategyConfig]:
        docs = await self.store.find(STRATEGY_CONFIGS, where={"is_active": True})
        return [StrategyConfig.model_validate(d) for d in docs]

    async def save(self, config: StrategyConfig) -> None:
        await self.store.put(STRATEGY_CONFIGS, config.market_id, config.model_dump(mode="json"))
        logger.debug("strategy_config_saved", market_id=config.market_id)


class TradingSessionRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, session_id: str) -> TradingSession | None:
        doc = await self.store.get(TRADING_SESSIONS, session_id)
        if doc is None:
            return None
        return TradingSession.model_validate(doc)

    async def save(self, session: TradingSession) -> None:
        await self.store.put(TRADING_SESSIONS, session.id, session.model_dump(mode="json"))

    async def delete(self, session_id: str) -> bool:
        return await self.store.delete(TRADING_SESSIONS, session_id)

    async def find_for_market(
        self,
        owner: str,
        market_id: str,
        statuses: tuple[SessionStatus, ...] | None = None,
    ) -> list[TradingSession]:
        """Sessions for (owner, market), newest first."""
        allowed = {s.value for s in statuses} if statuses else None
        docs = await self.store.find(
            TRADING_SESSIONS,
            where={"owner_address": owner, "market_id": market_id},
            predicate=(lambda d: d.get("status") in allowed) if allowed else None,
            order_by="created_at",
            descending=True,
        )
        return [TradingSession.model_validate(d) for d in docs]

    async def list_all(self, owner: str | None = None) -> list[TradingSession]:
        docs = await self.store.find(
            TRADING_SESSIONS,
            where={"owner_address": owner} if owner else None,
            order_by="created_at",
            descending=True,
        )
        return [TradingSession.model_validate(d) for d in docs]

    async def list_recent(self, limit: int = 10, owner: str | None = None) -> list[TradingSession]:
        docs = await self.store.find(
            TRADING_SESSIONS,
            where={"owner_address": owner} if owner else None,
            order_by="updated_at",
            descending=True,
            limit=limit,
        )
        return [TradingSession.model_validate(d) for d in docs]


class TradeRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def add(self, trade: Trade) -> None:
        await self.store.put(TRADES, trade.order_id, trade.model_dump(mode="json"))
        logger.info("trade_recorded", order_id=trade.order_id, status=trade.status.value)

    async def update_by_order_id(self, order_id: str, changes: dict) -> Trade | None:
        """Apply field changes to the trade for ``order_id``. Returns None if unknown."""
        doc = await self.store.get(TRADES, order_id)
        if doc is None:
            return None
        trade = Trade.model_validate({**doc, **changes})
        await self.store.put(TRADES, order_id, trade.model_dump(mode="json"))
        return trade

    async def get_pending(self, market_id: str) -> list[Trade]:
        docs = await self.store.find(
            TRADES, where={"market_id": market_id, "status": TradeStatus.PENDING.value}
        )
        return [Trade.model_validate(d) for d in docs]

    async def list_for_market(self, market_id: str, limit: int = 100) -> list[Trade]:
        docs = await self.store.find(
            TRADES,
            where={"market_id": market_id},
            order_by="timestamp",
            descending=True,
            limit=limit,
        )
        return [Trade.model_validate(d) for d in docs]


class OrderRepository:
    """Local copy of orders this engine placed or has observed."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def upsert(self, order: Order) -> None:
        await self.store.put(ORDERS, order.order_id, order.model_dump(mode="json"))

    async def get(self, order_id: str) -> Order | None:
        doc = await self.store.get(ORDERS, order_id)
        if doc is None:
            return None
        return Order.model_validate(doc)

    async def get_tracked(self, market_id: str) -> list[Order]:
        """Orders for the market last known as open or partially filled."""
        tracked = {s.value for s in TRACKED_STATUSES}
        docs = await self.store.find(
            ORDERS,
            where={"market_id": market_id},
            predicate=lambda d: d.get("status") in tracked,
        )
        return [Order.model_validate(d) for d in docs]

    async def mark_cancelled(self, order_id: str, now_ms: int) -> None:
        if await self.store.get(ORDERS, order_id) is None:
            return
        await self.store.update(
            ORDERS, order_id, {"status": OrderStatus.CANCELLED.value, "updated_at": now_ms}
        )


class ProcessedFillRepository:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, order_id: str) -> ProcessedFill | None:
        doc = await self.store.get(PROCESSED_FILLS, order_id)
        if doc is None:
            return None
        return ProcessedFill.model_validate(doc)

    async def put(self, fill: ProcessedFill) -> None:
        await self.store.put(PROCESSED_FILLS, fill.order_id, fill.model_dump(mode="json"))

    async def delete_for_market(self, market_id: str) -> int:
        docs = await self.store.find(PROCESSED_FILLS, where={"market_id": market_id})
        for doc in docs:
            await self.store.delete(PROCESSED_FILLS, doc["order_id"])
        return len(docs)
