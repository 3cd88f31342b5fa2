"""Trading session lifecycle and weighted-average-cost P&L ledger.

P&L is booked only from confirmed fills, never from order placement.

Buy fill:  contribution = -fee; the fill joins the unsold inventory pool.
Sell fill: matched = min(qty, unsold_qty);
           contribution = (price - unsold_cost / unsold_qty) * matched - fee(qty);
           the pool shrinks proportionally by matched / unsold_qty.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Callable

import structlog

from mm_engine.errors import SessionError
from mm_engine.models.order import OrderSide
from mm_engine.models.session import (
    FEE_RATE,
    RESUMABLE_STATUSES,
    ConsoleMessage,
    FillAccounting,
    SessionStatus,
    SessionTrade,
    TradingSession,
)

if TYPE_CHECKING:
    from mm_engine.config import Settings
    from mm_engine.db.repository import TradingSessionRepository
    from mm_engine.gateway import Clock
    from mm_engine.models.session import ConfirmedFill, ContextSnapshot

logger = structlog.get_logger()

SessionListener = Callable[[TradingSession], None]


class SessionLedger:
    def __init__(self, repo: TradingSessionRepository, clock: Clock, settings: Settings) -> None:
        self.repo = repo
        self.clock = clock
        self.max_trades = settings.MAX_SESSION_TRADES
        self.max_console_messages = settings.MAX_CONSOLE_MESSAGES
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        owner: str,
        market_id: str,
        market_pair: str,
        starting_base_balance: str | None = None,
        starting_quote_balance: str | None = None,
        strategy_name: str | None = None,
    ) -> TradingSession:
        """Start a new session, ending any active/paused one for the same market."""
        owner = owner.lower()
        await self.end_all_resumable_sessions(owner, market_id)

        now = self.clock.now_ms()
        session = TradingSession(
            id=f"{owner}-{market_id}-{now}",
            owner_address=owner,
            market_id=market_id,
            market_pair=market_pair,
            starting_base_balance=starting_base_balance,
            starting_quote_balance=starting_quote_balance,
            strategy_name=strategy_name,
            created_at=now,
            updated_at=now,
        )
        await self._save(session)
        logger.info("session_created", session_id=session.id, market_id=market_id)
        return session

    async def get_session(self, session_id: str) -> TradingSession | None:
        return await self.repo.get(session_id)

    async def get_active_session(self, owner: str, market_id: str) -> TradingSession | None:
        sessions = await self.repo.find_for_market(
            owner.lower(), market_id, statuses=(SessionStatus.ACTIVE,)
        )
        return sessions[0] if sessions else None

    async def get_resumable_session(self, owner: str, market_id: str) -> TradingSession | None:
        """Most recent active or paused session for (owner, market)."""
        sessions = await self.repo.find_for_market(
            owner.lower(), market_id, statuses=RESUMABLE_STATUSES
        )
        return sessions[0] if sessions else None

    async def get_or_create_session(
        self,
        owner: str,
        market_id: str,
        market_pair: str,
        force_new: bool = False,
        starting_base_balance: str | None = None,
        starting_quote_balance: str | None = None,
        strategy_name: str | None = None,
    ) -> TradingSession:
        if not force_new:
            existing = await self.get_resumable_session(owner, market_id)
            if existing is not None:
                return await self.resume_session(existing.id)
        return await self.create_session(
            owner,
            market_id,
            market_pair,
            starting_base_balance=starting_base_balance,
            starting_quote_balance=starting_quote_balance,
            strategy_name=strategy_name,
        )

    async def resume_session(self, session_id: str) -> TradingSession:
        session = await self._require(session_id)
        if session.status == SessionStatus.ENDED:
            raise SessionError(f"Cannot resume ended session {session_id}")
        if session.status != SessionStatus.ACTIVE:
            session.status = SessionStatus.ACTIVE
            await self._save(session)
            logger.info("session_resumed", session_id=session_id)
        return session

    async def pause_session(self, session_id: str) -> TradingSession | None:
        session = await self.repo.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return session
        session.status = SessionStatus.PAUSED
        await self._save(session)
        logger.info("session_paused", session_id=session_id)
        return session

    async def end_session(self, session_id: str) -> TradingSession | None:
        session = await self.repo.get(session_id)
        if session is None or session.status == SessionStatus.ENDED:
            return session
        session.status = SessionStatus.ENDED
        session.ended_at = self.clock.now_ms()
        await self._save(session)
        logger.info("session_ended", session_id=session_id)
        return session

    async def end_all_resumable_sessions(self, owner: str, market_id: str) -> int:
        sessions = await self.repo.find_for_market(
            owner.lower(), market_id, statuses=RESUMABLE_STATUSES
        )
        for session in sessions:
            await self.end_session(session.id)
        return len(sessions)

    async def delete_session(self, session_id: str) -> bool:
        return await self.repo.delete(session_id)

    async def list_sessions(self, owner: str | None = None) -> list[TradingSession]:
        return await self.repo.list_all(owner.lower() if owner else None)

    async def list_recent_sessions(
        self, limit: int = 10, owner: str | None = None
    ) -> list[TradingSession]:
        return await self.repo.list_recent(limit, owner.lower() if owner else None)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    async def record_confirmed_fill(self, session_id: str, fill: ConfirmedFill) -> FillAccounting:
        session = await self._require(session_id)

        value = fill.fill_price * fill.fill_quantity
        fee = value * FEE_RATE
        avg_cost: Decimal | None = None
        matched: Decimal | None = None

        if fill.side == OrderSide.BUY:
            contribution = -fee
            session.unsold_cost_basis += value
            session.unsold_quantity += fill.fill_quantity
            session.buy_count += 1
        else:
            contribution, avg_cost, matched = self._match_sell(session, fill, fee)
            session.sell_count += 1

        session.realized_pnl += contribution
        session.trade_count += 1
        session.total_volume += value
        session.total_fees += fee
        session.trades.append(
            SessionTrade(
                order_id=fill.order_id,
                side=fill.side,
                price=fill.fill_price,
                quantity=fill.fill_quantity,
                value=value,
                fee=fee,
                timestamp=self.clock.now_ms(),
                market_pair=fill.market_pair,
                weighted_avg_buy_price=avg_cost,
                matched_quantity=matched,
                pnl_contribution=contribution,
            )
        )
        if len(session.trades) > self.max_trades:
            session.trades = session.trades[-self.max_trades :]

        await self._save(session)
        logger.info(
            "fill_recorded",
            session_id=session_id,
            order_id=fill.order_id,
            side=fill.side.value,
            quantity=str(fill.fill_quantity),
            price=str(fill.fill_price),
            pnl_contribution=str(contribution),
            realized_pnl=str(session.realized_pnl),
        )
        return FillAccounting(session=session, pnl_contribution=contribution)

    def _match_sell(
        self, session: TradingSession, fill: ConfirmedFill, fee: Decimal
    ) -> tuple[Decimal, Decimal | None, Decimal]:
        unsold_qty = session.unsold_quantity
        if unsold_qty <= 0:
            logger.warning(
                "oversell_beyond_tracked_inventory",
                session_id=session.id,
                excess=str(fill.fill_quantity),
            )
            return -fee, None, Decimal("0")

        matched = min(fill.fill_quantity, unsold_qty)
        avg_cost = session.unsold_cost_basis / unsold_qty
        gross = (fill.fill_price - avg_cost) * matched

        if matched == unsold_qty:
            session.unsold_cost_basis = Decimal("0")
            session.unsold_quantity = Decimal("0")
        else:
            remaining = 1 - matched / unsold_qty
            session.unsold_cost_basis = max(session.unsold_cost_basis * remaining, Decimal("0"))
            session.unsold_quantity = max(unsold_qty - matched, Decimal("0"))

        if fill.fill_quantity > matched:
            logger.warning(
                "oversell_beyond_tracked_inventory",
                session_id=session.id,
                excess=str(fill.fill_quantity - matched),
            )
        return gross - fee, avg_cost, matched

    async def update_unrealized_pnl(
        self, session_id: str, market_price: Decimal
    ) -> TradingSession | None:
        session = await self.repo.get(session_id)
        if session is None:
            return None
        avg_cost = session.average_cost_basis
        session.unrealized_pnl = (
            (market_price - avg_cost) * session.unsold_quantity if avg_cost is not None else Decimal("0")
        )
        session.last_market_price = market_price
        await self._save(session)
        return session

    # ------------------------------------------------------------------
    # Console + context
    # ------------------------------------------------------------------

    async def add_console_message(self, session_id: str, message: str, severity: str) -> None:
        session = await self.repo.get(session_id)
        if session is None:
            return
        session.console_messages.append(
            ConsoleMessage(message=message, severity=severity, timestamp=self.clock.now_ms())
        )
        if len(session.console_messages) > self.max_console_messages:
            session.console_messages = session.console_messages[-self.max_console_messages :]
        await self._save(session, notify=False)

    async def update_context(self, session_id: str, snapshot: ContextSnapshot) -> None:
        session = await self.repo.get(session_id)
        if session is None:
            return
        session.last_context = snapshot
        await self._save(session)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_session_update(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _require(self, session_id: str) -> TradingSession:
        session = await self.repo.get(session_id)
        if session is None:
            raise SessionError(f"Session not found: {session_id}")
        return session

    async def _save(self, session: TradingSession, notify: bool = True) -> None:
        session.updated_at = self.clock.now_ms()
        await self.repo.save(session)
        if not notify:
            return
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("session_listener_error", session_id=session.id)
