"""Unit tests for SessionLedger: lifecycle and weighted-average P&L."""

from __future__ import annotations

import random
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from mm_engine.db.repository import TradingSessionRepository
from mm_engine.errors import SessionError
from mm_engine.models.order import OrderSide
from mm_engine.models.session import ConfirmedFill, ContextSnapshot, SessionStatus
from mm_engine.session_ledger import SessionLedger
from tests.conftest import START_MS, _make_settings


@pytest.fixture
def ledger(store, clock):
    return SessionLedger(TradingSessionRepository(store), clock, _make_settings())


def _fill(side: OrderSide, price: str, quantity: str, order_id: str = "o1") -> ConfirmedFill:
    return ConfirmedFill(
        order_id=order_id,
        side=side,
        fill_price=Decimal(price),
        fill_quantity=Decimal(quantity),
        market_pair="ETH/USDC",
    )


async def _new_session(ledger: SessionLedger):
    return await ledger.create_session("0xOwner", "m1", "ETH/USDC", "1", "500.00", "Test")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_session(self, ledger):
        session = await _new_session(ledger)
        assert session.id == f"0xowner-m1-{START_MS}"
        assert session.owner_address == "0xowner"
        assert session.status == SessionStatus.ACTIVE
        assert session.starting_quote_balance == "500.00"
        assert await ledger.get_active_session("0xOWNER", "m1") == session

    @pytest.mark.asyncio
    async def test_create_ends_previous_resumable(self, ledger, clock):
        first = await _new_session(ledger)
        await ledger.pause_session(first.id)
        clock.advance(1000)
        second = await _new_session(ledger)

        assert (await ledger.get_session(first.id)).status == SessionStatus.ENDED
        assert (await ledger.get_resumable_session("0xowner", "m1")).id == second.id

    @pytest.mark.asyncio
    async def test_get_or_create_resumes_paused(self, ledger, clock):
        first = await _new_session(ledger)
        await ledger.pause_session(first.id)
        clock.advance(1000)

        resumed = await ledger.get_or_create_session("0xowner", "m1", "ETH/USDC")
        assert resumed.id == first.id
        assert resumed.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_get_or_create_force_new(self, ledger, clock):
        first = await _new_session(ledger)
        clock.advance(1000)
        fresh = await ledger.get_or_create_session("0xowner", "m1", "ETH/USDC", force_new=True)
        assert fresh.id != first.id
        assert (await ledger.get_session(first.id)).status == SessionStatus.ENDED

    @pytest.mark.asyncio
    async def test_resume_ended_raises(self, ledger):
        session = await _new_session(ledger)
        await ledger.end_session(session.id)
        with pytest.raises(SessionError):
            await ledger.resume_session(session.id)

    @pytest.mark.asyncio
    async def test_end_sets_ended_at(self, ledger, clock):
        session = await _new_session(ledger)
        clock.advance(5000)
        ended = await ledger.end_session(session.id)
        assert ended.ended_at == START_MS + 5000

    @pytest.mark.asyncio
    async def test_pause_only_from_active(self, ledger):
        session = await _new_session(ledger)
        await ledger.end_session(session.id)
        paused = await ledger.pause_session(session.id)
        assert paused.status == SessionStatus.ENDED

    @pytest.mark.asyncio
    async def test_delete_and_list(self, ledger, clock):
        first = await _new_session(ledger)
        clock.advance(1000)
        await ledger.create_session("0xowner", "m2", "BTC/USDC")
        assert len(await ledger.list_sessions("0xowner")) == 2
        assert len(await ledger.list_recent_sessions(limit=1)) == 1
        assert await ledger.delete_session(first.id) is True
        assert len(await ledger.list_sessions()) == 1


# ---------------------------------------------------------------------------
# Accounting
# ---------------------------------------------------------------------------


class TestRecordConfirmedFill:
    @pytest.mark.asyncio
    async def test_buy_books_fee_and_inventory(self, ledger):
        session = await _new_session(ledger)
        result = await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "100", "1"))

        assert result.pnl_contribution == Decimal("-0.01")
        assert result.session.unsold_quantity == Decimal("1")
        assert result.session.unsold_cost_basis == Decimal("100")
        assert result.session.total_volume == Decimal("100")
        assert result.session.buy_count == 1
        assert result.session.trade_count == 1

    @pytest.mark.asyncio
    async def test_round_trip_realizes_profit(self, ledger):
        session = await _new_session(ledger)
        await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "100", "1"))
        result = await ledger.record_confirmed_fill(
            session.id, _fill(OrderSide.SELL, "110", "1", "o2")
        )

        assert result.pnl_contribution == Decimal("9.989")
        assert result.session.realized_pnl == Decimal("9.979")
        assert result.session.unsold_quantity == Decimal("0")
        assert result.session.unsold_cost_basis == Decimal("0")
        trade = result.session.trades[-1]
        assert trade.weighted_avg_buy_price == Decimal("100")
        assert trade.matched_quantity == Decimal("1")

    @pytest.mark.asyncio
    async def test_weighted_average_cost(self, ledger):
        session = await _new_session(ledger)
        await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "100", "1"))
        await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "120", "1", "o2"))
        result = await ledger.record_confirmed_fill(
            session.id, _fill(OrderSide.SELL, "130", "1", "o3")
        )
        # avg 110 -> (130 - 110) * 1 - 0.013
        assert result.pnl_contribution == Decimal("19.987")
        assert result.session.unsold_quantity == Decimal("1")
        assert result.session.unsold_cost_basis == Decimal("110")

    @pytest.mark.asyncio
    async def test_partial_sell_shrinks_pool_proportionally(self, ledger):
        session = await _new_session(ledger)
        await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "100", "1"))
        result = await ledger.record_confirmed_fill(
            session.id, _fill(OrderSide.SELL, "110", "0.5", "o2")
        )
        assert result.session.unsold_quantity == Decimal("0.5")
        assert result.session.unsold_cost_basis == Decimal("50")
        assert result.session.average_cost_basis == Decimal("100")

    @pytest.mark.asyncio
    async def test_sell_without_inventory_costs_fee_only(self, ledger):
        session = await _new_session(ledger)
        result = await ledger.record_confirmed_fill(session.id, _fill(OrderSide.SELL, "100", "1"))
        assert result.pnl_contribution == Decimal("-0.01")
        assert result.session.sell_count == 1

    @pytest.mark.asyncio
    async def test_oversell_matches_tracked_quantity_only(self, ledger):
        session = await _new_session(ledger)
        await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "100", "0.5"))
        result = await ledger.record_confirmed_fill(
            session.id, _fill(OrderSide.SELL, "110", "1", "o2")
        )
        # matched 0.5 -> 5 - fee on the full 110
        assert result.pnl_contribution == Decimal("4.989")
        assert result.session.unsold_quantity == Decimal("0")
        assert result.session.trades[-1].matched_quantity == Decimal("0.5")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    async def test_inventory_never_negative(self, ledger, seed):
        rng = random.Random(seed)
        session = await _new_session(ledger)
        for i in range(60):
            side = OrderSide.BUY if rng.random() < 0.45 else OrderSide.SELL
            price = Decimal(rng.randint(5000, 15000)) / 100
            # Sells are drawn large enough to oversell tracked inventory regularly
            quantity = Decimal(rng.randint(1, 300)) / 100
            result = await ledger.record_confirmed_fill(
                session.id, _fill(side, str(price), str(quantity), f"o{i}")
            )
            assert result.session.unsold_quantity >= 0
            assert result.session.unsold_cost_basis >= 0

        stored = await ledger.get_session(session.id)
        assert stored.trade_count == 60
        assert stored.buy_count + stored.sell_count == 60

    @pytest.mark.asyncio
    async def test_trade_log_bounded(self, store, clock):
        ledger = SessionLedger(
            TradingSessionRepository(store), clock, _make_settings(MAX_SESSION_TRADES=2)
        )
        session = await _new_session(ledger)
        for i in range(3):
            await ledger.record_confirmed_fill(
                session.id, _fill(OrderSide.BUY, "100", "1", f"o{i}")
            )
        stored = await ledger.get_session(session.id)
        assert [t.order_id for t in stored.trades] == ["o1", "o2"]
        assert stored.trade_count == 3

    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, ledger):
        with pytest.raises(SessionError):
            await ledger.record_confirmed_fill("nope", _fill(OrderSide.BUY, "100", "1"))


class TestUnrealizedPnl:
    @pytest.mark.asyncio
    async def test_mark_to_market(self, ledger):
        session = await _new_session(ledger)
        await ledger.record_confirmed_fill(session.id, _fill(OrderSide.BUY, "100", "2"))
        updated = await ledger.update_unrealized_pnl(session.id, Decimal("105"))
        assert updated.unrealized_pnl == Decimal("10")
        assert updated.last_market_price == Decimal("105")

    @pytest.mark.asyncio
    async def test_flat_inventory_is_zero(self, ledger):
        session = await _new_session(ledger)
        updated = await ledger.update_unrealized_pnl(session.id, Decimal("105"))
        assert updated.unrealized_pnl == Decimal("0")


# ---------------------------------------------------------------------------
# Console, context, observers
# ---------------------------------------------------------------------------


class TestConsoleAndContext:
    @pytest.mark.asyncio
    async def test_console_ring_bounded(self, store, clock):
        ledger = SessionLedger(
            TradingSessionRepository(store), clock, _make_settings(MAX_CONSOLE_MESSAGES=2)
        )
        session = await _new_session(ledger)
        for i in range(3):
            await ledger.add_console_message(session.id, f"msg {i}", "info")
        stored = await ledger.get_session(session.id)
        assert [m.message for m in stored.console_messages] == ["msg 1", "msg 2"]

    @pytest.mark.asyncio
    async def test_console_message_does_not_notify(self, ledger):
        session = await _new_session(ledger)
        listener = MagicMock()
        ledger.on_session_update(listener)
        await ledger.add_console_message(session.id, "hello", "success")
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_context(self, ledger):
        session = await _new_session(ledger)
        await ledger.update_context(
            session.id, ContextSnapshot(pair="ETH/USDC", current_price="100")
        )
        stored = await ledger.get_session(session.id)
        assert stored.last_context.current_price == "100"


class TestObservers:
    @pytest.mark.asyncio
    async def test_listener_notified_and_unsubscribed(self, ledger):
        listener = MagicMock()
        unsubscribe = ledger.on_session_update(listener)
        session = await _new_session(ledger)
        listener.assert_called_once()
        assert listener.call_args[0][0].id == session.id

        unsubscribe()
        await ledger.pause_session(session.id)
        listener.assert_called_once()

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_fail_save(self, ledger):
        ledger.on_session_update(MagicMock(side_effect=RuntimeError("boom")))
        session = await _new_session(ledger)
        assert await ledger.get_session(session.id) is not None
