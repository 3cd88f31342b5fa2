"""Per-market risk circuit breakers evaluated at the top of every cycle."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from mm_engine.models.strategy import DailyPnL, StrategyConfig

if TYPE_CHECKING:
    from mm_engine.gateway import Clock
    from mm_engine.models.order import Order
    from mm_engine.models.session import TradingSession

logger = structlog.get_logger()


class RiskCheck(BaseModel):
    passed: bool
    rule: str
    reason: str


class RiskResult(BaseModel):
    approved: bool
    failures: list[RiskCheck] = []


class DailyPnLUpdate(BaseModel):
    config: StrategyConfig
    paused: bool = False


class RiskGate:
    """
    | Rule             | Threshold                      | Action                          |
    |------------------|--------------------------------|---------------------------------|
    | Max Daily Loss   | daily P&L < -maxDailyLossUsd   | pause market until UTC midnight |
    | Max Session Loss | session P&L < -maxDailyLossUsd | skip cycle, slow reschedule     |
    | Order Timeout    | age > orderTimeoutMinutes      | cancel order                    |
    """

    def __init__(self, clock: Clock) -> None:
        self.clock = clock

    def check(self, config: StrategyConfig, session: TradingSession | None) -> RiskResult:
        failures = [
            c
            for c in (self._check_daily_pause(config), self._check_session_loss(config, session))
            if not c.passed
        ]
        approved = len(failures) == 0
        if not approved:
            logger.warning(
                "risk_gate_paused",
                market_id=config.market_id,
                failures=[f.rule for f in failures],
            )
        return RiskResult(approved=approved, failures=failures)

    def _check_daily_pause(self, config: StrategyConfig) -> RiskCheck:
        risk = config.risk_management
        daily = config.daily_pnl
        if not risk.max_daily_loss_enabled or daily is None:
            return RiskCheck(passed=True, rule="max_daily_loss", reason="disabled or no record")
        if daily.date != self._today():
            return RiskCheck(passed=True, rule="max_daily_loss", reason="new day")
        if daily.paused_until is not None and self.clock.now_ms() < daily.paused_until:
            return RiskCheck(
                passed=False,
                rule="max_daily_loss",
                reason=f"daily P&L {daily.realized_pnl} paused until {daily.paused_until}",
            )
        return RiskCheck(passed=True, rule="max_daily_loss", reason="within limit")

    def _check_session_loss(
        self, config: StrategyConfig, session: TradingSession | None
    ) -> RiskCheck:
        risk = config.risk_management
        if not risk.max_daily_loss_enabled or session is None:
            return RiskCheck(passed=True, rule="max_session_loss", reason="disabled or no session")
        limit = Decimal(str(risk.max_daily_loss_usd))
        if session.realized_pnl < -limit:
            return RiskCheck(
                passed=False,
                rule="max_session_loss",
                reason=f"session P&L {session.realized_pnl} below -{limit}",
            )
        return RiskCheck(passed=True, rule="max_session_loss", reason="within limit")

    def record_realized_pnl(self, config: StrategyConfig, pnl: Decimal) -> DailyPnLUpdate:
        """Accumulate today's realized P&L; pause until next UTC midnight past the limit."""
        risk = config.risk_management
        if not risk.max_daily_loss_enabled:
            return DailyPnLUpdate(config=config)

        today = self._today()
        daily = config.daily_pnl
        if daily is None or daily.date != today:
            daily = DailyPnL(date=today)
        daily = daily.model_copy(update={"realized_pnl": daily.realized_pnl + pnl})

        paused = False
        if daily.realized_pnl < -Decimal(str(risk.max_daily_loss_usd)):
            daily.paused_until = self._next_midnight_ms()
            paused = True
            logger.warning(
                "max_daily_loss_exceeded",
                market_id=config.market_id,
                daily_pnl=str(daily.realized_pnl),
                paused_until=daily.paused_until,
            )

        updated = config.model_copy(update={"daily_pnl": daily, "updated_at": self.clock.now_ms()})
        return DailyPnLUpdate(config=updated, paused=paused)

    def timed_out_orders(self, config: StrategyConfig, open_orders: list[Order]) -> list[Order]:
        risk = config.risk_management
        if not risk.order_timeout_enabled or not risk.order_timeout_minutes:
            return []
        cutoff = self.clock.now_ms() - risk.order_timeout_minutes * 60_000
        return [o for o in open_orders if o.created_at and o.created_at < cutoff]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now_ms() / 1000, tz=timezone.utc)

    def _today(self) -> str:
        return self._now().strftime("%Y-%m-%d")

    def _next_midnight_ms(self) -> int:
        now = self._now()
        midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return int(midnight.timestamp() * 1000)
