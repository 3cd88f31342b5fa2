"""StrategyConfig and its nested sections (Pydantic)."""

from __future__ import annotations

import time
from decimal import Decimal, InvalidOperation
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class OrderConfig(BaseModel):
    order_type: Literal["Market", "Spot"] = "Market"
    price_mode: Literal["offset_from_mid", "offset_from_bid", "offset_from_ask", "market"] = (
        "offset_from_mid"
    )
    price_offset_percent: float = Field(default=0.1, ge=0, le=100)
    max_spread_percent: float = Field(default=2.0, ge=0, le=100)
    side: Literal["Buy", "Sell", "Both"] = "Both"


class PositionSizing(BaseModel):
    size_mode: Literal["percentage_of_balance", "fixed_usd"] = "percentage_of_balance"
    balance_percentage: float = Field(default=100, ge=0, le=100)
    base_balance_percentage: float | None = Field(default=100, ge=0, le=100)
    quote_balance_percentage: float | None = Field(default=100, ge=0, le=100)
    fixed_usd_amount: float | None = None
    min_order_size_usd: float = 5.0
    max_order_size_usd: float | None = None


class OrderManagement(BaseModel):
    track_fill_prices: bool = True
    only_sell_above_buy_price: bool = True
    max_open_orders: int = 2  # per side


class RiskManagement(BaseModel):
    take_profit_percent: float = Field(default=0.02, ge=0, le=100)
    stop_loss_enabled: bool = False
    stop_loss_percent: float = Field(default=5.0, ge=0, le=100)
    order_timeout_enabled: bool = False
    order_timeout_minutes: int = 30
    max_daily_loss_enabled: bool = False
    max_daily_loss_usd: float = 100.0


class Timing(BaseModel):
    cycle_interval_min_ms: int = 3000
    cycle_interval_max_ms: int = 5000


class FillPrice(BaseModel):
    price: str  # human-readable
    quantity: str  # human-readable
    timestamp: int


class LastFillPrices(BaseModel):
    buy: list[FillPrice] = []
    sell: list[FillPrice] = []


class DailyPnL(BaseModel):
    date: str  # YYYY-MM-DD (UTC)
    realized_pnl: Decimal = Decimal("0")
    paused_until: int | None = None  # epoch ms


class StrategyConfig(BaseModel):
    market_id: str
    name: str | None = None

    order_config: OrderConfig = Field(default_factory=OrderConfig)
    position_sizing: PositionSizing = Field(default_factory=PositionSizing)
    order_management: OrderManagement = Field(default_factory=OrderManagement)
    risk_management: RiskManagement = Field(default_factory=RiskManagement)
    timing: Timing = Field(default_factory=Timing)

    # Engine-managed state
    last_fill_prices: LastFillPrices = Field(default_factory=LastFillPrices)
    average_buy_price: str | None = None
    average_sell_price: str | None = None
    daily_pnl: DailyPnL | None = None

    is_active: bool = True
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    updated_at: int = Field(default_factory=lambda: int(time.time() * 1000))

    @field_validator("average_buy_price", "average_sell_price")
    @classmethod
    def _positive_decimal_or_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            parsed = Decimal(value)
        except InvalidOperation as e:
            raise ValueError(f"not a decimal string: {value!r}") from e
        if parsed.is_zero():
            return None
        if parsed < 0:
            raise ValueError(f"average price must be positive, got {value}")
        return value

    @model_validator(mode="after")
    def _check_interval_order(self) -> StrategyConfig:
        if self.timing.cycle_interval_min_ms > self.timing.cycle_interval_max_ms:
            raise ValueError("cycle_interval_min_ms must be <= cycle_interval_max_ms")
        return self

    def has_average_buy_price(self) -> bool:
        return self.average_buy_price is not None


def default_strategy_config(market_id: str) -> StrategyConfig:
    return StrategyConfig(market_id=market_id, name="Default Trading Strategy")
