"""Engine-facing observer payloads and the in-memory market binding."""

import asyncio
import enum
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from mm_engine.models.market import Market
from mm_engine.models.strategy import StrategyConfig


class Severity(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class StatusMessage(BaseModel):
    message: str
    severity: Severity = Severity.INFO
    verbosity: int = 1  # 0 = always shown, higher = more detail
    timestamp: int


class PendingSellOrder(BaseModel):
    price: str
    quantity: str


class TradingContext(BaseModel):
    pair: str
    base_balance: str
    quote_balance: str
    last_buy_price: str | None = None
    current_price: str | None = None
    open_buy_orders: int = 0
    open_sell_orders: int = 0
    pending_sell_order: PendingSellOrder | None = None
    profit_protection_enabled: bool = False
    next_run_in: int = 0  # seconds
    session_id: str | None = None
    total_volume: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    trade_count: int = 0
    starting_base_balance: str | None = None
    starting_quote_balance: str | None = None
    strategy_name: str | None = None


class MarketConfig(BaseModel):
    """Binds a strategy to its market while the market is scheduled."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    market: Market
    config: StrategyConfig
    next_run_at: int = 0  # epoch ms
    session_id: str | None = None
    timer: asyncio.Task | None = None
