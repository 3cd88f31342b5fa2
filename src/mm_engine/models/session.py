"""TradingSession ledger models."""

import enum
from decimal import Decimal

from pydantic import BaseModel

from mm_engine.models.order import OrderSide

FEE_RATE = Decimal("0.0001")  # 0.01% per fill


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


RESUMABLE_STATUSES = (SessionStatus.ACTIVE, SessionStatus.PAUSED)


class SessionTrade(BaseModel):
    order_id: str
    side: OrderSide
    price: Decimal
    quantity: Decimal
    value: Decimal
    fee: Decimal
    timestamp: int
    market_pair: str
    # Sell-side audit fields
    weighted_avg_buy_price: Decimal | None = None
    matched_quantity: Decimal | None = None
    pnl_contribution: Decimal


class ConsoleMessage(BaseModel):
    message: str
    severity: str
    timestamp: int


class ContextSnapshot(BaseModel):
    pair: str
    current_price: str = ""
    base_balance: str = ""
    quote_balance: str = ""
    last_buy_price: str | None = None


class TradingSession(BaseModel):
    id: str
    owner_address: str
    market_id: str
    market_pair: str
    status: SessionStatus = SessionStatus.ACTIVE

    total_volume: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    trade_count: int = 0
    buy_count: int = 0
    sell_count: int = 0

    # Weighted-average inventory for sell matching
    unsold_quantity: Decimal = Decimal("0")
    unsold_cost_basis: Decimal = Decimal("0")

    unrealized_pnl: Decimal | None = None
    last_market_price: Decimal | None = None

    trades: list[SessionTrade] = []
    console_messages: list[ConsoleMessage] = []
    last_context: ContextSnapshot | None = None

    starting_base_balance: str | None = None
    starting_quote_balance: str | None = None
    strategy_name: str | None = None

    created_at: int
    updated_at: int
    ended_at: int | None = None

    @property
    def average_cost_basis(self) -> Decimal | None:
        if self.unsold_quantity <= 0:
            return None
        return self.unsold_cost_basis / self.unsold_quantity


class ConfirmedFill(BaseModel):
    order_id: str
    side: OrderSide
    fill_price: Decimal  # human-readable
    fill_quantity: Decimal  # human-readable, this delta only
    market_pair: str


class FillAccounting(BaseModel):
    session: TradingSession
    pnl_contribution: Decimal
