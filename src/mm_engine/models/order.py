"""Order, OrderExecution, ExecutionResult Pydantic models."""

import enum

from pydantic import BaseModel


class OrderSide(str, enum.Enum):
    BUY = "Buy"
    SELL = "Sell"


class OrderType(str, enum.Enum):
    MARKET = "Market"
    SPOT = "Spot"  # resting limit order


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"


TRACKED_STATUSES = (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


class Order(BaseModel):
    order_id: str
    market_id: str
    side: OrderSide
    order_type: OrderType = OrderType.SPOT
    price: str  # scaled by quote decimals
    price_fill: str | None = None  # scaled weighted execution price
    quantity: str  # scaled by base decimals
    filled_quantity: str = "0"
    remaining_quantity: str | None = None
    status: OrderStatus = OrderStatus.OPEN
    created_at: int = 0  # epoch ms
    updated_at: int = 0


class OrderExecution(BaseModel):
    """Outcome of one order placement attempt inside a strategy cycle."""

    order_id: str = ""
    side: OrderSide
    success: bool
    price: str | None = None  # scaled
    quantity: str | None = None  # scaled
    price_human: str | None = None
    quantity_human: str | None = None
    market_pair: str = ""
    is_limit_order: bool = False
    error: str | None = None


class ExecutionResult(BaseModel):
    executed: bool
    orders: list[OrderExecution] = []
    next_run_at: int | None = None  # epoch ms
    skip_reason: str | None = None
    stop_loss_triggered: bool = False
    config_changed: bool = False  # executor persisted a new StrategyConfig


class ProcessedFill(BaseModel):
    """Last filled quantity already accounted for, per order."""

    order_id: str
    market_id: str
    filled_quantity: str  # scaled
    updated_at: int
