"""Local trade history record."""

import enum

from pydantic import BaseModel

from mm_engine.models.order import OrderSide


class TradeStatus(str, enum.Enum):
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Trade(BaseModel):
    timestamp: int
    market_id: str
    order_id: str
    session_id: str | None = None
    side: OrderSide
    order_type: str  # Limit, Market
    price: str  # scaled
    price_fill: str | None = None
    quantity: str  # scaled
    filled_quantity: str | None = None
    success: bool = True
    status: TradeStatus = TradeStatus.PENDING
    error: str | None = None
