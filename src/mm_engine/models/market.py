"""Market metadata, ticker and order book Pydantic models.

Prices and quantities coming from the exchange are scaled integer strings
(``human_value * 10**decimals``).
"""

from pydantic import BaseModel


class AssetInfo(BaseModel):
    symbol: str
    asset_id: str
    decimals: int
    max_precision: int | None = None


class Market(BaseModel):
    market_id: str
    contract_id: str = ""
    base: AssetInfo
    quote: AssetInfo
    tick_size: str | None = None  # human-readable
    step_size: str | None = None  # human-readable
    min_order: str | None = None  # minimum order value in quote, human-readable

    @property
    def pair(self) -> str:
        return f"{self.base.symbol}/{self.quote.symbol}"


class Ticker(BaseModel):
    market_id: str
    last_price: str  # scaled by quote decimals


class OrderBook(BaseModel):
    market_id: str
    bids: list[tuple[str, str]] = []  # (price, quantity), best first
    asks: list[tuple[str, str]] = []

    @property
    def has_both_sides(self) -> bool:
        return bool(self.bids) and bool(self.asks)


class AssetBalance(BaseModel):
    asset_id: str
    unlocked: str = "0"
    locked: str = "0"
    total: str = "0"


class MarketBalances(BaseModel):
    base: AssetBalance
    quote: AssetBalance
