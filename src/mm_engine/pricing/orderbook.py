"""Depth-aware spread: VWAP over order book levels."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from pydantic import BaseModel

from mm_engine.pricing.precision import from_scaled

if TYPE_CHECKING:
    from mm_engine.models.market import Market, OrderBook

INSUFFICIENT_LIQUIDITY_SPREAD = Decimal("999")
DEPTH_ISSUE_FACTOR = Decimal("1.1")


class VWAPResult(BaseModel):
    vwap: Decimal | None
    filled_quantity: Decimal
    sufficient_liquidity: bool


class EffectiveSpread(BaseModel):
    spread_percent: Decimal
    top_of_book_spread_percent: Decimal
    mid_price: Decimal
    effective_bid: Decimal
    effective_ask: Decimal
    sufficient_liquidity: bool = True

    @property
    def depth_issue(self) -> bool:
        """Effective spread is materially wider than top-of-book."""
        return self.spread_percent > self.top_of_book_spread_percent * DEPTH_ISSUE_FACTOR


def calculate_vwap(
    levels: list[tuple[str, str]],
    target_quantity: Decimal,
    quote_decimals: int,
    base_decimals: int,
) -> VWAPResult:
    """Walk scaled (price, quantity) levels until ``target_quantity`` base is filled."""
    remaining = target_quantity
    total_cost = Decimal("0")
    total_filled = Decimal("0")

    for raw_price, raw_quantity in levels:
        if remaining <= 0:
            break
        price = from_scaled(raw_price, quote_decimals)
        quantity = from_scaled(raw_quantity, base_decimals)
        if price <= 0 or quantity <= 0:
            continue
        fill = min(remaining, quantity)
        total_cost += fill * price
        total_filled += fill
        remaining -= fill

    if remaining > 0 or total_filled <= 0:
        return VWAPResult(vwap=None, filled_quantity=total_filled, sufficient_liquidity=False)
    return VWAPResult(
        vwap=total_cost / total_filled,
        filled_quantity=total_filled,
        sufficient_liquidity=True,
    )


def best_bid(order_book: OrderBook | None, market: Market) -> Decimal | None:
    if order_book is None or not order_book.bids:
        return None
    return from_scaled(order_book.bids[0][0], market.quote.decimals)


def best_ask(order_book: OrderBook | None, market: Market) -> Decimal | None:
    if order_book is None or not order_book.asks:
        return None
    return from_scaled(order_book.asks[0][0], market.quote.decimals)


def calculate_effective_spread(
    order_book: OrderBook, market: Market, reference_usd: Decimal
) -> EffectiveSpread | None:
    """Spread a ``reference_usd`` order would actually pay on both sides.

    Returns None when either side of the book is empty. When the book cannot
    fill the reference size the spread is reported as 999%.
    """
    bid = best_bid(order_book, market)
    ask = best_ask(order_book, market)
    if bid is None or ask is None:
        return None

    mid = (bid + ask) / 2
    if mid <= 0:
        return None
    top_spread = (ask - bid) / mid * 100
    reference_base = reference_usd / mid

    sell_side = calculate_vwap(
        order_book.bids, reference_base, market.quote.decimals, market.base.decimals
    )
    buy_side = calculate_vwap(
        order_book.asks, reference_base, market.quote.decimals, market.base.decimals
    )

    if sell_side.vwap is None or buy_side.vwap is None:
        return EffectiveSpread(
            spread_percent=INSUFFICIENT_LIQUIDITY_SPREAD,
            top_of_book_spread_percent=top_spread,
            mid_price=mid,
            effective_bid=bid,
            effective_ask=ask,
            sufficient_liquidity=False,
        )

    return EffectiveSpread(
        spread_percent=(buy_side.vwap - sell_side.vwap) / mid * 100,
        top_of_book_spread_percent=top_spread,
        mid_price=mid,
        effective_bid=sell_side.vwap,
        effective_ask=buy_side.vwap,
    )
