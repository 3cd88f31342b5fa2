"""Precision rounding for exchange submission. All rounding is FLOOR."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mm_engine.models.market import Market

DEFAULT_MAX_QUANTITY_PRECISION = 6


def _floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).to_integral_value(rounding=ROUND_FLOOR) * step


def _floor_to_places(value: Decimal, places: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_FLOOR)


def _non_zero_step(raw: str | None) -> Decimal | None:
    if not raw:
        return None
    step = Decimal(raw)
    if step.is_zero():
        return None
    return step


def to_scaled(human: Decimal, decimals: int) -> Decimal:
    """Human value -> integer base units (floored)."""
    return (human * Decimal(10) ** decimals).to_integral_value(rounding=ROUND_FLOOR)


def from_scaled(raw: str | Decimal, decimals: int) -> Decimal:
    return Decimal(raw) / Decimal(10) ** decimals


def quantity_precision(market: Market) -> int:
    if market.base.max_precision is not None:
        return market.base.max_precision
    return min(market.base.decimals, DEFAULT_MAX_QUANTITY_PRECISION)


def round_down_to_market_precision(quantity: Decimal, market: Market) -> Decimal:
    """Floor a human-readable quantity to the market's step size.

    Falls back to ``base.max_precision`` (or ``min(base.decimals, 6)``) decimal
    places when the market has no usable step size.
    """
    step = _non_zero_step(market.step_size)
    if step is not None:
        return _floor_to_step(quantity, step)
    return _floor_to_places(quantity, quantity_precision(market))


def scale_up_and_truncate_to_int(
    amount: Decimal,
    decimals: int,
    max_precision: int | None,
    tick_size: str | None = None,
) -> Decimal:
    """Scale a human price to integer units, aligned to tick size or max precision."""
    tick = _non_zero_step(tick_size)
    if tick is not None:
        return to_scaled(_floor_to_step(amount, tick), decimals)

    effective = max_precision if max_precision is not None and max_precision >= 0 else decimals
    scaled = to_scaled(amount, decimals)
    truncate_factor = Decimal(10) ** (decimals - effective)
    if truncate_factor <= 1:
        return scaled
    return _floor_to_step(scaled, truncate_factor)


def align_price_to_tick_size(price: Decimal, market: Market) -> Decimal:
    tick = _non_zero_step(market.tick_size)
    if tick is None:
        return price
    return _floor_to_step(price, tick)


def align_quantity_to_step_size(quantity: Decimal, market: Market) -> Decimal:
    step = _non_zero_step(market.step_size)
    if step is None:
        return quantity
    return _floor_to_step(quantity, step)


def get_minimum_price(market: Market) -> Decimal:
    if market.tick_size:
        return Decimal(market.tick_size)
    max_precision = market.quote.max_precision or market.quote.decimals
    return Decimal(1).scaleb(-max_precision)


def get_minimum_quantity(market: Market) -> Decimal:
    if market.step_size:
        return Decimal(market.step_size)
    max_precision = min(market.base.max_precision or DEFAULT_MAX_QUANTITY_PRECISION, 6)
    return Decimal(1).scaleb(-max_precision)


def is_valid_price(price: Decimal | None) -> bool:
    return price is not None and price.is_finite() and price > 0
