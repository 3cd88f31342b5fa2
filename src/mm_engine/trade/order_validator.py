"""Pre-submission validation against market precision constraints."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from mm_engine.pricing.precision import align_price_to_tick_size, align_quantity_to_step_size

if TYPE_CHECKING:
    from mm_engine.models.market import Market

logger = structlog.get_logger()


class OrderValidationResult(BaseModel):
    valid: bool
    adjusted_price: Decimal
    adjusted_quantity: Decimal
    errors: list[str] = []
    warnings: list[str] = []


class OrderValidator:
    """
    Pre-submission validation (human-readable price/quantity):
    - Price aligned to tick size (warning, adjusted)
    - Quantity aligned to step size (warning, adjusted)
    - Price truncated to quote max_precision (warning, adjusted)
    - Price and quantity > 0 after adjustment (error)
    - Order value >= market minimum, when the market declares one (error)
    """

    def validate(self, price: Decimal, quantity: Decimal, market: Market) -> OrderValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        adjusted_price = self._align_tick(price, market, warnings)
        adjusted_quantity = self._align_step(quantity, market, warnings)
        adjusted_price = self._truncate_max_precision(adjusted_price, market, warnings)

        self._validate_positive("Price", adjusted_price, "price", errors)
        self._validate_positive("Quantity", adjusted_quantity, "quantity", errors)
        self._validate_min_order(adjusted_price, adjusted_quantity, market, errors)

        valid = len(errors) == 0
        if not valid:
            logger.warning("order_validation_failed", errors=errors, market_id=market.market_id)
        elif warnings:
            logger.info("order_params_adjusted", warnings=warnings, market_id=market.market_id)

        return OrderValidationResult(
            valid=valid,
            adjusted_price=adjusted_price,
            adjusted_quantity=adjusted_quantity,
            errors=errors,
            warnings=warnings,
        )

    def _align_tick(self, price: Decimal, market: Market, warnings: list[str]) -> Decimal:
        aligned = align_price_to_tick_size(price, market)
        if aligned != price:
            warnings.append(
                f"Price adjusted from {price} to {aligned} to match tick size {market.tick_size}"
            )
        return aligned

    def _align_step(self, quantity: Decimal, market: Market, warnings: list[str]) -> Decimal:
        aligned = align_quantity_to_step_size(quantity, market)
        if aligned != quantity:
            warnings.append(
                f"Quantity adjusted from {quantity} to {aligned} to match step size {market.step_size}"
            )
        return aligned

    def _truncate_max_precision(
        self, price: Decimal, market: Market, warnings: list[str]
    ) -> Decimal:
        max_precision = market.quote.max_precision
        if max_precision is None or max_precision >= market.quote.decimals:
            return price
        truncated = price.quantize(Decimal(1).scaleb(-max_precision), rounding=ROUND_FLOOR)
        if truncated != price:
            warnings.append(
                f"Price truncated to max_precision {max_precision}: {price} -> {truncated}"
            )
        return truncated

    def _validate_positive(
        self, label: str, value: Decimal, noun: str, errors: list[str]
    ) -> None:
        if value <= 0:
            state = "zero" if value.is_zero() else "negative"
            errors.append(
                f"{label} would be {state} after precision adjustment - "
                f"{noun} too small for this market"
            )

    def _validate_min_order(
        self, price: Decimal, quantity: Decimal, market: Market, errors: list[str]
    ) -> None:
        if not market.min_order or price <= 0 or quantity <= 0:
            return
        minimum = Decimal(market.min_order)
        value = price * quantity
        if value < minimum:
            errors.append(f"Order value {value} below market minimum {minimum}")

    def is_price_valid_for_market(self, price: Decimal, market: Market) -> bool:
        result = self.validate(price, Decimal(1), market)
        return result.adjusted_price > 0
