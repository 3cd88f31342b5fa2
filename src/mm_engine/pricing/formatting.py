"""Human-readable price/quantity formatting for status messages and context."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from mm_engine.pricing.precision import from_scaled


def _fixed(value: Decimal, places: int) -> str:
    return format(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP), "f")


def _strip_zeros(text: str) -> str:
    if "." not in text:
        return text
    return text.rstrip("0").rstrip(".")


def trim_decimal(value: Decimal | str, places: int) -> str:
    """Fixed-point with ``places`` decimals, trailing zeros removed."""
    return _strip_zeros(_fixed(Decimal(value), places))


def format_price(
    price: Decimal | str | float,
    prefix: str = "",
    max_decimals: int = 8,
    min_sig_digits: int = 2,
) -> str:
    """Magnitude-tiered price formatting.

    >>> format_price(Decimal("50000"))
    '50000'
    >>> format_price(Decimal("1.5"), prefix="$")
    '$1.5'
    >>> format_price(Decimal("0.00017"))
    '0.00017'
    """
    value = price if isinstance(price, Decimal) else Decimal(str(price))
    if not value.is_finite() or value.is_zero():
        return f"{prefix}0"

    magnitude = abs(value)
    if magnitude >= 10000:
        decimals = 0
    elif magnitude >= 1000:
        decimals = 1
    elif magnitude >= 1:
        decimals = 2
    elif magnitude >= Decimal("0.01"):
        decimals = 4
    elif magnitude >= Decimal("0.0001"):
        decimals = 6
    else:
        decimals = max_decimals

    if magnitude < 1:
        needed = -magnitude.adjusted() + min_sig_digits - 1
        decimals = max(decimals, needed)

    decimals = min(decimals, max_decimals)
    return f"{prefix}{_strip_zeros(_fixed(value, decimals))}"


def format_raw_price(raw_price: str, quote_decimals: int, prefix: str = "") -> str:
    return format_price(from_scaled(raw_price, quote_decimals), prefix=prefix)


def format_raw_quantity(raw_quantity: str, base_decimals: int, places: int = 3) -> str:
    return trim_decimal(from_scaled(raw_quantity, base_decimals), places)


def format_total(price: Decimal, quantity: Decimal, prefix: str = "$") -> str:
    return f"{prefix}{_fixed(price * quantity, 2)}"
